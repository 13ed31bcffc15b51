import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Sequence

logger = logging.getLogger(__name__)

async def run_in_batches(
    items: Sequence[Any],
    worker: Callable[[Any], Awaitable[Any]],
    batch_size: int = 5,
    delay_seconds: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[Any]:
    """Run worker over items in fixed-width concurrent chunks with a pause between chunks.

    Results keep input order. A worker exception is returned in place of its
    result, so one failing item never cancels the rest of its chunk or later chunks.
    """
    batch_size = max(1, int(batch_size))
    results: List[Any] = []

    for start in range(0, len(items), batch_size):
        chunk = items[start:start + batch_size]
        chunk_results = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)

        for result in chunk_results:
            if isinstance(result, Exception):
                logger.error(f"Batch item failed: {result}")
        results.extend(chunk_results)

        if start + batch_size < len(items) and delay_seconds > 0:
            await sleep(delay_seconds)

    return results
