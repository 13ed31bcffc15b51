"""Operator notifications via the Telegram Bot API.

Messages go to a single operator chat (OPERATOR_TELEGRAM_CHAT_ID) using
OPERATOR_TELEGRAM_BOT_TOKEN. Delivery is best-effort: 3 attempts with
exponential backoff (1s, 2s, 4s); failure is logged and reported as False,
never raised.
"""
import asyncio
import html
import logging
import os
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1
REQUEST_TIMEOUT_SECONDS = 30.0


class OperatorNotifier:
    """Sends HTML-formatted messages to the operator Telegram chat."""

    def __init__(self, sleep=asyncio.sleep):
        self._sleep = sleep

    def is_configured(self) -> bool:
        return bool(os.getenv("OPERATOR_TELEGRAM_BOT_TOKEN") and os.getenv("OPERATOR_TELEGRAM_CHAT_ID"))

    async def send(self, text: str) -> bool:
        token = os.getenv("OPERATOR_TELEGRAM_BOT_TOKEN")
        chat_id = os.getenv("OPERATOR_TELEGRAM_CHAT_ID")
        if not token or not chat_id:
            logger.info("OPERATOR_NOTIFY_SKIPPED reason=not_configured")
            return False

        url = f"{TELEGRAM_API_BASE}/bot{token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        last_error: Optional[str] = None

        for attempt in range(1, MAX_RETRIES + 1):
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, timeout=REQUEST_TIMEOUT_SECONDS)
                if response.status_code == 200:
                    logger.info(f"OPERATOR_NOTIFY_OK attempt={attempt}")
                    return True
                last_error = f"HTTP {response.status_code}: {response.text[:100]}"
                # 4xx other than rate limiting will not succeed on retry
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    break
            except httpx.TimeoutException:
                last_error = f"Request timed out after {REQUEST_TIMEOUT_SECONDS}s"
            except httpx.HTTPError as e:
                last_error = f"Connection error: {e}"

            if attempt < MAX_RETRIES:
                backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(f"OPERATOR_NOTIFY_RETRY attempt={attempt} backoff={backoff}s error={last_error}")
                await self._sleep(backoff)

        logger.error(f"OPERATOR_NOTIFY_FAILED error={last_error}")
        return False

    async def notify_payment(
        self,
        customer_name: Optional[str],
        customer_email: Optional[str],
        plan_name: str,
        amount: Optional[str],
        currency: Optional[str] = None,
        period: Optional[str] = None,
    ) -> bool:
        lines = [
            "💰 <b>New payment</b>",
            "",
            f"<b>Customer:</b> {html.escape(customer_name or '-')}",
            f"<b>Email:</b> {html.escape(customer_email or '-')}",
            f"<b>Plan:</b> {html.escape(plan_name)}" + (f" ({html.escape(period)})" if period else ""),
            f"<b>Amount:</b> {html.escape(str(amount or '-'))} {html.escape(currency or '')}".rstrip(),
        ]
        return await self.send("\n".join(lines))


# Singleton instance
operator_notifier = OperatorNotifier()
