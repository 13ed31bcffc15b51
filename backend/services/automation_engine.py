"""Automation Engine - periodic evaluation of operator-defined automations.

One tick:
1. Load active automation definitions (oldest first).
2. Load one account snapshot (users + businesses + subscriptions) for the tick.
3. For each definition, select matching accounts (automation_triggers).
4. Per (definition, user): skip if an execution exists in the last 24h, then
   reserve (definition, user, UTC day) in automation_reservations; a duplicate
   key means another tick already claimed it.
5. Execute the action and append an execution row, success or failure.
   A failed action still occupies the window so a broken recipient is not retried hourly.

Matched accounts are processed in fixed-width concurrent chunks with a delay
between chunks (AUTOMATION_BATCH_SIZE, AUTOMATION_BATCH_DELAY_SECONDS).

Ticks are single-flight within the process (asyncio.Lock); the scheduler job
also runs with max_instances=1.
"""
import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, ValidationError
from pymongo.errors import DuplicateKeyError

from database import database
from models import AutomationDefinition, AutomationExecution, Subscription
from services.automation_actions import execute_action
from services.automation_triggers import AccountSnapshot, matching_accounts
from utils.batching import run_in_batches

logger = logging.getLogger(__name__)

DEDUP_WINDOW = timedelta(hours=24)

OUTCOME_EXECUTED = "executed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


class TickSummary(BaseModel):
    message: str = "Done"
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    matched: int = 0
    definitions: int = 0


def window_key(now: datetime) -> str:
    """UTC day bucket used by the reservation unique index."""
    return now.astimezone(timezone.utc).strftime("%Y-%m-%d")


def _batch_size() -> int:
    try:
        return max(1, int(os.getenv("AUTOMATION_BATCH_SIZE", "5")))
    except ValueError:
        return 5


def _batch_delay() -> float:
    try:
        return max(0.0, float(os.getenv("AUTOMATION_BATCH_DELAY_SECONDS", "1.0")))
    except ValueError:
        return 1.0


class AutomationEngine:
    def __init__(self, sleep=asyncio.sleep):
        self._lock = asyncio.Lock()
        self._sleep = sleep

    # =========================================================================
    # Tick
    # =========================================================================

    async def run_tick(self, now: Optional[datetime] = None) -> TickSummary:
        if self._lock.locked():
            logger.warning("AUTOMATION_TICK_SKIPPED reason=already_running")
            return TickSummary(message="Tick already running")

        async with self._lock:
            now = now or datetime.now(timezone.utc)
            definitions = await self._load_definitions()
            if not definitions:
                logger.info("AUTOMATION_TICK_DONE definitions=0")
                return TickSummary(message="No active automations")

            accounts = await self.load_account_snapshot()
            summary = TickSummary(definitions=len(definitions))

            for definition in definitions:
                matched = matching_accounts(definition.trigger, definition.trigger_params, accounts, now)
                summary.matched += len(matched)
                if not matched:
                    continue

                logger.info(
                    f"AUTOMATION_MATCHED automation_id={definition.automation_id} "
                    f"trigger={definition.trigger.value} count={len(matched)}"
                )

                async def handle(account, definition=definition):
                    return await self._fire(definition, account, now)

                outcomes = await run_in_batches(
                    matched, handle,
                    batch_size=_batch_size(),
                    delay_seconds=_batch_delay(),
                    sleep=self._sleep,
                )
                for outcome in outcomes:
                    if outcome == OUTCOME_EXECUTED:
                        summary.executed += 1
                    elif outcome == OUTCOME_SKIPPED:
                        summary.skipped += 1
                    else:
                        summary.failed += 1

            logger.info(
                f"AUTOMATION_TICK_DONE definitions={summary.definitions} matched={summary.matched} "
                f"executed={summary.executed} failed={summary.failed} skipped={summary.skipped}"
            )
            return summary

    # =========================================================================
    # Loading
    # =========================================================================

    async def _load_definitions(self) -> List[AutomationDefinition]:
        db = database.get_db()
        docs = await db.automation_definitions.find(
            {"is_active": True}, {"_id": 0}
        ).sort("created_at", 1).to_list(None)

        definitions = []
        for doc in docs:
            try:
                definitions.append(AutomationDefinition.model_validate(doc))
            except ValidationError as e:
                # Unknown trigger/action kinds never match
                logger.warning(
                    f"AUTOMATION_DEFINITION_INVALID automation_id={doc.get('automation_id')} "
                    f"trigger={doc.get('trigger')} action={doc.get('action')} errors={e.error_count()}"
                )
        return definitions

    async def load_account_snapshot(self) -> List[AccountSnapshot]:
        """All users joined with their first business and its subscription."""
        db = database.get_db()
        users = await db.users.find({}, {"_id": 0}).to_list(None)
        businesses = await db.businesses.find({}, {"_id": 0}).to_list(None)
        subscriptions = await db.subscriptions.find({}, {"_id": 0}).to_list(None)

        business_by_user: Dict[str, Dict] = {}
        for business in businesses:
            business_by_user.setdefault(business.get("user_id"), business)

        subscription_by_business: Dict[str, Subscription] = {}
        for doc in subscriptions:
            try:
                subscription_by_business[doc["business_id"]] = Subscription.model_validate(doc)
            except (KeyError, ValidationError) as e:
                logger.warning(f"AUTOMATION_SNAPSHOT_BAD_SUBSCRIPTION business_id={doc.get('business_id')} error={e}")

        accounts = []
        for user in users:
            if not user.get("user_id"):
                continue
            business = business_by_user.get(user["user_id"]) or {}
            accounts.append(AccountSnapshot(
                user_id=user["user_id"],
                email=user.get("email"),
                name=user.get("name"),
                business_id=business.get("business_id"),
                business_name=business.get("name"),
                subscription=subscription_by_business.get(business.get("business_id")),
                created_at=user.get("created_at"),
                updated_at=user.get("updated_at"),
                last_active_at=user.get("last_active_at"),
            ))
        return accounts

    # =========================================================================
    # Per-account firing
    # =========================================================================

    async def _fire(self, definition: AutomationDefinition, account: AccountSnapshot, now: datetime) -> str:
        db = database.get_db()

        recent = await db.automation_executions.find_one({
            "automation_id": definition.automation_id,
            "user_id": account.user_id,
            "created_at": {"$gte": now - DEDUP_WINDOW},
        })
        if recent:
            return OUTCOME_SKIPPED

        try:
            await db.automation_reservations.insert_one({
                "automation_id": definition.automation_id,
                "user_id": account.user_id,
                "window_key": window_key(now),
                "created_at": now,
            })
        except DuplicateKeyError:
            logger.info(
                f"AUTOMATION_RESERVATION_TAKEN automation_id={definition.automation_id} user_id={account.user_id}"
            )
            return OUTCOME_SKIPPED

        result = await execute_action(definition.action, definition.action_params, account, now)

        execution = AutomationExecution(
            automation_id=definition.automation_id,
            user_id=account.user_id,
            user_email=account.email,
            success=result.success,
            error=result.error,
            details=result.details,
            created_at=now,
        )
        await db.automation_executions.insert_one(execution.model_dump())

        if result.success:
            logger.info(
                f"AUTOMATION_EXECUTED automation_id={definition.automation_id} "
                f"action={definition.action.value} user_id={account.user_id}"
            )
            return OUTCOME_EXECUTED

        logger.warning(
            f"AUTOMATION_ACTION_FAILED automation_id={definition.automation_id} "
            f"action={definition.action.value} user_id={account.user_id} error={result.error}"
        )
        return OUTCOME_FAILED


# Singleton instance
automation_engine = AutomationEngine()
