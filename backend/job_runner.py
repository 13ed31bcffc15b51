"""
Shared job runner for scheduled background jobs.
Used by server (scheduler) and the cron route (external trigger).
Each run_* returns a dict with "message" (and optionally "count") for the caller.
"""
import logging
from datetime import datetime, timezone, timedelta

logger = logging.getLogger(__name__)

RESERVATION_RETENTION_DAYS = 7


async def run_admin_automations():
    try:
        from services.automation_engine import automation_engine
        summary = await automation_engine.run_tick()
        logger.info(
            f"Admin automations job completed: executed={summary.executed} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return {"count": summary.executed, **summary.model_dump()}
    except Exception as e:
        logger.error(f"Admin automations job failed: {e}")
        raise


async def run_reservation_cleanup():
    """Drop automation reservations older than the retention window; executions are kept."""
    try:
        from database import database
        db = database.get_db()
        cutoff = datetime.now(timezone.utc) - timedelta(days=RESERVATION_RETENTION_DAYS)
        result = await db.automation_reservations.delete_many({"created_at": {"$lt": cutoff}})
        count = result.deleted_count
        logger.info(f"Reservation cleanup job completed: {count} reservations removed")
        return {"message": f"Automation reservations removed: {count}", "count": count}
    except Exception as e:
        logger.error(f"Reservation cleanup job failed: {e}")
        raise
