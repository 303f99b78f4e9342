import asyncio
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import MAINTENANCE_HOUR, TIMEZONE
from src.db import FINANCE, Database
from src.migration import load_finance, needs_migration, reconcile

logger = logging.getLogger(__name__)


def _maintain_user(db: Database, user_id: str) -> tuple[bool, bool]:
    """Migrate and reconcile one user. Returns (migrated, drifted)."""
    migrated = needs_migration(db.load_feature(user_id, FINANCE))
    if migrated:
        load_finance(db, user_id)
    result = reconcile(db, user_id)
    return migrated, result["drifted"]


async def run_ledger_maintenance(db: Database) -> dict:
    """Finish pending legacy migrations and reconcile every user's ledger.

    Database work runs in a worker thread so the event loop stays free. One
    user's failure is logged and doesn't stop the others.
    """
    summary = {"migrated": 0, "reconciled": 0, "drifted": 0, "failed": 0}

    users = await asyncio.to_thread(db.list_users, FINANCE)
    for user_id in users:
        try:
            migrated, drifted = await asyncio.to_thread(_maintain_user, db, user_id)
            summary["migrated"] += migrated
            summary["reconciled"] += 1
            summary["drifted"] += drifted
        except Exception as e:
            summary["failed"] += 1
            logger.error(f"Ledger maintenance failed for {user_id}: {e}")

    logger.info(
        f"Ledger maintenance: {summary['reconciled']} reconciled, {summary['drifted']} drifted, "
        f"{summary['migrated']} migrated, {summary['failed']} failed"
    )
    return summary


def setup_scheduler(db: Database) -> AsyncIOScheduler:
    """Set up APScheduler for the nightly ledger maintenance run."""
    scheduler = AsyncIOScheduler(timezone=TIMEZONE)
    scheduler.add_job(
        run_ledger_maintenance,
        trigger="cron",
        hour=MAINTENANCE_HOUR,
        minute=0,
        args=[db],
        id="ledger_maintenance",
        replace_existing=True,
    )
    return scheduler
