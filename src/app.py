import asyncio
import logging
from logging.handlers import RotatingFileHandler

from config.settings import DB_PATH, LOGS_DIR, VERSION
from src.db import Database
from src.scheduler import run_ledger_maintenance, setup_scheduler

logger = logging.getLogger(__name__)


def setup_logging():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            RotatingFileHandler(
                LOGS_DIR / "nia.log",
                maxBytes=10 * 1024 * 1024,
                backupCount=5,
            ),
            logging.StreamHandler(),
        ],
    )
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


async def _serve(db: Database):
    # Catch up on anything left by a crash before waiting for the nightly run
    await run_ledger_maintenance(db)

    scheduler = setup_scheduler(db)
    scheduler.start()
    logger.info("Scheduler started.")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)


def create_app() -> None:
    """Open the database and run the maintenance scheduler until interrupted."""
    setup_logging()
    logger.info(f"Starting Nia core v{VERSION} (db: {DB_PATH})")
    db = Database(DB_PATH)
    try:
        asyncio.run(_serve(db))
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    finally:
        db.close()


if __name__ == "__main__":
    create_app()
