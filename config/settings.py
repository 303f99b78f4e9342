import os
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", BASE_DIR / "data"))
LOGS_DIR = Path(os.getenv("LOGS_DIR", BASE_DIR / "logs"))

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

VERSION = "1.0.0"

DEFAULT_CYCLE_LENGTH = int(os.getenv("DEFAULT_CYCLE_LENGTH", "28"))
DEFAULT_PERIOD_LENGTH = int(os.getenv("DEFAULT_PERIOD_LENGTH", "5"))

LEDGER_MAX_RETRIES = int(os.getenv("LEDGER_MAX_RETRIES", "5"))
LEDGER_RETRY_BACKOFF = float(os.getenv("LEDGER_RETRY_BACKOFF", "0.05"))
MIGRATION_BATCH_SIZE = int(os.getenv("MIGRATION_BATCH_SIZE", "450"))

MAINTENANCE_HOUR = int(os.getenv("MAINTENANCE_HOUR", "3"))
TIMEZONE = ZoneInfo(os.getenv("TIMEZONE", "America/Bogota"))

DB_PATH = Path(os.getenv("DB_PATH", DATA_DIR / "nia.db"))
