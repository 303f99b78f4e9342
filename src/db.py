import copy
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from config.settings import LEDGER_MAX_RETRIES, LEDGER_RETRY_BACKOFF
from src.errors import LedgerConflictError, ValidationError

logger = logging.getLogger(__name__)

FINANCE = "finance"
PERIOD = "period"

# Passed as a value to save_feature/merge_feature to drop the key from the stored document.
DELETE_FIELD = object()


def _dumps(data) -> str:
    return json.dumps(data, ensure_ascii=False)


def _merge(doc: dict, partial: dict) -> dict:
    """Shallow merge. Nested values (lists included) are replaced, not combined."""
    merged = dict(doc)
    for key, value in partial.items():
        if value is DELETE_FIELD:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def _is_busy(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


class WriteBatch:
    """Buffered writes applied together in one SQLite transaction."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        self._ops: list[tuple] = []

    def __len__(self):
        return len(self._ops)

    def put_transaction(self, tx: dict):
        self._ops.append(("put_tx", copy.deepcopy(tx)))

    def delete_transaction(self, tx_id: int):
        self._ops.append(("delete_tx", tx_id))

    def merge_feature(self, feature: str, partial: dict):
        self._ops.append(("merge", feature, dict(partial)))

    def set_feature(self, feature: str, doc: dict):
        self._ops.append(("set", feature, copy.deepcopy(doc)))

    def _apply(self, conn: sqlite3.Connection):
        for op in self._ops:
            kind = op[0]
            if kind == "put_tx":
                tx = op[1]
                conn.execute("""
                    INSERT INTO finance_transactions (user_id, tx_id, data) VALUES (?, ?, ?)
                    ON CONFLICT(user_id, tx_id) DO UPDATE SET data = excluded.data
                """, (self.user_id, tx["id"], _dumps(tx)))
            elif kind == "delete_tx":
                conn.execute(
                    "DELETE FROM finance_transactions WHERE user_id = ? AND tx_id = ?",
                    (self.user_id, op[1]),
                )
            elif kind == "merge":
                current = _read_feature(conn, self.user_id, op[1]) or {}
                _write_feature(conn, self.user_id, op[1], _merge(current, op[2]))
            elif kind == "set":
                _write_feature(conn, self.user_id, op[1], op[2])


class AggregateTransaction(WriteBatch):
    """Handle passed to a guarded read-modify-write.

    Reads see the committed state at the time the guard was taken; writes
    are only applied once the callback returns without raising.
    """

    def __init__(self, conn: sqlite3.Connection, user_id: str, feature: str):
        super().__init__(user_id)
        self._conn = conn
        self.feature = feature

    def get(self) -> dict | None:
        return _read_feature(self._conn, self.user_id, self.feature)

    def set(self, doc: dict):
        self.set_feature(self.feature, doc)

    def get_transaction(self, tx_id: int) -> dict | None:
        row = self._conn.execute(
            "SELECT data FROM finance_transactions WHERE user_id = ? AND tx_id = ?",
            (self.user_id, tx_id),
        ).fetchone()
        return json.loads(row["data"]) if row else None

    def iter_transactions(self) -> list[dict]:
        rows = self._conn.execute(
            "SELECT data FROM finance_transactions WHERE user_id = ? ORDER BY seq",
            (self.user_id,),
        ).fetchall()
        return [json.loads(r["data"]) for r in rows]


def _read_feature(conn: sqlite3.Connection, user_id: str, feature: str) -> dict | None:
    row = conn.execute(
        "SELECT data FROM feature_docs WHERE user_id = ? AND feature = ?",
        (user_id, feature),
    ).fetchone()
    return json.loads(row["data"]) if row else None


def _write_feature(conn: sqlite3.Connection, user_id: str, feature: str, doc: dict):
    conn.execute("""
        INSERT INTO feature_docs (user_id, feature, data) VALUES (?, ?, ?)
        ON CONFLICT(user_id, feature) DO UPDATE SET
            data = excluded.data,
            updated_at = datetime('now')
    """, (user_id, feature, _dumps(doc)))


class Database:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        return self._conn

    def _init_db(self):
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS feature_docs (
                    user_id TEXT NOT NULL,
                    feature TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                    PRIMARY KEY (user_id, feature)
                )
            """)
            # seq preserves storage order for reconciliation replays
            conn.execute("""
                CREATE TABLE IF NOT EXISTS finance_transactions (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    tx_id INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL DEFAULT (datetime('now')),
                    UNIQUE (user_id, tx_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_finance_transactions_user
                ON finance_transactions(user_id, tx_id DESC)
            """)

    def close(self):
        with self._lock:
            self._conn.close()

    # ── Feature documents ───────────────────────────────────────────

    def load_feature(self, user_id: str, feature: str, default: dict | None = None) -> dict | None:
        """Stored document for ``feature``, or a copy of ``default`` when absent."""
        with self._lock:
            doc = _read_feature(self._get_conn(), user_id, feature)
        if doc is None:
            return copy.deepcopy(default)
        return doc

    def save_feature(self, user_id: str, feature: str, partial: dict) -> dict:
        """Shallow-merge ``partial`` onto the stored document. Last write wins."""
        with self._lock, self._get_conn() as conn:
            merged = _merge(_read_feature(conn, user_id, feature) or {}, partial)
            _write_feature(conn, user_id, feature, merged)
        return merged

    def list_users(self, feature: str | None = None) -> list[str]:
        with self._lock:
            if feature:
                rows = self._get_conn().execute(
                    "SELECT user_id FROM feature_docs WHERE feature = ? ORDER BY user_id",
                    (feature,),
                ).fetchall()
            else:
                rows = self._get_conn().execute(
                    "SELECT DISTINCT user_id FROM feature_docs ORDER BY user_id"
                ).fetchall()
        return [r["user_id"] for r in rows]

    # ── Transaction collection ──────────────────────────────────────

    def get_transaction(self, user_id: str, tx_id: int) -> dict | None:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT data FROM finance_transactions WHERE user_id = ? AND tx_id = ?",
                (user_id, tx_id),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def list_transactions(self, user_id: str, cursor: str | None = None,
                          page_size: int = 10) -> tuple[list[dict], str | None]:
        """One page of transactions, newest id first, plus the cursor for the next page.

        The cursor is None once the collection is exhausted.
        """
        if isinstance(page_size, bool) or not isinstance(page_size, int) or page_size < 1:
            raise ValidationError(f"Page size must be a positive whole number, got {page_size!r}")
        with self._lock:
            if cursor is None:
                rows = self._get_conn().execute(
                    "SELECT tx_id, data FROM finance_transactions WHERE user_id = ? "
                    "ORDER BY tx_id DESC LIMIT ?",
                    (user_id, page_size),
                ).fetchall()
            else:
                rows = self._get_conn().execute(
                    "SELECT tx_id, data FROM finance_transactions WHERE user_id = ? AND tx_id < ? "
                    "ORDER BY tx_id DESC LIMIT ?",
                    (user_id, int(cursor), page_size),
                ).fetchall()
        transactions = [json.loads(r["data"]) for r in rows]
        next_cursor = str(rows[-1]["tx_id"]) if len(rows) == page_size else None
        return transactions, next_cursor

    def iter_transactions(self, user_id: str) -> list[dict]:
        """Every stored transaction for the user, in the order it was first written."""
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT data FROM finance_transactions WHERE user_id = ? ORDER BY seq",
                (user_id,),
            ).fetchall()
        return [json.loads(r["data"]) for r in rows]

    def count_transactions(self, user_id: str) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT COUNT(*) AS n FROM finance_transactions WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return row["n"]

    # ── Batched and guarded writes ──────────────────────────────────

    @contextmanager
    def batch(self, user_id: str):
        """Collect writes and commit them together when the block exits cleanly."""
        batch = WriteBatch(user_id)
        yield batch
        with self._lock, self._get_conn() as conn:
            batch._apply(conn)

    def _begin_immediate(self, conn: sqlite3.Connection):
        conn.execute("BEGIN IMMEDIATE")

    def _run_guarded(self, user_id: str, feature: str, fn):
        with self._lock:
            conn = self._get_conn()
            self._begin_immediate(conn)
            try:
                txn = AggregateTransaction(conn, user_id, feature)
                result = fn(txn)
                txn._apply(conn)
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            return result

    def with_aggregate_lock(self, user_id: str, fn, feature: str = FINANCE,
                            max_retries: int = LEDGER_MAX_RETRIES):
        """Run ``fn(txn)`` as one all-or-nothing read-modify-write on a user's aggregate.

        ``fn`` reads through ``txn.get()`` and stages writes on ``txn``; the
        writes land only if ``fn`` returns. Lock contention is retried up to
        ``max_retries`` times before giving up with LedgerConflictError.
        """
        for attempt in range(1, max_retries + 1):
            try:
                return self._run_guarded(user_id, feature, fn)
            except sqlite3.OperationalError as e:
                if not _is_busy(e):
                    raise
                logger.warning(
                    f"Aggregate {feature} for {user_id} busy (attempt {attempt}/{max_retries}): {e}"
                )
                time.sleep(LEDGER_RETRY_BACKOFF * attempt)
        raise LedgerConflictError(
            f"Could not update {feature} for {user_id} after {max_retries} attempts"
        )
