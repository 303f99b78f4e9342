"""Legacy ledger import and full ledger reconciliation.

Older finance documents kept every transaction inline in a ``transactions``
array. ``migrate_legacy_data`` moves those into the transaction collection in
bounded batches and folds them into the aggregate; ``reconcile`` rebuilds the
aggregate from the collection alone and is the repair path for any drift.
"""

import copy
import logging

from config.settings import MIGRATION_BATCH_SIZE
from src.db import DELETE_FIELD, FINANCE, Database
from src.errors import MissingAggregateError, ValidationError
from src.ledger import apply_transaction, default_accounts, validate_transaction

logger = logging.getLogger(__name__)

LEGACY_FIELD = "transactions"
CURSOR_FIELD = "migration_cursor"
REJECTED_FIELD = "legacy_rejected"


def needs_migration(doc: dict | None) -> bool:
    return bool(doc and doc.get(LEGACY_FIELD))


def _split_legacy(user_id: str, legacy: list[dict]) -> tuple[list[dict], list[dict]]:
    """Valid, de-duplicated legacy rows and the raw rows that can't be posted."""
    txs, rejected, seen = [], [], set()
    for row in legacy:
        try:
            if not isinstance(row, dict):
                raise ValidationError(f"Legacy transaction is not a record: {row!r}")
            # a generated id or date would differ between runs and break resuming
            if row.get("id") is None or not row.get("date_iso"):
                raise ValidationError("Legacy transaction needs both id and date_iso.")
            tx = validate_transaction(row)
            if tx["id"] in seen:
                raise ValidationError(f"Duplicate legacy transaction id {tx['id']}.")
        except ValidationError as e:
            row_id = row.get("id") if isinstance(row, dict) else None
            logger.warning(f"User {user_id}: skipping legacy transaction {row_id!r}: {e}")
            rejected.append(row)
            continue
        seen.add(tx["id"])
        txs.append(tx)
    return txs, rejected


def migrate_legacy_data(db: Database, user_id: str, legacy: list[dict],
                        accounts: list[dict] | None = None,
                        batch_size: int = MIGRATION_BATCH_SIZE) -> dict | None:
    """Import an inline legacy transaction array into the normalized ledger.

    Records are written ``batch_size`` operations at a time; each intermediate
    batch also saves how far the import got in ``migration_cursor``, so a
    rerun after a crash skips what's already stored. Balances and month stats
    are only written by the final commit, which also clears the legacy array.
    ``accounts`` is the starting point only when the stored document has none.
    Rows that can't be posted are skipped and kept in ``legacy_rejected``.
    Returns None when there is nothing to migrate.
    """
    if not legacy:
        return None

    txs, rejected = _split_legacy(user_id, legacy)
    doc = db.load_feature(user_id, FINANCE, {})
    resume_from = min(doc.get(CURSOR_FIELD, 0), len(txs))
    if resume_from:
        logger.info(f"User {user_id}: resuming legacy migration at {resume_from}/{len(txs)}")

    # one slot per batch is kept for the cursor / aggregate write
    per_batch = max(batch_size - 1, 1)
    chunks = [txs[i:i + per_batch] for i in range(resume_from, len(txs), per_batch)]
    final_chunk = chunks.pop() if chunks else []

    written = resume_from
    for chunk in chunks:
        with db.batch(user_id) as batch:
            for tx in chunk:
                batch.put_transaction(tx)
            written += len(chunk)
            batch.merge_feature(FINANCE, {CURSOR_FIELD: written})
        logger.info(f"User {user_id}: migrated {written}/{len(txs)} legacy transactions")

    def _finish(txn):
        current = txn.get() or {}
        # balances stored by the time of the final commit win over the caller's snapshot
        base_accounts = current.get("accounts") or accounts or default_accounts()
        new_accounts = copy.deepcopy(base_accounts)
        month_stats = copy.deepcopy(current.get("month_stats") or {})
        for tx in txs:
            apply_transaction(new_accounts, month_stats, tx)
        for tx in final_chunk:
            txn.put_transaction(tx)
        update = {
            "accounts": new_accounts,
            "month_stats": month_stats,
            "custom_categories": current.get("custom_categories", []),
            LEGACY_FIELD: DELETE_FIELD,
            CURSOR_FIELD: DELETE_FIELD,
        }
        if rejected:
            update[REJECTED_FIELD] = current.get(REJECTED_FIELD, []) + rejected
        txn.merge_feature(FINANCE, update)
        return {"migrated": len(txs), "rejected": len(rejected),
                "accounts": new_accounts, "month_stats": month_stats}

    result = db.with_aggregate_lock(user_id, _finish, feature=FINANCE)
    logger.info(
        f"User {user_id}: legacy migration complete ({len(txs)} transactions, {len(rejected)} rejected)"
    )
    return result


def reconcile(db: Database, user_id: str) -> dict:
    """Rebuild balances and month stats by replaying every stored transaction.

    Balances restart from each account's ``initial_balance``. Running it twice
    with nothing posted in between gives the same result both times.
    """
    def _rebuild(txn):
        doc = txn.get()
        if doc is None:
            raise MissingAggregateError(f"User {user_id} has no finance data to reconcile.")
        accounts = copy.deepcopy(doc.get("accounts") or default_accounts())
        for account in accounts:
            account["balance"] = account.get("initial_balance") or 0
        month_stats = {}
        for tx in txn.iter_transactions():
            apply_transaction(accounts, month_stats, tx)
        txn.set({**doc, "accounts": accounts, "month_stats": month_stats})
        return {"accounts": accounts, "month_stats": month_stats, "drifted": (
            accounts != doc.get("accounts") or month_stats != doc.get("month_stats", {})
        )}

    try:
        result = db.with_aggregate_lock(user_id, _rebuild, feature=FINANCE)
    except MissingAggregateError:
        logger.error(f"User {user_id}: reconcile requested with no finance aggregate")
        raise
    if result["drifted"]:
        logger.warning(f"User {user_id}: ledger drift corrected by reconciliation")
    return result


def load_finance(db: Database, user_id: str) -> dict:
    """The user's finance aggregate, upgrading a legacy document first if one is found."""
    doc = db.load_feature(user_id, FINANCE)
    if needs_migration(doc):
        logger.info(f"User {user_id}: legacy finance document detected, migrating")
        migrate_legacy_data(db, user_id, doc[LEGACY_FIELD], doc.get("accounts"))
        doc = db.load_feature(user_id, FINANCE)
    if doc is None:
        return {"accounts": default_accounts(), "month_stats": {}, "custom_categories": []}
    doc.setdefault("accounts", default_accounts())
    doc.setdefault("month_stats", {})
    return doc
