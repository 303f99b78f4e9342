import copy
import logging
import time

from src.calendar_math import month_key, parse_iso_date, today_local
from src.db import FINANCE, Database
from src.errors import (
    DuplicateTransactionError,
    MissingAggregateError,
    TransactionNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNTS = [
    {"id": "nequi", "name": "Nequi", "initial_balance": 0, "balance": 0},
    {"id": "efectivo", "name": "Efectivo", "initial_balance": 0, "balance": 0},
    {"id": "daviplata", "name": "Daviplata", "initial_balance": 0, "balance": 0},
    {"id": "davivienda", "name": "Davivienda", "initial_balance": 0, "balance": 0},
    {"id": "bancolombia", "name": "Bancolombia", "initial_balance": 0, "balance": 0},
]

TRANSACTION_TYPES = ("income", "expense")
TOP_CATEGORIES = 5


def default_accounts() -> list[dict]:
    return copy.deepcopy(DEFAULT_ACCOUNTS)


def _money(value):
    return round(value, 2)


def _parse_amount(value):
    if isinstance(value, bool) or value is None or value == "":
        raise ValidationError("Enter a valid amount.")
    if isinstance(value, str):
        try:
            value = float(value.replace(",", "").strip())
        except ValueError:
            raise ValidationError("Enter a valid amount.") from None
    if not isinstance(value, (int, float)) or value != value or value <= 0:
        raise ValidationError("Enter a valid amount.")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def validate_transaction(tx: dict) -> dict:
    """Normalized copy of ``tx`` ready to post. Raises ValidationError on bad input."""
    tx_type = tx.get("type")
    if tx_type not in TRANSACTION_TYPES:
        raise ValidationError(f"Transaction type must be one of {TRANSACTION_TYPES}.")
    amount = _parse_amount(tx.get("amount"))
    if not tx.get("account_id"):
        raise ValidationError("Select the account.")
    if not tx.get("category"):
        raise ValidationError("Select a category.")

    date_iso = parse_iso_date(tx.get("date_iso") or today_local()).isoformat()
    tx_id = tx.get("id")
    if tx_id is None:
        tx_id = int(time.time() * 1000)
    try:
        tx_id = int(tx_id)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid transaction id: {tx_id!r}") from None

    return {
        "id": tx_id,
        "type": tx_type,
        "account_id": tx["account_id"],
        "amount": amount,
        "category": tx["category"],
        "emoji": tx.get("emoji") or "",
        "description": (tx.get("description") or "").strip(),
        "date_iso": date_iso,
        "date": tx.get("date") or date_iso,
    }


def _empty_month() -> dict:
    return {"income": 0, "expense": 0, "categories": {}}


def apply_transaction(accounts: list[dict], month_stats: dict, tx: dict, reverse: bool = False) -> bool:
    """Fold one transaction into ``accounts`` and ``month_stats`` in place.

    With ``reverse=True`` the exact inverse is applied. Returns False when the
    transaction's account isn't in ``accounts`` (its month stats still move).
    """
    amount = tx["amount"]
    is_income = tx["type"] == "income"
    delta = amount if is_income else -amount
    if reverse:
        delta = -delta

    found = False
    for account in accounts:
        if account["id"] == tx["account_id"]:
            base = account.get("balance")
            if base is None:
                base = account.get("initial_balance") or 0
            account["balance"] = _money(base + delta)
            found = True
            break

    key = month_key(tx["date_iso"])
    if reverse:
        bucket = month_stats.get(key)
        if bucket is None:
            return found
        bucket[tx["type"]] = _money(bucket.get(tx["type"], 0) - amount)
        categories = bucket.setdefault("categories", {})
        if not is_income and tx["category"] in categories:
            category = categories[tx["category"]]
            category["total"] = _money(category["total"] - amount)
            if category["total"] <= 0:
                del categories[tx["category"]]
        # a month with nothing left in it is never produced by posting
        if not bucket.get("income") and not bucket.get("expense") and not categories:
            del month_stats[key]
        return found

    bucket = month_stats.setdefault(key, _empty_month())
    bucket[tx["type"]] = _money(bucket.get(tx["type"], 0) + amount)
    if not is_income:
        categories = bucket.setdefault("categories", {})
        category = categories.setdefault(tx["category"], {"total": 0, "emoji": tx.get("emoji", "")})
        category["total"] = _money(category["total"] + amount)
        category["emoji"] = tx.get("emoji", "")
    return found


def _aggregate_parts(doc: dict | None) -> tuple[list[dict], dict]:
    doc = doc or {}
    accounts = doc.get("accounts") or default_accounts()
    month_stats = doc.get("month_stats") or {}
    return accounts, month_stats


def post_transaction(db: Database, user_id: str, tx: dict) -> dict:
    """Validate and post ``tx``: record, balance and month stats change together or not at all."""
    generated_id = tx.get("id") is None
    tx = validate_transaction(tx)

    def _post(txn):
        if generated_id:
            # two posts in the same millisecond get consecutive ids
            while txn.get_transaction(tx["id"]) is not None:
                tx["id"] += 1
        elif txn.get_transaction(tx["id"]) is not None:
            raise DuplicateTransactionError(f"Transaction {tx['id']} is already posted.")
        doc = txn.get() or {}
        accounts, month_stats = _aggregate_parts(doc)
        if not apply_transaction(accounts, month_stats, tx):
            logger.warning(f"User {user_id}: account {tx['account_id']} not found, balance untouched")
        txn.put_transaction(tx)
        txn.set({**doc, "accounts": accounts, "month_stats": month_stats})

    db.with_aggregate_lock(user_id, _post, feature=FINANCE)
    logger.info(f"User {user_id}: posted {tx['type']} {tx['id']} of {tx['amount']} on {tx['account_id']}")
    return tx


def _restore_category_emoji(txn, month_stats: dict, removed: dict):
    """Give a category the emoji of its latest remaining expense, as a replay would."""
    if removed["type"] != "expense":
        return
    key = month_key(removed["date_iso"])
    category = (month_stats.get(key) or {}).get("categories", {}).get(removed["category"])
    if category is None:
        return
    for tx in txn.iter_transactions():
        if (tx["id"] != removed["id"] and tx["type"] == "expense"
                and tx["category"] == removed["category"] and month_key(tx["date_iso"]) == key):
            category["emoji"] = tx.get("emoji", "")


def delete_transaction(db: Database, user_id: str, tx) -> dict:
    """Remove a posted transaction and reverse its effect on balances and month stats.

    ``tx`` may be the transaction record or its id; the stored record is what
    gets reversed.
    """
    tx_id = int(tx["id"] if isinstance(tx, dict) else tx)

    def _delete(txn):
        doc = txn.get()
        if doc is None:
            raise MissingAggregateError(f"User {user_id} has no finance data to reverse into.")
        stored = txn.get_transaction(tx_id)
        if stored is None:
            raise TransactionNotFoundError(f"Transaction {tx_id} not found for user {user_id}.")
        accounts, month_stats = _aggregate_parts(doc)
        apply_transaction(accounts, month_stats, stored, reverse=True)
        _restore_category_emoji(txn, month_stats, stored)
        txn.delete_transaction(tx_id)
        txn.set({**doc, "accounts": accounts, "month_stats": month_stats})
        return stored

    try:
        stored = db.with_aggregate_lock(user_id, _delete, feature=FINANCE)
    except MissingAggregateError:
        logger.error(f"User {user_id}: delete of {tx_id} with no finance aggregate")
        raise
    logger.info(f"User {user_id}: reversed {stored['type']} {tx_id} of {stored['amount']}")
    return stored


def list_transactions(db: Database, user_id: str, cursor: str | None = None, page_size: int = 10) -> dict:
    transactions, next_cursor = db.list_transactions(user_id, cursor, page_size)
    return {"transactions": transactions, "cursor": next_cursor}


def total_balance(accounts: list[dict]) -> float:
    total = 0
    for account in accounts:
        balance = account.get("balance")
        total += balance if balance is not None else account.get("initial_balance") or 0
    return _money(total)


def month_summary(doc: dict | None, month: str) -> dict:
    """Income, expense and the biggest expense categories for a ``YYYY-MM`` month."""
    accounts, month_stats = _aggregate_parts(doc)
    bucket = month_stats.get(month) or _empty_month()
    categories = sorted(
        ({"label": label, **stats} for label, stats in bucket.get("categories", {}).items()),
        key=lambda c: c["total"],
        reverse=True,
    )
    return {
        "month": month,
        "income": bucket.get("income", 0),
        "expense": bucket.get("expense", 0),
        "top_categories": categories[:TOP_CATEGORIES],
        "total_balance": total_balance(accounts),
    }
