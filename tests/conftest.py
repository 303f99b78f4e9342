import pytest

from src.db import FINANCE, Database
from src.ledger import default_accounts


@pytest.fixture
def db(tmp_path):
    """Fresh Database instance using temp file (real SQLite, WAL mode)."""
    return Database(tmp_path / "test.db")


@pytest.fixture
def make_tx():
    """Factory returning a transaction dict with sensible defaults."""
    def _factory(tx_id=1, tx_type="expense", amount=50000, account_id="nequi",
                 category="Comida", date_iso="2024-03-05", emoji="\U0001f354", **extra):
        return {
            "id": tx_id,
            "type": tx_type,
            "account_id": account_id,
            "amount": amount,
            "category": category,
            "emoji": emoji,
            "description": "",
            "date_iso": date_iso,
            **extra,
        }
    return _factory


@pytest.fixture
def db_with_ledger(db):
    """User 'u1' whose nequi account already holds 100000."""
    accounts = default_accounts()
    accounts[0]["balance"] = 100000
    db.save_feature("u1", FINANCE, {"accounts": accounts, "month_stats": {}})
    return db
