"""
Shared fixtures for the duel ledger test suite

The database is a throwaway SQLite file (WAL mode) so thread-based
concurrency tests exercise real row locking. DATABASE_URL must be set
before any project module is imported.
"""

import os
import shutil
import tempfile

_TEST_DIR = tempfile.mkdtemp(prefix="duel_ledger_tests_")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'duel_ledger_test.db')}"
os.environ["ANOMALY_LOG_DIR"] = os.path.join(_TEST_DIR, "logs")
os.environ["BOT_SHARED_SECRET"] = "test-bot-secret"
os.environ["REQUIRED_CONFIRMATIONS"] = "12"
os.environ["PLATFORM_FEE_BPS"] = "0"

import logging
from typing import Dict, List, Optional

import pytest
from sqlalchemy import func, select

from config import Config
from database import create_tables, drop_tables, managed_session
from models import TransactionHistory, User
from services.address_monitor import address_monitor
from services.bot_status_service import bot_status_service
from services.ledger_service import LedgerService
from utils.ledger_exceptions import ExternalServiceFailure

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

BOT_HEADERS = {"X-Bot-Secret": "test-bot-secret"}


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_TEST_DIR, ignore_errors=True)


@pytest.fixture(autouse=True)
def clean_database():
    """Fresh schema and empty process-local caches for every test"""
    drop_tables()
    create_tables()
    address_monitor.load()
    bot_status_service._heartbeats.clear()
    yield


@pytest.fixture
def make_user():
    counter = {"n": 0}

    def _make(balance: int = 0, username: Optional[str] = None, is_admin: bool = False) -> int:
        counter["n"] += 1
        user = LedgerService.create_user(
            username or f"player_{counter['n']}", balance=balance, is_admin=is_admin
        )
        return user.id

    return _make


@pytest.fixture
def admin_id(make_user) -> int:
    return make_user(username="arbiter", is_admin=True)


def balance_of(user_id: int) -> int:
    return LedgerService.get_account(user_id).balance


def reserved_of(user_id: int) -> int:
    return LedgerService.get_account(user_id).reserved


def total_balance() -> int:
    with managed_session() as session:
        return int(session.execute(select(func.coalesce(func.sum(User.balance), 0))).scalar_one())


def history_rows(user_id: Optional[int] = None, tx_type: Optional[str] = None) -> List[TransactionHistory]:
    with managed_session() as session:
        stmt = select(TransactionHistory).order_by(TransactionHistory.id)
        if user_id is not None:
            stmt = stmt.where(TransactionHistory.user_id == user_id)
        if tx_type is not None:
            stmt = stmt.where(TransactionHistory.type == tx_type)
        return list(session.execute(stmt).scalars().all())


class FakeChainFeed:
    """Stands in for the JSON-RPC chain feed; unknown hashes read as dropped"""

    def __init__(self):
        self.confirmations: Dict[str, Optional[int]] = {}
        self.failing = set()
        self.calls: List[str] = []

    async def get_confirmations(self, tx_hash: str) -> Optional[int]:
        self.calls.append(tx_hash)
        if tx_hash in self.failing:
            raise ExternalServiceFailure("chain_feed", "node unavailable")
        return self.confirmations.get(tx_hash)


class FakeSender:
    """Stands in for the hot-wallet signer"""

    def __init__(self, tx_hash: str = "0xsent", error: Optional[Exception] = None):
        self.tx_hash = tx_hash
        self.error = error
        self.calls = []

    async def send(self, address: str, amount: int, token_type: str, reference: Optional[str] = None) -> str:
        self.calls.append({"address": address, "amount": amount, "token": token_type, "reference": reference})
        if self.error is not None:
            raise self.error
        return self.tx_hash


@pytest.fixture
def chain_feed() -> FakeChainFeed:
    return FakeChainFeed()


@pytest.fixture
def fee_bps(monkeypatch):
    def _set(bps: int):
        monkeypatch.setattr(Config, "PLATFORM_FEE_BPS", bps)
    return _set
