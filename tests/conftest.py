"""
Shared fixtures: in-memory SQLite session, fake clock/sleep, recording notifier, stub B2B auth.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-for-pytest!!")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.database import Base
from backoffice.models import InventoryItem
from backoffice.services.notifications import AdminNotifier


class FakeClock:
    """Manually advanced clock usable wherever time.time / time.monotonic is injected"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingNotifier(AdminNotifier):
    """Records every outbound message instead of calling LINE/Telegram"""

    def __init__(self, line_ids=("U-admin",), fail: bool = False):
        super().__init__(line_ids=list(line_ids), telegram_chat_ids=[])
        self.sent = []
        self.fail = fail

    async def send(self, channel, recipient, text):
        self.sent.append((channel, recipient, text))
        if self.fail:
            raise RuntimeError("LINE unreachable")
        return True


class StubAuth:
    """Auth bridge stand-in: fixed token, no network"""

    def __init__(self, token: str = "test-token", configured: bool = True, error: Exception = None):
        self.token = token
        self.configured = configured
        self.error = error
        self.calls = 0

    def is_configured(self) -> bool:
        return self.configured

    async def authenticate(self) -> str:
        self.calls += 1
        if self.error:
            raise self.error
        return self.token


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    TestingSession = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def stub_auth():
    return StubAuth()


@pytest.fixture
def inventory(db_session):
    """A few inventory rows across stores"""
    rows = [
        InventoryItem(product_id="BIKE-001", product_name="Specialized Allez Sport 56", store="台南", price=35000, quantity=2),
        InventoryItem(product_id="BIKE-001", product_name="Specialized Allez Sport 56", store="台北", price=35000, quantity=1),
        InventoryItem(product_id="XHELM-200-M", product_name="S-Works Prevail 3 Helmet M", store="高雄", price=9800, quantity=4),
        InventoryItem(product_id="TAR-77", product_name="Specialized Tarmac SL7 Expert Carbon", store="台中", price=180000, quantity=1),
    ]
    db_session.add_all(rows)
    db_session.commit()
    return rows
