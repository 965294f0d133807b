import os
from datetime import datetime, timedelta, timezone
from typing import Generator, Tuple

import pytest

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("PROMPT_OPTIMIZER_LOOP_ENABLED", "0")
os.environ.pop("TRIAL_RATE_LIMIT_REDIS_URL", None)
os.environ.pop("TRIAL_MIRROR_FILE", None)

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

import database as database_module
from database import Base
from services.trial_config import TrialSettings
from services.trial_events import DomainEvent, EventDispatcher


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "postgres: requires a PostgreSQL database")


def _resolve_test_database_url() -> Tuple[str, bool]:
    candidate = os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL")
    url = candidate or "sqlite+pysqlite:///:memory:"
    return url, url.lower().startswith("postgresql")


@pytest.fixture(scope="session")
def engine(request: pytest.FixtureRequest) -> Generator[Engine, None, None]:
    import models  # noqa: F401  registers table metadata

    database_url, is_postgres = _resolve_test_database_url()
    if request.node.get_closest_marker("postgres") and not is_postgres:
        pytest.skip("PostgreSQL is required for this test")

    engine_kwargs = {}
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool
    test_engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    Base.metadata.create_all(bind=test_engine)

    SessionFactory = scoped_session(sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False))
    original_session_local = database_module.SessionLocal
    original_engine = database_module.engine
    database_module.SessionLocal = SessionFactory
    database_module.engine = test_engine
    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        database_module.engine = original_engine
        Base.metadata.drop_all(bind=test_engine)
        SessionFactory.remove()
        test_engine.dispose()


@pytest.fixture(scope="session", autouse=True)
def _ensure_test_schema(engine: Engine) -> Generator[None, None, None]:
    """Autouse wrapper to make sure the engine fixture runs for every test."""
    yield


@pytest.fixture(autouse=True)
def _clean_tables(engine: Engine) -> Generator[None, None, None]:
    yield
    database_module.SessionLocal.remove()
    with engine.begin() as connection:
        for table in reversed(Base.metadata.sorted_tables):
            connection.execute(table.delete())


@pytest.fixture()
def db_session(engine: Engine) -> Generator[Session, None, None]:
    session = database_module.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory(engine: Engine):
    return lambda: database_module.SessionLocal()


@pytest.fixture()
def trial_settings() -> TrialSettings:
    return TrialSettings(store_retry_delay=0.0)


class EventRecorder:
    """Collects every published domain event for assertions."""

    def __init__(self, dispatcher: EventDispatcher) -> None:
        self.events = []
        dispatcher.subscribe(DomainEvent, self.events.append)

    def of_type(self, event_type):
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture()
def dispatcher() -> EventDispatcher:
    return EventDispatcher()


@pytest.fixture()
def recorder(dispatcher: EventDispatcher) -> EventRecorder:
    return EventRecorder(dispatcher)


class FakeClock:
    def __init__(self, start) -> None:
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))
