"""Engine, session factory and schema bootstrap for the trial gate service."""

from __future__ import annotations

import time
from typing import Callable, Iterator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.env import env_bool, env_float, env_int, env_str
from core.logging import get_logger

load_dotenv()

logger = get_logger(__name__)

TEST_DATABASE_URL: Optional[str] = env_str("TEST_DATABASE_URL")
DATABASE_URL: Optional[str] = env_str("DATABASE_URL") or TEST_DATABASE_URL
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL or TEST_DATABASE_URL must be set.")

ALLOW_NON_POSTGRES = env_bool("DATABASE_ALLOW_NON_POSTGRES", False)
IS_POSTGRES = DATABASE_URL.lower().startswith("postgresql")
if not IS_POSTGRES and not ALLOW_NON_POSTGRES:
    raise RuntimeError(f"DATABASE_URL must be a PostgreSQL DSN. Got: {DATABASE_URL}")

STATEMENT_TIMEOUT_MS = env_int("DATABASE_STATEMENT_TIMEOUT_MS", 5000, minimum=100)
BOOTSTRAP_RETRIES = env_int("DATABASE_BOOTSTRAP_RETRIES", 7, minimum=1)
BOOTSTRAP_DELAY_SECONDS = env_float("DATABASE_BOOTSTRAP_DELAY_SECONDS", 3.0, minimum=0.0)

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args["check_same_thread"] = False
    connect_args["timeout"] = max(STATEMENT_TIMEOUT_MS / 1000, 1)
elif IS_POSTGRES:
    connect_args["options"] = f"-c statement_timeout={STATEMENT_TIMEOUT_MS}"

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""


def get_db() -> Iterator[Session]:
    """Yield a session for FastAPI dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _retry(
    operation: Callable[[], None],
    *,
    retries: int,
    delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    for attempt in range(1, retries + 1):
        try:
            operation()
            return
        except OperationalError as exc:
            if attempt == retries:
                raise
            logger.warning(
                "Database not ready yet (attempt %d/%d). Retrying in %.1f seconds: %s",
                attempt,
                retries,
                delay,
                exc,
            )
            sleep(delay)


def init_db(
    *,
    retries: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Create the ledger, behavior, prompt and analytics tables if they are missing.

    ``create_all`` is idempotent, so this runs on every API startup. Connection
    errors are retried while the database container comes up; anything still
    failing after the last attempt propagates to the caller.
    """
    import models  # noqa: F401  registers table metadata

    logger.info("Ensuring database schema.")
    _retry(
        lambda: Base.metadata.create_all(bind=engine),
        retries=retries or BOOTSTRAP_RETRIES,
        delay=BOOTSTRAP_DELAY_SECONDS if delay is None else delay,
        sleep=sleep,
    )
    logger.info("SQLAlchemy model tables ensured.")


__all__ = ["Base", "SessionLocal", "engine", "get_db", "init_db"]
