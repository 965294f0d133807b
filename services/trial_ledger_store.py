"""Read/write contract for trial ledgers plus SQL and in-memory implementations."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from core.logging import get_logger
from core.trial_constants import TRIAL_ACTION_LOG_LIMIT
from models.trial_ledger import TrialLedgerRecord
from services.trial_errors import LedgerVersionConflict, PermanentStoreFailure, TransientStoreFailure
from services.trial_types import TrialAction, TrialLedger, ensure_aware

logger = get_logger(__name__)


class LedgerStore(Protocol):
    """Persistence contract used by :class:`services.trial_manager.TrialManager`.

    ``put`` must be a compare-and-swap on ``version``: it succeeds only when the
    stored version equals ``expected_version`` and returns the ledger with the
    incremented version. Ledgers are never deleted.
    """

    def get(self, fingerprint: str) -> Optional[TrialLedger]:
        ...

    def create(self, ledger: TrialLedger) -> TrialLedger:
        ...

    def put(self, ledger: TrialLedger, *, expected_version: int) -> TrialLedger:
        ...


def _trim_actions(actions: List[TrialAction]) -> List[TrialAction]:
    if len(actions) <= TRIAL_ACTION_LOG_LIMIT:
        return list(actions)
    return list(actions[-TRIAL_ACTION_LOG_LIMIT:])


class InMemoryLedgerStore:
    """Process-local store used by tests and single-node development runs."""

    def __init__(self) -> None:
        self._ledgers: Dict[str, TrialLedger] = {}
        self._lock = threading.Lock()

    def get(self, fingerprint: str) -> Optional[TrialLedger]:
        with self._lock:
            return self._ledgers.get(fingerprint)

    def create(self, ledger: TrialLedger) -> TrialLedger:
        with self._lock:
            existing = self._ledgers.get(ledger.fingerprint)
            if existing is not None:
                return existing
            stored = ledger.evolve(version=0, actions=_trim_actions(ledger.actions))
            self._ledgers[ledger.fingerprint] = stored
            return stored

    def put(self, ledger: TrialLedger, *, expected_version: int) -> TrialLedger:
        with self._lock:
            current = self._ledgers.get(ledger.fingerprint)
            if current is None or current.version != expected_version:
                raise LedgerVersionConflict(f"ledger {ledger.fingerprint} changed concurrently")
            stored = ledger.evolve(version=expected_version + 1, actions=_trim_actions(ledger.actions))
            self._ledgers[ledger.fingerprint] = stored
            return stored

    def __len__(self) -> int:
        return len(self._ledgers)


def _to_domain(record: TrialLedgerRecord) -> TrialLedger:
    actions = [TrialAction.from_payload(item) for item in (record.actions or []) if isinstance(item, dict)]
    return TrialLedger(
        fingerprint=record.fingerprint,
        remaining=int(record.remaining),
        total=int(record.total),
        actions=actions,
        is_blocked=bool(record.is_blocked),
        blocked_until=ensure_aware(record.blocked_until),
        last_reset_at=ensure_aware(record.last_reset_at),
        last_action_at=ensure_aware(record.last_action_at),
        converted_user_id=record.converted_user_id,
        version=int(record.version or 0),
    )


def _row_values(ledger: TrialLedger) -> dict:
    return {
        "remaining": ledger.remaining,
        "total": ledger.total,
        "actions": [action.to_payload() for action in _trim_actions(ledger.actions)],
        "is_blocked": ledger.is_blocked,
        "blocked_until": ledger.blocked_until,
        "last_reset_at": ledger.last_reset_at,
        "last_action_at": ledger.last_action_at,
        "converted_user_id": ledger.converted_user_id,
    }


class SqlLedgerStore:
    """SQLAlchemy-backed ledger store using an optimistic ``version`` column."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def get(self, fingerprint: str) -> Optional[TrialLedger]:
        session = self._session_factory()
        try:
            record = session.get(TrialLedgerRecord, fingerprint)
            return _to_domain(record) if record is not None else None
        except (OperationalError, PoolTimeoutError) as exc:
            raise TransientStoreFailure(f"ledger read failed: {exc}") from exc
        except SQLAlchemyError as exc:
            raise PermanentStoreFailure(f"ledger read failed: {exc}") from exc
        finally:
            session.close()

    def create(self, ledger: TrialLedger) -> TrialLedger:
        session = self._session_factory()
        try:
            record = TrialLedgerRecord(fingerprint=ledger.fingerprint, version=0, **_row_values(ledger))
            session.add(record)
            session.commit()
            return ledger.evolve(version=0)
        except IntegrityError:
            session.rollback()
            logger.debug("Ledger for %s created concurrently; loading existing row.", ledger.fingerprint)
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            raise TransientStoreFailure(f"ledger create failed: {exc}") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise PermanentStoreFailure(f"ledger create failed: {exc}") from exc
        finally:
            session.close()
        existing = self.get(ledger.fingerprint)
        if existing is None:  # pragma: no cover - row vanished between insert and read
            raise TransientStoreFailure(f"ledger {ledger.fingerprint} missing after conflicting insert")
        return existing

    def put(self, ledger: TrialLedger, *, expected_version: int) -> TrialLedger:
        session = self._session_factory()
        try:
            statement = (
                update(TrialLedgerRecord)
                .where(
                    TrialLedgerRecord.fingerprint == ledger.fingerprint,
                    TrialLedgerRecord.version == expected_version,
                )
                .values(version=expected_version + 1, **_row_values(ledger))
            )
            result = session.execute(statement)
            if result.rowcount != 1:
                session.rollback()
                raise LedgerVersionConflict(f"ledger {ledger.fingerprint} changed concurrently")
            session.commit()
            return ledger.evolve(version=expected_version + 1, actions=_trim_actions(ledger.actions))
        except (OperationalError, PoolTimeoutError) as exc:
            session.rollback()
            raise TransientStoreFailure(f"ledger write failed: {exc}") from exc
        except SQLAlchemyError as exc:
            session.rollback()
            raise PermanentStoreFailure(f"ledger write failed: {exc}") from exc
        finally:
            session.close()


__all__ = ["InMemoryLedgerStore", "LedgerStore", "SqlLedgerStore"]
