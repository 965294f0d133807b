"""Persistence for login-prompt bandit arms and their buffered interactions."""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.logging import get_logger
from models.prompt_candidate import PromptCandidateRecord, PromptInteractionRecord
from services.trial_errors import TransientStoreFailure
from services.trial_types import ensure_aware, utcnow

logger = get_logger(__name__)


class InteractionKind(str, Enum):
    IMPRESSION = "impression"
    CLICK = "click"
    CONVERSION = "conversion"


@dataclass
class ArmPerformance:
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    confidence: float = 0.0


@dataclass
class PromptCandidate:
    id: str
    name: str
    config: Dict[str, Any] = field(default_factory=dict)
    performance: ArmPerformance = field(default_factory=ArmPerformance)
    parent_id: Optional[str] = None
    status: str = "active"

    @property
    def segment(self) -> Mapping[str, Any]:
        return self.config.get("segment") or {}

    @property
    def style(self) -> Optional[Mapping[str, Any]]:
        return self.config.get("style")


@dataclass(frozen=True)
class PromptInteraction:
    candidate_id: str
    kind: InteractionKind
    occurred_at: datetime
    context: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


_COUNTER_COLUMNS = {
    InteractionKind.IMPRESSION: "impressions",
    InteractionKind.CLICK: "clicks",
    InteractionKind.CONVERSION: "conversions",
}


def count_deltas(interactions: Iterable[PromptInteraction]) -> Dict[str, Dict[str, int]]:
    """Per-candidate counter increments, e.g. ``{"green_cta": {"impressions": 2}}``."""
    deltas: Dict[str, Dict[str, int]] = {}
    for interaction in interactions:
        bucket = deltas.setdefault(interaction.candidate_id, {})
        column = _COUNTER_COLUMNS[interaction.kind]
        bucket[column] = bucket.get(column, 0) + 1
    return deltas


class PromptCandidateStore(Protocol):
    """Arms plus an interaction buffer shared by every optimizer process.

    Arm counters only change through ``aggregate``, which folds buffered
    interactions into them exactly once.
    """

    def list_candidates(self, experiment: str) -> List[PromptCandidate]:
        ...

    def save_candidates(self, experiment: str, candidates: Iterable[PromptCandidate]) -> None:
        """Insert new arms and update the name/config/status of known ones."""

    def append_interaction(self, experiment: str, interaction: PromptInteraction) -> bool:
        """Buffer ``interaction``; ``False`` when its id was already recorded."""

    def pending_interactions(self, experiment: str, *, until: datetime) -> List[PromptInteraction]:
        """Interactions not yet folded into arm counters, oldest first."""

    def aggregate(self, experiment: str, interaction_ids: Iterable[str], *, at: datetime) -> List[str]:
        """Fold still-pending interactions into arm counters and return their ids."""


class InMemoryPromptCandidateStore:
    def __init__(self) -> None:
        self._candidates: Dict[str, Dict[str, PromptCandidate]] = {}
        self._interactions: Dict[str, Dict[str, PromptInteraction]] = {}
        self._aggregated: Dict[str, Dict[str, datetime]] = {}
        self._lock = threading.Lock()

    def list_candidates(self, experiment: str) -> List[PromptCandidate]:
        with self._lock:
            return [copy.deepcopy(candidate) for candidate in self._candidates.get(experiment, {}).values()]

    def save_candidates(self, experiment: str, candidates: Iterable[PromptCandidate]) -> None:
        with self._lock:
            bucket = self._candidates.setdefault(experiment, {})
            for candidate in candidates:
                existing = bucket.get(candidate.id)
                if existing is None:
                    bucket[candidate.id] = copy.deepcopy(candidate)
                    continue
                existing.name = candidate.name
                existing.config = copy.deepcopy(candidate.config)
                existing.parent_id = candidate.parent_id
                existing.status = candidate.status

    def append_interaction(self, experiment: str, interaction: PromptInteraction) -> bool:
        with self._lock:
            buffer = self._interactions.setdefault(experiment, {})
            if interaction.id in buffer:
                return False
            buffer[interaction.id] = interaction
            return True

    def pending_interactions(self, experiment: str, *, until: datetime) -> List[PromptInteraction]:
        with self._lock:
            done = self._aggregated.get(experiment, {})
            pending = [
                interaction
                for interaction in self._interactions.get(experiment, {}).values()
                if interaction.id not in done and interaction.occurred_at < until
            ]
        return sorted(pending, key=lambda interaction: interaction.occurred_at)

    def aggregate(self, experiment: str, interaction_ids: Iterable[str], *, at: datetime) -> List[str]:
        with self._lock:
            buffer = self._interactions.get(experiment, {})
            done = self._aggregated.setdefault(experiment, {})
            folded = []
            for interaction_id in interaction_ids:
                interaction = buffer.get(interaction_id)
                if interaction is None or interaction_id in done:
                    continue
                done[interaction_id] = at
                folded.append(interaction)
            arms = self._candidates.get(experiment, {})
            for candidate_id, counts in count_deltas(folded).items():
                arm = arms.get(candidate_id)
                if arm is None:
                    continue
                for column, amount in counts.items():
                    setattr(arm.performance, column, getattr(arm.performance, column) + amount)
            return [interaction.id for interaction in folded]


def _candidate_from_record(record: PromptCandidateRecord) -> PromptCandidate:
    return PromptCandidate(
        id=record.id,
        name=record.name,
        config=dict(record.config or {}),
        performance=ArmPerformance(
            impressions=int(record.impressions or 0),
            clicks=int(record.clicks or 0),
            conversions=int(record.conversions or 0),
        ),
        parent_id=record.parent_id,
        status=record.status or "active",
    )


def _interaction_from_record(record: PromptInteractionRecord) -> PromptInteraction:
    return PromptInteraction(
        id=record.id,
        candidate_id=record.candidate_id,
        kind=InteractionKind(record.interaction),
        occurred_at=ensure_aware(record.occurred_at) or utcnow(),
        context=dict(record.context or {}),
    )


class SqlPromptCandidateStore:
    """Arms in ``prompt_candidates``; interaction buffer in ``prompt_interactions``.

    Counters are incremented in SQL (``impressions = impressions + n``) in the
    same transaction that stamps ``aggregated_at``, so concurrent workers add
    to each other's counts instead of overwriting them.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def list_candidates(self, experiment: str) -> List[PromptCandidate]:
        session = self._session_factory()
        try:
            statement = (
                select(PromptCandidateRecord)
                .where(PromptCandidateRecord.experiment == experiment, PromptCandidateRecord.status == "active")
                .order_by(PromptCandidateRecord.created_at, PromptCandidateRecord.id)
            )
            return [_candidate_from_record(record) for record in session.execute(statement).scalars()]
        except SQLAlchemyError as exc:
            raise TransientStoreFailure(f"prompt candidate read failed: {exc}") from exc
        finally:
            session.close()

    def save_candidates(self, experiment: str, candidates: Iterable[PromptCandidate]) -> None:
        session = self._session_factory()
        try:
            for candidate in candidates:
                record = session.get(PromptCandidateRecord, candidate.id)
                if record is None:
                    session.add(
                        PromptCandidateRecord(
                            id=candidate.id,
                            experiment=experiment,
                            impressions=candidate.performance.impressions,
                            clicks=candidate.performance.clicks,
                            conversions=candidate.performance.conversions,
                            name=candidate.name,
                            parent_id=candidate.parent_id,
                            config=dict(candidate.config),
                            status=candidate.status,
                        )
                    )
                    continue
                record.name = candidate.name
                record.parent_id = candidate.parent_id
                record.config = dict(candidate.config)
                record.status = candidate.status
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransientStoreFailure(f"prompt candidate write failed: {exc}") from exc
        finally:
            session.close()

    def append_interaction(self, experiment: str, interaction: PromptInteraction) -> bool:
        session = self._session_factory()
        try:
            if session.get(PromptInteractionRecord, interaction.id) is not None:
                return False
            session.add(
                PromptInteractionRecord(
                    id=interaction.id,
                    experiment=experiment,
                    candidate_id=interaction.candidate_id,
                    interaction=interaction.kind.value,
                    context=dict(interaction.context),
                    occurred_at=interaction.occurred_at,
                )
            )
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransientStoreFailure(f"prompt interaction write failed: {exc}") from exc
        finally:
            session.close()

    def pending_interactions(self, experiment: str, *, until: datetime) -> List[PromptInteraction]:
        session = self._session_factory()
        try:
            statement = (
                select(PromptInteractionRecord)
                .where(
                    PromptInteractionRecord.experiment == experiment,
                    PromptInteractionRecord.aggregated_at.is_(None),
                    PromptInteractionRecord.occurred_at < until,
                )
                .order_by(PromptInteractionRecord.occurred_at)
            )
            return [_interaction_from_record(record) for record in session.execute(statement).scalars()]
        except SQLAlchemyError as exc:
            raise TransientStoreFailure(f"prompt interaction read failed: {exc}") from exc
        finally:
            session.close()

    def aggregate(self, experiment: str, interaction_ids: Iterable[str], *, at: datetime) -> List[str]:
        ids = list(interaction_ids)
        if not ids:
            return []
        session = self._session_factory()
        try:
            statement = (
                select(PromptInteractionRecord)
                .where(
                    PromptInteractionRecord.experiment == experiment,
                    PromptInteractionRecord.id.in_(ids),
                    PromptInteractionRecord.aggregated_at.is_(None),
                )
                .with_for_update()
            )
            folded = [_interaction_from_record(record) for record in session.execute(statement).scalars()]
            if not folded:
                session.rollback()
                return []
            folded_ids = [interaction.id for interaction in folded]
            marked = session.execute(
                update(PromptInteractionRecord)
                .where(PromptInteractionRecord.id.in_(folded_ids), PromptInteractionRecord.aggregated_at.is_(None))
                .values(aggregated_at=at)
            )
            if marked.rowcount != len(folded_ids):
                # another worker claimed part of this sweep first; it owns those counts
                session.rollback()
                return []
            for candidate_id, counts in count_deltas(folded).items():
                increments = {
                    column: getattr(PromptCandidateRecord, column) + amount for column, amount in counts.items()
                }
                session.execute(
                    update(PromptCandidateRecord).where(PromptCandidateRecord.id == candidate_id).values(**increments)
                )
            session.commit()
            return folded_ids
        except SQLAlchemyError as exc:
            session.rollback()
            raise TransientStoreFailure(f"prompt interaction aggregation failed: {exc}") from exc
        finally:
            session.close()


__all__ = [
    "ArmPerformance",
    "InMemoryPromptCandidateStore",
    "InteractionKind",
    "PromptCandidate",
    "PromptCandidateStore",
    "PromptInteraction",
    "SqlPromptCandidateStore",
    "count_deltas",
]
