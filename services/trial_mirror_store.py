"""On-disk persistence for client-side trial mirrors."""

from __future__ import annotations

import json
import logging
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from core.env import env_str
from core.logging import get_logger
from services.trial_types import parse_timestamp, utcnow

MIRROR_FORMAT_VERSION = "1.0.0"


class MirrorStore:
    """Persist mirror payloads keyed by fingerprint in a small JSON file.

    Entries written by another format version, or not synced within
    ``max_age``, are treated as absent on load.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_age: timedelta = timedelta(hours=24),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._path = Path(path)
        self._max_age = max_age
        self._cache: Optional[Dict[str, Dict[str, Any]]] = None
        self._logger = logger or get_logger(__name__)

    @property
    def path(self) -> Path:
        return self._path

    def _load_all(self, *, reload: bool = False) -> Dict[str, Dict[str, Any]]:
        if not reload and self._cache is not None:
            return self._cache
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
            if payload.get("version") != MIRROR_FORMAT_VERSION:
                raise ValueError(f"unsupported mirror format {payload.get('version')!r}")
            items = payload.get("mirrors", [])
            if not isinstance(items, list):
                raise ValueError("mirrors is not a list")
        except FileNotFoundError:
            items = []
        except (OSError, json.JSONDecodeError, ValueError, AttributeError) as exc:
            self._logger.warning("Failed to load trial mirrors from %s: %s", self._path, exc)
            items = []
        self._cache = {
            str(item["fingerprint"]): dict(item)
            for item in items
            if isinstance(item, Mapping) and item.get("fingerprint")
        }
        return self._cache

    def load(self, fingerprint: str, *, now: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
        entry = self._load_all().get(fingerprint)
        if entry is None:
            return None
        synced_at = parse_timestamp(entry.get("lastSyncedAt"))
        moment = now or utcnow()
        if synced_at is not None and moment - synced_at > self._max_age:
            self._logger.info("Trial mirror for %s expired; ignoring cached copy.", fingerprint)
            return None
        return dict(entry)

    def save(self, payload: Mapping[str, Any]) -> None:
        fingerprint = str(payload.get("fingerprint") or "")
        if not fingerprint:
            raise ValueError("mirror payload requires a fingerprint")
        entries = dict(self._load_all())
        entries[fingerprint] = dict(payload)
        self._write(list(entries.values()))
        self._cache = entries

    def delete(self, fingerprint: str) -> None:
        entries = dict(self._load_all())
        if entries.pop(fingerprint, None) is None:
            return
        self._write(list(entries.values()))
        self._cache = entries

    def _write(self, items: List[Mapping[str, Any]]) -> None:
        document = {"version": MIRROR_FORMAT_VERSION, "mirrors": [dict(item) for item in items]}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_file: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                delete=False,
                dir=self._path.parent,
                prefix=f"{self._path.name}.",
                suffix=".tmp",
            ) as handle:
                tmp_file = Path(handle.name)
                json.dump(document, handle, ensure_ascii=False, indent=2)
            tmp_file.replace(self._path)
        except OSError as exc:
            self._logger.error("Failed to persist trial mirrors to %s: %s", self._path, exc)
            if tmp_file is not None:
                tmp_file.unlink(missing_ok=True)
            raise

    def reset(self, *, path: Optional[Path] = None) -> None:
        """Clear cached state and optionally repoint the underlying file."""

        if path is not None:
            self._path = Path(path)
        self._cache = None


def default_mirror_store() -> Optional[MirrorStore]:
    """Mirror store at ``TRIAL_MIRROR_FILE``; ``None`` keeps the mirror in memory only."""
    path = env_str("TRIAL_MIRROR_FILE")
    if not path:
        return None
    return MirrorStore(Path(path))


__all__ = ["MIRROR_FORMAT_VERSION", "MirrorStore", "default_mirror_store"]
