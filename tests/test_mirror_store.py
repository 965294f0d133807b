import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from services.trial_mirror_store import MIRROR_FORMAT_VERSION, MirrorStore, default_mirror_store

SYNCED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _payload(fingerprint="fp-mirror", remaining=3):
    return {"fingerprint": fingerprint, "remaining": remaining, "total": 5, "lastSyncedAt": SYNCED.isoformat()}


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "mirror.json"
    MirrorStore(path).save(_payload())

    loaded = MirrorStore(path).load("fp-mirror", now=SYNCED + timedelta(hours=1))

    assert loaded["remaining"] == 3
    assert json.loads(path.read_text(encoding="utf-8"))["version"] == MIRROR_FORMAT_VERSION


def test_stale_entries_are_ignored(tmp_path):
    store = MirrorStore(tmp_path / "mirror.json", max_age=timedelta(hours=24))
    store.save(_payload())

    assert store.load("fp-mirror", now=SYNCED + timedelta(hours=25)) is None


def test_foreign_format_version_is_treated_as_empty(tmp_path):
    path = tmp_path / "mirror.json"
    path.write_text(json.dumps({"version": "0.1", "mirrors": [_payload()]}), encoding="utf-8")

    assert MirrorStore(path).load("fp-mirror", now=SYNCED) is None


def test_delete_removes_only_target(tmp_path):
    store = MirrorStore(tmp_path / "mirror.json")
    store.save(_payload("fp-a"))
    store.save(_payload("fp-b", remaining=1))

    store.delete("fp-a")
    store.reset()

    assert store.load("fp-a", now=SYNCED) is None
    assert store.load("fp-b", now=SYNCED)["remaining"] == 1


def test_default_store_follows_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("TRIAL_MIRROR_FILE", raising=False)
    assert default_mirror_store() is None

    monkeypatch.setenv("TRIAL_MIRROR_FILE", str(tmp_path / "state" / "mirror.json"))
    store = default_mirror_store()

    assert store is not None
    assert store.path == tmp_path / "state" / "mirror.json"


def test_save_leaves_no_temp_files(tmp_path):
    store = MirrorStore(tmp_path / "mirror.json")
    store.save(_payload("fp-a"))
    store.save(_payload("fp-b"))

    assert [entry.name for entry in tmp_path.iterdir()] == ["mirror.json"]


def test_failed_write_keeps_previous_file(tmp_path, monkeypatch):
    path = tmp_path / "mirror.json"
    store = MirrorStore(path)
    store.save(_payload("fp-a"))
    before = path.read_text(encoding="utf-8")

    def _refuse(self, target):
        raise OSError("disk full")

    monkeypatch.setattr(Path, "replace", _refuse)
    with pytest.raises(OSError):
        store.save(_payload("fp-b"))

    assert path.read_text(encoding="utf-8") == before
    assert [entry.name for entry in tmp_path.iterdir()] == ["mirror.json"]
