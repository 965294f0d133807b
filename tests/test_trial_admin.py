from typing import Iterator

import pytest

from scripts.trial_admin import main
from web.deps import get_trial_manager, reset_dependency_cache


@pytest.fixture(autouse=True)
def _fresh_dependencies() -> Iterator[None]:
    reset_dependency_cache()
    yield
    reset_dependency_cache()


def test_show_reports_missing_ledger(capsys):
    assert main(["show", "fp-cli"]) == 1
    assert "No trial ledger for fp-cli." in capsys.readouterr().out


def test_block_then_unblock(capsys):
    get_trial_manager().initialize("fp-cli")

    assert main(["block", "fp-cli", "--hours", "2"]) == 0
    assert "blocked_until=" in capsys.readouterr().out
    assert get_trial_manager().get_ledger("fp-cli").is_blocked is True

    assert main(["unblock", "fp-cli"]) == 0
    assert capsys.readouterr().out.strip().endswith("active")


def test_reset_restores_quota(capsys):
    manager = get_trial_manager()
    manager.consume("fp-cli", "video_analysis")

    assert main(["reset", "fp-cli", "--reason", "support_ticket"]) == 0

    output = capsys.readouterr().out
    assert "remaining=5/5" in output
    assert "actions=0" in output


def test_housekeeping_commands(capsys):
    assert main(["init-db"]) == 0
    assert main(["prune-behavior"]) == 0
    assert main(["optimizer-batch"]) == 0

    output = capsys.readouterr().out
    assert "Removed 0 behavior events." in output
    assert "Applied 0 interactions" in output
