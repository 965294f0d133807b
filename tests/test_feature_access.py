import pytest

from services.feature_access import (
    FEATURE_PERMISSIONS,
    AccessReason,
    AuthState,
    FeaturePermission,
    resolve,
    resolve_and_emit,
)
from core.trial_constants import ActionKind
from services.trial_events import AccessDenied
from services.trial_types import TrialLedger

MEMBER = AuthState(authenticated=True, plan="free", user_id="u-1")
PRO_MEMBER = AuthState(authenticated=True, plan="pro", user_id="u-2")
GUEST = AuthState.anonymous()


def _ledger(remaining=5, total=5, **changes):
    return TrialLedger(fingerprint="fp-access", remaining=remaining, total=total, **changes)


def test_authenticated_user_is_allowed_everywhere_but_admin():
    for feature in FEATURE_PERMISSIONS:
        verdict = resolve(feature, MEMBER, None)
        if feature == "admin_panel":
            assert verdict.allowed is False
            assert verdict.reason is AccessReason.PREMIUM_REQUIRED
            assert verdict.upgrade_required is True
        else:
            assert verdict.allowed is True
            assert verdict.reason is AccessReason.AUTHENTICATED


def test_elevated_plan_unlocks_admin_panel():
    verdict = resolve("admin_panel", PRO_MEMBER, None)

    assert verdict.allowed is True


def test_guest_is_sent_to_login_for_auth_only_feature():
    verdict = resolve("save_report", GUEST, _ledger())

    assert verdict.allowed is False
    assert verdict.reason is AccessReason.LOGIN_REQUIRED
    assert verdict.login_required is True


def test_guest_uses_trial_for_trial_feature():
    verdict = resolve("video_analysis", GUEST, _ledger(remaining=3))

    assert verdict.allowed is True
    assert verdict.reason is AccessReason.TRIAL
    assert "3" in verdict.message


@pytest.mark.parametrize(
    "ledger, reason",
    [
        (None, AccessReason.BLOCKED),
        (_ledger(is_blocked=True), AccessReason.BLOCKED),
        (_ledger(remaining=0), AccessReason.EXHAUSTED),
    ],
)
def test_guest_denied_trial_feature(ledger, reason):
    verdict = resolve("basic_report", GUEST, ledger)

    assert verdict.allowed is False
    assert verdict.reason is reason
    assert verdict.login_required is True


def test_unknown_feature_denies_guests():
    verdict = resolve("time_travel", GUEST, _ledger())

    assert verdict.allowed is False
    assert verdict.reason is AccessReason.BLOCKED


def test_unknown_feature_allows_members():
    assert resolve("time_travel", MEMBER, None).allowed is True


def test_custom_permission_table_is_respected():
    permissions = {
        "preview": FeaturePermission(requires_auth=True, allows_trial=True, trial_action_kind=None),
    }

    verdict = resolve("preview", GUEST, _ledger(), permissions=permissions)

    assert verdict.allowed is False
    assert verdict.reason is AccessReason.LOGIN_REQUIRED


def test_resolve_is_deterministic():
    ledger = _ledger(remaining=1)

    assert resolve("video_analysis", GUEST, ledger) == resolve("video_analysis", GUEST, ledger)


def test_resolve_and_emit_publishes_only_denials(dispatcher, recorder):
    resolve_and_emit("video_analysis", GUEST, _ledger(), dispatcher)
    resolve_and_emit("save_report", GUEST, _ledger(), dispatcher)

    denied = recorder.of_type(AccessDenied)
    assert [(event.fingerprint, event.feature, event.reason) for event in denied] == [
        ("fp-access", "save_report", "login_required")
    ]


def test_partial_weight_table_denies_instead_of_raising():
    weights = {ActionKind.VIDEO_ANALYSIS: 1}

    allowed = resolve("video_analysis", GUEST, _ledger(), weights=weights)
    denied = resolve("basic_report", GUEST, _ledger(), weights=weights)

    assert allowed.allowed is True
    assert denied.allowed is False
    assert denied.reason is AccessReason.BLOCKED


def test_custom_weights_decide_exhaustion():
    verdict = resolve("video_analysis", GUEST, _ledger(remaining=2), weights={ActionKind.VIDEO_ANALYSIS: 3})

    assert verdict.reason is AccessReason.EXHAUSTED
