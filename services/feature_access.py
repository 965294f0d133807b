"""Feature access decisions for authenticated and trial visitors."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from core.trial_constants import ActionKind
from services.trial_config import weight_of
from services.trial_errors import TrialValidationError
from services.trial_events import AccessDenied, EventDispatcher
from services.trial_types import TrialLedger


class AccessReason(str, Enum):
    AUTHENTICATED = "authenticated"
    TRIAL = "trial"
    BLOCKED = "blocked"
    EXHAUSTED = "exhausted"
    LOGIN_REQUIRED = "login_required"
    PREMIUM_REQUIRED = "premium_required"


@dataclass(frozen=True)
class FeaturePermission:
    requires_auth: bool
    allows_trial: bool
    trial_action_kind: Optional[ActionKind] = None
    requires_elevated_plan: bool = False


@dataclass(frozen=True)
class AuthState:
    authenticated: bool = False
    plan: str = "free"
    user_id: Optional[str] = None

    @classmethod
    def anonymous(cls) -> "AuthState":
        return cls()


@dataclass(frozen=True)
class Access:
    allowed: bool
    reason: AccessReason
    message: str = ""
    login_required: bool = False
    upgrade_required: bool = False


_AUTH_ONLY = FeaturePermission(requires_auth=True, allows_trial=False)

FEATURE_PERMISSIONS: Mapping[str, FeaturePermission] = {
    "video_analysis": FeaturePermission(
        requires_auth=False, allows_trial=True, trial_action_kind=ActionKind.VIDEO_ANALYSIS
    ),
    "basic_report": FeaturePermission(
        requires_auth=False, allows_trial=True, trial_action_kind=ActionKind.GENERATE_REPORT
    ),
    "save_report": _AUTH_ONLY,
    "create_project": _AUTH_ONLY,
    "bookmark_video": _AUTH_ONLY,
    "view_history": _AUTH_ONLY,
    "manage_favorites": _AUTH_ONLY,
    "user_settings": _AUTH_ONLY,
    "advanced_analytics": _AUTH_ONLY,
    "export_data": _AUTH_ONLY,
    "api_access": _AUTH_ONLY,
    "team_collaboration": _AUTH_ONLY,
    "admin_panel": FeaturePermission(requires_auth=True, allows_trial=False, requires_elevated_plan=True),
}

_FREE_PLANS = {"free", ""}


def resolve(
    feature: str,
    auth_state: AuthState,
    ledger: Optional[TrialLedger],
    *,
    permissions: Mapping[str, FeaturePermission] = FEATURE_PERMISSIONS,
    weights: Optional[Mapping[ActionKind, int]] = None,
) -> Access:
    """Return the access verdict for ``feature``.

    Total and side-effect free. A trial feature checked before the visitor's
    ledger exists is denied as ``blocked``; callers initialize the ledger first.
    """

    permission = permissions.get(feature)

    if auth_state.authenticated:
        plan = (auth_state.plan or "").strip().lower()
        if permission is not None and permission.requires_elevated_plan and plan in _FREE_PLANS:
            return Access(
                allowed=False,
                reason=AccessReason.PREMIUM_REQUIRED,
                message="this feature requires an upgraded plan",
                upgrade_required=True,
            )
        return Access(allowed=True, reason=AccessReason.AUTHENTICATED)

    if permission is None:
        return Access(
            allowed=False,
            reason=AccessReason.BLOCKED,
            message="sign in to use this feature",
            login_required=True,
        )

    trial_applicable = permission.allows_trial and permission.trial_action_kind is not None
    if permission.requires_auth and not trial_applicable:
        return Access(
            allowed=False,
            reason=AccessReason.LOGIN_REQUIRED,
            message="this feature requires sign in",
            login_required=True,
        )

    if trial_applicable:
        if ledger is None or ledger.is_blocked:
            return Access(
                allowed=False,
                reason=AccessReason.BLOCKED,
                message="this device is temporarily blocked",
                login_required=True,
            )
        try:
            weight = weight_of(permission.trial_action_kind, weights)
        except TrialValidationError:
            return Access(
                allowed=False,
                reason=AccessReason.BLOCKED,
                message="this feature is not available on the free trial",
                login_required=True,
            )
        if ledger.remaining >= weight:
            return Access(
                allowed=True,
                reason=AccessReason.TRIAL,
                message=f"{ledger.remaining} trial uses remaining",
            )
        return Access(
            allowed=False,
            reason=AccessReason.EXHAUSTED,
            message="free trial exhausted",
            login_required=True,
        )

    return Access(
        allowed=False,
        reason=AccessReason.BLOCKED,
        message="sign in to use this feature",
        login_required=True,
    )


def resolve_and_emit(
    feature: str,
    auth_state: AuthState,
    ledger: Optional[TrialLedger],
    dispatcher: EventDispatcher,
    *,
    fingerprint: Optional[str] = None,
    permissions: Mapping[str, FeaturePermission] = FEATURE_PERMISSIONS,
) -> Access:
    """:func:`resolve`, publishing :class:`AccessDenied` for denied verdicts."""

    access = resolve(feature, auth_state, ledger, permissions=permissions)
    if not access.allowed:
        owner = fingerprint or (ledger.fingerprint if ledger is not None else None)
        dispatcher.publish(AccessDenied(owner, feature=feature, reason=access.reason.value))
    return access


__all__ = [
    "Access",
    "AccessReason",
    "AuthState",
    "FEATURE_PERMISSIONS",
    "FeaturePermission",
    "resolve",
    "resolve_and_emit",
]
