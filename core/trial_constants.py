"""Shared trial constants used across services and routers."""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


class ActionKind(str, Enum):
    VIDEO_ANALYSIS = "video_analysis"
    CHANNEL_ANALYSIS = "channel_analysis"
    COMMENT_ANALYSIS = "comment_analysis"
    EXPORT_DATA = "export_data"
    SAVE_REPORT = "save_report"
    BATCH_ANALYSIS = "batch_analysis"
    GENERATE_REPORT = "generate_report"

    def __str__(self) -> str:  # pragma: no cover - convenience
        return self.value


class DeviceClass(str, Enum):
    MOBILE = "mobile"
    DESKTOP = "desktop"
    TABLET = "tablet"


class BehaviorEventKind(str, Enum):
    PAGE_VIEW = "page_view"
    FEATURE_CLICK = "feature_click"
    SCROLL = "scroll"
    HOVER = "hover"
    SEARCH = "search"
    EXPORT_ATTEMPT = "export_attempt"
    SAVE_ATTEMPT = "save_attempt"
    SHARE_ATTEMPT = "share_attempt"
    IDLE_START = "idle_start"
    IDLE_END = "idle_end"
    TAB_FOCUS = "tab_focus"
    TAB_BLUR = "tab_blur"


# Authoritative quota cost per action. Client-declared weights are never trusted.
ACTION_WEIGHTS: Mapping[ActionKind, int] = {
    ActionKind.VIDEO_ANALYSIS: 1,
    ActionKind.CHANNEL_ANALYSIS: 2,
    ActionKind.COMMENT_ANALYSIS: 1,
    ActionKind.EXPORT_DATA: 1,
    ActionKind.SAVE_REPORT: 1,
    ActionKind.BATCH_ANALYSIS: 3,
    ActionKind.GENERATE_REPORT: 1,
}

SUPPORTED_ACTION_KINDS: Sequence[ActionKind] = tuple(ActionKind)
SUPPORTED_DEVICE_CLASSES: Sequence[DeviceClass] = tuple(DeviceClass)

TRIAL_ACTION_LOG_LIMIT = 100
TRIAL_RECENT_ACTIONS = 10

__all__ = [
    "ACTION_WEIGHTS",
    "ActionKind",
    "BehaviorEventKind",
    "DeviceClass",
    "SUPPORTED_ACTION_KINDS",
    "SUPPORTED_DEVICE_CLASSES",
    "TRIAL_ACTION_LOG_LIMIT",
    "TRIAL_RECENT_ACTIONS",
]
