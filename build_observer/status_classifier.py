"""
Status Classifier

Maps the raw, non-standardized status strings reported by the build service
onto a fixed set of lifecycle states. This is the only place that looks at
raw status vocabulary; everything else works with LifecycleState.

Rules are a deterministic lookup table:
- Matching is case-insensitive and ignores surrounding whitespace
- Unrecognized values map to UNKNOWN, never raise
- UNKNOWN is treated as still changing (not terminal)
"""

from enum import Enum
from typing import Any, Dict


class LifecycleState(str, Enum):
    """Canonical build lifecycle states."""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNKNOWN = "unknown"


# Raw status (normalized) -> canonical state
STATUS_SYNONYMS: Dict[str, LifecycleState] = {
    "new": LifecycleState.NEW,
    "pending": LifecycleState.IN_PROGRESS,
    "running": LifecycleState.IN_PROGRESS,
    "building...": LifecycleState.IN_PROGRESS,
    "succeeded": LifecycleState.SUCCEEDED,
    "success": LifecycleState.SUCCEEDED,
    "failed": LifecycleState.FAILED,
}

TERMINAL_STATES = frozenset([LifecycleState.SUCCEEDED, LifecycleState.FAILED])

# Badge labels shown on project cards and history rows
STATUS_LABELS: Dict[LifecycleState, str] = {
    LifecycleState.NEW: "New",
    LifecycleState.IN_PROGRESS: "Building",
    LifecycleState.SUCCEEDED: "Success",
    LifecycleState.FAILED: "Failed",
    LifecycleState.UNKNOWN: "Unknown",
}

# Raw statuses whose card badge differs from their state's label: a queued
# build is still shown as New until the pipeline picks it up
RAW_LABEL_OVERRIDES: Dict[str, str] = {
    "pending": "New",
}


def classify(raw: Any) -> LifecycleState:
    """Classify a raw status string. Never raises."""
    if not isinstance(raw, str):
        return LifecycleState.UNKNOWN
    return STATUS_SYNONYMS.get(raw.strip().lower(), LifecycleState.UNKNOWN)


def is_terminal(state: LifecycleState) -> bool:
    """SUCCEEDED and FAILED are final; everything else may still change."""
    return state in TERMINAL_STATES


def status_label(state: LifecycleState) -> str:
    return STATUS_LABELS.get(state, STATUS_LABELS[LifecycleState.UNKNOWN])


def badge_label(raw: Any) -> str:
    """Badge text for a raw status as reported by the build service."""
    if isinstance(raw, str):
        override = RAW_LABEL_OVERRIDES.get(raw.strip().lower())
        if override is not None:
            return override
    return status_label(classify(raw))


def is_deployed(raw: Any) -> bool:
    """True when the raw status means the last build went live."""
    return classify(raw) == LifecycleState.SUCCEEDED
