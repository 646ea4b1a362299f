from __future__ import annotations

DETECTED = "detected"
PROMOTED = "promoted"
INVESTIGATING = "investigating"
DISMISSED = "dismissed"
SPEC_GENERATED = "spec_generated"
SHIPPED = "shipped"

ALL_STATUSES = {
    DETECTED,
    PROMOTED,
    INVESTIGATING,
    DISMISSED,
    SPEC_GENERATED,
    SHIPPED,
}

STATUS_TRANSITIONS = {
    DETECTED: {PROMOTED, INVESTIGATING, DISMISSED},
    PROMOTED: {SPEC_GENERATED},
    SPEC_GENERATED: {SHIPPED},
    INVESTIGATING: set(),
    DISMISSED: set(),
    SHIPPED: set(),
}

TERMINAL_STATUSES = {INVESTIGATING, DISMISSED, SHIPPED}

SPEC_BEARING_STATUSES = {SPEC_GENERATED, SHIPPED}

FUNNEL_DROP = "funnel_drop"
LOW_NPS = "low_nps"
FEATURE_UNDERUSE = "feature_underuse"

ALL_KINDS = {FUNNEL_DROP, LOW_NPS, FEATURE_UNDERUSE}

PROMOTE = "promote"
DISMISS = "dismiss"
INVESTIGATE = "investigate"

ACTION_TARGETS = {
    PROMOTE: PROMOTED,
    DISMISS: DISMISSED,
    INVESTIGATE: INVESTIGATING,
}

# Human actions are only accepted while an opportunity is still awaiting triage.
ACTIONABLE_STATUSES = {DETECTED}


def can_transition(current_status: str, target_status: str) -> bool:
    return target_status in STATUS_TRANSITIONS.get(current_status, set())


def is_action_allowed(current_status: str, action: str) -> bool:
    return action in ACTION_TARGETS and current_status in ACTIONABLE_STATUSES
