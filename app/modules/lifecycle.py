# -*- coding: utf-8 -*-
"""
Incentra - Calculation lifecycle state machine

Pure rules only: which transitions exist, who may perform them, who may
observe a batch in a given state. Persistence and compare-and-swap live
in app.services.lifecycle_service.

    DRAFT -> PREVIEW -> (RECONCILE) -> OFFICIAL -> PENDING_APPROVAL
          -> APPROVED -> POSTED -> CLOSED -> PAID -> PUBLISHED
    PENDING_APPROVAL -> REJECTED -> OFFICIAL
"""

import enum
from typing import Dict, FrozenSet, List, Optional

from config import LIFECYCLE_CONFIG
from app.errors import TransitionError


class LifecycleState(enum.Enum):
    DRAFT = 'DRAFT'
    PREVIEW = 'PREVIEW'
    RECONCILE = 'RECONCILE'
    OFFICIAL = 'OFFICIAL'
    PENDING_APPROVAL = 'PENDING_APPROVAL'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'
    POSTED = 'POSTED'
    CLOSED = 'CLOSED'
    PAID = 'PAID'
    PUBLISHED = 'PUBLISHED'


S = LifecycleState

TRANSITIONS: Dict[LifecycleState, FrozenSet[LifecycleState]] = {
    S.DRAFT: frozenset([S.PREVIEW]),
    S.PREVIEW: frozenset([S.DRAFT, S.RECONCILE, S.OFFICIAL, S.PREVIEW]),
    S.RECONCILE: frozenset([S.PREVIEW, S.OFFICIAL]),
    S.OFFICIAL: frozenset([S.PREVIEW, S.PENDING_APPROVAL]),
    S.PENDING_APPROVAL: frozenset([S.OFFICIAL, S.APPROVED, S.REJECTED]),
    S.REJECTED: frozenset([S.OFFICIAL]),
    S.APPROVED: frozenset([S.OFFICIAL, S.POSTED]),
    S.POSTED: frozenset([S.APPROVED, S.CLOSED]),
    S.CLOSED: frozenset([S.POSTED, S.PAID]),
    S.PAID: frozenset([S.CLOSED, S.PUBLISHED]),
    S.PUBLISHED: frozenset(),
}

# Display order (REJECTED sits on the approval branch)
STATE_ORDER: List[LifecycleState] = [
    S.DRAFT, S.PREVIEW, S.RECONCILE, S.OFFICIAL, S.PENDING_APPROVAL,
    S.APPROVED, S.REJECTED, S.POSTED, S.CLOSED, S.PAID, S.PUBLISHED,
]

# States a calculation run may move into PREVIEW from
RUNNABLE_STATES = frozenset([S.DRAFT, S.PREVIEW, S.RECONCILE])

APPROVER_VISIBLE_FROM = STATE_ORDER.index(S.PENDING_APPROVAL)
PUBLIC_VISIBLE_FROM = STATE_ORDER.index(S.POSTED)

SIDE_EFFECTS = {
    (S.PREVIEW, S.OFFICIAL): 'Lock calculation results; a later run allocates a new batch',
    (S.RECONCILE, S.OFFICIAL): 'Lock calculation results; a later run allocates a new batch',
    (S.OFFICIAL, S.PENDING_APPROVAL): 'Submit for approval; submitter recorded',
    (S.PENDING_APPROVAL, S.APPROVED): 'Record approval; approver must differ from submitter',
    (S.PENDING_APPROVAL, S.REJECTED): 'Record rejection reason',
    (S.REJECTED, S.OFFICIAL): 'Return to official for re-work',
    (S.APPROVED, S.POSTED): 'Results become visible to all roles',
    (S.POSTED, S.CLOSED): 'Period data locked',
    (S.CLOSED, S.PAID): 'Payment reference recorded',
    (S.PAID, S.PUBLISHED): 'Audit trail sealed (terminal)',
}


def coerce_state(value) -> LifecycleState:
    """Accept enum members or their string values"""
    if isinstance(value, LifecycleState):
        return value
    try:
        return LifecycleState(str(value).upper())
    except ValueError:
        raise TransitionError(None, value, (), f"Unknown lifecycle state: {value}")


def allowed_transitions(state) -> List[LifecycleState]:
    """Allowed targets from a state, in display order"""
    targets = TRANSITIONS[coerce_state(state)]
    return [s for s in STATE_ORDER if s in targets]


def can_transition(from_state, to_state) -> bool:
    return coerce_state(to_state) in TRANSITIONS[coerce_state(from_state)]


def get_side_effect(from_state, to_state) -> Optional[str]:
    return SIDE_EFFECTS.get((coerce_state(from_state), coerce_state(to_state)))


def capabilities_for(role: Optional[str]) -> FrozenSet[str]:
    return LIFECYCLE_CONFIG['ROLE_CAPABILITIES'].get(role or '', frozenset())


def required_capability(to_state) -> str:
    to_state = coerce_state(to_state)
    return LIFECYCLE_CONFIG['TRANSITION_CAPABILITIES'].get(
        to_state.value, LIFECYCLE_CONFIG['DEFAULT_CAPABILITY']
    )


def validate_transition(from_state, to_state, actor_id: str, role: Optional[str],
                        submitted_by: Optional[str] = None) -> None:
    """
    Raise TransitionError unless the actor may move a batch from -> to.

    Checks, in order: the edge exists, the actor's role carries the
    required capability, and the approver is not the submitter.
    """
    from_state = coerce_state(from_state)
    to_state = coerce_state(to_state)
    allowed = allowed_transitions(from_state)

    if to_state not in TRANSITIONS[from_state]:
        raise TransitionError(from_state, to_state, allowed)

    capability = required_capability(to_state)
    if capability not in capabilities_for(role):
        raise TransitionError(
            from_state, to_state, allowed,
            f"Role '{role}' lacks capability '{capability}' for {from_state.value} -> {to_state.value}",
        )

    # Separation of duties
    if to_state is S.APPROVED and submitted_by is not None and actor_id == submitted_by:
        raise TransitionError(
            from_state, to_state, allowed,
            f"Actor '{actor_id}' submitted this batch and cannot approve it (separation of duties)",
        )


def can_view(state, role: Optional[str]) -> bool:
    """
    Visibility by role:
      admin    - every state
      approver - PENDING_APPROVAL onward
      others   - POSTED onward
    """
    index = STATE_ORDER.index(coerce_state(state))
    if role == LIFECYCLE_CONFIG['ROLE_ADMIN']:
        return True
    if role == LIFECYCLE_CONFIG['ROLE_APPROVER']:
        return index >= APPROVER_VISIBLE_FROM
    return index >= PUBLIC_VISIBLE_FROM


def visible_states(role: Optional[str]) -> List[LifecycleState]:
    return [s for s in STATE_ORDER if can_view(s, role)]
