"""
LOGISTICS App - Delivery lifecycle state machine

(state, action) -> (new state, roles allowed to perform it)

Testable on its own: no backend, no ledger, no rendering. Callers ask
resolve_transition() first and only then talk to the backend; a failed
resolution never touches the delivery.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Tuple

from core.exceptions import InvalidTransition
from core.models import UserRole
from core.permissions import Action
from logistics.models import TERMINAL_STATUSES, DeliveryStatus


@dataclass(frozen=True)
class Transition:
    source: DeliveryStatus
    action: Action
    target: DeliveryStatus
    roles: FrozenSet[str]
    reason_required: bool = False


_ADMIN = frozenset({UserRole.ADMIN})
_DRIVER = frozenset({UserRole.DRIVER})
_CUSTOMER = frozenset({UserRole.CUSTOMER})

_FORWARD = [
    Transition(DeliveryStatus.PENDING, Action.APPROVE, DeliveryStatus.APPROVED, _ADMIN),
    Transition(DeliveryStatus.APPROVED, Action.ASSIGN, DeliveryStatus.ASSIGNED, _ADMIN),
    Transition(DeliveryStatus.ASSIGNED, Action.ACCEPT, DeliveryStatus.ACCEPTED, _DRIVER),
    Transition(DeliveryStatus.ASSIGNED, Action.REJECT, DeliveryStatus.REJECTED, _DRIVER,
               reason_required=True),
    Transition(DeliveryStatus.ACCEPTED, Action.START, DeliveryStatus.ON_ROUTE, _DRIVER),
    Transition(DeliveryStatus.ON_ROUTE, Action.COMPLETE, DeliveryStatus.DELIVERED, _DRIVER),
]

# Cancellation is open from every non-terminal state.
_CANCELLATIONS = [
    Transition(status, action, DeliveryStatus.CANCELLED, roles, reason_required=True)
    for status in DeliveryStatus
    if status not in TERMINAL_STATUSES
    for action, roles in ((Action.CANCEL, _CUSTOMER), (Action.FORCE_CANCEL, _ADMIN))
]

TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    (t.source, t.action): t for t in _FORWARD + _CANCELLATIONS
}


def get_transition(status, action) -> Transition:
    """
    Look up the transition for an action in a given status.

    Raises InvalidTransition when the pair is not in the table.
    """
    transition = TRANSITIONS.get((status, action))
    if transition is None:
        raise InvalidTransition(status, action)
    return transition


def resolve_transition(status, role, action) -> DeliveryStatus:
    """
    Return the status an action leads to.

    Raises InvalidTransition if the action is not possible from `status`
    or not open to `role` in that status.
    """
    transition = get_transition(status, action)
    if role not in transition.roles:
        raise InvalidTransition(
            status, action,
            f"'{action}' from '{status}' is not open to role '{role}'",
        )
    return transition.target


def can_transition(status, role, action) -> bool:
    try:
        resolve_transition(status, role, action)
    except InvalidTransition:
        return False
    return True


def available_actions(status, role) -> List[Action]:
    """Actions `role` may take on a delivery currently in `status`."""
    return [
        t.action for t in TRANSITIONS.values()
        if t.source == status and role in t.roles
    ]


def requires_reason(action) -> bool:
    return any(t.reason_required for t in TRANSITIONS.values() if t.action == action)


def is_terminal(status) -> bool:
    return status in TERMINAL_STATUSES
