"""
CORE App - Capability table and role gate for FLEETLINE

Every lifecycle- or ledger-mutating action goes through RoleGate.check()
before anything else is attempted. Route reachability uses the same roles.
"""

import logging
import re
from typing import Dict, FrozenSet, Optional

from django.db import models

from core.exceptions import Forbidden
from core.models import UserRole

logger = logging.getLogger('fleetline.security')


class Action(models.TextChoices):
    """Actions dispatched by the workflow."""
    # Customer
    BOOK = 'book', 'Book delivery'
    CANCEL = 'cancel', 'Cancel delivery'
    RATE = 'rate', 'Rate delivery'
    ADD_FUNDS = 'add_funds', 'Add funds'
    PAY = 'pay', 'Pay for delivery'

    # Driver
    ACCEPT = 'accept', 'Accept delivery'
    REJECT = 'reject', 'Reject delivery'
    START = 'start', 'Start transit'
    COMPLETE = 'complete', 'Complete delivery'
    WITHDRAW = 'withdraw', 'Withdraw earnings'

    # Admin
    APPROVE = 'approve', 'Approve booking'
    ASSIGN = 'assign', 'Assign driver'
    FORCE_CANCEL = 'force_cancel', 'Force-cancel delivery'


CAPABILITIES: Dict[str, FrozenSet[str]] = {
    UserRole.CUSTOMER: frozenset({
        Action.BOOK, Action.CANCEL, Action.RATE, Action.ADD_FUNDS, Action.PAY,
    }),
    UserRole.DRIVER: frozenset({
        Action.ACCEPT, Action.REJECT, Action.START, Action.COMPLETE, Action.WITHDRAW,
    }),
    UserRole.ADMIN: frozenset({
        Action.APPROVE, Action.ASSIGN, Action.FORCE_CANCEL,
    }),
}


# ===========================================
# ROUTES
# ===========================================

LOGIN_ROUTE = '/login'

HOME_ROUTES = {
    UserRole.ADMIN: '/dashboard',
    UserRole.DRIVER: '/driver/dashboard',
    UserRole.CUSTOMER: '/customer/dashboard',
}

PUBLIC_ROUTES = ('/login', '/register')

# Pattern -> allowed roles. None means any authenticated user.
ROUTE_ROLES = {
    '/': None,
    '/track/:deliveryId': None,
    '/dashboard': {UserRole.ADMIN},
    '/deliveries': {UserRole.ADMIN},
    '/vehicles': {UserRole.ADMIN},
    '/admin/deliveries': {UserRole.ADMIN},
    '/admin/drivers': {UserRole.ADMIN},
    '/admin/drivers/:driverId': {UserRole.ADMIN},
    '/admin/feedback': {UserRole.ADMIN},
    '/admin/profile': {UserRole.ADMIN},
    '/admin/assign': {UserRole.ADMIN},
    '/admin/reports': {UserRole.ADMIN},
    '/driver/dashboard': {UserRole.DRIVER},
    '/driver/profile': {UserRole.DRIVER},
    '/driver/earnings': {UserRole.DRIVER},
    '/driver/wallet': {UserRole.DRIVER},
    '/driver/deliveries': {UserRole.DRIVER},
    '/driver/tracking/:deliveryId/:vehicleId/:driverId': {UserRole.DRIVER},
    '/customer/dashboard': {UserRole.CUSTOMER},
    '/customer/book': {UserRole.CUSTOMER},
    '/customer/wallet': {UserRole.CUSTOMER},
    '/customer/add-money': {UserRole.CUSTOMER},
    '/customer/profile': {UserRole.CUSTOMER},
    '/customer/deliveries': {UserRole.CUSTOMER},
}


def _compile(pattern: str):
    return re.compile('^' + re.sub(r':\w+', r'[^/]+', pattern) + '/?$')


_COMPILED_ROUTES = [(_compile(pattern), roles) for pattern, roles in ROUTE_ROLES.items()]


def home_route_for(role: Optional[str]) -> str:
    """Dashboard a role lands on; anonymous users go to the login page."""
    if role is None:
        return LOGIN_ROUTE
    return HOME_ROUTES.get(role, LOGIN_ROUTE)


def _match_route(path: str):
    for regex, roles in _COMPILED_ROUTES:
        if regex.match(path):
            return True, roles
    return False, None


def can_access_route(session, path: str) -> bool:
    if path in PUBLIC_ROUTES:
        return True
    if not session.is_authenticated:
        return False
    known, roles = _match_route(path)
    if not known:
        return False
    return roles is None or session.role in roles


def resolve_route(session, path: str) -> str:
    """
    Return the path the user actually ends up on.

    Anonymous users are sent to /login, users on a route reserved for
    another role are sent to their own dashboard, unknown paths fall
    back to the home redirect.
    """
    if path in PUBLIC_ROUTES:
        return path
    if not session.is_authenticated:
        return LOGIN_ROUTE

    known, roles = _match_route(path)
    if not known or path == '/':
        return home_route_for(session.role)
    if roles is not None and session.role not in roles:
        return home_route_for(session.role)
    return path


# ===========================================
# ROLE GATE
# ===========================================

class RoleGate:
    """
    Precondition check at the action-dispatch boundary.

    Raises Forbidden before any lifecycle or ledger mutation; never rolls
    anything back after the fact.
    """

    def __init__(self, capabilities: Optional[Dict[str, FrozenSet[str]]] = None):
        self.capabilities = capabilities or CAPABILITIES

    def allowed_actions(self, role: Optional[str]) -> FrozenSet[str]:
        if role is None:
            return frozenset()
        return self.capabilities.get(role, frozenset())

    def is_allowed(self, role: Optional[str], action: str) -> bool:
        return action in self.allowed_actions(role)

    def check(self, session, action: str) -> None:
        if not session.is_authenticated:
            logger.warning(f"[GATE] Anonymous session attempted '{action}'")
            raise Forbidden("Authentication required", action=str(action))

        if not self.is_allowed(session.role, action):
            logger.warning(
                f"[GATE] Role {session.role} attempted '{action}' "
                f"(account {session.account.id})"
            )
            raise Forbidden(
                f"Role '{session.role}' is not allowed to '{action}'",
                action=str(action),
                role=str(session.role),
            )


role_gate = RoleGate()
