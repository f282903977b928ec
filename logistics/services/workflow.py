"""
LOGISTICS App - Delivery workflow for FLEETLINE

Action-dispatch boundary. Every lifecycle action runs the same steps:

    1. role gate                 -> Forbidden
    2. input validation          -> ValidationError
    3. local transition check    -> InvalidTransition
    4. single in-flight request  -> ActionInProgress
    5. backend call              -> NetworkFailure / Conflict / ...
    6. replace the local copy with the backend's answer
    7. ledger side effects of the confirmed status

A failure in steps 1-5 leaves the local copy and the wallets untouched.
"""

import logging
from typing import Callable, Dict, List, Optional

from core.inflight import InFlightGuard, booking_key, delivery_key
from core.models import UserRole
from core.permissions import Action, RoleGate, role_gate
from core.serializers import validate_payload
from core.session import expire_on_unauthenticated
from finance.services import WalletActions, WalletRegistry, apply_lifecycle_event
from logistics.lifecycle import available_actions, resolve_transition
from logistics.models import Delivery, DeliveryStatus
from logistics.rating_service import RatingService
from logistics.serializers import AssignmentSerializer, ReasonSerializer
from logistics.services.booking import BookingDraft

logger = logging.getLogger(__name__)


class DeliveryWorkflow:
    """
    Lifecycle actions of the acting session.

    Usage:
        workflow = DeliveryWorkflow(session, backend)
        workflow.load_deliveries()
        workflow.reject(delivery_id, "vehicle breakdown")
    """

    def __init__(self, session, backend, gate: Optional[RoleGate] = None,
                 guard: Optional[InFlightGuard] = None,
                 wallets: Optional[WalletRegistry] = None):
        self.session = session
        self.backend = backend
        self.gate = gate or role_gate
        self.guard = guard or InFlightGuard()
        self.wallets = wallets if wallets is not None else WalletRegistry()
        self.wallet_actions = WalletActions(session, backend, self.gate, self.guard, self.wallets)
        self.deliveries: Dict[str, Delivery] = {}

    # =============================================
    # Local copies
    # =============================================

    def _store(self, delivery: Delivery) -> Delivery:
        self.deliveries[delivery.id] = delivery
        return delivery

    def get(self, delivery_id: str) -> Delivery:
        """Last confirmed copy, fetched on first access."""
        delivery = self.deliveries.get(delivery_id)
        if delivery is None:
            delivery = self.refresh_delivery(delivery_id)
        return delivery

    def refresh_delivery(self, delivery_id: str) -> Delivery:
        """Re-fetch one delivery. Idempotent; safe after a timeout."""
        with expire_on_unauthenticated(self.session):
            delivery = self.backend.get_delivery(delivery_id)
        return self._store(delivery)

    def load_deliveries(self) -> List[Delivery]:
        """Fetch the deliveries visible to the acting role and replace local copies."""
        if not self.session.is_authenticated:
            return []

        fetch = {
            UserRole.ADMIN: self.backend.list_deliveries,
            UserRole.CUSTOMER: self.backend.my_bookings,
            UserRole.DRIVER: self.backend.assigned_deliveries,
        }[self.session.role]

        with expire_on_unauthenticated(self.session):
            deliveries = fetch()
        self.deliveries = {delivery.id: delivery for delivery in deliveries}
        logger.info(f"[WORKFLOW] Loaded {len(deliveries)} deliveries for {self.session.account}")
        return deliveries

    def available_actions(self, delivery_id: str) -> List[Action]:
        """Actions the session may offer on a delivery right now."""
        if not self.session.is_authenticated:
            return []
        delivery = self.get(delivery_id)
        role = self.session.role
        actions = [
            action for action in available_actions(delivery.status, role)
            if self.gate.is_allowed(role, action)
        ]
        if self.gate.is_allowed(role, Action.PAY) and (
            delivery.status == DeliveryStatus.PENDING and not delivery.payment_captured
            and delivery.total_price is not None
        ):
            actions.append(Action.PAY)
        if self.gate.is_allowed(role, Action.RATE) and delivery.can_be_rated:
            actions.append(Action.RATE)
        return actions

    # =============================================
    # Dispatch
    # =============================================

    def _dispatch(self, delivery_id: str, action: Action,
                  call: Callable[..., Delivery], *args) -> Delivery:
        previous = self.get(delivery_id)
        expected = resolve_transition(previous.status, self.session.role, action)

        with self.guard.hold(delivery_key(delivery_id)):
            with expire_on_unauthenticated(self.session):
                confirmed = call(delivery_id, *args)

        if confirmed.status != expected:
            logger.warning(
                f"[WORKFLOW] {action} on {delivery_id}: expected {expected}, "
                f"backend answered {confirmed.status}"
            )
        self._store(confirmed)
        logger.info(f"[WORKFLOW] {delivery_id}: {previous.status} → {confirmed.status} ({action})")

        apply_lifecycle_event(previous, confirmed, self.wallets)
        return confirmed

    def _reason(self, reason) -> str:
        return validate_payload(ReasonSerializer, {'reason': reason})['reason']

    # =============================================
    # Customer
    # =============================================

    def book(self, draft: BookingDraft) -> Delivery:
        """
        Submit a booking draft.

        The draft is frozen once the backend accepts it; a refused booking
        leaves it editable. The snapshot in the backend's answer is
        authoritative and replaces the local estimate.
        """
        self.gate.check(self.session, Action.BOOK)
        payload = draft.validated_payload()

        with self.guard.hold(booking_key(self.session.account.id)):
            with expire_on_unauthenticated(self.session):
                delivery = self.backend.book(payload)

        estimate = draft.freeze()

        if delivery.total_price is not None and delivery.total_price != estimate.total_price:
            logger.info(
                f"[WORKFLOW] Booking {delivery.id} priced {delivery.total_price} "
                f"by backend (estimate {estimate.total_price})"
            )
        logger.info(f"[WORKFLOW] Booked {delivery}")
        return self._store(delivery)

    def cancel(self, delivery_id: str, reason: str) -> Delivery:
        self.gate.check(self.session, Action.CANCEL)
        reason = self._reason(reason)
        return self._dispatch(delivery_id, Action.CANCEL, self.backend.cancel, reason)

    def pay(self, delivery_id: str) -> Delivery:
        """Pay a pending delivery from the wallet, then re-fetch it."""
        self.gate.check(self.session, Action.PAY)
        self.wallet_actions.pay_for_delivery(self.get(delivery_id))
        return self.refresh_delivery(delivery_id)

    def rate(self, delivery_id: str, data: dict) -> Delivery:
        """
        Rate a delivered delivery, once.

        Raises:
            ValidationError: score missing or outside [1, 5]
            InvalidTransition: delivery not Delivered
            AlreadyRated: delivery already rated
        """
        self.gate.check(self.session, Action.RATE)
        rating = RatingService.build_rating(data)
        delivery = self.get(delivery_id)
        RatingService.check_can_rate(delivery)

        with self.guard.hold(delivery_key(delivery_id)):
            with expire_on_unauthenticated(self.session):
                self.backend.rate(delivery_id, rating.to_payload())

        return self._store(RatingService.submit_rating(delivery, rating))

    # =============================================
    # Admin
    # =============================================

    def approve(self, delivery_id: str) -> Delivery:
        self.gate.check(self.session, Action.APPROVE)
        return self._dispatch(delivery_id, Action.APPROVE, self.backend.approve)

    def assign(self, delivery_id: str, driver_id: str, vehicle_id: str) -> Delivery:
        self.gate.check(self.session, Action.ASSIGN)
        data = validate_payload(AssignmentSerializer, {'driverId': driver_id, 'vehicleId': vehicle_id})
        return self._dispatch(delivery_id, Action.ASSIGN, self.backend.assign,
                              data['driverId'], data['vehicleId'])

    def force_cancel(self, delivery_id: str, reason: str) -> Delivery:
        self.gate.check(self.session, Action.FORCE_CANCEL)
        reason = self._reason(reason)
        return self._dispatch(delivery_id, Action.FORCE_CANCEL, self.backend.cancel, reason)

    # =============================================
    # Driver
    # =============================================

    def accept(self, delivery_id: str) -> Delivery:
        self.gate.check(self.session, Action.ACCEPT)
        return self._dispatch(delivery_id, Action.ACCEPT, self.backend.accept)

    def reject(self, delivery_id: str, reason: str) -> Delivery:
        """Decline an assignment. Reason required; no ledger entry."""
        self.gate.check(self.session, Action.REJECT)
        reason = self._reason(reason)
        return self._dispatch(delivery_id, Action.REJECT, self.backend.reject, reason)

    def start(self, delivery_id: str) -> Delivery:
        self.gate.check(self.session, Action.START)
        return self._dispatch(delivery_id, Action.START, self.backend.start)

    def complete(self, delivery_id: str) -> Delivery:
        self.gate.check(self.session, Action.COMPLETE)
        return self._dispatch(delivery_id, Action.COMPLETE, self.backend.complete)
