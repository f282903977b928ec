"""
E2E Tests for FLEETLINE Delivery Flow

Tests the complete flow through DeliveryWorkflow with a mocked backend:
booking → approval → assignment → acceptance → transit → delivery → rating,
plus the rejection and cancellation branches and their ledger effects.
"""

from decimal import Decimal
from unittest.mock import MagicMock

from django.test import SimpleTestCase

from core.exceptions import (
    ActionInProgress, AlreadyRated, Forbidden, InvalidTransition, NetworkFailure,
    Unauthenticated, ValidationError,
)
from core.inflight import delivery_key
from core.models import UserRole
from core.permissions import Action
from core.tests import make_session
from finance.models import TransactionType
from finance.services import WalletRegistry
from logistics.models import Delivery, DeliveryStatus, Location, SizeCluster
from logistics.services.booking import BookingDraft
from logistics.services.workflow import DeliveryWorkflow
from logistics.tests import DROP, PICKUP, VALID_RATING, make_delivery, make_delivery_payload


class E2EDeliveryFlowTest(SimpleTestCase):
    """
    End-to-end tests for the delivery lifecycle.
    """

    def setUp(self):
        self.backend = MagicMock()
        self.wallets = WalletRegistry()
        self.customer = make_session(UserRole.CUSTOMER, account_id='cust-1')
        self.driver = make_session(UserRole.DRIVER, account_id='drv-1')
        self.admin = make_session(UserRole.ADMIN, account_id='adm-1')

    def workflow(self, session, *deliveries):
        workflow = DeliveryWorkflow(session, self.backend, wallets=self.wallets)
        for delivery in deliveries:
            workflow.deliveries[delivery.id] = delivery
        return workflow

    def test_full_delivery_flow(self):
        """
        Flow: Book → Approve → Assign → Accept → Start → Complete → Rate
        """
        # 1. BOOK
        draft = BookingDraft()
        draft.set_locations(Location.from_payload(PICKUP), Location.from_payload(DROP))
        draft.set_distance(10)
        draft.update(weight=5, cluster=SizeCluster.MEDIUM, contact_number='9876543210')
        self.backend.book.return_value = make_delivery()

        booked = self.workflow(self.customer).book(draft)

        payload = self.backend.book.call_args[0][0]
        self.assertEqual(payload['estimatedDistance'], 10.0)
        self.assertEqual(booked.status, DeliveryStatus.PENDING)
        self.assertEqual(booked.total_price, Decimal('230'))
        self.assertTrue(draft.is_frozen)

        # 2. APPROVE + ASSIGN (Admin)
        admin = self.workflow(self.admin, booked)
        self.backend.approve.return_value = make_delivery(status='Approved')
        admin.approve('d1')
        self.backend.assign.return_value = make_delivery(
            status='Assigned', driver='drv-1', vehicle='veh-1')
        assigned = admin.assign('d1', 'drv-1', 'veh-1')
        self.backend.assign.assert_called_once_with('d1', 'drv-1', 'veh-1')
        self.assertEqual(assigned.driver_ref, 'drv-1')

        # 3. ACCEPT → START → COMPLETE (Driver)
        driver = self.workflow(self.driver, assigned)
        self.assertEqual(set(driver.available_actions('d1')), {Action.ACCEPT, Action.REJECT})
        self.backend.accept.return_value = make_delivery(status='Accepted', driver='drv-1')
        driver.accept('d1')
        self.backend.start.return_value = make_delivery(status='On Route', driver='drv-1')
        driver.start('d1')
        self.backend.complete.return_value = make_delivery(
            status='Delivered', driver='drv-1', driverEarnings={'netEarnings': 184})
        delivered = driver.complete('d1')

        self.assertEqual(delivered.status, DeliveryStatus.DELIVERED)
        wallet = self.wallets.find('drv-1')
        self.assertEqual(len(wallet.transactions), 1)
        self.assertEqual(wallet.transactions[0].type, TransactionType.CREDIT)
        self.assertEqual(wallet.transactions[0].delivery_ref, 'd1')
        self.assertEqual(wallet.total_earnings, Decimal('184'))

        # 4. RATE (Customer, once)
        customer = self.workflow(self.customer, delivered)
        self.assertIn(Action.RATE, customer.available_actions('d1'))
        self.backend.rate.return_value = {'success': True}
        rated = customer.rate('d1', VALID_RATING)
        self.assertEqual(rated.rating.stars, 4)
        self.assertEqual(self.backend.rate.call_args[0][1]['rating'], 4)
        with self.assertRaises(AlreadyRated):
            customer.rate('d1', VALID_RATING)
        self.assertEqual(self.backend.rate.call_count, 1)

    def test_refused_booking_leaves_draft_editable(self):
        draft = BookingDraft()
        draft.set_locations(Location.from_payload(PICKUP), Location.from_payload(DROP))
        draft.set_distance(10)
        draft.update(weight=5, contact_number='123')
        self.backend.book.side_effect = ValidationError('Invalid contact number')
        customer = self.workflow(self.customer)

        with self.assertRaises(ValidationError):
            customer.book(draft)

        self.assertFalse(draft.is_frozen)
        draft.update(contact_number='9876543210')
        self.backend.book.side_effect = None
        self.backend.book.return_value = make_delivery()
        customer.book(draft)
        self.assertTrue(draft.is_frozen)
        self.assertEqual(self.backend.book.call_args[0][0]['contactNumber'], '9876543210')

    def test_delivered_without_positive_earnings_still_completes(self):
        driver = self.workflow(self.driver, make_delivery(status='On Route', driver='drv-1'))
        self.backend.complete.return_value = make_delivery(
            status='Delivered', driver='drv-1', driverEarnings={'netEarnings': 0})

        delivered = driver.complete('d1')

        self.assertEqual(delivered.status, DeliveryStatus.DELIVERED)
        self.assertEqual(driver.deliveries['d1'].status, DeliveryStatus.DELIVERED)
        self.assertEqual(len(self.wallets), 0)

    def test_driver_rejects_assignment(self):
        """Assigned + reject("vehicle breakdown") ⇒ Rejected, no transaction."""
        driver = self.workflow(self.driver, make_delivery(status='Assigned', driver='drv-1'))
        self.backend.reject.return_value = make_delivery(
            status='Rejected', driver='drv-1', rejectionReason='vehicle breakdown')

        rejected = driver.reject('d1', 'vehicle breakdown')

        self.backend.reject.assert_called_once_with('d1', 'vehicle breakdown')
        self.assertEqual(rejected.status, DeliveryStatus.REJECTED)
        self.assertEqual(len(self.wallets), 0)

    def test_reject_requires_reason(self):
        driver = self.workflow(self.driver, make_delivery(status='Assigned', driver='drv-1'))
        with self.assertRaises(ValidationError):
            driver.reject('d1', '   ')
        self.backend.reject.assert_not_called()

    def test_customer_cancels_paid_delivery(self):
        """Pending + cancel("changed mind") on a paid booking ⇒ Refund of frozen price."""
        customer = self.workflow(self.customer, make_delivery(paymentStatus='Paid'))
        self.backend.cancel.return_value = make_delivery(
            status='Cancelled', paymentStatus='Refunded', cancellationReason='changed mind')

        cancelled = customer.cancel('d1', 'changed mind')

        self.assertEqual(cancelled.status, DeliveryStatus.CANCELLED)
        wallet = self.wallets.find('cust-1')
        self.assertEqual([tx.type for tx in wallet.transactions], [TransactionType.REFUND])
        self.assertEqual(wallet.transactions[0].amount, Decimal('230'))

    def test_paid_cancel_without_cluster_charge_refunds_total(self):
        pricing = {'basePrice': 50, 'weightCharge': 50, 'distanceCharge': 80, 'totalPrice': 180}
        customer = self.workflow(self.customer, make_delivery(paymentStatus='Paid', pricing=pricing))
        self.backend.cancel.return_value = make_delivery(
            status='Cancelled', paymentStatus='Refunded', pricing=pricing)

        customer.cancel('d1', 'changed mind')

        wallet = self.wallets.find('cust-1')
        self.assertEqual(wallet.transactions[0].type, TransactionType.REFUND)
        self.assertEqual(wallet.balance, Decimal('180'))

    def test_customer_cancels_unpaid_delivery(self):
        customer = self.workflow(self.customer, make_delivery(paymentStatus='Unpaid'))
        self.backend.cancel.return_value = make_delivery(status='Cancelled')
        customer.cancel('d1', 'changed mind')
        self.assertEqual(len(self.wallets), 0)

    def test_admin_force_cancel(self):
        admin = self.workflow(self.admin, make_delivery(status='On Route', paymentStatus='Paid'))
        self.backend.cancel.return_value = make_delivery(status='Cancelled', paymentStatus='Refunded')
        admin.force_cancel('d1', 'customer unreachable')
        self.assertEqual(self.wallets.find('cust-1').balance, Decimal('230'))

    def test_forbidden_has_no_side_effects(self):
        """A Customer completing a delivery is refused before anything happens."""
        delivery = make_delivery(status='On Route', driver='drv-1')
        customer = self.workflow(self.customer, delivery)

        with self.assertRaises(Forbidden):
            customer.complete('d1')

        self.backend.complete.assert_not_called()
        self.assertIs(customer.deliveries['d1'], delivery)
        self.assertEqual(len(self.wallets), 0)

    def test_invalid_transition_has_no_side_effects(self):
        driver = self.workflow(self.driver, make_delivery(status='Accepted', driver='drv-1'))
        with self.assertRaises(InvalidTransition):
            driver.complete('d1')
        self.backend.complete.assert_not_called()
        self.assertEqual(driver.deliveries['d1'].status, DeliveryStatus.ACCEPTED)

    def test_cancel_after_delivery_refused(self):
        customer = self.workflow(self.customer, make_delivery(status='Delivered'))
        with self.assertRaises(InvalidTransition):
            customer.cancel('d1', 'too late')
        self.backend.cancel.assert_not_called()

    def test_network_failure_keeps_last_confirmed(self):
        delivery = make_delivery(status='Assigned', driver='drv-1')
        driver = self.workflow(self.driver, delivery)
        self.backend.accept.side_effect = NetworkFailure('timeout')

        with self.assertRaises(NetworkFailure):
            driver.accept('d1')

        self.assertIs(driver.deliveries['d1'], delivery)
        self.assertFalse(driver.guard.is_busy(delivery_key('d1')))

    def test_second_action_while_in_flight(self):
        driver = self.workflow(self.driver, make_delivery(status='Assigned', driver='drv-1'))
        with driver.guard.hold(delivery_key('d1')):
            with self.assertRaises(ActionInProgress):
                driver.accept('d1')
        self.backend.accept.assert_not_called()

    def test_expired_credential_ends_session(self):
        driver = self.workflow(self.driver, make_delivery(status='Assigned', driver='drv-1'))
        self.backend.accept.side_effect = Unauthenticated('Token expired', status_code=401)
        with self.assertRaises(Unauthenticated):
            driver.accept('d1')
        self.assertFalse(self.driver.is_authenticated)

    def test_unknown_delivery_is_fetched(self):
        self.backend.get_delivery.return_value = make_delivery(status='Pending')
        admin = self.workflow(self.admin)
        self.backend.approve.return_value = make_delivery(status='Approved')
        admin.approve('d1')
        self.backend.get_delivery.assert_called_once_with('d1')

    def test_load_deliveries_per_role(self):
        self.backend.assigned_deliveries.return_value = [
            Delivery.from_payload(make_delivery_payload(status='Assigned', driver='drv-1')),
        ]
        driver = self.workflow(self.driver)
        self.assertEqual(len(driver.load_deliveries()), 1)
        self.backend.assigned_deliveries.assert_called_once_with()
        self.backend.my_bookings.assert_not_called()

    def test_pay_then_refresh(self):
        self.backend.pay_delivery.return_value = {'wallet': {'balance': 270}}
        self.backend.get_delivery.return_value = make_delivery(paymentStatus='Paid')
        customer = self.workflow(self.customer, make_delivery())

        paid = customer.pay('d1')

        self.assertTrue(paid.payment_captured)
        self.assertEqual(self.wallets.find('cust-1').balance, Decimal('270'))
        self.assertNotIn(Action.PAY, customer.available_actions('d1'))
