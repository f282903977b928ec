"""
FLEETLINE Logistics Tests
=========================

Tests for:
1. Pricing Engine (formula, cluster table, Decimal precision)
2. Distance estimation
3. Delivery lifecycle state machine
4. Booking draft (live estimate, freeze)
5. Ratings (validation, one-time gate)
6. Delivery payload mapping
"""

from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import SimpleTestCase

from core.exceptions import AlreadyRated, InvalidTransition, ValidationError
from core.models import UserRole
from core.permissions import Action
from logistics import lifecycle
from logistics.models import (
    Delivery, DeliveryStatus, Location, PaymentStatus, PricingSnapshot, SizeCluster,
)
from logistics.rating_service import RatingService
from logistics.services.booking import BookingDraft
from logistics.services.pricing import PricingEngine
from logistics.utils import format_amount, haversine_distance

PICKUP = {'address': 'MG Road, Bengaluru', 'lat': 12.9716, 'lng': 77.5946}
DROP = {'address': 'Whitefield, Bengaluru', 'lat': 12.9698, 'lng': 77.7500}


def make_delivery_payload(**overrides):
    """Backend-shaped delivery record (Medium, 5 kg, 10 km -> 230)."""
    payload = {
        '_id': 'd1',
        'deliveryId': 'DEL-0001',
        'status': 'Pending',
        'customer': {'_id': 'cust-1', 'name': 'Ravi'},
        'pickupLocation': dict(PICKUP),
        'dropLocation': dict(DROP),
        'packageDetails': {
            'weight': 5, 'dimensions': '30x20x10', 'description': 'Books',
            'packageType': 'Standard', 'cluster': 'Medium',
        },
        'estimatedDistance': 10,
        'pricing': {
            'basePrice': 50, 'weightCharge': 50, 'distanceCharge': 80,
            'clusterCharge': 50, 'totalPrice': 230,
        },
        'paymentStatus': 'Unpaid',
        'createdAt': '2024-03-01T10:00:00Z',
    }
    payload.update(overrides)
    return payload


def make_delivery(**overrides) -> Delivery:
    return Delivery.from_payload(make_delivery_payload(**overrides))


VALID_RATING = {
    'stars': 4,
    'categories': {
        'punctuality': 5, 'professionalism': 4, 'vehicleCondition': 3, 'communication': 4,
    },
    'feedback': '  Quick and careful  ',
    'tags': ['On Time', 'Careful Handling', 'On Time'],
}


class TestPricingEngine(SimpleTestCase):
    """Tests for the Pricing Engine price calculation."""

    def setUp(self):
        self.engine = PricingEngine()

    # ==========================================
    # Formula
    # ==========================================

    def test_medium_package_quote(self):
        """5 kg over 10 km in the Medium cluster costs 230.00."""
        snapshot = self.engine.quote(5, 10, SizeCluster.MEDIUM)
        self.assertEqual(snapshot.base_price, Decimal('50'))
        self.assertEqual(snapshot.weight_charge, Decimal('50'))
        self.assertEqual(snapshot.distance_charge, Decimal('80'))
        self.assertEqual(snapshot.cluster_charge, Decimal('50'))
        self.assertEqual(snapshot.total_price, Decimal('230'))
        self.assertEqual(snapshot.display()['total_price'], '₹230.00')

    def test_cluster_charge_table(self):
        expected = {
            SizeCluster.SMALL: Decimal('0'),
            SizeCluster.MEDIUM: Decimal('50'),
            SizeCluster.LARGE: Decimal('100'),
            SizeCluster.EXTRA_LARGE: Decimal('200'),
        }
        for cluster, charge in expected.items():
            self.assertEqual(self.engine.cluster_charge(cluster), charge)

    def test_total_is_sum_of_components(self):
        for weight, distance, cluster in [
            ('0', '0', 'Small'), ('1.5', '3.25', 'Large'), ('12', '47.8', 'Extra Large'),
        ]:
            snapshot = self.engine.quote(weight, distance, cluster)
            self.assertEqual(
                snapshot.total_price,
                Decimal('50') + Decimal(weight) * 10 + Decimal(distance) * 8
                + self.engine.cluster_charge(cluster),
            )

    def test_no_rounding_before_display(self):
        snapshot = self.engine.quote('0.333', '0.001', SizeCluster.SMALL)
        self.assertEqual(snapshot.total_price, Decimal('53.338'))
        self.assertEqual(snapshot.rounded_total(), Decimal('53.34'))

    def test_quote_is_deterministic(self):
        self.assertEqual(self.engine.quote(5, 10, 'Medium'), self.engine.quote(5, 10, 'Medium'))

    def test_float_input_has_no_binary_noise(self):
        snapshot = self.engine.quote(0.1, 0.2, SizeCluster.SMALL)
        self.assertEqual(snapshot.total_price, Decimal('52.6'))

    # ==========================================
    # Validation
    # ==========================================

    def test_negative_weight_rejected(self):
        with self.assertRaises(ValidationError):
            self.engine.quote(-1, 10, SizeCluster.SMALL)

    def test_negative_distance_rejected(self):
        with self.assertRaises(ValidationError):
            self.engine.quote(1, -10, SizeCluster.SMALL)

    def test_unknown_cluster_rejected(self):
        with self.assertRaises(ValidationError) as ctx:
            self.engine.quote(1, 1, 'Huge')
        self.assertIn('cluster', ctx.exception.errors)

    def test_non_numeric_weight_rejected(self):
        with self.assertRaises(ValidationError):
            self.engine.quote('heavy', 1, SizeCluster.SMALL)


class TestDistance(SimpleTestCase):

    def test_haversine_same_point_is_zero(self):
        self.assertEqual(haversine_distance(12.9716, 77.5946, 12.9716, 77.5946), 0)

    def test_haversine_known_distance(self):
        """Bengaluru -> Chennai is roughly 290 km in a straight line."""
        distance = haversine_distance(12.9716, 77.5946, 13.0827, 80.2707)
        self.assertAlmostEqual(distance, 290, delta=5)

    def test_estimate_requires_both_coordinates(self):
        engine = PricingEngine()
        pickup = Location.from_payload(PICKUP)
        self.assertEqual(engine.estimate_distance(pickup, None), Decimal('0'))
        self.assertEqual(engine.estimate_distance(pickup, Location('Somewhere')), Decimal('0'))
        self.assertGreater(engine.estimate_distance(pickup, Location.from_payload(DROP)), 0)


class TestLifecycle(SimpleTestCase):
    """Tests for the delivery state machine."""

    EXPECTED = {
        (DeliveryStatus.PENDING, Action.APPROVE, UserRole.ADMIN): DeliveryStatus.APPROVED,
        (DeliveryStatus.APPROVED, Action.ASSIGN, UserRole.ADMIN): DeliveryStatus.ASSIGNED,
        (DeliveryStatus.ASSIGNED, Action.ACCEPT, UserRole.DRIVER): DeliveryStatus.ACCEPTED,
        (DeliveryStatus.ASSIGNED, Action.REJECT, UserRole.DRIVER): DeliveryStatus.REJECTED,
        (DeliveryStatus.ACCEPTED, Action.START, UserRole.DRIVER): DeliveryStatus.ON_ROUTE,
        (DeliveryStatus.ON_ROUTE, Action.COMPLETE, UserRole.DRIVER): DeliveryStatus.DELIVERED,
    }

    NON_TERMINAL = [
        DeliveryStatus.PENDING, DeliveryStatus.APPROVED, DeliveryStatus.ASSIGNED,
        DeliveryStatus.ACCEPTED, DeliveryStatus.ON_ROUTE,
    ]

    def setUp(self):
        self.expected = dict(self.EXPECTED)
        for status in self.NON_TERMINAL:
            self.expected[(status, Action.CANCEL, UserRole.CUSTOMER)] = DeliveryStatus.CANCELLED
            self.expected[(status, Action.FORCE_CANCEL, UserRole.ADMIN)] = DeliveryStatus.CANCELLED

    def test_every_combination(self):
        """Only table transitions resolve; every other combination raises."""
        for status in DeliveryStatus:
            for action in Action:
                for role in UserRole:
                    key = (status, action, role)
                    if key in self.expected:
                        self.assertEqual(
                            lifecycle.resolve_transition(status, role, action),
                            self.expected[key], key,
                        )
                    else:
                        with self.assertRaises(InvalidTransition, msg=str(key)):
                            lifecycle.resolve_transition(status, role, action)

    def test_terminal_states_have_no_actions(self):
        for status in (DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED, DeliveryStatus.REJECTED):
            self.assertTrue(lifecycle.is_terminal(status))
            for role in UserRole:
                self.assertEqual(lifecycle.available_actions(status, role), [])

    def test_available_actions_for_assigned_driver(self):
        self.assertEqual(
            set(lifecycle.available_actions(DeliveryStatus.ASSIGNED, UserRole.DRIVER)),
            {Action.ACCEPT, Action.REJECT},
        )

    def test_can_transition(self):
        self.assertTrue(lifecycle.can_transition(
            DeliveryStatus.ON_ROUTE, UserRole.DRIVER, Action.COMPLETE))
        self.assertFalse(lifecycle.can_transition(
            DeliveryStatus.ON_ROUTE, UserRole.ADMIN, Action.COMPLETE))

    def test_reject_only_from_assigned(self):
        with self.assertRaises(InvalidTransition):
            lifecycle.resolve_transition(DeliveryStatus.ACCEPTED, UserRole.DRIVER, Action.REJECT)

    def test_reasons_required(self):
        self.assertTrue(lifecycle.requires_reason(Action.REJECT))
        self.assertTrue(lifecycle.requires_reason(Action.CANCEL))
        self.assertFalse(lifecycle.requires_reason(Action.ACCEPT))

    def test_failed_resolution_does_not_touch_delivery(self):
        delivery = make_delivery(status='Delivered')
        with self.assertRaises(InvalidTransition):
            lifecycle.resolve_transition(delivery.status, UserRole.CUSTOMER, Action.CANCEL)
        self.assertEqual(delivery.status, DeliveryStatus.DELIVERED)


class TestBookingDraft(SimpleTestCase):
    """Tests for the live estimate while booking."""

    def setUp(self):
        self.draft = BookingDraft()

    def fill(self):
        self.draft.set_locations(Location.from_payload(PICKUP), Location.from_payload(DROP))
        self.draft.set_distance(10)
        self.draft.update(weight=5, cluster=SizeCluster.MEDIUM, contact_number='9876543210')

    def test_empty_draft_estimates_base_price(self):
        self.assertEqual(self.draft.estimate.total_price, Decimal('50'))

    def test_every_change_recomputes(self):
        self.assertEqual(self.draft.update(weight=2).total_price, Decimal('70'))
        self.assertEqual(self.draft.update(cluster=SizeCluster.LARGE).total_price, Decimal('170'))
        self.assertEqual(self.draft.set_distance('2.5').total_price, Decimal('190'))

    def test_invalid_input_counts_as_zero_while_typing(self):
        self.assertEqual(self.draft.update(weight='').total_price, Decimal('50'))
        self.assertEqual(self.draft.update(weight='-3').total_price, Decimal('50'))

    def test_locations_prefill_distance(self):
        self.draft.set_locations(Location.from_payload(PICKUP), Location.from_payload(DROP))
        self.assertGreater(self.draft.distance, 0)
        self.assertFalse(self.draft.distance_overridden)

    def test_manual_distance_wins_over_locations(self):
        self.draft.set_distance(3)
        self.draft.set_locations(Location.from_payload(PICKUP), Location.from_payload(DROP))
        self.assertEqual(self.draft.distance, 3)

    def test_freeze_returns_snapshot(self):
        self.fill()
        snapshot = self.draft.freeze()
        self.assertEqual(snapshot.total_price, Decimal('230'))
        self.assertTrue(self.draft.is_frozen)

    def test_frozen_draft_refuses_edits(self):
        self.fill()
        snapshot = self.draft.freeze()
        with self.assertRaises(ValidationError):
            self.draft.update(weight=50)
        self.assertEqual(self.draft.freeze(), snapshot)

    def test_freeze_requires_weight(self):
        self.draft.set_locations(Location.from_payload(PICKUP), Location.from_payload(DROP))
        self.draft.update(contact_number='9876543210')
        with self.assertRaises(ValidationError) as ctx:
            self.draft.freeze()
        self.assertIn('packageDetails', ctx.exception.errors)
        self.assertFalse(self.draft.is_frozen)

    def test_unknown_field_rejected(self):
        with self.assertRaises(ValidationError):
            self.draft.update(price=0)

    def test_validated_payload_is_json_friendly(self):
        self.fill()
        payload = self.draft.validated_payload()
        self.assertIsInstance(payload['packageDetails']['weight'], float)
        self.assertEqual(payload['estimatedDistance'], 10.0)
        self.assertEqual(payload['packageDetails']['cluster'], 'Medium')


class TestRatingService(SimpleTestCase):
    """Tests for rating validation and the one-time gate."""

    def test_build_rating(self):
        rating = RatingService.build_rating(VALID_RATING)
        self.assertEqual(rating.stars, 4)
        self.assertEqual(rating.vehicle_condition, 3)
        self.assertEqual(rating.feedback, 'Quick and careful')
        self.assertEqual(rating.tags, ('On Time', 'Careful Handling'))

    def test_out_of_range_rejected(self):
        for stars in (0, 6):
            with self.assertRaises(ValidationError):
                RatingService.build_rating({**VALID_RATING, 'stars': stars})

    def test_category_out_of_range_rejected(self):
        data = {**VALID_RATING, 'categories': {**VALID_RATING['categories'], 'communication': 9}}
        with self.assertRaises(ValidationError):
            RatingService.build_rating(data)

    def test_missing_category_rejected(self):
        categories = dict(VALID_RATING['categories'])
        del categories['punctuality']
        with self.assertRaises(ValidationError):
            RatingService.build_rating({**VALID_RATING, 'categories': categories})

    def test_unknown_tag_rejected(self):
        with self.assertRaises(ValidationError):
            RatingService.build_rating({**VALID_RATING, 'tags': ['Magnificent']})

    def test_stars_independent_of_categories(self):
        data = {**VALID_RATING, 'stars': 1}
        rating = RatingService.build_rating(data)
        self.assertEqual(rating.stars, 1)
        self.assertEqual(RatingService.category_average(rating), Decimal('4'))

    def test_submit_on_delivered(self):
        delivery = make_delivery(status='Delivered')
        rated = RatingService.submit_rating(delivery, RatingService.build_rating(VALID_RATING))
        self.assertEqual(rated.rating.stars, 4)
        self.assertIsNone(delivery.rating)

    def test_submit_before_delivery_rejected(self):
        delivery = make_delivery(status='On Route')
        with self.assertRaises(InvalidTransition):
            RatingService.submit_rating(delivery, RatingService.build_rating(VALID_RATING))

    def test_second_submit_rejected_without_change(self):
        delivery = make_delivery(status='Delivered')
        rated = RatingService.submit_rating(delivery, RatingService.build_rating(VALID_RATING))
        other = RatingService.build_rating({**VALID_RATING, 'stars': 1})
        with self.assertRaises(AlreadyRated):
            RatingService.submit_rating(rated, other)
        self.assertEqual(rated.rating.stars, 4)


class TestDeliveryPayload(SimpleTestCase):
    """Tests for mapping backend records."""

    def test_from_wrapped_payload(self):
        delivery = Delivery.from_payload({'success': True, 'delivery': make_delivery_payload()})
        self.assertEqual(delivery.id, 'd1')
        self.assertEqual(delivery.customer_ref, 'cust-1')
        self.assertEqual(delivery.total_price, Decimal('230'))
        self.assertEqual(delivery.payment_status, PaymentStatus.UNPAID)
        self.assertFalse(delivery.payment_captured)

    def test_absent_fields_are_unknown(self):
        delivery = Delivery.from_payload({'_id': 'd2', 'status': 'Pending'})
        self.assertIsNone(delivery.pricing)
        self.assertIsNone(delivery.payment_status)
        self.assertIsNone(delivery.net_earnings)
        self.assertIsNone(delivery.total_price)
        self.assertIsNone(delivery.driver_ref)

    def test_backend_total_kept_without_breakdown(self):
        snapshot = PricingSnapshot.from_payload({'totalPrice': 230})
        self.assertEqual(snapshot.total_price, Decimal('230'))
        self.assertIsNone(snapshot.cluster_charge)
        self.assertEqual(snapshot.display()['cluster_charge'], '-')

    def test_missing_cluster_charge_keeps_total(self):
        snapshot = PricingSnapshot.from_payload({
            'basePrice': 50, 'weightCharge': 50, 'distanceCharge': 80, 'totalPrice': 180,
        })
        self.assertIsNone(snapshot.cluster_charge)
        self.assertEqual(snapshot.total_price, Decimal('180'))

    def test_partial_breakdown_without_total_is_unknown(self):
        snapshot = PricingSnapshot.from_payload({'basePrice': 50, 'weightCharge': 50})
        self.assertIsNone(snapshot.total_price)
        self.assertIsNone(snapshot.rounded_total())

    def test_empty_pricing_is_unknown(self):
        self.assertIsNone(PricingSnapshot.from_payload({}))
        self.assertIsNone(PricingSnapshot.from_payload({'basePrice': None}))

    def test_on_route_wire_value(self):
        self.assertEqual(make_delivery(status='On Route').status, DeliveryStatus.ON_ROUTE)

    def test_unknown_status_rejected(self):
        with self.assertRaises(ValidationError):
            make_delivery(status='Lost')

    def test_missing_id_rejected(self):
        with self.assertRaises(ValidationError):
            Delivery.from_payload({'status': 'Pending'})

    def test_net_earnings(self):
        delivery = make_delivery(driverEarnings={'netEarnings': 184, 'commission': 46})
        self.assertEqual(delivery.net_earnings, Decimal('184'))

    def test_format_amount(self):
        self.assertEqual(format_amount(Decimal('230')), '₹230.00')
        self.assertEqual(format_amount(Decimal('0.005')), '₹0.01')
        self.assertEqual(format_amount(None), '-')


class TestQuoteCommand(SimpleTestCase):

    def test_prints_breakdown(self):
        out = StringIO()
        call_command('quote', '--weight', '5', '--distance', '10', '--cluster', 'Medium', stdout=out)
        self.assertIn('₹230.00', out.getvalue())
        self.assertIn('Cluster charge (Medium)', out.getvalue())

    def test_distance_from_coordinates(self):
        out = StringIO()
        call_command('quote', '--weight', '1', '--from', '12.9716,77.5946',
                     '--to', '12.9716,77.5946', stdout=out)
        self.assertIn('Straight-line distance: 0', out.getvalue())
        self.assertIn('₹60.00', out.getvalue())

    def test_negative_weight_is_command_error(self):
        with self.assertRaises(CommandError):
            call_command('quote', '--weight', '-1', '--distance', '3', stdout=StringIO())

    def test_distance_required(self):
        with self.assertRaises(CommandError):
            call_command('quote', '--weight', '1', stdout=StringIO())
