"""
LOGISTICS App - Delivery records for FLEETLINE

Handles: Deliveries, Locations, Package details, Pricing snapshots, Ratings.

These are in-memory mirrors of backend JSON records. The backend owns the
authoritative copy; after any mutating action the local record is replaced
with the one the backend returns.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from django.db import models

from logistics.utils import (
    format_amount, parse_timestamp, round_for_display, to_decimal, to_ref,
)


class DeliveryStatus(models.TextChoices):
    """Delivery status enumeration (values are the backend wire values)."""
    PENDING = 'Pending', 'Pending'
    APPROVED = 'Approved', 'Approved'
    ASSIGNED = 'Assigned', 'Driver assigned'
    ACCEPTED = 'Accepted', 'Accepted by driver'
    ON_ROUTE = 'On Route', 'On route'
    DELIVERED = 'Delivered', 'Delivered'
    CANCELLED = 'Cancelled', 'Cancelled'
    REJECTED = 'Rejected', 'Rejected by driver'


TERMINAL_STATUSES = frozenset({
    DeliveryStatus.DELIVERED,
    DeliveryStatus.CANCELLED,
    DeliveryStatus.REJECTED,
})


class PackageType(models.TextChoices):
    STANDARD = 'Standard', 'Standard'
    FRAGILE = 'Fragile', 'Fragile'
    PERISHABLE = 'Perishable', 'Perishable'
    DOCUMENTS = 'Documents', 'Documents'


class SizeCluster(models.TextChoices):
    """Package size tier driving a flat pricing surcharge."""
    SMALL = 'Small', 'Small'
    MEDIUM = 'Medium', 'Medium'
    LARGE = 'Large', 'Large'
    EXTRA_LARGE = 'Extra Large', 'Extra Large'


class PaymentStatus(models.TextChoices):
    UNPAID = 'Unpaid', 'Unpaid'
    PAID = 'Paid', 'Paid'
    REFUNDED = 'Refunded', 'Refunded'


class FeedbackTag(models.TextChoices):
    EXCELLENT_SERVICE = 'Excellent Service'
    ON_TIME = 'On Time'
    PROFESSIONAL = 'Professional'
    FRIENDLY = 'Friendly'
    CAREFUL_HANDLING = 'Careful Handling'
    NEEDS_IMPROVEMENT = 'Needs Improvement'
    LATE = 'Late'
    RUDE = 'Rude'
    DAMAGED_PACKAGE = 'Damaged Package'


@dataclass(frozen=True)
class Location:
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> Optional['Location']:
        if not payload:
            return None
        return cls(
            address=payload.get('address') or '',
            latitude=payload.get('lat', payload.get('latitude')),
            longitude=payload.get('lng', payload.get('longitude')),
        )

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_payload(self) -> dict:
        return {'address': self.address, 'lat': self.latitude, 'lng': self.longitude}


@dataclass(frozen=True)
class PackageDetails:
    weight: Decimal
    cluster: SizeCluster = SizeCluster.SMALL
    package_type: PackageType = PackageType.STANDARD
    dimensions: str = ''
    description: str = ''

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> Optional['PackageDetails']:
        if not payload:
            return None
        return cls(
            weight=to_decimal(payload.get('weight')),
            cluster=SizeCluster(payload.get('cluster') or SizeCluster.SMALL),
            package_type=PackageType(payload.get('packageType') or PackageType.STANDARD),
            dimensions=payload.get('dimensions') or '',
            description=payload.get('description') or '',
        )


@dataclass(frozen=True)
class PricingSnapshot:
    """
    Frozen price breakdown.

    A locally computed total is always base + weight + distance + cluster
    charge; no taxes or discounts. A backend snapshot carries its own
    totalPrice, which stands even when a component is missing. Amounts are
    kept unrounded; rounding happens in display().
    """

    base_price: Optional[Decimal]
    weight_charge: Optional[Decimal]
    distance_charge: Optional[Decimal]
    cluster_charge: Optional[Decimal]
    quoted_total: Optional[Decimal] = None

    @property
    def components(self) -> Tuple[Optional[Decimal], ...]:
        return (self.base_price, self.weight_charge, self.distance_charge, self.cluster_charge)

    @property
    def total_price(self) -> Optional[Decimal]:
        if self.quoted_total is not None:
            return self.quoted_total
        if any(value is None for value in self.components):
            return None
        return sum(self.components, Decimal('0'))

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> Optional['PricingSnapshot']:
        if not payload:
            return None
        snapshot = cls(
            *(
                to_decimal(payload.get(key))
                for key in ('basePrice', 'weightCharge', 'distanceCharge', 'clusterCharge')
            ),
            quoted_total=to_decimal(payload.get('totalPrice')),
        )
        # Nothing known at all.
        if snapshot.total_price is None and all(value is None for value in snapshot.components):
            return None
        return snapshot

    def display(self) -> Dict[str, str]:
        return {
            'base_price': format_amount(self.base_price),
            'weight_charge': format_amount(self.weight_charge),
            'distance_charge': format_amount(self.distance_charge),
            'cluster_charge': format_amount(self.cluster_charge),
            'total_price': format_amount(self.total_price),
        }

    def rounded_total(self) -> Optional[Decimal]:
        total = self.total_price
        return round_for_display(total) if total is not None else None


@dataclass(frozen=True)
class Rating:
    """
    Post-delivery rating.

    `stars` is chosen independently of the category scores; it is never
    derived from them.
    """

    stars: int
    punctuality: Optional[int]
    professionalism: Optional[int]
    vehicle_condition: Optional[int]
    communication: Optional[int]
    feedback: str = ''
    tags: Tuple[str, ...] = ()

    @property
    def categories(self) -> Dict[str, int]:
        return {
            'punctuality': self.punctuality,
            'professionalism': self.professionalism,
            'vehicleCondition': self.vehicle_condition,
            'communication': self.communication,
        }

    @classmethod
    def from_payload(cls, payload: Optional[dict]) -> Optional['Rating']:
        if not payload or payload.get('stars', payload.get('rating')) is None:
            return None
        categories = payload.get('categories') or {}

        def score(key):
            value = categories.get(key)
            return int(value) if value is not None else None

        return cls(
            stars=int(payload.get('stars', payload.get('rating'))),
            punctuality=score('punctuality'),
            professionalism=score('professionalism'),
            vehicle_condition=score('vehicleCondition'),
            communication=score('communication'),
            feedback=payload.get('feedback') or '',
            tags=tuple(payload.get('tags') or ()),
        )

    def to_payload(self) -> dict:
        return {
            'rating': self.stars,
            'categories': self.categories,
            'feedback': self.feedback,
            'tags': list(self.tags),
        }


@dataclass(frozen=True)
class StatusChange:
    status: str
    timestamp: Optional[datetime] = None
    note: str = ''


@dataclass
class Delivery:
    """
    Mirror of a backend delivery.

    `pricing` is the frozen snapshot quoted at booking; it is never
    recomputed from `package`. `payment_status`, `net_earnings` and other
    optional fields are None when the backend did not send them.
    """

    id: str
    status: DeliveryStatus
    pickup: Optional[Location]
    drop: Optional[Location]
    package: Optional[PackageDetails]
    estimated_distance: Optional[Decimal]
    pricing: Optional[PricingSnapshot]
    customer_ref: Optional[str] = None
    driver_ref: Optional[str] = None
    vehicle_ref: Optional[str] = None
    rating: Optional[Rating] = None
    created_at: Optional[datetime] = None
    reference: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    net_earnings: Optional[Decimal] = None
    cancellation_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    contact_number: Optional[str] = None
    preferred_date: Optional[str] = None
    preferred_time: Optional[str] = None
    special_instructions: Optional[str] = None
    status_history: List[StatusChange] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> 'Delivery':
        from core.exceptions import ValidationError

        if isinstance(payload.get('delivery'), dict):
            payload = payload['delivery']

        delivery_id = payload.get('_id') or payload.get('id')
        if not delivery_id:
            raise ValidationError("Delivery payload has no identifier")

        try:
            payment_status = payload.get('paymentStatus')
            driver_earnings = payload.get('driverEarnings') or {}
            return cls(
                id=str(delivery_id),
                status=DeliveryStatus(payload.get('status')),
                pickup=Location.from_payload(payload.get('pickupLocation')),
                drop=Location.from_payload(payload.get('dropLocation')),
                package=PackageDetails.from_payload(payload.get('packageDetails')),
                estimated_distance=to_decimal(payload.get('estimatedDistance')),
                pricing=PricingSnapshot.from_payload(payload.get('pricing')),
                customer_ref=to_ref(payload.get('customer')),
                driver_ref=to_ref(payload.get('driver') or payload.get('assignedDriver')),
                vehicle_ref=to_ref(payload.get('vehicle') or payload.get('assignedVehicle')),
                rating=Rating.from_payload(payload.get('rating')),
                created_at=parse_timestamp(payload.get('createdAt')),
                reference=payload.get('deliveryId'),
                payment_status=PaymentStatus(payment_status) if payment_status else None,
                net_earnings=to_decimal(driver_earnings.get('netEarnings')),
                cancellation_reason=payload.get('cancellationReason'),
                rejection_reason=payload.get('rejectionReason'),
                contact_number=payload.get('contactNumber'),
                preferred_date=payload.get('preferredDate'),
                preferred_time=payload.get('preferredTime'),
                special_instructions=payload.get('specialInstructions'),
                status_history=[
                    StatusChange(
                        status=entry.get('status'),
                        timestamp=parse_timestamp(entry.get('timestamp')),
                        note=entry.get('note') or '',
                    )
                    for entry in payload.get('statusHistory') or []
                ],
            )
        except ValueError as e:
            raise ValidationError(f"Malformed delivery payload {delivery_id}: {e}")

    # ------------------------------------------
    # Derived state
    # ------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def total_price(self) -> Optional[Decimal]:
        return self.pricing.total_price if self.pricing else None

    @property
    def payment_captured(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    @property
    def can_be_rated(self) -> bool:
        return self.status == DeliveryStatus.DELIVERED and self.rating is None

    def __str__(self):
        return f"Delivery {self.reference or self.id[:8]} [{self.status}]"
