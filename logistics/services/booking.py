"""
LOGISTICS App - Booking draft for FLEETLINE

Live price estimate while a Customer edits the booking form. Every
attribute change recomputes the estimate; submission freezes it.
"""

import logging
from decimal import Decimal
from typing import Optional

from core.exceptions import ValidationError
from core.serializers import validate_payload
from logistics.models import Location, PackageType, PricingSnapshot, SizeCluster
from logistics.serializers import BookingSerializer
from logistics.services.pricing import PricingEngine, pricing_engine
from logistics.utils import to_decimal

logger = logging.getLogger(__name__)


def _lenient(value) -> Decimal:
    try:
        amount = to_decimal(value)
    except ValueError:
        return Decimal('0')
    if amount is None or amount < 0:
        return Decimal('0')
    return amount


class BookingDraft:
    """
    Booking form state.

    The estimate is advisory: once submitted, the snapshot returned by the
    backend is authoritative and replaces it.
    """

    EDITABLE = (
        'weight', 'cluster', 'package_type', 'dimensions', 'description',
        'contact_number', 'preferred_date', 'preferred_time', 'special_instructions',
    )

    def __init__(self, engine: Optional[PricingEngine] = None):
        self.engine = engine or pricing_engine
        self.pickup: Optional[Location] = None
        self.drop: Optional[Location] = None
        self.weight = None
        self.cluster = SizeCluster.SMALL
        self.package_type = PackageType.STANDARD
        self.dimensions = ''
        self.description = ''
        self.distance: Decimal = Decimal('0')
        self.distance_overridden = False
        self.contact_number = ''
        self.preferred_date = ''
        self.preferred_time = ''
        self.special_instructions = ''
        self.frozen_snapshot: Optional[PricingSnapshot] = None
        self.estimate: PricingSnapshot = self._recalculate()

    @property
    def is_frozen(self) -> bool:
        return self.frozen_snapshot is not None

    def _ensure_editable(self):
        if self.is_frozen:
            raise ValidationError("Booking already submitted; its quoted price is frozen")

    def _recalculate(self) -> PricingSnapshot:
        # Blank, unparsable or negative fields count as zero while typing.
        cluster = self.cluster if self.cluster in SizeCluster.values else SizeCluster.SMALL
        self.estimate = self.engine.quote(_lenient(self.weight), _lenient(self.distance), cluster)
        return self.estimate

    def update(self, **changes) -> PricingSnapshot:
        """Apply form edits and return the refreshed estimate."""
        self._ensure_editable()
        for name, value in changes.items():
            if name not in self.EDITABLE:
                raise ValidationError(f"Unknown booking field: {name}")
            setattr(self, name, value)
        return self._recalculate()

    def set_locations(self, pickup: Optional[Location] = None, drop: Optional[Location] = None):
        """Map picks. The distance follows them unless it was entered by hand."""
        self._ensure_editable()
        if pickup is not None:
            self.pickup = pickup
        if drop is not None:
            self.drop = drop
        if not self.distance_overridden:
            self.distance = self.engine.estimate_distance(self.pickup, self.drop)
        return self._recalculate()

    def set_distance(self, distance) -> PricingSnapshot:
        self._ensure_editable()
        self.distance = distance
        self.distance_overridden = True
        return self._recalculate()

    def to_payload(self) -> dict:
        return {
            'pickupLocation': self.pickup.to_payload() if self.pickup else None,
            'dropLocation': self.drop.to_payload() if self.drop else None,
            'packageDetails': {
                'weight': self.weight,
                'dimensions': self.dimensions or '',
                'description': self.description or '',
                'packageType': str(self.package_type),
                'cluster': str(self.cluster),
            },
            'estimatedDistance': self.distance,
            'contactNumber': self.contact_number,
            'preferredDate': self.preferred_date or '',
            'preferredTime': self.preferred_time or '',
            'specialInstructions': self.special_instructions or '',
        }

    def validated_payload(self) -> dict:
        """
        Validate the draft for submission.

        Returns the JSON body for the booking endpoint.
        Raises ValidationError on missing locations, weight or distance.
        """
        data = validate_payload(BookingSerializer, self.to_payload())
        package = data['packageDetails']
        # Decimal is not JSON serializable; the backend expects numbers.
        package['weight'] = float(package['weight'])
        data['estimatedDistance'] = float(data['estimatedDistance'])
        return data

    def freeze(self) -> PricingSnapshot:
        """
        Lock the draft at submission.

        The quoted snapshot is recomputed once from the validated values
        and never changes afterwards.
        """
        if self.is_frozen:
            return self.frozen_snapshot
        data = validate_payload(BookingSerializer, self.to_payload())
        self.frozen_snapshot = self.engine.quote(
            data['packageDetails']['weight'],
            data['estimatedDistance'],
            data['packageDetails']['cluster'],
        )
        self.estimate = self.frozen_snapshot
        logger.info(f"[BOOKING] Quote frozen at {self.frozen_snapshot.total_price}")
        return self.frozen_snapshot
