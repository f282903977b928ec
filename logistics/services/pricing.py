"""
Pricing Engine for FLEETLINE

Calculates delivery price estimates from package and distance attributes.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional

from django.conf import settings

from core.exceptions import ValidationError
from logistics.models import Location, PricingSnapshot, SizeCluster
from logistics.utils import haversine_distance, to_decimal

logger = logging.getLogger(__name__)


class PricingEngine:
    """
    Price calculation engine.

    Formula: Price = BasePrice + Weight * WeightRate + Distance * DistanceRate + ClusterCharge

    Pure and deterministic: identical inputs always give an identical
    snapshot. Everything is Decimal and nothing is rounded here; rounding
    happens when the snapshot is displayed.
    """

    def __init__(self):
        self.base_price = Decimal(str(settings.PRICING_BASE_PRICE))
        self.weight_rate = Decimal(str(settings.PRICING_WEIGHT_RATE))
        self.distance_rate = Decimal(str(settings.PRICING_DISTANCE_RATE))
        self.cluster_charges: Dict[str, Decimal] = {
            cluster: Decimal(str(charge))
            for cluster, charge in settings.PRICING_CLUSTER_CHARGES.items()
        }

    def cluster_charge(self, cluster) -> Decimal:
        """
        Flat surcharge for a size cluster.

        Small -> 0, Medium -> 50, Large -> 100, Extra Large -> 200
        """
        try:
            return self.cluster_charges[SizeCluster(cluster)]
        except (ValueError, KeyError):
            raise ValidationError(
                f"Unknown size cluster: {cluster!r}",
                errors={'cluster': [f"Must be one of {', '.join(SizeCluster.values)}"]},
            )

    def _non_negative(self, name: str, value) -> Decimal:
        try:
            amount = to_decimal(value)
        except ValueError:
            raise ValidationError(f"{name} must be a number", errors={name: ['Not a number']})
        if amount is None:
            raise ValidationError(f"{name} is required", errors={name: ['Required']})
        if amount < 0:
            raise ValidationError(f"{name} cannot be negative", errors={name: ['Must be >= 0']})
        return amount

    def quote(self, weight, distance, cluster=SizeCluster.SMALL) -> PricingSnapshot:
        """
        Calculate a price breakdown.

        Args:
            weight: Package weight in kg (>= 0)
            distance: Estimated distance in km (>= 0)
            cluster: SizeCluster value

        Returns:
            PricingSnapshot

        Raises:
            ValidationError: negative/missing weight or distance, unknown cluster
        """
        weight = self._non_negative('weight', weight)
        distance = self._non_negative('distance', distance)

        return PricingSnapshot(
            base_price=self.base_price,
            weight_charge=weight * self.weight_rate,
            distance_charge=distance * self.distance_rate,
            cluster_charge=self.cluster_charge(cluster),
        )

    def estimate_distance(self, pickup: Optional[Location], drop: Optional[Location]) -> Decimal:
        """
        Straight-line distance between the picked locations.

        Returns 0 until both locations carry coordinates, like the booking
        form does before both map picks are made.
        """
        if not pickup or not drop or not pickup.has_coordinates or not drop.has_coordinates:
            return Decimal('0')
        distance = haversine_distance(
            pickup.latitude, pickup.longitude, drop.latitude, drop.longitude
        )
        logger.debug(f"[PRICING] Estimated distance {distance} km")
        return Decimal(str(distance))


# Singleton instance
pricing_engine = PricingEngine()
