"""
Rating Service for FLEETLINE

Handles rating validation, the one-time rate gate and display helpers.
"""

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from core.exceptions import AlreadyRated, InvalidTransition
from core.permissions import Action
from core.serializers import validate_payload
from logistics.models import Delivery, DeliveryStatus, Rating
from logistics.serializers import RatingSerializer

logger = logging.getLogger(__name__)


class RatingService:
    """
    Service for handling delivery ratings.

    A delivery can be rated once, and only after it was delivered. The
    overall stars are whatever the customer picked; no composite is
    computed from the category scores.
    """

    @staticmethod
    def build_rating(data: dict) -> Rating:
        """
        Validate raw rating input.

        Expected shape:
            {"stars": 4,
             "categories": {"punctuality": 5, "professionalism": 4,
                            "vehicleCondition": 3, "communication": 4},
             "feedback": "...", "tags": ["On Time"]}

        Raises:
            ValidationError: missing score or score outside [1, 5]
        """
        validated = validate_payload(RatingSerializer, data)
        categories = validated['categories']
        return Rating(
            stars=validated['stars'],
            punctuality=categories['punctuality'],
            professionalism=categories['professionalism'],
            vehicle_condition=categories['vehicleCondition'],
            communication=categories['communication'],
            feedback=validated['feedback'].strip(),
            tags=tuple(validated['tags']),
        )

    @staticmethod
    def check_can_rate(delivery: Delivery) -> None:
        """
        Precondition for the rate action.

        Raises:
            InvalidTransition: delivery is not Delivered
            AlreadyRated: a rating is already attached
        """
        if delivery.status != DeliveryStatus.DELIVERED:
            logger.warning(f"Cannot rate undelivered delivery {delivery.id}")
            raise InvalidTransition(
                delivery.status, Action.RATE,
                f"Only delivered deliveries can be rated ({delivery.id} is {delivery.status})",
            )
        if delivery.rating is not None:
            logger.info(f"Rating already exists for delivery {delivery.id}")
            raise AlreadyRated(f"Delivery {delivery.id} has already been rated")

    @staticmethod
    def submit_rating(delivery: Delivery, rating: Rating) -> Delivery:
        """
        Attach a rating to a local delivery record.

        Returns a new Delivery carrying the rating; the record passed in is
        not modified, and nothing is modified when a precondition fails.
        """
        RatingService.check_can_rate(delivery)
        rated = replace(delivery, rating=rating)
        logger.info(f"Rating attached: {delivery.id} → {rating.stars}⭐")
        return rated

    @staticmethod
    def category_average(rating: Rating) -> Optional[Decimal]:
        """
        Mean of the category scores, for display only.

        Never used to derive `stars`. None when no category is known.
        """
        scores = [score for score in rating.categories.values() if score is not None]
        if not scores:
            return None
        return Decimal(sum(scores)) / Decimal(len(scores))
