"""
Logistics App Serializers - Booking, lifecycle actions and ratings

Input validation for user-submitted payloads before anything is sent to
the backend.
"""

from decimal import Decimal

from rest_framework import serializers

from .models import FeedbackTag, PackageType, SizeCluster

RATING_SCORE = dict(min_value=1, max_value=5)


class LocationSerializer(serializers.Serializer):
    """A picked map location."""

    address = serializers.CharField(max_length=255)
    lat = serializers.FloatField(min_value=-90, max_value=90)
    lng = serializers.FloatField(min_value=-180, max_value=180)


class PackageDetailsSerializer(serializers.Serializer):
    weight = serializers.DecimalField(max_digits=None, decimal_places=None)
    dimensions = serializers.CharField(required=False, allow_blank=True, default='')
    description = serializers.CharField(required=False, allow_blank=True, default='')
    packageType = serializers.ChoiceField(choices=PackageType.choices, default=PackageType.STANDARD)
    cluster = serializers.ChoiceField(choices=SizeCluster.choices, default=SizeCluster.SMALL)

    def validate_weight(self, value):
        if value <= 0:
            raise serializers.ValidationError("Please enter valid package weight")
        return value


class BookingSerializer(serializers.Serializer):
    """Serializer for a Customer booking submission."""

    pickupLocation = LocationSerializer()
    dropLocation = LocationSerializer()
    packageDetails = PackageDetailsSerializer()
    estimatedDistance = serializers.DecimalField(max_digits=None, decimal_places=None)
    contactNumber = serializers.CharField(max_length=20)
    preferredDate = serializers.CharField(required=False, allow_blank=True, default='')
    preferredTime = serializers.CharField(required=False, allow_blank=True, default='')
    specialInstructions = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_estimatedDistance(self, value):
        if value <= Decimal('0'):
            raise serializers.ValidationError("Please enter valid estimated distance")
        return value


class ReasonSerializer(serializers.Serializer):
    """Cancellation / rejection reason."""

    reason = serializers.CharField(max_length=500, trim_whitespace=True)


class AssignmentSerializer(serializers.Serializer):
    """Admin assignment of a driver and a vehicle."""

    driverId = serializers.CharField()
    vehicleId = serializers.CharField()


class RatingCategoriesSerializer(serializers.Serializer):
    punctuality = serializers.IntegerField(**RATING_SCORE)
    professionalism = serializers.IntegerField(**RATING_SCORE)
    vehicleCondition = serializers.IntegerField(**RATING_SCORE)
    communication = serializers.IntegerField(**RATING_SCORE)


class RatingSerializer(serializers.Serializer):
    """
    Post-delivery rating.

    Every score must already be an integer in [1, 5]; out-of-range input is
    rejected, never clamped.
    """

    stars = serializers.IntegerField(**RATING_SCORE)
    categories = RatingCategoriesSerializer()
    feedback = serializers.CharField(required=False, allow_blank=True, default='')
    tags = serializers.ListField(
        child=serializers.ChoiceField(choices=FeedbackTag.choices),
        required=False,
        default=list,
    )

    def validate_tags(self, value):
        # Keep first occurrence order, drop duplicates.
        return list(dict.fromkeys(value))
