"""
Finance App Serializers - Wallet actions
"""

from decimal import Decimal

from rest_framework import serializers

from .models import PaymentMethod


class AmountField(serializers.DecimalField):
    """Strictly positive currency amount."""

    def __init__(self, **kwargs):
        kwargs.setdefault('max_digits', 12)
        kwargs.setdefault('decimal_places', 2)
        super().__init__(**kwargs)

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        if value <= Decimal('0'):
            raise serializers.ValidationError("Please enter a valid amount")
        return value


class AddMoneySerializer(serializers.Serializer):
    """Serializer for a Customer wallet top-up."""

    amount = AmountField()
    paymentMethod = serializers.ChoiceField(choices=PaymentMethod.choices, default=PaymentMethod.CARD)


class WithdrawSerializer(serializers.Serializer):
    """Serializer for a Driver withdrawal request."""

    amount = AmountField()
