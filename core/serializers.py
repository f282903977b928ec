"""
Core App Serializers - Shared validation helpers
"""

from core.exceptions import ValidationError


def _flatten(detail) -> str:
    if isinstance(detail, dict):
        return '; '.join(f"{key}: {_flatten(value)}" for key, value in detail.items())
    if isinstance(detail, (list, tuple)):
        return ', '.join(_flatten(item) for item in detail)
    return str(detail)


def validate_payload(serializer_class, data, **kwargs) -> dict:
    """
    Run a DRF serializer over user input.

    Returns validated_data, or raises core.exceptions.ValidationError
    carrying the serializer's field errors.
    """
    serializer = serializer_class(data=data, **kwargs)
    if not serializer.is_valid():
        raise ValidationError(_flatten(serializer.errors), errors=serializer.errors)
    return serializer.validated_data
