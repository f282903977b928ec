"""
CORE App - Account records for FLEETLINE

Handles: Roles (Customers, Drivers, Admins) and the mirrored account profile
returned by the identity endpoint. Accounts are owned by the backend; nothing
here is persisted locally.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from django.db import models


class UserRole(models.TextChoices):
    """User role enumeration."""
    ADMIN = 'Admin', 'Administrator'
    CUSTOMER = 'Customer', 'Customer'
    DRIVER = 'Driver', 'Driver'


@dataclass(frozen=True)
class Account:
    """
    Profile of the authenticated user.

    Unknown profile keys are kept in `extra` so that a profile round-trips
    without losing data the client does not model.
    """

    id: str
    role: UserRole
    name: str = ''
    email: Optional[str] = None
    phone: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    KNOWN_KEYS = ('_id', 'id', 'name', 'role', 'email', 'phone')

    @classmethod
    def from_payload(cls, payload: dict) -> 'Account':
        from core.exceptions import ValidationError

        if isinstance(payload.get('user'), dict):
            payload = payload['user']

        account_id = payload.get('_id') or payload.get('id')
        if not account_id:
            raise ValidationError("Profile payload has no account id")

        try:
            role = UserRole(payload.get('role'))
        except ValueError:
            raise ValidationError(f"Unknown role: {payload.get('role')!r}")

        return cls(
            id=str(account_id),
            role=role,
            name=payload.get('name') or '',
            email=payload.get('email'),
            phone=payload.get('phone'),
            extra={k: v for k, v in payload.items() if k not in cls.KNOWN_KEYS},
        )

    def __str__(self):
        return f"{self.name or self.id} ({self.role})"
