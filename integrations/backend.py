"""
Integrations App - Remote delivery/wallet backend client

Thin HTTP adapter over the backend REST API. The backend owns all
persistent state and enforces the real rules; this client only maps its
answers and failures onto FLEETLINE records and error kinds.
"""

import logging
from typing import Any, Dict, List, Optional

import requests
from django.conf import settings
from tenacity import (
    Retrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from core.exceptions import (
    Conflict, Forbidden, NetworkFailure, Unauthenticated, ValidationError,
)
from core.models import UserRole
from logistics.models import Delivery

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    """Transport errors and 5xx are worth retrying for reads."""
    return isinstance(exc, NetworkFailure) and (exc.status_code is None or exc.status_code >= 500)


class BackendClient:
    """
    Backend REST client.

    Reads (GET) are retried with exponential backoff on transient failures.
    Writes are sent exactly once: retrying a debit or a status change is
    left to the user.
    """

    WALLET_PATHS = {
        UserRole.CUSTOMER: '/wallet/customer/balance',
        UserRole.DRIVER: '/wallet/driver/balance',
    }

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        read_retries: Optional[int] = None,
        http: Optional[requests.Session] = None,
        retry_wait=None,
    ):
        self.base_url = (base_url or settings.BACKEND_BASE_URL).rstrip('/')
        self.timeout = timeout or settings.BACKEND_TIMEOUT
        self.read_retries = read_retries or settings.BACKEND_READ_RETRIES
        self.http = http or requests.Session()
        self.http.headers.update({'Content-Type': 'application/json'})
        self.retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=5)
        self.token: Optional[str] = None

    def set_token(self, token: Optional[str]) -> None:
        self.token = token

    # =============================================
    # Transport
    # =============================================

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        token = token or self.token
        return {'Authorization': f"Bearer {token}"} if token else {}

    @staticmethod
    def _error_message(response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return data.get('message') or data.get('error') or f"HTTP {response.status_code}"
        return f"HTTP {response.status_code}"

    def _raise_for_status(self, method: str, path: str, response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return

        message = self._error_message(response)
        logger.warning(f"[BACKEND] {method} {path} failed: {status} - {message}")

        if status == 401:
            raise Unauthenticated(message, status_code=status)
        if status == 403:
            raise Forbidden(message, status_code=status)
        if status in (400, 422):
            raise ValidationError(message)
        if status == 409:
            raise Conflict(message, status_code=status)
        raise NetworkFailure(message, status_code=status)

    def _send(self, method: str, path: str, json: Optional[dict] = None,
              token: Optional[str] = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(
                method, url, json=json, headers=self._headers(token), timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"[BACKEND] {method} {path} request failed: {e}")
            raise NetworkFailure(str(e))

        self._raise_for_status(method, path, response)

        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError:
            raise NetworkFailure(f"Invalid JSON from {method} {path}", status_code=response.status_code)

        # {"success": false, "message": ...} with a 2xx status is still a refusal.
        if isinstance(data, dict) and data.get('success') is False:
            message = data.get('message') or 'Operation refused by backend'
            logger.warning(f"[BACKEND] {method} {path} refused: {message}")
            raise Conflict(message)
        return data

    def _get(self, path: str, token: Optional[str] = None) -> Any:
        retrying = Retrying(
            stop=stop_after_attempt(self.read_retries),
            wait=self.retry_wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        return retrying(self._send, 'GET', path, token=token)

    def _put(self, path: str, json: Optional[dict] = None) -> Any:
        return self._send('PUT', path, json=json)

    def _post(self, path: str, json: Optional[dict] = None) -> Any:
        return self._send('POST', path, json=json)

    @staticmethod
    def _delivery(data) -> Delivery:
        return Delivery.from_payload(data)

    @staticmethod
    def _delivery_list(data) -> List[Delivery]:
        if isinstance(data, dict):
            data = data.get('deliveries') or data.get('data') or []
        return [Delivery.from_payload(item) for item in data]

    # =============================================
    # Identity
    # =============================================

    def get_profile(self, token: str) -> dict:
        """GET /auth/profile with an explicit credential (session bootstrap)."""
        return self._get('/auth/profile', token=token)

    # =============================================
    # Deliveries
    # =============================================

    def book(self, payload: dict) -> Delivery:
        """Create a booking. The returned pricing snapshot is authoritative."""
        return self._delivery(self._post('/deliveries/customer/book', payload))

    def get_delivery(self, delivery_id: str) -> Delivery:
        return self._delivery(self._get(f'/deliveries/{delivery_id}'))

    def list_deliveries(self) -> List[Delivery]:
        return self._delivery_list(self._get('/deliveries'))

    def my_bookings(self) -> List[Delivery]:
        return self._delivery_list(self._get('/deliveries/customer/my-bookings'))

    def assigned_deliveries(self) -> List[Delivery]:
        return self._delivery_list(self._get('/deliveries/driver/assigned'))

    def approve(self, delivery_id: str) -> Delivery:
        return self._delivery(self._put(f'/deliveries/{delivery_id}/approve'))

    def assign(self, delivery_id: str, driver_id: str, vehicle_id: str) -> Delivery:
        return self._delivery(self._put(
            f'/deliveries/{delivery_id}/assign',
            {'driverId': driver_id, 'vehicleId': vehicle_id},
        ))

    def accept(self, delivery_id: str) -> Delivery:
        return self._delivery(self._put(f'/deliveries/{delivery_id}/accept'))

    def reject(self, delivery_id: str, reason: str) -> Delivery:
        return self._delivery(self._put(f'/deliveries/{delivery_id}/reject', {'reason': reason}))

    def start(self, delivery_id: str) -> Delivery:
        return self._delivery(self._put(f'/deliveries/{delivery_id}/start'))

    def complete(self, delivery_id: str) -> Delivery:
        return self._delivery(self._put(f'/deliveries/{delivery_id}/complete'))

    def cancel(self, delivery_id: str, reason: str) -> Delivery:
        return self._delivery(self._put(
            f'/deliveries/{delivery_id}/cancel-advanced', {'reason': reason}
        ))

    def rate(self, delivery_id: str, payload: dict) -> dict:
        """Feedback is stored apart from the delivery; the answer is the feedback record."""
        return self._post('/feedback/submit', {'deliveryId': delivery_id, **payload})

    # =============================================
    # Wallet
    # =============================================

    def get_wallet(self, role) -> dict:
        """{balance, totalEarnings, transactions[]} for the session's own wallet."""
        path = self.WALLET_PATHS.get(role)
        if path is None:
            raise Forbidden(f"Role '{role}' has no wallet")
        return self._get(path)

    def add_money(self, amount, payment_method: str) -> dict:
        return self._post('/wallet/customer/add-money', {
            'amount': float(amount),
            'paymentMethod': payment_method,
        })

    def pay_delivery(self, delivery_id: str) -> dict:
        return self._post('/wallet/customer/pay-delivery', {'deliveryId': delivery_id})

    def withdraw(self, amount) -> dict:
        return self._post('/users/wallet/withdraw', {'amount': float(amount)})
