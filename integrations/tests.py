"""
FLEETLINE Integrations Tests
============================

Tests for the backend REST client:
1. Request shape (URL, method, bearer header, body)
2. Response unwrapping
3. Error mapping
4. Read retries (GET only)
"""

from decimal import Decimal
from unittest.mock import MagicMock

import requests
from django.test import SimpleTestCase, override_settings
from tenacity import wait_none

from core.exceptions import (
    Conflict, Forbidden, NetworkFailure, Unauthenticated, ValidationError,
)
from core.models import UserRole
from integrations.backend import BackendClient
from logistics.models import DeliveryStatus
from logistics.tests import make_delivery_payload


def make_response(status_code=200, data=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = b'{}' if data is not None else b''
    response.json.return_value = data
    response.text = ''
    return response


@override_settings(BACKEND_BASE_URL='https://backend.test/api/', BACKEND_TIMEOUT=5)
class TestBackendClient(SimpleTestCase):
    """Tests for BackendClient with a mocked requests session."""

    def setUp(self):
        self.http = MagicMock()
        self.http.headers = {}
        self.client = BackendClient(http=self.http, read_retries=3, retry_wait=wait_none())
        self.client.set_token('tok-1')

    def respond(self, *responses):
        self.http.request.side_effect = list(responses)

    # ==========================================
    # Request shape
    # ==========================================

    def test_put_action_request(self):
        self.respond(make_response(200, {
            'success': True, 'delivery': make_delivery_payload(status='Rejected'),
        }))

        delivery = self.client.reject('d1', 'vehicle breakdown')

        self.http.request.assert_called_once_with(
            'PUT', 'https://backend.test/api/deliveries/d1/reject',
            json={'reason': 'vehicle breakdown'},
            headers={'Authorization': 'Bearer tok-1'},
            timeout=5,
        )
        self.assertEqual(delivery.status, DeliveryStatus.REJECTED)

    def test_cancel_uses_advanced_endpoint(self):
        self.respond(make_response(200, make_delivery_payload(status='Cancelled')))
        self.client.cancel('d1', 'changed mind')
        method, url = self.http.request.call_args[0]
        self.assertEqual((method, url), ('PUT', 'https://backend.test/api/deliveries/d1/cancel-advanced'))

    def test_profile_uses_explicit_token(self):
        self.client.set_token(None)
        self.respond(make_response(200, {'user': {'_id': 'u1', 'role': 'Admin'}}))
        self.client.get_profile('stored-token')
        self.assertEqual(
            self.http.request.call_args[1]['headers'],
            {'Authorization': 'Bearer stored-token'},
        )

    def test_no_token_no_header(self):
        self.client.set_token(None)
        self.respond(make_response(200, []))
        self.client.list_deliveries()
        self.assertEqual(self.http.request.call_args[1]['headers'], {})

    def test_wallet_path_per_role(self):
        self.respond(make_response(200, {'balance': 10}), make_response(200, {'balance': 20}))
        self.client.get_wallet(UserRole.CUSTOMER)
        self.client.get_wallet(UserRole.DRIVER)
        urls = [call[0][1] for call in self.http.request.call_args_list]
        self.assertEqual(urls, [
            'https://backend.test/api/wallet/customer/balance',
            'https://backend.test/api/wallet/driver/balance',
        ])

    def test_admin_has_no_wallet(self):
        with self.assertRaises(Forbidden):
            self.client.get_wallet(UserRole.ADMIN)
        self.http.request.assert_not_called()

    def test_amounts_sent_as_numbers(self):
        self.respond(make_response(200, {'success': True}))
        self.client.withdraw(Decimal('60.50'))
        self.assertEqual(self.http.request.call_args[1]['json'], {'amount': 60.5})

    # ==========================================
    # Unwrapping
    # ==========================================

    def test_list_unwrapped(self):
        self.respond(make_response(200, {
            'success': True,
            'deliveries': [make_delivery_payload(), make_delivery_payload(_id='d2')],
        }))
        deliveries = self.client.my_bookings()
        self.assertEqual([d.id for d in deliveries], ['d1', 'd2'])

    def test_bare_list(self):
        self.respond(make_response(200, [make_delivery_payload()]))
        self.assertEqual(len(self.client.assigned_deliveries()), 1)

    # ==========================================
    # Error mapping
    # ==========================================

    def test_status_mapping(self):
        cases = [
            (401, Unauthenticated), (403, Forbidden), (400, ValidationError),
            (422, ValidationError), (409, Conflict), (404, NetworkFailure),
        ]
        for status, error in cases:
            self.respond(make_response(status, {'message': 'nope'}))
            with self.assertRaises(error):
                self.client.accept('d1')

    def test_success_false_is_conflict(self):
        self.respond(make_response(200, {'success': False, 'message': 'Delivery already accepted'}))
        with self.assertRaises(Conflict) as ctx:
            self.client.accept('d1')
        self.assertEqual(ctx.exception.message, 'Delivery already accepted')

    def test_transport_error_is_network_failure(self):
        self.respond(requests.ConnectionError('refused'))
        with self.assertRaises(NetworkFailure) as ctx:
            self.client.complete('d1')
        self.assertTrue(ctx.exception.retryable)

    def test_malformed_json(self):
        response = make_response(200, {})
        response.json.side_effect = ValueError('no json')
        self.respond(response)
        with self.assertRaises(NetworkFailure):
            self.client.start('d1')

    # ==========================================
    # Retries
    # ==========================================

    def test_get_retried_on_server_error(self):
        self.respond(
            make_response(502, {'message': 'bad gateway'}),
            requests.Timeout('slow'),
            make_response(200, make_delivery_payload()),
        )
        delivery = self.client.get_delivery('d1')
        self.assertEqual(delivery.id, 'd1')
        self.assertEqual(self.http.request.call_count, 3)

    def test_get_gives_up_after_attempts(self):
        self.respond(*[make_response(503, {}) for _ in range(3)])
        with self.assertRaises(NetworkFailure) as ctx:
            self.client.get_delivery('d1')
        self.assertEqual(ctx.exception.status_code, 503)
        self.assertEqual(self.http.request.call_count, 3)

    def test_get_not_retried_on_client_error(self):
        self.respond(make_response(403, {'message': 'denied'}))
        with self.assertRaises(Forbidden):
            self.client.get_delivery('d1')
        self.assertEqual(self.http.request.call_count, 1)

    def test_mutation_never_retried(self):
        self.respond(make_response(503, {}), make_response(200, make_delivery_payload()))
        with self.assertRaises(NetworkFailure):
            self.client.approve('d1')
        self.assertEqual(self.http.request.call_count, 1)
