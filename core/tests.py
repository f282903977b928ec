"""
FLEETLINE Core Tests
====================

Tests for:
1. Role gate (capability table)
2. Protected routes
3. Session bootstrap / teardown
4. In-flight guard
5. Error kinds
"""

from unittest.mock import MagicMock

from django.core.cache import cache
from django.test import SimpleTestCase

from core.exceptions import (
    ActionInProgress, AlreadyRated, Conflict, Forbidden, NetworkFailure,
    Unauthenticated, ValidationError,
)
from core.inflight import InFlightGuard, delivery_key, wallet_key
from core.models import Account, UserRole
from core.permissions import (
    CAPABILITIES, Action, RoleGate, can_access_route, home_route_for, resolve_route,
)
from core.session import CredentialStore, SessionContext, expire_on_unauthenticated


def make_session(role=None, account_id='acc-1'):
    """Session already resolved to `role` (anonymous when None)."""
    session = SessionContext(MagicMock(), credentials=CredentialStore(key='test-credential'))
    if role is not None:
        session.account = Account(id=account_id, role=role, name='Test')
        session.token = 'token'
    return session


class TestRoleGate(SimpleTestCase):
    """Tests for RoleGate.check and the capability table."""

    def setUp(self):
        self.gate = RoleGate()

    def test_customer_capabilities(self):
        self.assertEqual(
            CAPABILITIES[UserRole.CUSTOMER],
            {Action.BOOK, Action.CANCEL, Action.RATE, Action.ADD_FUNDS, Action.PAY},
        )

    def test_driver_capabilities(self):
        self.assertEqual(
            CAPABILITIES[UserRole.DRIVER],
            {Action.ACCEPT, Action.REJECT, Action.START, Action.COMPLETE, Action.WITHDRAW},
        )

    def test_admin_capabilities(self):
        self.assertEqual(
            CAPABILITIES[UserRole.ADMIN],
            {Action.APPROVE, Action.ASSIGN, Action.FORCE_CANCEL},
        )

    def test_allowed_action_passes(self):
        self.gate.check(make_session(UserRole.DRIVER), Action.COMPLETE)

    def test_customer_cannot_complete(self):
        with self.assertRaises(Forbidden):
            self.gate.check(make_session(UserRole.CUSTOMER), Action.COMPLETE)

    def test_driver_cannot_book(self):
        with self.assertRaises(Forbidden):
            self.gate.check(make_session(UserRole.DRIVER), Action.BOOK)

    def test_anonymous_is_always_forbidden(self):
        session = make_session()
        for action in Action:
            with self.assertRaises(Forbidden):
                self.gate.check(session, action)

    def test_forbidden_carries_action(self):
        with self.assertRaises(Forbidden) as ctx:
            self.gate.check(make_session(UserRole.ADMIN), Action.RATE)
        self.assertEqual(ctx.exception.as_dict()['action'], 'rate')
        self.assertFalse(ctx.exception.retryable)


class TestRoutes(SimpleTestCase):
    """Tests for the protected-route redirects."""

    def test_home_routes(self):
        self.assertEqual(home_route_for(UserRole.ADMIN), '/dashboard')
        self.assertEqual(home_route_for(UserRole.DRIVER), '/driver/dashboard')
        self.assertEqual(home_route_for(UserRole.CUSTOMER), '/customer/dashboard')
        self.assertEqual(home_route_for(None), '/login')

    def test_anonymous_redirected_to_login(self):
        self.assertEqual(resolve_route(make_session(), '/customer/book'), '/login')
        self.assertFalse(can_access_route(make_session(), '/customer/book'))

    def test_login_is_public(self):
        self.assertTrue(can_access_route(make_session(), '/login'))

    def test_wrong_role_sent_to_own_dashboard(self):
        session = make_session(UserRole.DRIVER)
        self.assertFalse(can_access_route(session, '/customer/wallet'))
        self.assertEqual(resolve_route(session, '/customer/wallet'), '/driver/dashboard')

    def test_parametrized_route(self):
        session = make_session(UserRole.DRIVER)
        path = '/driver/tracking/d1/v1/u1'
        self.assertTrue(can_access_route(session, path))
        self.assertEqual(resolve_route(session, path), path)

    def test_shared_route_open_to_any_role(self):
        self.assertTrue(can_access_route(make_session(UserRole.CUSTOMER), '/track/abc'))

    def test_root_redirects_home(self):
        self.assertEqual(resolve_route(make_session(UserRole.ADMIN), '/'), '/dashboard')


class TestSessionContext(SimpleTestCase):
    """Tests for SessionContext bootstrap / teardown."""

    def setUp(self):
        cache.clear()
        self.backend = MagicMock()
        self.credentials = CredentialStore(key='test-credential', ttl=60)
        self.session = SessionContext(self.backend, credentials=self.credentials)

    def test_no_credential_is_anonymous(self):
        self.assertIsNone(self.session.bootstrap())
        self.assertFalse(self.session.is_authenticated)
        self.backend.get_profile.assert_not_called()

    def test_bootstrap_fetches_profile_once(self):
        self.credentials.set('tok-123')
        self.backend.get_profile.return_value = {
            'success': True,
            'user': {'_id': 'u1', 'name': 'Asha', 'role': 'Driver', 'vehicleNumber': 'KA01'},
        }

        account = self.session.bootstrap()

        self.backend.get_profile.assert_called_once_with('tok-123')
        self.backend.set_token.assert_called_with('tok-123')
        self.assertEqual(account.role, UserRole.DRIVER)
        self.assertEqual(account.extra, {'vehicleNumber': 'KA01'})
        self.assertEqual(self.session.role, UserRole.DRIVER)

    def test_failed_profile_clears_credential(self):
        self.credentials.set('expired')
        self.backend.get_profile.side_effect = Unauthenticated('Token expired', status_code=401)

        self.assertIsNone(self.session.bootstrap())
        self.assertIsNone(self.credentials.get())
        self.assertFalse(self.session.is_authenticated)

    def test_unknown_role_falls_back_to_anonymous(self):
        self.credentials.set('tok')
        self.backend.get_profile.return_value = {'_id': 'u1', 'role': 'Superuser'}
        self.assertIsNone(self.session.bootstrap())
        self.assertIsNone(self.credentials.get())

    def test_login_stores_credential(self):
        self.backend.get_profile.return_value = {'_id': 'u1', 'role': 'Customer', 'name': 'Ravi'}
        account = self.session.login('fresh-token')
        self.assertEqual(self.credentials.get(), 'fresh-token')
        self.assertEqual(account.name, 'Ravi')

    def test_refresh_profile(self):
        self.backend.get_profile.return_value = {'_id': 'u1', 'role': 'Customer', 'name': 'Ravi'}
        self.session.login('tok')
        self.backend.get_profile.return_value = {'_id': 'u1', 'role': 'Customer', 'name': 'Ravi K'}
        self.assertEqual(self.session.refresh_profile().name, 'Ravi K')

    def test_teardown_clears_credential_and_account(self):
        self.credentials.set('tok')
        self.backend.get_profile.return_value = {'_id': 'u1', 'role': 'Customer'}
        self.session.bootstrap()

        self.session.teardown()

        self.assertIsNone(self.credentials.get())
        self.assertIsNone(self.session.account)
        self.backend.set_token.assert_called_with(None)

    def test_context_manager_keeps_credential(self):
        self.credentials.set('tok')
        self.backend.get_profile.return_value = {'_id': 'u1', 'role': 'Admin'}
        with self.session as session:
            self.assertEqual(session.role, UserRole.ADMIN)
        self.assertIsNone(self.session.account)
        self.assertEqual(self.credentials.get(), 'tok')

    def test_unauthenticated_tears_down(self):
        session = make_session(UserRole.CUSTOMER)
        with self.assertRaises(Unauthenticated):
            with expire_on_unauthenticated(session):
                raise Unauthenticated('expired')
        self.assertFalse(session.is_authenticated)

    def test_other_errors_keep_session(self):
        session = make_session(UserRole.CUSTOMER)
        with self.assertRaises(NetworkFailure):
            with expire_on_unauthenticated(session):
                raise NetworkFailure('down')
        self.assertTrue(session.is_authenticated)


class TestInFlightGuard(SimpleTestCase):
    """Tests for the single outstanding request rule."""

    def test_second_action_on_same_key_refused(self):
        guard = InFlightGuard()
        with guard.hold(delivery_key('d1')):
            with self.assertRaises(ActionInProgress):
                with guard.hold(delivery_key('d1')):
                    pass

    def test_different_entities_are_independent(self):
        guard = InFlightGuard()
        with guard.hold(delivery_key('d1')):
            with guard.hold(delivery_key('d2'), wallet_key('u1')):
                self.assertTrue(guard.is_busy(wallet_key('u1')))

    def test_key_released_after_failure(self):
        guard = InFlightGuard()
        with self.assertRaises(NetworkFailure):
            with guard.hold(delivery_key('d1')):
                raise NetworkFailure('timeout')
        self.assertFalse(guard.is_busy(delivery_key('d1')))

    def test_refused_hold_does_not_release_other_holder(self):
        guard = InFlightGuard()
        with guard.hold(delivery_key('d1')):
            with self.assertRaises(ActionInProgress):
                with guard.hold(wallet_key('u1'), delivery_key('d1')):
                    pass
            self.assertTrue(guard.is_busy(delivery_key('d1')))
            self.assertFalse(guard.is_busy(wallet_key('u1')))


class TestErrorKinds(SimpleTestCase):

    def test_retryable_flags(self):
        self.assertTrue(NetworkFailure().retryable)
        self.assertTrue(Conflict().retryable)
        self.assertFalse(AlreadyRated().retryable)
        self.assertFalse(Forbidden().retryable)

    def test_validation_error_is_value_error(self):
        error = ValidationError('bad', errors={'weight': ['Must be > 0']})
        self.assertIsInstance(error, ValueError)
        self.assertEqual(error.as_dict()['errors'], {'weight': ['Must be > 0']})

    def test_unauthenticated_is_forbidden(self):
        self.assertIsInstance(Unauthenticated(), Forbidden)
