"""
FLEETLINE Finance Tests
=======================

Tests for:
1. WalletService (credit, debit, refund, atomicity)
2. Ledger continuity
3. Wallet payload mirroring
4. Ledger side effects of lifecycle events
5. Wallet actions (add funds, pay, withdraw)
"""

from decimal import Decimal
from unittest.mock import MagicMock

from django.test import SimpleTestCase

from core.exceptions import (
    ActionInProgress, Forbidden, InsufficientFunds, InvalidTransition,
    LedgerIntegrityError, Unauthenticated, ValidationError,
)
from core.inflight import InFlightGuard, wallet_key
from core.models import UserRole
from core.tests import make_session
from finance.models import Transaction, TransactionType, Wallet, WalletService
from finance.services import (
    WalletActions, WalletRegistry, apply_lifecycle_event,
    record_delivery_payment, refund_cancelled_delivery, settle_delivery_completion,
)
from logistics.tests import make_delivery


def wallet_payload(balance, total_earnings=0, transactions=()):
    return {'balance': balance, 'totalEarnings': total_earnings, 'transactions': list(transactions)}


class TestWalletService(SimpleTestCase):
    """Tests for WalletService credit/debit operations."""

    def setUp(self):
        self.driver_wallet = Wallet(account_ref='drv-1', owner_role=UserRole.DRIVER)
        self.customer_wallet = Wallet(
            account_ref='cust-1', owner_role=UserRole.CUSTOMER, balance=Decimal('500.00'),
        )

    # ==========================================
    # Credit Operations
    # ==========================================

    def test_credit_increases_balance(self):
        tx = WalletService.credit(self.driver_wallet, Decimal('184.00'), 'Earnings', 'd1')
        self.assertEqual(self.driver_wallet.balance, Decimal('184.00'))
        self.assertEqual(tx.balance_after, Decimal('184.00'))
        self.assertEqual(tx.type, TransactionType.CREDIT)
        self.assertEqual(tx.delivery_ref, 'd1')
        self.assertIsNotNone(tx.timestamp)

    def test_driver_credit_increments_total_earnings(self):
        WalletService.credit(self.driver_wallet, Decimal('100'))
        WalletService.credit(self.driver_wallet, Decimal('50'))
        self.assertEqual(self.driver_wallet.total_earnings, Decimal('150'))

    def test_customer_credit_leaves_total_earnings(self):
        WalletService.credit(self.customer_wallet, Decimal('100'))
        self.assertEqual(self.customer_wallet.total_earnings, Decimal('0'))

    def test_refund_never_counts_as_earnings(self):
        WalletService.refund(self.driver_wallet, Decimal('100'))
        self.assertEqual(self.driver_wallet.balance, Decimal('100'))
        self.assertEqual(self.driver_wallet.total_earnings, Decimal('0'))

    def test_non_positive_amount_rejected(self):
        for amount in (Decimal('0'), Decimal('-5'), None, 'abc'):
            with self.assertRaises(ValidationError):
                WalletService.credit(self.driver_wallet, amount)
        self.assertEqual(self.driver_wallet.transactions, [])

    # ==========================================
    # Debit Operations
    # ==========================================

    def test_debit_decreases_balance(self):
        tx = WalletService.debit(self.customer_wallet, Decimal('230'), 'Payment', 'd1')
        self.assertEqual(WalletService.get_balance(self.customer_wallet), Decimal('270.00'))
        self.assertEqual(tx.signed_amount, Decimal('-230'))

    def test_debit_over_balance_rejected_untouched(self):
        with self.assertRaises(InsufficientFunds):
            WalletService.debit(self.customer_wallet, Decimal('500.01'))
        self.assertEqual(self.customer_wallet.balance, Decimal('500.00'))
        self.assertEqual(self.customer_wallet.transactions, [])

    def test_debit_exact_balance_allowed(self):
        WalletService.debit(self.customer_wallet, Decimal('500.00'))
        self.assertEqual(self.customer_wallet.balance, Decimal('0'))

    def test_mirrored_debit_may_go_negative(self):
        WalletService.debit(self.customer_wallet, Decimal('600'), allow_negative=True)
        self.assertEqual(self.customer_wallet.balance, Decimal('-100.00'))

    def test_list_transactions_most_recent_first(self):
        first = WalletService.credit(self.customer_wallet, Decimal('10'))
        second = WalletService.debit(self.customer_wallet, Decimal('5'))
        self.assertEqual(WalletService.list_transactions(self.customer_wallet), [second, first])
        self.assertEqual(self.customer_wallet.transactions, [first, second])

    def test_withdrawn_total(self):
        WalletService.credit(self.driver_wallet, Decimal('300'))
        WalletService.debit(self.driver_wallet, Decimal('120'))
        self.assertEqual(WalletService.withdrawn_total(self.driver_wallet), Decimal('120'))
        self.assertEqual(WalletService.withdrawn_total(self.customer_wallet), Decimal('0'))


class TestLedgerContinuity(SimpleTestCase):
    """Tests for balanceAfter continuity."""

    def test_sequence_keeps_continuity(self):
        wallet = Wallet(account_ref='cust-1', owner_role=UserRole.CUSTOMER)
        operations = [
            (WalletService.credit, '1000'), (WalletService.debit, '230'),
            (WalletService.refund, '230'), (WalletService.debit, '415.50'),
            (WalletService.credit, '0.25'),
        ]
        for operation, amount in operations:
            operation(wallet, Decimal(amount))

        WalletService.verify_continuity(wallet)
        self.assertEqual(wallet.balance, sum(tx.signed_amount for tx in wallet.transactions))
        self.assertEqual(wallet.transactions[-1].balance_after, wallet.balance)

    def test_break_detected(self):
        wallet = Wallet.from_payload('cust-1', UserRole.CUSTOMER, wallet_payload(150, transactions=[
            {'type': 'Credit', 'amount': 100, 'balanceAfter': 100, 'timestamp': '2024-03-01T10:00:00Z'},
            {'type': 'Credit', 'amount': 60, 'balanceAfter': 150, 'timestamp': '2024-03-02T10:00:00Z'},
        ]))
        with self.assertRaises(LedgerIntegrityError) as ctx:
            WalletService.verify_continuity(wallet)
        self.assertEqual(ctx.exception.details['index'], 1)

    def test_balance_mismatch_detected(self):
        wallet = Wallet.from_payload('cust-1', UserRole.CUSTOMER, wallet_payload(90, transactions=[
            {'type': 'Credit', 'amount': 100, 'balanceAfter': 100},
        ]))
        with self.assertRaises(LedgerIntegrityError):
            WalletService.verify_continuity(wallet)


class TestWalletPayload(SimpleTestCase):

    def test_mirror_sorts_chronologically(self):
        wallet = Wallet.from_payload('cust-1', 'Customer', {'wallet': wallet_payload('70.00', transactions=[
            {'type': 'Debit', 'amount': -30, 'balanceAfter': 70, 'deliveryId': 'd1',
             'timestamp': '2024-03-02T10:00:00Z'},
            {'type': 'Credit', 'amount': 100, 'balanceAfter': 100,
             'timestamp': '2024-03-01T10:00:00Z'},
        ])})
        self.assertEqual([tx.type for tx in wallet.transactions],
                         [TransactionType.CREDIT, TransactionType.DEBIT])
        self.assertEqual(wallet.transactions[1].amount, Decimal('30'))
        WalletService.verify_continuity(wallet)

    def test_unknown_transaction_type_rejected(self):
        with self.assertRaises(ValidationError):
            Transaction.from_payload({'type': 'Bonus', 'amount': 1, 'balanceAfter': 1})

    def test_populated_delivery_reference_is_normalised(self):
        tx = Transaction.from_payload({
            'type': 'Refund', 'amount': 230, 'balanceAfter': 230,
            'deliveryId': {'_id': 'd1', 'deliveryId': 'DEL-0001'},
        })
        self.assertEqual(tx.delivery_ref, 'd1')

    def test_fetched_refund_is_not_mirrored_twice(self):
        wallets = WalletRegistry()
        wallets.replace(Wallet.from_payload('cust-1', UserRole.CUSTOMER, wallet_payload(230, transactions=[
            {'type': 'Refund', 'amount': 230, 'balanceAfter': 230, 'deliveryId': {'_id': 'd1'}},
        ])))
        previous = make_delivery(paymentStatus='Paid')
        cancelled = make_delivery(status='Cancelled', paymentStatus='Refunded')
        self.assertIsNone(refund_cancelled_delivery(previous, cancelled, wallets))
        self.assertEqual(wallets.find('cust-1').balance, Decimal('230'))


class TestLedgerEvents(SimpleTestCase):
    """Tests for the ledger side effects of confirmed transitions."""

    def setUp(self):
        self.wallets = WalletRegistry()

    def test_completion_credits_driver(self):
        delivered = make_delivery(status='Delivered', driver='drv-1',
                                  driverEarnings={'netEarnings': 184})
        tx = settle_delivery_completion(delivered, self.wallets)
        wallet = self.wallets.find('drv-1')
        self.assertEqual(tx.amount, Decimal('184'))
        self.assertEqual(tx.delivery_ref, 'd1')
        self.assertEqual(wallet.total_earnings, Decimal('184'))

    def test_completion_without_net_earnings_records_nothing(self):
        delivered = make_delivery(status='Delivered', driver='drv-1')
        self.assertIsNone(settle_delivery_completion(delivered, self.wallets))
        self.assertNotIn('drv-1', self.wallets)

    def test_zero_net_earnings_records_nothing(self):
        delivered = make_delivery(status='Delivered', driver='drv-1',
                                  driverEarnings={'netEarnings': 0})
        self.assertIsNone(settle_delivery_completion(delivered, self.wallets))
        self.assertNotIn('drv-1', self.wallets)

    def test_completion_credited_once(self):
        delivered = make_delivery(status='Delivered', driver='drv-1',
                                  driverEarnings={'netEarnings': 184})
        settle_delivery_completion(delivered, self.wallets)
        self.assertIsNone(settle_delivery_completion(delivered, self.wallets))
        self.assertEqual(len(self.wallets.find('drv-1').transactions), 1)

    def test_cancel_refunds_paid_delivery(self):
        previous = make_delivery(paymentStatus='Paid')
        cancelled = make_delivery(status='Cancelled', paymentStatus='Refunded')
        tx = apply_lifecycle_event(previous, cancelled, self.wallets)
        self.assertEqual(tx.type, TransactionType.REFUND)
        self.assertEqual(tx.amount, Decimal('230'))
        self.assertEqual(self.wallets.find('cust-1').balance, Decimal('230'))

    def test_cancel_unpaid_has_no_refund(self):
        previous = make_delivery(paymentStatus='Unpaid')
        cancelled = make_delivery(status='Cancelled', paymentStatus='Unpaid')
        self.assertIsNone(refund_cancelled_delivery(previous, cancelled, self.wallets))
        self.assertEqual(len(self.wallets), 0)

    def test_refund_uses_frozen_price(self):
        previous = make_delivery(paymentStatus='Paid')
        cancelled = make_delivery(status='Cancelled', pricing={
            'basePrice': 50, 'weightCharge': 500, 'distanceCharge': 80, 'clusterCharge': 50,
        })
        tx = refund_cancelled_delivery(previous, cancelled, self.wallets)
        self.assertEqual(tx.amount, Decimal('230'))

    def test_rejection_has_no_ledger_entry(self):
        previous = make_delivery(status='Assigned', driver='drv-1')
        rejected = make_delivery(status='Rejected', driver='drv-1')
        self.assertIsNone(apply_lifecycle_event(previous, rejected, self.wallets))
        self.assertEqual(len(self.wallets), 0)

    def test_unchanged_status_has_no_entry(self):
        delivered = make_delivery(status='Delivered', driver='drv-1',
                                  driverEarnings={'netEarnings': 184})
        self.assertIsNone(apply_lifecycle_event(delivered, delivered, self.wallets))

    def test_record_payment_mirrors_debit(self):
        wallet = Wallet(account_ref='cust-1', owner_role=UserRole.CUSTOMER, balance=Decimal('100'))
        tx = record_delivery_payment(make_delivery(), wallet)
        self.assertEqual(tx.amount, Decimal('230'))
        self.assertEqual(wallet.balance, Decimal('-130'))


class TestWalletActions(SimpleTestCase):
    """Tests for gated wallet actions."""

    def setUp(self):
        self.backend = MagicMock()
        self.customer = make_session(UserRole.CUSTOMER, account_id='cust-1')
        self.driver = make_session(UserRole.DRIVER, account_id='drv-1')
        self.wallets = WalletRegistry()
        self.guard = InFlightGuard()

    def actions(self, session):
        return WalletActions(session, self.backend, guard=self.guard, wallets=self.wallets)

    def test_add_funds_replaces_mirror(self):
        self.backend.add_money.return_value = {'success': True, 'wallet': wallet_payload(500, transactions=[
            {'type': 'Credit', 'amount': 500, 'balanceAfter': 500},
        ])}
        wallet = self.actions(self.customer).add_funds('500', 'UPI')

        self.backend.add_money.assert_called_once_with(Decimal('500'), 'UPI')
        self.assertEqual(wallet.balance, Decimal('500'))
        self.assertIs(self.wallets.find('cust-1'), wallet)

    def test_add_funds_without_wallet_in_answer_refetches(self):
        self.backend.add_money.return_value = {'success': True, 'message': 'Money added'}
        self.backend.get_wallet.return_value = wallet_payload(500)
        wallet = self.actions(self.customer).add_funds(500)
        self.backend.get_wallet.assert_called_once_with(UserRole.CUSTOMER)
        self.assertEqual(wallet.balance, Decimal('500'))

    def test_add_funds_rejects_bad_amount(self):
        for amount in (0, -10, 'abc'):
            with self.assertRaises(ValidationError):
                self.actions(self.customer).add_funds(amount)
        self.backend.add_money.assert_not_called()

    def test_driver_cannot_add_funds(self):
        with self.assertRaises(Forbidden):
            self.actions(self.driver).add_funds(100)
        self.backend.add_money.assert_not_called()

    def test_pay_insufficient_balance_refused_locally(self):
        self.wallets.replace(Wallet(account_ref='cust-1', owner_role=UserRole.CUSTOMER,
                                    balance=Decimal('100')))
        with self.assertRaises(InsufficientFunds):
            self.actions(self.customer).pay_for_delivery(make_delivery())
        self.backend.pay_delivery.assert_not_called()

    def test_pay_only_pending_unpaid(self):
        with self.assertRaises(InvalidTransition):
            self.actions(self.customer).pay_for_delivery(make_delivery(status='Approved'))
        with self.assertRaises(ValidationError):
            self.actions(self.customer).pay_for_delivery(make_delivery(paymentStatus='Paid'))
        self.backend.pay_delivery.assert_not_called()

    def test_pay_replaces_mirror(self):
        self.wallets.replace(Wallet(account_ref='cust-1', owner_role=UserRole.CUSTOMER,
                                    balance=Decimal('500')))
        self.backend.pay_delivery.return_value = {'wallet': wallet_payload(270)}
        wallet = self.actions(self.customer).pay_for_delivery(make_delivery())
        self.backend.pay_delivery.assert_called_once_with('d1')
        self.assertEqual(wallet.balance, Decimal('270'))

    def test_pay_without_wallet_in_answer_mirrors_debit(self):
        self.wallets.replace(Wallet(account_ref='cust-1', owner_role=UserRole.CUSTOMER,
                                    balance=Decimal('500')))
        self.backend.pay_delivery.return_value = {'success': True, 'message': 'Payment successful'}

        wallet = self.actions(self.customer).pay_for_delivery(make_delivery())

        self.backend.get_wallet.assert_not_called()
        self.assertEqual(wallet.balance, Decimal('270'))
        self.assertEqual(wallet.transactions[-1].type, TransactionType.DEBIT)
        self.assertEqual(wallet.transactions[-1].delivery_ref, 'd1')

    def test_pay_without_mirror_or_wallet_in_answer_refetches(self):
        self.backend.pay_delivery.return_value = {'success': True}
        self.backend.get_wallet.return_value = wallet_payload(270)
        wallet = self.actions(self.customer).pay_for_delivery(make_delivery())
        self.backend.get_wallet.assert_called_once_with(UserRole.CUSTOMER)
        self.assertEqual(wallet.balance, Decimal('270'))

    def test_withdraw_over_balance_refused(self):
        self.wallets.replace(Wallet(account_ref='drv-1', owner_role=UserRole.DRIVER,
                                    balance=Decimal('100')))
        with self.assertRaises(InsufficientFunds):
            self.actions(self.driver).withdraw(150)
        self.backend.withdraw.assert_not_called()

    def test_withdraw(self):
        self.backend.withdraw.return_value = wallet_payload(40, total_earnings=100)
        wallet = self.actions(self.driver).withdraw('60')
        self.backend.withdraw.assert_called_once_with(Decimal('60'))
        self.assertEqual(WalletService.withdrawn_total(wallet), Decimal('60'))

    def test_concurrent_wallet_action_refused(self):
        with self.guard.hold(wallet_key('drv-1')):
            with self.assertRaises(ActionInProgress):
                self.actions(self.driver).withdraw(10)
        self.backend.withdraw.assert_not_called()

    def test_rejected_credential_logs_out(self):
        self.backend.withdraw.side_effect = Unauthenticated('expired', status_code=401)
        with self.assertRaises(Unauthenticated):
            self.actions(self.driver).withdraw(10)
        self.assertFalse(self.driver.is_authenticated)
