"""
FINANCE App - Business Services for FLEETLINE

Ledger side effects of confirmed lifecycle events, and the wallet actions
(add funds, pay, withdraw) dispatched through the role gate.
"""

import logging
import threading
from typing import Dict, Optional

from core.exceptions import Forbidden, InsufficientFunds, InvalidTransition, ValidationError
from core.inflight import InFlightGuard, delivery_key, wallet_key
from core.models import UserRole
from core.permissions import Action, RoleGate, role_gate
from core.serializers import validate_payload
from core.session import expire_on_unauthenticated
from finance.models import Transaction, TransactionType, Wallet, WalletService
from finance.serializers import AddMoneySerializer, WithdrawSerializer
from logistics.models import Delivery, DeliveryStatus, PaymentStatus
from logistics.utils import format_amount

logger = logging.getLogger(__name__)


class WalletRegistry:
    """Local wallet mirrors, keyed by account reference."""

    def __init__(self):
        self._wallets: Dict[str, Wallet] = {}
        self._lock = threading.Lock()

    def find(self, account_ref: str) -> Optional[Wallet]:
        return self._wallets.get(account_ref)

    def get(self, account_ref: str, owner_role) -> Wallet:
        """Mirror for an account, created empty on first use."""
        with self._lock:
            wallet = self._wallets.get(account_ref)
            if wallet is None:
                wallet = Wallet(account_ref=account_ref, owner_role=UserRole(owner_role))
                self._wallets[account_ref] = wallet
            return wallet

    def replace(self, wallet: Wallet) -> Wallet:
        with self._lock:
            self._wallets[wallet.account_ref] = wallet
        return wallet

    def __contains__(self, account_ref):
        return account_ref in self._wallets

    def __len__(self):
        return len(self._wallets)


def _already_recorded(wallet: Wallet, tx_type: TransactionType, delivery_ref: str) -> bool:
    return any(
        tx.type == tx_type and tx.delivery_ref == delivery_ref
        for tx in wallet.transactions
    )


# ============================================
# LEDGER EVENTS
# ============================================

def settle_delivery_completion(delivery: Delivery, wallets: WalletRegistry) -> Optional[Transaction]:
    """
    Credit the driver's share when a delivery reaches Delivered.

    The amount is the backend's `driverEarnings.netEarnings`; commission is
    never computed here. When the backend omitted it, nothing is recorded
    locally and the next wallet fetch is authoritative.

    Returns:
        Transaction or None
    """
    if delivery.status != DeliveryStatus.DELIVERED:
        raise ValueError(f"Delivery {delivery.id} is not delivered ({delivery.status})")

    if not delivery.driver_ref:
        logger.warning(f"[LEDGER] Delivery {delivery.id} delivered without a driver reference")
        return None
    if delivery.net_earnings is None or delivery.net_earnings <= 0:
        logger.info(
            f"[LEDGER] No net earnings for {delivery.id} ({delivery.net_earnings}), "
            f"driver wallet {delivery.driver_ref} needs a refresh"
        )
        return None

    wallet = wallets.get(delivery.driver_ref, UserRole.DRIVER)
    if _already_recorded(wallet, TransactionType.CREDIT, delivery.id):
        return None

    tx = WalletService.credit(
        wallet,
        amount=delivery.net_earnings,
        description=f"Earnings for delivery {delivery.reference or delivery.id}",
        delivery_ref=delivery.id,
    )
    logger.info(
        f"[LEDGER] Delivery {delivery.id} settled: driver {delivery.driver_ref} "
        f"+{format_amount(tx.amount)}"
    )
    return tx


def refund_cancelled_delivery(previous: Delivery, confirmed: Delivery,
                              wallets: WalletRegistry) -> Optional[Transaction]:
    """
    Refund the customer when a paid delivery is cancelled.

    Payment capture is read from the last confirmed copy before the cancel
    (the backend flips it to Refunded in its answer). The amount is the
    frozen booking totalPrice, never a recomputation.

    Returns:
        Transaction or None when no payment was captured
    """
    captured = previous.payment_captured or confirmed.payment_status == PaymentStatus.REFUNDED
    if not captured:
        logger.info(f"[LEDGER] Delivery {confirmed.id} cancelled unpaid, no refund")
        return None

    amount = previous.total_price if previous.total_price is not None else confirmed.total_price
    customer_ref = confirmed.customer_ref or previous.customer_ref
    if amount is None or not customer_ref:
        logger.warning(f"[LEDGER] Cannot mirror refund for {confirmed.id}: missing price or customer")
        return None

    wallet = wallets.get(customer_ref, UserRole.CUSTOMER)
    if _already_recorded(wallet, TransactionType.REFUND, confirmed.id):
        return None

    return WalletService.refund(
        wallet,
        amount=amount,
        description=f"Refund for cancelled delivery {confirmed.reference or confirmed.id}",
        delivery_ref=confirmed.id,
    )


def record_delivery_payment(delivery: Delivery, wallet: Wallet) -> Transaction:
    """
    Mirror the debit of a confirmed delivery payment.

    The backend already accepted it, so the balance is allowed to go
    negative locally until the next fetch corrects it.
    """
    return WalletService.debit(
        wallet,
        amount=delivery.total_price,
        description=f"Payment for delivery {delivery.reference or delivery.id}",
        delivery_ref=delivery.id,
        allow_negative=True,
    )


def apply_lifecycle_event(previous: Delivery, confirmed: Delivery,
                          wallets: WalletRegistry) -> Optional[Transaction]:
    """
    Ledger side effect of a backend-confirmed status change.

    - entering Delivered -> Credit to the driver
    - entering Cancelled -> Refund to the customer iff payment was captured
    - anything else (Rejected included) -> nothing
    """
    if previous.status == confirmed.status:
        return None
    if confirmed.status == DeliveryStatus.DELIVERED:
        return settle_delivery_completion(confirmed, wallets)
    if confirmed.status == DeliveryStatus.CANCELLED:
        return refund_cancelled_delivery(previous, confirmed, wallets)
    return None


# ============================================
# WALLET ACTIONS
# ============================================

class WalletActions:
    """
    Wallet operations of the acting session.

    Each action is gated first, validated, then sent once to the backend
    while the wallet key is held. The local mirror is replaced with the
    backend's answer, never updated optimistically.
    """

    def __init__(self, session, backend, gate: Optional[RoleGate] = None,
                 guard: Optional[InFlightGuard] = None,
                 wallets: Optional[WalletRegistry] = None):
        self.session = session
        self.backend = backend
        self.gate = gate or role_gate
        self.guard = guard or InFlightGuard()
        self.wallets = wallets if wallets is not None else WalletRegistry()

    @property
    def wallet(self) -> Optional[Wallet]:
        if not self.session.is_authenticated:
            return None
        return self.wallets.find(self.session.account.id)

    def _key(self) -> str:
        return wallet_key(self.session.account.id)

    @staticmethod
    def _wallet_payload(response) -> Optional[dict]:
        payload = response.get('wallet') if isinstance(response, dict) else None
        if not isinstance(payload, dict):
            payload = response if isinstance(response, dict) else {}
        return payload if payload.get('balance') is not None else None

    def _mirror(self, response) -> Wallet:
        payload = self._wallet_payload(response)
        if payload is None:
            return self.refresh_wallet()
        wallet = Wallet.from_payload(self.session.account.id, self.session.role, payload)
        return self.wallets.replace(wallet)

    def refresh_wallet(self) -> Wallet:
        """Re-fetch the session's wallet. Idempotent."""
        if not self.session.is_authenticated:
            raise Forbidden("Authentication required")
        with expire_on_unauthenticated(self.session):
            payload = self.backend.get_wallet(self.session.role)
        wallet = Wallet.from_payload(self.session.account.id, self.session.role, payload)
        logger.info(f"[LEDGER] Wallet refreshed: {wallet}")
        return self.wallets.replace(wallet)

    def add_funds(self, amount, payment_method=None) -> Wallet:
        """
        Customer top-up.

        Raises:
            Forbidden: not a Customer
            ValidationError: amount not positive, unknown payment method
        """
        self.gate.check(self.session, Action.ADD_FUNDS)
        data = {'amount': amount}
        if payment_method is not None:
            data['paymentMethod'] = payment_method
        validated = validate_payload(AddMoneySerializer, data)

        with self.guard.hold(self._key()):
            with expire_on_unauthenticated(self.session):
                response = self.backend.add_money(validated['amount'], validated['paymentMethod'])

        logger.info(
            f"[LEDGER] Add funds confirmed: {format_amount(validated['amount'])} "
            f"via {validated['paymentMethod']}"
        )
        return self._mirror(response)

    def pay_for_delivery(self, delivery: Delivery) -> Wallet:
        """
        Pay a Pending delivery from the Customer wallet.

        The amount is the frozen totalPrice. When a local mirror exists, a
        balance below the price is refused before anything is sent, and an
        answer without a wallet is mirrored as a local debit.

        Raises:
            Forbidden: not a Customer
            InvalidTransition: delivery is not Pending
            ValidationError: already paid, or no frozen price
            InsufficientFunds: local balance below the price
        """
        self.gate.check(self.session, Action.PAY)

        if delivery.status != DeliveryStatus.PENDING:
            raise InvalidTransition(delivery.status, Action.PAY,
                                    f"Only pending deliveries can be paid ({delivery.id})")
        if delivery.payment_captured:
            raise ValidationError(f"Delivery {delivery.id} is already paid")
        price = delivery.total_price
        if price is None:
            raise ValidationError(f"Delivery {delivery.id} has no quoted price")

        wallet = self.wallet
        if wallet is not None and wallet.balance < price:
            raise InsufficientFunds(
                f"Insufficient balance: {format_amount(wallet.balance)} "
                f"(required: {format_amount(price)})",
                errors={'amount': ['Exceeds wallet balance']},
            )

        with self.guard.hold(self._key(), delivery_key(delivery.id)):
            with expire_on_unauthenticated(self.session):
                response = self.backend.pay_delivery(delivery.id)

        logger.info(f"[LEDGER] Payment confirmed for {delivery.id}: {format_amount(price)}")
        if wallet is not None and self._wallet_payload(response) is None:
            record_delivery_payment(delivery, wallet)
            return wallet
        return self._mirror(response)

    def withdraw(self, amount) -> Wallet:
        """
        Driver withdrawal of earnings.

        Raises:
            Forbidden: not a Driver
            ValidationError: amount not positive
            InsufficientFunds: amount above the mirrored balance
        """
        self.gate.check(self.session, Action.WITHDRAW)
        validated = validate_payload(WithdrawSerializer, {'amount': amount})
        amount = validated['amount']

        wallet = self.wallet
        if wallet is not None and amount > wallet.balance:
            raise InsufficientFunds(
                f"Withdrawal of {format_amount(amount)} exceeds balance "
                f"{format_amount(wallet.balance)}",
                errors={'amount': ['Exceeds wallet balance']},
            )

        with self.guard.hold(self._key()):
            with expire_on_unauthenticated(self.session):
                response = self.backend.withdraw(amount)

        logger.info(f"[LEDGER] Withdrawal confirmed: {format_amount(amount)}")
        return self._mirror(response)
