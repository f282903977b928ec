"""
FINANCE App - Wallet & Transaction ledger for FLEETLINE

Handles: Wallet balances, Transactions, ledger continuity.

Wallets mirror the backend's wallet payload. Local ledger operations are
applied only for backend-confirmed events; the next wallet fetch replaces
the mirror wholesale.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from django.db import models
from django.utils import timezone

from core.exceptions import InsufficientFunds, LedgerIntegrityError, ValidationError
from core.models import UserRole
from logistics.utils import format_amount, parse_timestamp, to_decimal, to_ref

logger = logging.getLogger(__name__)


class TransactionType(models.TextChoices):
    """Transaction type enumeration."""
    # Credits (+)
    CREDIT = 'Credit', 'Credit'
    REFUND = 'Refund', 'Refund'

    # Debits (-)
    DEBIT = 'Debit', 'Debit'


class PaymentMethod(models.TextChoices):
    """Funding sources accepted by add-money."""
    CARD = 'Card', 'Credit/Debit Card'
    UPI = 'UPI', 'UPI'
    NET_BANKING = 'Net Banking', 'Net Banking'
    WALLET = 'Wallet', 'Digital Wallet'


@dataclass(frozen=True)
class Transaction:
    """
    Ledger entry.

    Immutable once created. `amount` is always positive; the sign comes
    from the type. `balance_after` is the wallet balance right after this
    entry was applied.
    """

    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str = ''
    delivery_ref: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def signed_amount(self) -> Decimal:
        return -self.amount if self.type == TransactionType.DEBIT else self.amount

    @classmethod
    def from_payload(cls, payload: dict) -> 'Transaction':
        try:
            amount = to_decimal(payload.get('amount'))
            balance_after = to_decimal(payload.get('balanceAfter'))
            tx_type = TransactionType(payload.get('type'))
        except ValueError as e:
            raise ValidationError(f"Malformed transaction payload: {e}")
        if amount is None or balance_after is None:
            raise ValidationError("Transaction payload is missing amount or balanceAfter")

        return cls(
            type=tx_type,
            # Some endpoints send debits as negative numbers.
            amount=abs(amount),
            balance_after=balance_after,
            description=payload.get('description') or '',
            delivery_ref=to_ref(payload.get('deliveryId')),
            timestamp=parse_timestamp(payload.get('timestamp')),
        )

    def __str__(self):
        sign = '-' if self.type == TransactionType.DEBIT else '+'
        return f"{self.type} | {sign}{format_amount(self.amount)} | {self.description}"


@dataclass
class Wallet:
    """
    Account wallet.

    `transactions` is kept in chronological order (oldest first).
    `total_earnings` only moves for Driver wallets, and only on Credit.
    """

    account_ref: str
    owner_role: UserRole
    balance: Decimal = Decimal('0.00')
    total_earnings: Decimal = Decimal('0.00')
    transactions: List[Transaction] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_driver_wallet(self) -> bool:
        return self.owner_role == UserRole.DRIVER

    @classmethod
    def from_payload(cls, account_ref: str, owner_role, payload: dict) -> 'Wallet':
        """
        Build a mirror from the backend wallet payload
        {balance, totalEarnings, transactions[]}.
        """
        if isinstance(payload.get('wallet'), dict):
            payload = payload['wallet']
        try:
            balance = to_decimal(payload.get('balance'))
            total_earnings = to_decimal(payload.get('totalEarnings'))
        except ValueError as e:
            raise ValidationError(f"Malformed wallet payload: {e}")

        transactions = [Transaction.from_payload(tx) for tx in payload.get('transactions') or []]
        # Display order from the backend is not guaranteed; keep ledger order.
        if all(tx.timestamp for tx in transactions):
            transactions.sort(key=lambda tx: tx.timestamp)

        return cls(
            account_ref=account_ref,
            owner_role=UserRole(owner_role),
            balance=balance if balance is not None else Decimal('0.00'),
            total_earnings=total_earnings if total_earnings is not None else Decimal('0.00'),
            transactions=transactions,
        )

    def __str__(self):
        return f"Wallet {self.account_ref} ({self.owner_role}) | {format_amount(self.balance)}"


class WalletService:
    """
    Service class for wallet ledger operations.

    Each operation computes the new balance and the transaction first and
    commits both together under the wallet lock: an entry is either fully
    appended with a consistent balance_after, or nothing changes.
    """

    @staticmethod
    def _validate_amount(amount) -> Decimal:
        try:
            amount = to_decimal(amount)
        except ValueError:
            raise ValidationError("Amount must be a number", errors={'amount': ['Not a number']})
        if amount is None or amount <= 0:
            raise ValidationError("Amount must be positive", errors={'amount': ['Must be > 0']})
        return amount

    @staticmethod
    def _apply(wallet: Wallet, tx_type: TransactionType, amount, description: str,
               delivery_ref: Optional[str], timestamp: Optional[datetime],
               allow_negative: bool = True) -> Transaction:
        amount = WalletService._validate_amount(amount)

        with wallet._lock:
            if tx_type == TransactionType.DEBIT:
                if not allow_negative and wallet.balance < amount:
                    raise InsufficientFunds(
                        f"Insufficient balance: {format_amount(wallet.balance)} "
                        f"(required: {format_amount(amount)})",
                        errors={'amount': ['Exceeds wallet balance']},
                    )
                new_balance = wallet.balance - amount
            else:
                new_balance = wallet.balance + amount

            tx = Transaction(
                type=tx_type,
                amount=amount,
                balance_after=new_balance,
                description=description,
                delivery_ref=delivery_ref,
                timestamp=timestamp or timezone.now(),
            )

            wallet.transactions.append(tx)
            wallet.balance = new_balance
            if tx_type == TransactionType.CREDIT and wallet.is_driver_wallet:
                wallet.total_earnings += amount

        logger.info(
            f"[LEDGER] {tx_type} {amount} on {wallet.account_ref} | "
            f"New balance: {new_balance}"
        )
        return tx

    @staticmethod
    def credit(wallet: Wallet, amount, description: str = "",
               delivery_ref: Optional[str] = None, timestamp: Optional[datetime] = None) -> Transaction:
        """
        Credit a wallet (add money).

        Driver wallets also accumulate the amount into total_earnings.

        Raises:
            ValidationError: amount is not positive
        """
        return WalletService._apply(wallet, TransactionType.CREDIT, amount, description,
                                    delivery_ref, timestamp)

    @staticmethod
    def refund(wallet: Wallet, amount, description: str = "",
               delivery_ref: Optional[str] = None, timestamp: Optional[datetime] = None) -> Transaction:
        """Refund into a wallet. Never counts toward total_earnings."""
        return WalletService._apply(wallet, TransactionType.REFUND, amount, description,
                                    delivery_ref, timestamp)

    @staticmethod
    def debit(wallet: Wallet, amount, description: str = "",
              delivery_ref: Optional[str] = None, timestamp: Optional[datetime] = None,
              allow_negative: bool = False) -> Transaction:
        """
        Debit a wallet (remove money).

        Args:
            allow_negative: Apply even if the balance goes below zero. Only
                for mirroring a debit the backend already confirmed.

        Raises:
            ValidationError: amount is not positive
            InsufficientFunds: amount exceeds balance and allow_negative is False
        """
        return WalletService._apply(wallet, TransactionType.DEBIT, amount, description,
                                    delivery_ref, timestamp, allow_negative=allow_negative)

    @staticmethod
    def get_balance(wallet: Wallet) -> Decimal:
        return wallet.balance

    @staticmethod
    def list_transactions(wallet: Wallet) -> List[Transaction]:
        """Transactions for display, most recent first."""
        return list(reversed(wallet.transactions))

    @staticmethod
    def verify_continuity(wallet: Wallet) -> None:
        """
        Check ledger continuity in chronological order.

        Each entry's balance_after must equal the previous balance_after plus
        its signed amount, and the last balance_after must equal the wallet
        balance.

        Raises:
            LedgerIntegrityError: on the first break found
        """
        previous = None
        for index, tx in enumerate(wallet.transactions):
            if previous is not None and previous.balance_after + tx.signed_amount != tx.balance_after:
                raise LedgerIntegrityError(
                    f"Ledger break at entry {index} of {wallet.account_ref}: "
                    f"{previous.balance_after} {tx.signed_amount:+} != {tx.balance_after}",
                    index=index,
                )
            previous = tx

        if previous is not None and previous.balance_after != wallet.balance:
            raise LedgerIntegrityError(
                f"Wallet {wallet.account_ref} balance {wallet.balance} does not match "
                f"last entry {previous.balance_after}",
                index=len(wallet.transactions) - 1,
            )

    @staticmethod
    def withdrawn_total(wallet: Wallet) -> Decimal:
        """Earnings already paid out: total_earnings - balance (Driver wallets)."""
        if not wallet.is_driver_wallet:
            return Decimal('0.00')
        return wallet.total_earnings - wallet.balance
