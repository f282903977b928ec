"""
REPORTS App - Statistics Service

Admin delivery statistics and driver earnings summaries, computed from the
mirrored delivery records and wallets. Nothing here talks to the backend.
"""

import logging
from collections import Counter
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from django.utils import timezone

from finance.models import TransactionType, Wallet, WalletService
from logistics.models import Delivery, DeliveryStatus
from logistics.utils import round_for_display

logger = logging.getLogger(__name__)


def _in_period(delivery: Delivery, start_date: Optional[date], end_date: Optional[date]) -> bool:
    if start_date is None and end_date is None:
        return True
    if delivery.created_at is None:
        return False
    created = timezone.localtime(delivery.created_at).date() if timezone.is_aware(
        delivery.created_at) else delivery.created_at.date()
    if start_date and created < start_date:
        return False
    if end_date and created > end_date:
        return False
    return True


# ===========================================
# REPORT GENERATOR SERVICE
# ===========================================

class ReportGenerator:
    """
    Service for report data.

    Amounts are summed unrounded and rounded once for the report.
    """

    @staticmethod
    def filter_period(deliveries: Iterable[Delivery], start_date: date = None,
                      end_date: date = None) -> List[Delivery]:
        """Deliveries created within [start_date, end_date] (both optional, inclusive)."""
        return [d for d in deliveries if _in_period(d, start_date, end_date)]

    @classmethod
    def delivery_statistics(cls, deliveries: Iterable[Delivery], start_date: date = None,
                            end_date: date = None) -> Dict[str, Any]:
        """
        Admin dashboard statistics.

        Returns:
            dict: {
                "total": int,
                "by_status": {status: count} (every status present),
                "revenue": Decimal,  # sum of totalPrice of Delivered
                "completion_rate": Decimal or None,  # % of terminal that were Delivered
                "average_rating": Decimal or None,
            }
        """
        deliveries = cls.filter_period(deliveries, start_date, end_date)
        counts = Counter(d.status for d in deliveries)
        by_status = {str(status): counts.get(status, 0) for status in DeliveryStatus}

        delivered = [d for d in deliveries if d.status == DeliveryStatus.DELIVERED]
        revenue = sum(
            (d.total_price for d in delivered if d.total_price is not None),
            Decimal('0'),
        )

        finished = sum(1 for d in deliveries if d.is_terminal)
        completion_rate = None
        if finished:
            completion_rate = round_for_display(Decimal(len(delivered)) * 100 / Decimal(finished))

        stars = [d.rating.stars for d in deliveries if d.rating is not None]
        average_rating = None
        if stars:
            average_rating = round_for_display(Decimal(sum(stars)) / Decimal(len(stars)))

        logger.info(f"[REPORTS] Statistics over {len(deliveries)} deliveries")
        return {
            'total': len(deliveries),
            'by_status': by_status,
            'revenue': round_for_display(revenue),
            'completion_rate': completion_rate,
            'average_rating': average_rating,
        }

    @classmethod
    def driver_earnings_summary(cls, wallet: Wallet,
                                deliveries: Iterable[Delivery] = ()) -> Dict[str, Any]:
        """
        Driver earnings screen.

        `withdrawn` is totalEarnings - balance. The average is over the
        driver's delivered deliveries in `deliveries`; None when there are
        none.
        """
        if not wallet.is_driver_wallet:
            raise ValueError(f"Wallet {wallet.account_ref} is not a driver wallet")

        completed = [
            d for d in deliveries
            if d.status == DeliveryStatus.DELIVERED and d.driver_ref == wallet.account_ref
        ]
        average = None
        if completed:
            average = round_for_display(wallet.total_earnings / Decimal(len(completed)))

        credits = [tx for tx in wallet.transactions if tx.type == TransactionType.CREDIT]
        return {
            'balance': wallet.balance,
            'total_earnings': wallet.total_earnings,
            'withdrawn': WalletService.withdrawn_total(wallet),
            'completed_deliveries': len(completed),
            'average_per_delivery': average,
            'credit_count': len(credits),
        }

    @staticmethod
    def customer_spending_summary(wallet: Wallet) -> Dict[str, Decimal]:
        """Totals of a Customer ledger by transaction type."""
        totals = {str(tx_type): Decimal('0') for tx_type in TransactionType}
        for tx in wallet.transactions:
            totals[str(tx.type)] += tx.amount
        totals['net_spent'] = totals[TransactionType.DEBIT] - totals[TransactionType.REFUND]
        return totals
