"""
FLEETLINE Reports Tests
"""

from datetime import date
from decimal import Decimal

from django.test import SimpleTestCase

from core.models import UserRole
from finance.models import Wallet, WalletService
from logistics.tests import VALID_RATING, make_delivery
from reports.services import ReportGenerator


class TestDeliveryStatistics(SimpleTestCase):

    def setUp(self):
        rating = dict(VALID_RATING, stars=5)
        self.deliveries = [
            make_delivery(_id='d1', status='Delivered', rating=rating),
            make_delivery(_id='d2', status='Delivered', rating=dict(VALID_RATING, stars=4)),
            make_delivery(_id='d3', status='Cancelled'),
            make_delivery(_id='d4', status='Rejected', createdAt='2024-02-10T10:00:00Z'),
            make_delivery(_id='d5', status='Pending'),
        ]

    def test_counts_and_revenue(self):
        stats = ReportGenerator.delivery_statistics(self.deliveries)
        self.assertEqual(stats['total'], 5)
        self.assertEqual(stats['by_status']['Delivered'], 2)
        self.assertEqual(stats['by_status']['On Route'], 0)
        self.assertEqual(stats['revenue'], Decimal('460.00'))
        self.assertEqual(stats['completion_rate'], Decimal('50.00'))
        self.assertEqual(stats['average_rating'], Decimal('4.50'))

    def test_period_filter(self):
        stats = ReportGenerator.delivery_statistics(
            self.deliveries, start_date=date(2024, 2, 1), end_date=date(2024, 2, 28),
        )
        self.assertEqual(stats['total'], 1)
        self.assertEqual(stats['by_status']['Rejected'], 1)
        self.assertEqual(stats['revenue'], Decimal('0.00'))
        self.assertIsNone(stats['average_rating'])

    def test_empty(self):
        stats = ReportGenerator.delivery_statistics([])
        self.assertEqual(stats['total'], 0)
        self.assertIsNone(stats['completion_rate'])


class TestEarningsSummary(SimpleTestCase):

    def test_driver_summary(self):
        wallet = Wallet(account_ref='drv-1', owner_role=UserRole.DRIVER)
        WalletService.credit(wallet, Decimal('184'), delivery_ref='d1')
        WalletService.credit(wallet, Decimal('116'), delivery_ref='d2')
        WalletService.debit(wallet, Decimal('100'))
        deliveries = [
            make_delivery(_id='d1', status='Delivered', driver='drv-1'),
            make_delivery(_id='d2', status='Delivered', driver='drv-1'),
            make_delivery(_id='d3', status='Delivered', driver='drv-2'),
        ]

        summary = ReportGenerator.driver_earnings_summary(wallet, deliveries)

        self.assertEqual(summary['total_earnings'], Decimal('300'))
        self.assertEqual(summary['withdrawn'], Decimal('100'))
        self.assertEqual(summary['completed_deliveries'], 2)
        self.assertEqual(summary['average_per_delivery'], Decimal('150.00'))
        self.assertEqual(summary['credit_count'], 2)

    def test_customer_wallet_rejected(self):
        with self.assertRaises(ValueError):
            ReportGenerator.driver_earnings_summary(
                Wallet(account_ref='c1', owner_role=UserRole.CUSTOMER)
            )

    def test_customer_spending(self):
        wallet = Wallet(account_ref='c1', owner_role=UserRole.CUSTOMER, balance=Decimal('1000'))
        WalletService.debit(wallet, Decimal('230'))
        WalletService.debit(wallet, Decimal('120'))
        WalletService.refund(wallet, Decimal('230'))
        totals = ReportGenerator.customer_spending_summary(wallet)
        self.assertEqual(totals['Debit'], Decimal('350'))
        self.assertEqual(totals['net_spent'], Decimal('120'))
