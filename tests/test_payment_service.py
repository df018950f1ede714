from __future__ import annotations

import unittest

from hospitality_pos.errors import NotFoundError, PaymentError
from hospitality_pos.models import OrderStatus, PaymentRecordStatus, PaymentStatus
from hospitality_pos.services.order_service import create_order, record_payment
from hospitality_pos.services.payment_service import (
    complete_payment,
    fail_payment,
    get_payment,
    get_payment_by_reference,
    get_payment_stats,
    get_payments_by_status,
    process_payment,
)
from tests.support import ServiceTestCase


class PaymentServiceTests(ServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.order = create_order(
            self.db,
            customer_id=self.customer.id,
            items=[self.line('HOTEL_SERVICE', price=2000, name='Spa session')],
        )

    def test_pending_payment_completes_order(self) -> None:
        payment = process_payment(
            self.db, order_id=self.order.id, amount=self.order.total, payment_method='card', transaction_reference='psp-1'
        )
        self.assertEqual(payment.status, PaymentRecordStatus.PENDING)
        self.assertEqual(self.order.payment_status, PaymentStatus.UNPAID)
        with self.assertRaises(PaymentError):
            process_payment(self.db, order_id=self.order.id, amount=1, payment_method='card')

        self.assertIs(get_payment_by_reference(self.db, 'psp-1'), payment)
        self.assertIsNone(get_payment_by_reference(self.db, 'missing'))

        complete_payment(self.db, payment_id=payment.id)
        self.assertEqual(payment.status, PaymentRecordStatus.COMPLETED)
        self.assertIsNotNone(payment.processed_at)
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.PROCESSING)

        with self.assertRaises(PaymentError):
            complete_payment(self.db, payment_id=payment.id)

    def test_failed_payment_leaves_order_unpaid(self) -> None:
        payment = process_payment(self.db, order_id=self.order.id, amount=500, payment_method='card')
        fail_payment(self.db, payment_id=payment.id)
        self.assertEqual(payment.status, PaymentRecordStatus.FAILED)
        self.assertEqual(self.order.payment_status, PaymentStatus.UNPAID)
        with self.assertRaises(PaymentError):
            fail_payment(self.db, payment_id=payment.id)

    def test_recorded_payment_counts_pending_payments(self) -> None:
        pending = process_payment(self.db, order_id=self.order.id, amount=1000, payment_method='card')
        with self.assertRaises(PaymentError):
            record_payment(self.db, order_id=self.order.id, amount=1500, payment_method='cash')

        record_payment(self.db, order_id=self.order.id, amount=1200, payment_method='cash')
        self.assertEqual(self.order.payment_status, PaymentStatus.PARTIAL)
        complete_payment(self.db, payment_id=pending.id)
        self.assertEqual(self.order.payment_status, PaymentStatus.PAID)
        self.assertEqual(self.order.status, OrderStatus.PROCESSING)

    def test_lookup_and_stats(self) -> None:
        with self.assertRaises(NotFoundError):
            get_payment(self.db, 12345)
        record_payment(self.db, order_id=self.order.id, amount=700, payment_method='cash')
        pending = process_payment(self.db, order_id=self.order.id, amount=300, payment_method='card')
        failed = process_payment(self.db, order_id=self.order.id, amount=200, payment_method='card')
        fail_payment(self.db, payment_id=failed.id)

        self.assertEqual([row['id'] for row in get_payments_by_status(self.db, 'pending')], [pending.id])
        stats = get_payment_stats(self.db)
        self.assertEqual(stats['total_payments'], 3)
        self.assertEqual(stats['completed_count'], 1)
        self.assertEqual(stats['completed_amount'], 700)
        self.assertEqual(stats['pending_amount'], 300)
        self.assertEqual(stats['failed_count'], 1)
        self.assertEqual(stats['refunded_count'], 0)


if __name__ == '__main__':
    unittest.main()
