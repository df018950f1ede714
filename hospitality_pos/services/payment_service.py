from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import NotFoundError, OrderStateError, PaymentError
from hospitality_pos.models import OrderPayment, OrderStatus, PaymentRecordStatus
from hospitality_pos.services.order_service import (
    CLOSED_ORDER_STATUSES,
    get_order,
    get_paid_amount,
    get_pending_amount,
    settle_payment,
    validate_payment_amount,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _payment_row(payment: OrderPayment) -> dict:
    return {
        'id': payment.id,
        'order_id': payment.order_header_id,
        'amount': payment.amount,
        'method': payment.payment_method,
        'status': PaymentRecordStatus(payment.status).value,
        'reference': payment.transaction_reference,
        'processed_at': payment.processed_at,
        'created_at': payment.created_at,
    }


def get_payment(db: Session, payment_id: int) -> OrderPayment:
    payment = db.execute(select(OrderPayment).where(OrderPayment.id == payment_id)).scalar_one_or_none()
    if not payment:
        raise NotFoundError('Payment not found')
    return payment


def get_payment_by_reference(db: Session, reference: str) -> OrderPayment | None:
    clean = (reference or '').strip()
    if not clean:
        return None
    return db.execute(
        select(OrderPayment)
        .where(OrderPayment.transaction_reference == clean)
        .order_by(OrderPayment.created_at.desc(), OrderPayment.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def get_payments_by_status(db: Session, status: PaymentRecordStatus | str) -> list[dict]:
    wanted = PaymentRecordStatus(status)
    payments = db.execute(
        select(OrderPayment)
        .where(OrderPayment.status == wanted)
        .order_by(OrderPayment.created_at.desc(), OrderPayment.id.desc())
    ).scalars().all()
    return [_payment_row(payment) for payment in payments]


def get_payment_stats(db: Session) -> dict:
    rows = db.execute(
        select(OrderPayment.status, func.count(OrderPayment.id), func.coalesce(func.sum(OrderPayment.amount), 0))
        .group_by(OrderPayment.status)
    ).all()
    by_status = {PaymentRecordStatus(status): (count, int(amount or 0)) for status, count, amount in rows}
    stats = {'total_payments': sum(count for count, _amount in by_status.values())}
    for status in PaymentRecordStatus:
        count, amount = by_status.get(status, (0, 0))
        stats[f'{status.value}_count'] = count
        stats[f'{status.value}_amount'] = amount
    return stats


def process_payment(
    db: Session,
    *,
    order_id: int,
    amount: int,
    payment_method: str,
    transaction_reference: str | None = None,
) -> OrderPayment:
    """Register a payment that still waits for confirmation from the provider."""
    validate_payment_amount(amount)
    method = (payment_method or '').strip()
    if not method:
        raise PaymentError('Payment method is required')
    order = get_order(db, order_id)
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Cannot take payment on a {OrderStatus(order.status).value} order')

    if get_paid_amount(db, order.id) + get_pending_amount(db, order.id) + amount > order.total:
        raise PaymentError('Payment amount exceeds balance due')

    payment = OrderPayment(
        order_header_id=order.id,
        amount=amount,
        payment_method=method,
        status=PaymentRecordStatus.PENDING,
        transaction_reference=transaction_reference,
    )
    db.add(payment)
    db.flush()
    return payment


def complete_payment(db: Session, *, payment_id: int, actor: str | None = None) -> OrderPayment:
    payment = get_payment(db, payment_id)
    if payment.status != PaymentRecordStatus.PENDING:
        raise PaymentError(f'Only pending payments can be completed (payment is {payment.status.value})')
    order = get_order(db, payment.order_header_id)
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Cannot complete payment on a {OrderStatus(order.status).value} order')
    if get_paid_amount(db, order.id) + payment.amount > order.total:
        raise PaymentError('Payment amount exceeds balance due')

    payment.status = PaymentRecordStatus.COMPLETED
    payment.processed_at = _now()
    db.flush()
    settle_payment(db, order=order, payment=payment, actor=actor)
    logger.info('payment %s completed for order %s', payment.id, order.order_number)
    return payment


def fail_payment(db: Session, *, payment_id: int, actor: str | None = None) -> OrderPayment:
    payment = get_payment(db, payment_id)
    if payment.status != PaymentRecordStatus.PENDING:
        raise PaymentError(f'Only pending payments can fail (payment is {payment.status.value})')
    order = get_order(db, payment.order_header_id)

    payment.status = PaymentRecordStatus.FAILED
    payment.processed_at = _now()
    db.flush()
    if order.status not in CLOSED_ORDER_STATUSES:
        settle_payment(db, order=order, payment=payment, actor=actor)
    logger.warning('payment %s failed for order %s', payment.id, order.order_number)
    return payment
