from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import NotFoundError
from hospitality_pos.models import (
    Customer,
    OrderDepartment,
    OrderHeader,
    OrderLine,
    OrderPayment,
    OrderStatus,
    PaymentRecordStatus,
    PaymentStatus,
)
from hospitality_pos.services.department_service import get_department_by_code
from hospitality_pos.services.order_service import CLOSED_ORDER_STATUSES, record_payment

logger = logging.getLogger(__name__)

OPEN_PAYMENT_STATUSES = (PaymentStatus.UNPAID, PaymentStatus.PARTIAL)
SETTLED_ORDER_STATUSES = (OrderStatus.PROCESSING, OrderStatus.FULFILLED, OrderStatus.COMPLETED)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _open_conditions(db: Session, *, department_code: str | None = None, customer_id: int | None = None) -> list:
    conditions = [
        OrderHeader.status.not_in(CLOSED_ORDER_STATUSES),
        OrderHeader.payment_status.in_(OPEN_PAYMENT_STATUSES),
    ]
    if customer_id is not None:
        conditions.append(OrderHeader.customer_id == customer_id)
    if department_code:
        department = get_department_by_code(db, department_code)
        conditions.append(
            OrderHeader.id.in_(
                select(OrderDepartment.order_header_id).where(OrderDepartment.department_id == department.id)
            )
        )
    return conditions


def _paid_by_order(db: Session, order_ids: list[int]) -> dict[int, int]:
    if not order_ids:
        return {}
    rows = db.execute(
        select(OrderPayment.order_header_id, func.sum(OrderPayment.amount))
        .where(
            OrderPayment.order_header_id.in_(order_ids),
            OrderPayment.status == PaymentRecordStatus.COMPLETED,
        )
        .group_by(OrderPayment.order_header_id)
    ).all()
    return {order_id: int(amount or 0) for order_id, amount in rows}


def get_open_orders(
    db: Session,
    *,
    department_code: str | None = None,
    customer_id: int | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    """Orders that still owe money, newest first."""
    page = max(page, 1)
    limit = max(limit, 1)
    conditions = _open_conditions(db, department_code=department_code, customer_id=customer_id)

    total = db.execute(select(func.count(OrderHeader.id)).where(*conditions)).scalar_one()
    rows = db.execute(
        select(OrderHeader, Customer.name)
        .join(Customer, Customer.id == OrderHeader.customer_id)
        .where(*conditions)
        .order_by(OrderHeader.created_at.desc(), OrderHeader.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    order_ids = [order.id for order, _name in rows]
    paid = _paid_by_order(db, order_ids)
    line_counts = dict(
        db.execute(
            select(OrderLine.order_header_id, func.count(OrderLine.id))
            .where(OrderLine.order_header_id.in_(order_ids))
            .group_by(OrderLine.order_header_id)
        ).all()
    ) if order_ids else {}

    return {
        'items': [
            {
                'id': order.id,
                'order_number': order.order_number,
                'customer_id': order.customer_id,
                'customer_name': customer_name,
                'total': order.total,
                'total_paid': paid.get(order.id, 0),
                'amount_due': order.total - paid.get(order.id, 0),
                'item_count': line_counts.get(order.id, 0),
                'status': OrderStatus(order.status).value,
                'payment_status': PaymentStatus(order.payment_status).value,
                'created_at': order.created_at,
            }
            for order, customer_name in rows
        ],
        'meta': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


def get_settlement_summary(db: Session, *, department_code: str | None = None, now: datetime | None = None) -> dict:
    orders = db.execute(
        select(OrderHeader).where(*_open_conditions(db, department_code=department_code))
    ).scalars().all()
    paid = _paid_by_order(db, [order.id for order in orders])
    current = _as_utc(now or _now())

    total_amount = sum(order.total for order in orders)
    total_paid = sum(paid.values())
    ages = [current - _as_utc(order.created_at) for order in orders]
    average = 0
    if orders:
        average = int((Decimal(total_amount) / Decimal(len(orders))).to_integral_value(rounding=ROUND_HALF_UP))
    return {
        'total_orders': len(orders),
        'total_amount': total_amount,
        'total_paid': total_paid,
        'total_due': total_amount - total_paid,
        'average_order_value': average,
        'overdue_24h': sum(1 for age in ages if age > timedelta(hours=24)),
        'overdue_7d': sum(1 for age in ages if age > timedelta(days=7)),
    }


def batch_settle(db: Session, *, payments: list[dict], actor: str | None = None) -> dict:
    """Record several payments, typically at end of day.

    Each entry needs ``order_id``, ``amount`` and ``payment_method``. A rejected
    entry is reported in ``errors`` and does not stop the rest of the batch.
    """
    results: list[dict] = []
    errors: list[dict] = []
    for entry in payments:
        order_id = entry.get('order_id')
        try:
            payment = record_payment(
                db,
                order_id=order_id,
                amount=entry.get('amount'),
                payment_method=entry.get('payment_method'),
                transaction_reference=entry.get('transaction_reference'),
                actor=actor,
            )
        except ValueError as exc:
            logger.warning('batch settlement skipped order %s: %s', order_id, exc)
            errors.append({'order_id': order_id, 'error': str(exc)})
            continue
        results.append({'order_id': order_id, 'payment_id': payment.id, 'amount': payment.amount})

    return {
        'successful': len(results),
        'failed': len(errors),
        'results': results,
        'errors': errors,
        'summary': {
            'total_processed': len(payments),
            'total_amount_settled': sum(result['amount'] for result in results),
        },
    }


def get_customer_balance(db: Session, customer_id: int) -> dict:
    if not db.execute(select(Customer.id).where(Customer.id == customer_id)).scalar_one_or_none():
        raise NotFoundError('Customer not found')
    orders = db.execute(
        select(OrderHeader)
        .where(*_open_conditions(db, customer_id=customer_id))
        .order_by(OrderHeader.created_at.asc(), OrderHeader.id.asc())
    ).scalars().all()
    paid = _paid_by_order(db, [order.id for order in orders])
    return {
        'customer_id': customer_id,
        'total_outstanding': sum(order.total - paid.get(order.id, 0) for order in orders),
        'order_count': len(orders),
        'orders': [
            {'order_number': order.order_number, 'total': order.total, 'paid': paid.get(order.id, 0)}
            for order in orders
        ],
    }


def get_daily_settlement_report(db: Session, report_date: date | None = None) -> dict:
    day = report_date or _now().date()
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    end = start + timedelta(days=1)
    orders = db.execute(
        select(OrderHeader).where(OrderHeader.created_at >= start, OrderHeader.created_at < end)
    ).scalars().all()
    live = [order for order in orders if order.status not in CLOSED_ORDER_STATUSES]
    paid = _paid_by_order(db, [order.id for order in live])
    open_orders = [order for order in live if order.payment_status in OPEN_PAYMENT_STATUSES]
    order_ids = [order.id for order in live]
    items_served = 0
    if order_ids:
        items_served = db.execute(
            select(func.count(OrderLine.id)).where(OrderLine.order_header_id.in_(order_ids))
        ).scalar_one()

    return {
        'report_date': day.isoformat(),
        'total_orders': len(orders),
        'pending_orders': sum(1 for order in live if order.status == OrderStatus.PENDING),
        'completed_orders': sum(1 for order in live if order.status in SETTLED_ORDER_STATUSES),
        'cancelled_orders': len(orders) - len(live),
        'total_revenue': sum(order.total for order in live),
        'pending_settlement': sum(order.total - paid.get(order.id, 0) for order in open_orders),
        'settled_amount': sum(paid.values()),
        'items_served': items_served,
    }
