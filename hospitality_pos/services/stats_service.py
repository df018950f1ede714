"""Paid/unpaid order statistics per department section, rolled up per department.

Stats are snapshots: every mutating order operation recomputes the sections it
touched and writes the result into ``DepartmentSection.meta['sectionStats']``,
then sums the sections into ``Department.meta['stats']``. Readers only ever
look at the stored snapshot.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import NotFoundError
from hospitality_pos.models import (
    Department,
    DepartmentSection,
    OrderHeader,
    OrderLine,
    OrderPayment,
    OrderStatus,
    PaymentRecordStatus,
    LineStatus,
)
from hospitality_pos.services.department_codes import SECTION_SEPARATOR, parent_code
from hospitality_pos.services.money import allocate_cents, validate_cents

logger = logging.getLogger(__name__)

EXCLUDED_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
BUCKET_FIELDS = (
    'totalOrders',
    'pendingOrders',
    'processingOrders',
    'fulfilledOrders',
    'totalUnits',
    'fulfilledUnits',
    'totalAmount',
)


@dataclass(frozen=True)
class OrderStatsInput:
    order_id: int
    status: OrderStatus
    order_total: int
    order_paid: int
    scope_total: int
    scope_paid: int
    units: int
    fulfilled_units: int

    @property
    def is_paid(self) -> bool:
        return self.order_paid >= self.order_total

    @property
    def is_unpaid(self) -> bool:
        return not self.is_paid and self.order_paid == 0


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _empty_bucket(*, with_fulfilled_amount: bool = False) -> dict:
    bucket = {field: 0 for field in BUCKET_FIELDS}
    if with_fulfilled_amount:
        bucket['amountFulfilled'] = 0
    return bucket


def fulfillment_rate(fulfilled_units: int, total_units: int) -> int:
    if total_units <= 0:
        return 0
    rate = Decimal(fulfilled_units) * Decimal(100) / Decimal(total_units)
    return int(rate.to_integral_value(rounding=ROUND_HALF_UP))


def _count_status(bucket: dict, status: OrderStatus) -> None:
    if status == OrderStatus.PENDING:
        bucket['pendingOrders'] += 1
    elif status == OrderStatus.PROCESSING:
        bucket['processingOrders'] += 1
    elif status == OrderStatus.FULFILLED:
        bucket['fulfilledOrders'] += 1


def compute_section_stats(orders: list[OrderStatsInput], *, updated_at: datetime | None = None) -> dict:
    """Split order amounts into paid and unpaid buckets.

    A partially paid order is counted in both buckets: the paid portion goes to
    ``paid`` and the owed portion to ``unpaid``, while its units stay with
    ``unpaid`` as the remaining work. ``aggregated`` counts each order once and
    its amount always equals ``paid.totalAmount + unpaid.totalAmount``.
    """
    stamp = (updated_at or _now()).isoformat()
    unpaid = _empty_bucket()
    paid = _empty_bucket(with_fulfilled_amount=True)
    aggregated = {
        'totalOrders': 0,
        'totalPending': 0,
        'totalProcessing': 0,
        'totalFulfilled': 0,
        'totalUnits': 0,
        'totalFulfilledUnits': 0,
        'totalAmount': 0,
    }

    for order in orders:
        if order.status in EXCLUDED_ORDER_STATUSES:
            continue
        fulfilled = order.status == OrderStatus.FULFILLED

        if order.is_paid:
            bucket = paid
            paid['totalAmount'] += order.scope_total
            if fulfilled:
                paid['amountFulfilled'] += order.scope_total
            buckets = (paid,)
        elif order.is_unpaid:
            bucket = unpaid
            unpaid['totalAmount'] += order.scope_total
            buckets = (unpaid,)
        else:
            bucket = unpaid
            paid['totalAmount'] += order.scope_paid
            unpaid['totalAmount'] += order.scope_total - order.scope_paid
            if fulfilled:
                paid['amountFulfilled'] += order.scope_paid
            buckets = (paid, unpaid)

        for target in buckets:
            target['totalOrders'] += 1
            _count_status(target, order.status)
        bucket['totalUnits'] += order.units
        bucket['fulfilledUnits'] += order.fulfilled_units

        aggregated['totalOrders'] += 1
        if order.status == OrderStatus.PENDING:
            aggregated['totalPending'] += 1
        elif order.status == OrderStatus.PROCESSING:
            aggregated['totalProcessing'] += 1
        elif fulfilled:
            aggregated['totalFulfilled'] += 1
        aggregated['totalUnits'] += order.units
        aggregated['totalFulfilledUnits'] += order.fulfilled_units
        aggregated['totalAmount'] += order.scope_total

    validate_cents(unpaid['totalAmount'], 'unpaid totalAmount')
    validate_cents(paid['totalAmount'], 'paid totalAmount')

    unpaid['fulfillmentRate'] = fulfillment_rate(unpaid['fulfilledUnits'], unpaid['totalUnits'])
    paid['fulfillmentRate'] = fulfillment_rate(paid['fulfilledUnits'], paid['totalUnits'])
    unpaid['updatedAt'] = stamp
    paid['updatedAt'] = stamp
    return {'unpaid': unpaid, 'paid': paid, 'aggregated': aggregated, 'updatedAt': stamp}


def sum_stats(stats_list: list[dict], *, updated_at: datetime | None = None) -> dict:
    """Sum stored stats snapshots. Legacy flat snapshots without a paid/unpaid split count as paid."""
    stamp = (updated_at or _now()).isoformat()
    unpaid = _empty_bucket()
    paid = _empty_bucket()
    aggregated = {
        'totalOrders': 0,
        'totalPending': 0,
        'totalProcessing': 0,
        'totalFulfilled': 0,
        'totalUnits': 0,
        'totalFulfilledUnits': 0,
        'totalAmount': 0,
    }

    for stats in stats_list:
        if not stats:
            continue
        split = 'unpaid' in stats or 'paid' in stats
        if split:
            for name, target in (('unpaid', unpaid), ('paid', paid)):
                source = stats.get(name) or {}
                for field in BUCKET_FIELDS:
                    target[field] += int(source.get(field) or 0)
        else:
            for field in BUCKET_FIELDS:
                raw = stats.get(field)
                if raw is None and field == 'totalAmount':
                    raw = stats.get('amount')
                paid[field] += int(raw or 0)

        agg = stats.get('aggregated')
        if agg:
            for field in aggregated:
                aggregated[field] += int(agg.get(field) or 0)

    if not any(stats.get('aggregated') for stats in stats_list if stats):
        aggregated.update(
            totalOrders=unpaid['totalOrders'] + paid['totalOrders'],
            totalPending=unpaid['pendingOrders'] + paid['pendingOrders'],
            totalProcessing=unpaid['processingOrders'] + paid['processingOrders'],
            totalFulfilled=unpaid['fulfilledOrders'] + paid['fulfilledOrders'],
            totalUnits=unpaid['totalUnits'] + paid['totalUnits'],
            totalFulfilledUnits=unpaid['fulfilledUnits'] + paid['fulfilledUnits'],
            totalAmount=unpaid['totalAmount'] + paid['totalAmount'],
        )

    unpaid['fulfillmentRate'] = fulfillment_rate(unpaid['fulfilledUnits'], unpaid['totalUnits'])
    paid['fulfillmentRate'] = fulfillment_rate(paid['fulfilledUnits'], paid['totalUnits'])
    unpaid['updatedAt'] = stamp
    paid['updatedAt'] = stamp
    return {'unpaid': unpaid, 'paid': paid, 'aggregated': aggregated, 'updatedAt': stamp}


def _window(from_date: date | None, to_date: date | None) -> tuple[datetime, datetime]:
    today = _now().date()
    start_day = from_date or today
    end_day = to_date or today
    if end_day < start_day:
        raise ValueError('to_date cannot be before from_date')
    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_day + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return start, end


def _scope_key(line: OrderLine) -> str:
    if line.department_section_id is not None:
        return f'section:{line.department_section_id}'
    return f'department:{parent_code(line.department_code)}'


def _department_line_condition(department_code: str):
    return or_(
        OrderLine.department_code == department_code,
        OrderLine.department_code.startswith(f'{department_code}{SECTION_SEPARATOR}'),
    )


def _collect_inputs(
    db: Session,
    *,
    scope_condition,
    scope_key: str,
    from_date: date | None,
    to_date: date | None,
) -> list[OrderStatsInput]:
    start, end = _window(from_date, to_date)
    order_ids = db.execute(
        select(OrderLine.order_header_id)
        .join(OrderHeader, OrderHeader.id == OrderLine.order_header_id)
        .where(
            scope_condition,
            OrderHeader.status.not_in(EXCLUDED_ORDER_STATUSES),
            OrderHeader.created_at >= start,
            OrderHeader.created_at < end,
        )
        .distinct()
    ).scalars().all()
    if not order_ids:
        return []

    orders = db.execute(select(OrderHeader).where(OrderHeader.id.in_(order_ids)).order_by(OrderHeader.id.asc())).scalars().all()
    lines_by_order: dict[int, list[OrderLine]] = defaultdict(list)
    for line in db.execute(select(OrderLine).where(OrderLine.order_header_id.in_(order_ids))).scalars().all():
        lines_by_order[line.order_header_id].append(line)

    paid_rows = db.execute(
        select(OrderPayment.order_header_id, func.coalesce(func.sum(OrderPayment.amount), 0))
        .where(
            OrderPayment.order_header_id.in_(order_ids),
            OrderPayment.status == PaymentRecordStatus.COMPLETED,
        )
        .group_by(OrderPayment.order_header_id)
    ).all()
    paid_by_order = {row[0]: int(row[1]) for row in paid_rows}

    inputs: list[OrderStatsInput] = []
    for order in orders:
        lines = lines_by_order.get(order.id, [])
        weights: dict[str, int] = {}
        for line in lines:
            key = _scope_key(line)
            weights[key] = weights.get(key, 0) + line.line_total
        scope_lines = [line for line in lines if _scope_key(line) == scope_key]
        if not scope_lines:
            continue

        order_paid = paid_by_order.get(order.id, 0)
        total_shares = allocate_cents(order.total, weights)
        paid_shares = allocate_cents(min(order_paid, order.total), weights)
        scope_total = total_shares.get(scope_key, 0)
        units = sum(line.quantity for line in scope_lines)
        fulfilled_units = sum(line.quantity for line in scope_lines if line.status == LineStatus.FULFILLED)
        inputs.append(
            OrderStatsInput(
                order_id=order.id,
                status=OrderStatus(order.status),
                order_total=order.total,
                order_paid=order_paid,
                scope_total=scope_total,
                scope_paid=min(paid_shares.get(scope_key, 0), scope_total),
                units=units,
                fulfilled_units=fulfilled_units,
            )
        )
        logger.debug(
            'order %s scope=%s total=%s paid=%s share=%s units=%s',
            order.id,
            scope_key,
            order.total,
            order_paid,
            total_shares.get(scope_key, 0),
            units,
        )
    return inputs


def recalculate_section_stats(
    db: Session,
    *,
    section_id: int,
    from_date: date | None = None,
    to_date: date | None = None,
) -> dict:
    section = db.execute(select(DepartmentSection).where(DepartmentSection.id == section_id)).scalar_one_or_none()
    if not section:
        raise NotFoundError('Department section not found')

    inputs = _collect_inputs(
        db,
        scope_condition=OrderLine.department_section_id == section_id,
        scope_key=f'section:{section_id}',
        from_date=from_date,
        to_date=to_date,
    )
    stats = compute_section_stats(inputs)
    section.meta = {**(section.meta or {}), 'sectionStats': stats}
    section.updated_at = _now()
    db.flush()
    logger.info(
        'section %s stats: orders=%s paid=%s unpaid=%s',
        section_id,
        stats['aggregated']['totalOrders'],
        stats['paid']['totalAmount'],
        stats['unpaid']['totalAmount'],
    )
    return stats


def recalculate_department_stats(
    db: Session,
    *,
    department_code: str,
    from_date: date | None = None,
    to_date: date | None = None,
) -> dict:
    """Stats for department lines that are not attached to any section."""
    code = parent_code(department_code)
    inputs = _collect_inputs(
        db,
        scope_condition=and_(_department_line_condition(code), OrderLine.department_section_id.is_(None)),
        scope_key=f'department:{code}',
        from_date=from_date,
        to_date=to_date,
    )
    return compute_section_stats(inputs)


def rollup_parent_stats(
    db: Session,
    *,
    department_code: str,
    from_date: date | None = None,
    to_date: date | None = None,
) -> dict:
    code = parent_code(department_code)
    department = db.execute(select(Department).where(Department.code == code)).scalar_one_or_none()
    if not department:
        raise NotFoundError(f'Department not found: {code}')

    sections = db.execute(
        select(DepartmentSection)
        .where(DepartmentSection.department_id == department.id, DepartmentSection.is_active.is_(True))
        .order_by(DepartmentSection.created_at.asc(), DepartmentSection.id.asc())
    ).scalars().all()

    rollups: list[dict] = []
    for section in sections:
        meta = section.meta or {}
        stats = meta.get('sectionStats') or meta.get('stats')
        if not stats:
            stats = recalculate_section_stats(db, section_id=section.id, from_date=from_date, to_date=to_date)
        rollups.append({'sectionId': section.id, 'slug': section.slug, 'name': section.name, 'stats': stats})

    unsectioned = recalculate_department_stats(db, department_code=code, from_date=from_date, to_date=to_date)
    if not sections or unsectioned['aggregated']['totalOrders'] > 0:
        rollups.append({'sectionId': None, 'slug': None, 'name': department.name, 'stats': unsectioned})

    stats = sum_stats([entry['stats'] for entry in rollups])
    department.meta = {**(department.meta or {}), 'stats': stats, 'sectionRollups': rollups}
    department.updated_at = _now()
    db.flush()
    logger.info(
        'department %s rollup: sections=%s orders=%s paid=%s unpaid=%s',
        code,
        len(sections),
        stats['aggregated']['totalOrders'],
        stats['paid']['totalAmount'],
        stats['unpaid']['totalAmount'],
    )
    return stats


def refresh_stats_for_order(
    db: Session,
    *,
    order_id: int,
    extra_section_ids: set[int] | None = None,
    extra_department_codes: set[str] | None = None,
) -> None:
    lines = db.execute(select(OrderLine).where(OrderLine.order_header_id == order_id)).scalars().all()
    section_ids = {line.department_section_id for line in lines if line.department_section_id is not None}
    section_ids |= extra_section_ids or set()
    codes = {parent_code(line.department_code) for line in lines if line.department_code}
    codes |= {parent_code(code) for code in (extra_department_codes or set())}

    try:
        for section_id in sorted(section_ids):
            recalculate_section_stats(db, section_id=section_id)
        for code in sorted(codes):
            exists = db.execute(select(Department.id).where(Department.code == code)).scalar_one_or_none()
            if exists:
                rollup_parent_stats(db, department_code=code)
    except Exception:
        logger.exception('Failed to refresh stats for order %s', order_id)
        raise
