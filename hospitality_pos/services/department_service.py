from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import NotFoundError, OrderStateError
from hospitality_pos.models import (
    Customer,
    Department,
    DepartmentSection,
    FulfillmentStatus,
    LineStatus,
    OrderDepartment,
    OrderFulfillment,
    OrderHeader,
    OrderLine,
    OrderStatus,
)
from hospitality_pos.services.department_codes import SECTION_SEPARATOR, parent_code, split_department_code
from hospitality_pos.services.stats_service import refresh_stats_for_order

logger = logging.getLogger(__name__)

STANDARD_DEPARTMENTS = (
    ('HOTEL_BOOKING', 'Hotel Bookings', 'Room reservations and check-in/check-out', 'hotel'),
    ('RESTAURANT', 'Restaurant', 'Food items and menu management', 'restaurant'),
    ('BAR_CLUB', 'Bar & Club', 'Drinks and beverages', 'bar'),
    ('GYM_MEMBERSHIP', 'Gym Membership', 'Gym memberships and sessions', 'gym'),
    ('SPORT_MEMBERSHIP', 'Sport Membership', 'Sport/fitness memberships', 'sport'),
    ('HOTEL_SERVICE', 'Hotel Services', 'Laundry, room service, amenities, spa', 'hotel_service'),
    ('GAMES_ENTERTAINMENT', 'Games & Entertainment', 'Game credits and entertainment packages', 'games'),
    ('EMPLOYEE_ORDER', 'Employee Orders', 'Employee purchases with discounts and debt tracking', 'employee'),
)
CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
DONE_DEPARTMENT_STATUSES = (OrderStatus.FULFILLED, OrderStatus.COMPLETED)
DONE_LINE_STATUSES = (LineStatus.FULFILLED, LineStatus.CANCELLED)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def initialize_departments(db: Session) -> list[Department]:
    existing = {dept.code: dept for dept in db.execute(select(Department)).scalars().all()}
    departments: list[Department] = []
    for code, name, description, dept_type in STANDARD_DEPARTMENTS:
        department = existing.get(code)
        if department is None:
            department = Department(code=code, name=name, description=description, type=dept_type, is_active=True)
            db.add(department)
            logger.info('created department %s', code)
        departments.append(department)
    db.flush()
    return departments


def list_departments(db: Session, *, include_inactive: bool = False) -> list[Department]:
    stmt = select(Department)
    if not include_inactive:
        stmt = stmt.where(Department.is_active.is_(True))
    return db.execute(stmt.order_by(Department.name.asc())).scalars().all()


def get_department_by_code(db: Session, code: str) -> Department:
    dept_code = parent_code(code)
    department = db.execute(select(Department).where(Department.code == dept_code)).scalar_one_or_none()
    if not department:
        raise NotFoundError(f'Department not found: {dept_code}')
    return department


def resolve_section(db: Session, code: str) -> DepartmentSection | None:
    """Section for ``PARENT:slug`` or ``PARENT:id``; a bare parent code gets its first active section."""
    dept_code, section_key = split_department_code(code)
    department = get_department_by_code(db, dept_code)
    stmt = select(DepartmentSection).where(
        DepartmentSection.department_id == department.id,
        DepartmentSection.is_active.is_(True),
    )
    if section_key is None:
        return db.execute(
            stmt.order_by(DepartmentSection.created_at.asc(), DepartmentSection.id.asc()).limit(1)
        ).scalar_one_or_none()

    if section_key.isdigit():
        section = db.execute(stmt.where(DepartmentSection.id == int(section_key))).scalar_one_or_none()
    else:
        section = db.execute(stmt.where(DepartmentSection.slug == section_key)).scalar_one_or_none()
    if not section:
        raise NotFoundError(f'Department section not found: {code}')
    return section


def get_orders_by_department(
    db: Session,
    *,
    code: str,
    status: OrderStatus | str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    department = get_department_by_code(db, code)
    page = max(page, 1)
    limit = max(limit, 1)
    stmt = (
        select(OrderHeader, OrderDepartment.status)
        .join(OrderDepartment, OrderDepartment.order_header_id == OrderHeader.id)
        .where(OrderDepartment.department_id == department.id)
    )
    count_stmt = select(func.count(OrderDepartment.order_header_id)).where(
        OrderDepartment.department_id == department.id
    )
    if status is not None:
        wanted = OrderStatus(status)
        stmt = stmt.where(OrderDepartment.status == wanted)
        count_stmt = count_stmt.where(OrderDepartment.status == wanted)

    total = db.execute(count_stmt).scalar_one()
    rows = db.execute(
        stmt.order_by(OrderHeader.created_at.desc(), OrderHeader.id.desc()).offset((page - 1) * limit).limit(limit)
    ).all()
    return {
        'items': [
            {
                'id': order.id,
                'order_number': order.order_number,
                'customer_id': order.customer_id,
                'status': OrderStatus(order.status).value,
                'department_status': OrderStatus(dept_status).value,
                'payment_status': order.payment_status.value,
                'total': order.total,
                'created_at': order.created_at,
            }
            for order, dept_status in rows
        ],
        'meta': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


def update_department_fulfillment(
    db: Session,
    *,
    order_id: int,
    code: str,
    status: OrderStatus | str,
) -> OrderDepartment:
    new_status = OrderStatus(status)
    department = get_department_by_code(db, code)
    order = db.execute(select(OrderHeader).where(OrderHeader.id == order_id)).scalar_one_or_none()
    if not order:
        raise NotFoundError('Order not found')
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Cannot update fulfillment of a {order.status.value} order')

    row = db.execute(
        select(OrderDepartment).where(
            OrderDepartment.order_header_id == order_id,
            OrderDepartment.department_id == department.id,
        )
    ).scalar_one_or_none()
    if not row:
        raise NotFoundError(f'Order {order.order_number} has no {department.code} items')
    row.status = new_status
    row.updated_at = _now()
    db.flush()

    all_rows = db.execute(select(OrderDepartment).where(OrderDepartment.order_header_id == order_id)).scalars().all()
    if new_status == OrderStatus.FULFILLED and all(r.status in DONE_DEPARTMENT_STATUSES for r in all_rows):
        order.status = OrderStatus.FULFILLED
        order.updated_at = _now()
        db.flush()

    refresh_stats_for_order(db, order_id=order_id)
    return row


def get_department_stats(db: Session, code: str) -> dict:
    department = get_department_by_code(db, code)
    rows = db.execute(
        select(OrderDepartment.status, func.count(OrderDepartment.order_header_id))
        .where(OrderDepartment.department_id == department.id)
        .group_by(OrderDepartment.status)
    ).all()
    counts = {OrderStatus(status): count for status, count in rows}
    result = {
        'department': department.name,
        'pending_orders': counts.get(OrderStatus.PENDING, 0),
        'processing_orders': counts.get(OrderStatus.PROCESSING, 0),
        'fulfilled_orders': counts.get(OrderStatus.FULFILLED, 0),
        'completed_orders': counts.get(OrderStatus.COMPLETED, 0),
    }
    result['total_orders'] = (
        result['pending_orders'] + result['processing_orders'] + result['fulfilled_orders'] + result['completed_orders']
    )
    return result


def get_department_pending_items(db: Session, code: str) -> list[dict]:
    dept_code = get_department_by_code(db, code).code
    rows = db.execute(
        select(OrderLine, OrderHeader, Customer.name)
        .join(OrderHeader, OrderHeader.id == OrderLine.order_header_id)
        .join(Customer, Customer.id == OrderHeader.customer_id)
        .where(
            or_(
                OrderLine.department_code == dept_code,
                OrderLine.department_code.startswith(f'{dept_code}{SECTION_SEPARATOR}'),
            ),
            OrderLine.status.in_((LineStatus.PENDING, LineStatus.PROCESSING)),
            OrderHeader.status.not_in(CLOSED_ORDER_STATUSES),
        )
        .order_by(OrderLine.created_at.asc(), OrderLine.id.asc())
    ).all()
    return [
        {
            'line_id': line.id,
            'order_id': order.id,
            'order_number': order.order_number,
            'customer_name': customer_name,
            'department_code': line.department_code,
            'department_section_id': line.department_section_id,
            'product_name': line.product_name,
            'quantity': line.quantity,
            'status': line.status.value,
            'created_at': line.created_at,
        }
        for line, order, customer_name in rows
    ]


def _get_line_with_order(db: Session, line_id: int) -> tuple[OrderLine, OrderHeader]:
    row = db.execute(
        select(OrderLine, OrderHeader)
        .join(OrderHeader, OrderHeader.id == OrderLine.order_header_id)
        .where(OrderLine.id == line_id)
    ).first()
    if not row:
        raise NotFoundError('Order line not found')
    line, order = row
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Order {order.order_number} is {order.status.value}')
    return line, order


def mark_item_in_progress(db: Session, *, line_id: int) -> OrderLine:
    line, _order = _get_line_with_order(db, line_id)
    if line.status != LineStatus.PENDING:
        raise OrderStateError(f'Line {line.line_number} is already {line.status.value}')
    line.status = LineStatus.PROCESSING
    db.add(
        OrderFulfillment(
            order_header_id=line.order_header_id,
            order_line_id=line.id,
            status=FulfillmentStatus.IN_PROGRESS,
            fulfilled_quantity=0,
        )
    )
    db.flush()
    return line


def _sync_department_row(db: Session, *, order_id: int, code: str) -> None:
    dept_code = parent_code(code)
    department = db.execute(select(Department).where(Department.code == dept_code)).scalar_one_or_none()
    if not department:
        return
    statuses = db.execute(
        select(OrderLine.status).where(
            OrderLine.order_header_id == order_id,
            or_(
                OrderLine.department_code == dept_code,
                OrderLine.department_code.startswith(f'{dept_code}{SECTION_SEPARATOR}'),
            ),
        )
    ).scalars().all()
    if not statuses or not all(status in DONE_LINE_STATUSES for status in statuses):
        return
    row = db.execute(
        select(OrderDepartment).where(
            OrderDepartment.order_header_id == order_id,
            OrderDepartment.department_id == department.id,
        )
    ).scalar_one_or_none()
    if row and row.status not in DONE_DEPARTMENT_STATUSES:
        row.status = OrderStatus.FULFILLED
        row.updated_at = _now()


def complete_line_item_fulfillment(db: Session, *, line_id: int, quantity: int | None = None) -> OrderLine:
    line, order = _get_line_with_order(db, line_id)
    if line.status in (LineStatus.CANCELLED, LineStatus.REFUNDED):
        raise OrderStateError(f'Line {line.line_number} is {line.status.value}')
    fulfilled_quantity = line.quantity if quantity is None else quantity
    if fulfilled_quantity <= 0 or fulfilled_quantity > line.quantity:
        raise ValueError(f'Fulfilled quantity must be between 1 and {line.quantity}')

    now = _now()
    line.status = LineStatus.FULFILLED
    open_rows = db.execute(
        select(OrderFulfillment).where(
            OrderFulfillment.order_line_id == line.id,
            OrderFulfillment.status == FulfillmentStatus.IN_PROGRESS,
        )
    ).scalars().all()
    if not open_rows:
        db.add(
            OrderFulfillment(
                order_header_id=order.id,
                order_line_id=line.id,
                status=FulfillmentStatus.FULFILLED,
                fulfilled_quantity=fulfilled_quantity,
                fulfilled_at=now,
            )
        )
    for fulfillment in open_rows:
        fulfillment.status = FulfillmentStatus.FULFILLED
        fulfillment.fulfilled_quantity = fulfilled_quantity
        fulfillment.fulfilled_at = now
    db.flush()

    _sync_department_row(db, order_id=order.id, code=line.department_code)
    statuses = db.execute(select(OrderLine.status).where(OrderLine.order_header_id == order.id)).scalars().all()
    if all(status in DONE_LINE_STATUSES for status in statuses):
        order.status = OrderStatus.FULFILLED
        order.updated_at = now
    db.flush()

    refresh_stats_for_order(db, order_id=order.id)
    logger.info('order %s line %s fulfilled (%s units)', order.order_number, line.line_number, fulfilled_quantity)
    return line
