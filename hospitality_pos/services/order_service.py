from __future__ import annotations

import logging
import secrets
import string
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, func, or_, select
from sqlalchemy.orm import Session

from hospitality_pos.config import settings
from hospitality_pos.errors import (
    DiscountError,
    InsufficientStockError,
    NotFoundError,
    OrderStateError,
    PaymentError,
)
from hospitality_pos.models import (
    Customer,
    Department,
    DepartmentSection,
    DiscountRule,
    DiscountType,
    FulfillmentStatus,
    InventoryReservation,
    LineStatus,
    OrderDepartment,
    OrderDiscount,
    OrderFulfillment,
    OrderHeader,
    OrderLine,
    OrderPayment,
    OrderStatus,
    PaymentRecordStatus,
    PaymentStatus,
)
from hospitality_pos.services.audit_service import log_audit
from hospitality_pos.services.department_codes import SECTION_SEPARATOR, parent_code
from hospitality_pos.services.department_service import get_department_by_code, resolve_section
from hospitality_pos.services.discount_service import calculate_discount_amount, get_rule, validate_discount_rule
from hospitality_pos.services.money import (
    calculate_tax,
    calculate_total,
    payment_status_for,
    percentage_of,
    validate_cents,
)
from hospitality_pos.services.stats_service import refresh_stats_for_order
from hospitality_pos.services.stock_service import (
    check_availability,
    consume_reservations,
    release_reservations,
    reserve_for_line,
    tracks_inventory,
)

logger = logging.getLogger(__name__)

CLOSED_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)
RULE_DISCOUNT_TYPES = (DiscountType.PERCENTAGE, DiscountType.BULK)
ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


@dataclass(frozen=True)
class LineItemInput:
    product_id: str
    product_name: str
    department_code: str
    quantity: int
    unit_price: int
    product_type: str | None = None
    inventory_item_id: int | None = None
    department_section_id: int | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _generate_order_number() -> str:
    stamp = int(_now().timestamp() * 1000)
    suffix = ''.join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(9))
    return f'ORD-{stamp}-{suffix}'


def _parse_item(raw: LineItemInput | dict) -> LineItemInput:
    if isinstance(raw, LineItemInput):
        item = raw
    else:
        try:
            item = LineItemInput(
                product_id=str(raw['product_id']),
                product_name=str(raw['product_name']),
                department_code=str(raw['department_code']),
                quantity=raw['quantity'],
                unit_price=raw['unit_price'],
                product_type=raw.get('product_type'),
                inventory_item_id=raw.get('inventory_item_id'),
                department_section_id=raw.get('department_section_id'),
            )
        except KeyError as exc:
            raise ValueError(f'Line item is missing {exc.args[0]}') from exc

    if not item.product_name.strip():
        raise ValueError('Line item product name is required')
    if not item.department_code.strip():
        raise ValueError('Line item department code is required')
    if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
        raise ValueError(f'Quantity must be a positive integer for {item.product_name}')
    validate_cents(item.unit_price, f'unit price for {item.product_name}')
    return item


def get_order(db: Session, order_id: int) -> OrderHeader:
    order = db.execute(select(OrderHeader).where(OrderHeader.id == order_id)).scalar_one_or_none()
    if not order:
        raise NotFoundError('Order not found')
    return order


def get_paid_amount(db: Session, order_id: int) -> int:
    paid = db.execute(
        select(func.coalesce(func.sum(OrderPayment.amount), 0)).where(
            OrderPayment.order_header_id == order_id,
            OrderPayment.status == PaymentRecordStatus.COMPLETED,
        )
    ).scalar_one()
    return int(paid or 0)


def get_pending_amount(db: Session, order_id: int) -> int:
    pending = db.execute(
        select(func.coalesce(func.sum(OrderPayment.amount), 0)).where(
            OrderPayment.order_header_id == order_id,
            OrderPayment.status == PaymentRecordStatus.PENDING,
        )
    ).scalar_one()
    return int(pending or 0)


def _order_lines(db: Session, order_id: int) -> list[OrderLine]:
    return db.execute(
        select(OrderLine).where(OrderLine.order_header_id == order_id).order_by(OrderLine.line_number.asc())
    ).scalars().all()


def _order_discounts(db: Session, order_id: int) -> list[OrderDiscount]:
    return db.execute(
        select(OrderDiscount).where(OrderDiscount.order_header_id == order_id).order_by(OrderDiscount.id.asc())
    ).scalars().all()


def _require_pending(order: OrderHeader, action: str) -> None:
    if order.status != OrderStatus.PENDING:
        raise OrderStateError(f'Cannot {action} a {OrderStatus(order.status).value} order')


def _resolve_line_section(
    db: Session,
    *,
    item: LineItemInput,
    department: Department,
    order_section: DepartmentSection | None,
) -> DepartmentSection | None:
    if item.department_section_id is not None:
        section = db.execute(
            select(DepartmentSection).where(
                DepartmentSection.id == item.department_section_id,
                DepartmentSection.department_id == department.id,
                DepartmentSection.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if not section:
            raise NotFoundError(f'Section {item.department_section_id} not found in {department.code}')
        return section
    if order_section is not None and order_section.department_id == department.id:
        return order_section
    return resolve_section(db, item.department_code)


def _prepare_lines(
    db: Session,
    *,
    items: list[LineItemInput],
    order_section: DepartmentSection | None,
) -> list[tuple[LineItemInput, Department, DepartmentSection | None]]:
    prepared = []
    required: dict[tuple[int, int, int | None], int] = defaultdict(int)
    names: dict[tuple[int, int, int | None], str] = {}
    for item in items:
        department = get_department_by_code(db, item.department_code)
        section = _resolve_line_section(db, item=item, department=department, order_section=order_section)
        prepared.append((item, department, section))
        if item.inventory_item_id is not None and tracks_inventory(department.code):
            key = (item.inventory_item_id, department.id, section.id if section else None)
            required[key] += item.quantity
            names[key] = item.product_name

    for key, quantity in required.items():
        item_id, department_id, section_id = key
        availability = check_availability(
            db, item_id=item_id, department_id=department_id, section_id=section_id, required=quantity
        )
        if not availability.has_stock:
            raise InsufficientStockError(
                f'Insufficient inventory for {names[key]}: {availability.available} available, {quantity} required',
                available=availability.available,
                required=quantity,
            )
    return prepared


def _add_line(
    db: Session,
    *,
    order: OrderHeader,
    line_number: int,
    item: LineItemInput,
    department: Department,
    section: DepartmentSection | None,
) -> OrderLine:
    line = OrderLine(
        order_header_id=order.id,
        line_number=line_number,
        department_code=item.department_code.strip(),
        department_section_id=section.id if section else None,
        product_id=item.product_id,
        product_type=item.product_type,
        product_name=item.product_name.strip(),
        inventory_item_id=item.inventory_item_id,
        quantity=item.quantity,
        unit_price=item.unit_price,
        unit_discount=0,
        line_total=item.quantity * item.unit_price,
        status=LineStatus.PENDING,
    )
    db.add(line)
    db.flush()
    reserve_for_line(db, line=line, department=department)
    return line


def _ensure_order_department(db: Session, *, order_id: int, department_id: int) -> None:
    existing = db.execute(
        select(OrderDepartment).where(
            OrderDepartment.order_header_id == order_id,
            OrderDepartment.department_id == department_id,
        )
    ).scalar_one_or_none()
    if existing is None:
        db.add(OrderDepartment(order_header_id=order_id, department_id=department_id, status=OrderStatus.PENDING))


def _existing_discount_total(db: Session, order_id: int) -> int:
    return sum(discount.discount_amount for discount in _order_discounts(db, order_id))


def _department_codes(db: Session, order_id: int) -> set[str]:
    return {parent_code(line.department_code) for line in _order_lines(db, order_id)}


def _apply_rule(db: Session, *, order: OrderHeader, rule: DiscountRule) -> OrderDiscount:
    validate_discount_rule(
        db,
        rule=rule,
        order_amount=order.subtotal,
        customer_id=order.customer_id,
        department_codes=_department_codes(db, order.id),
    )
    amount = calculate_discount_amount(rule, order.subtotal)
    proposed = _existing_discount_total(db, order.id) + amount
    if proposed > order.subtotal:
        raise DiscountError(f'Total discount ({proposed}) cannot exceed subtotal ({order.subtotal}) for {rule.code}')
    discount = OrderDiscount(
        order_header_id=order.id,
        discount_rule_id=rule.id,
        discount_type=DiscountType(rule.type),
        discount_code=rule.code,
        discount_value=rule.value,
        discount_amount=amount,
    )
    db.add(discount)
    rule.current_usage = (rule.current_usage or 0) + 1
    db.flush()
    return discount


def _load_rule(db: Session, id_or_code: int | str) -> DiscountRule:
    try:
        return get_rule(db, id_or_code)
    except NotFoundError as exc:
        raise DiscountError(f'Discount code not found: {id_or_code}') from exc


def recompute_totals(db: Session, order: OrderHeader) -> OrderHeader:
    lines = _order_lines(db, order.id)
    subtotal = sum(line.line_total for line in lines)

    remaining = subtotal
    discount_total = 0
    for discount in _order_discounts(db, order.id):
        amount = discount.discount_amount
        if discount.discount_type != DiscountType.FIXED and discount.discount_value is not None:
            amount = percentage_of(subtotal, discount.discount_value)
        amount = min(amount, remaining)
        discount.discount_amount = amount
        remaining -= amount
        discount_total += amount

    order.subtotal = subtotal
    order.discount_total = discount_total
    order.tax = calculate_tax(subtotal - discount_total)
    order.total = calculate_total(subtotal, discount_total, order.tax)
    if order.payment_status != PaymentStatus.REFUNDED:
        order.payment_status = payment_status_for(get_paid_amount(db, order.id), order.total)
    order.updated_at = _now()
    db.flush()
    return order


def create_order(
    db: Session,
    *,
    customer_id: int,
    items: list[LineItemInput | dict],
    discounts: list[int | str] | None = None,
    notes: str | None = None,
    department_section_id: int | None = None,
    created_by: str | None = None,
) -> OrderHeader:
    customer = db.execute(select(Customer).where(Customer.id == customer_id)).scalar_one_or_none()
    if not customer:
        raise NotFoundError('Customer not found')
    if not items:
        raise ValueError('Order must contain at least one item')
    parsed = [_parse_item(raw) for raw in items]

    order_section = None
    if department_section_id is not None:
        order_section = db.execute(
            select(DepartmentSection).where(
                DepartmentSection.id == department_section_id,
                DepartmentSection.is_active.is_(True),
            )
        ).scalar_one_or_none()
        if not order_section:
            raise NotFoundError('Department section not found')

    prepared = _prepare_lines(db, items=parsed, order_section=order_section)

    order = OrderHeader(
        order_number=_generate_order_number(),
        customer_id=customer_id,
        subtotal=0,
        discount_total=0,
        tax=0,
        total=0,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.UNPAID,
        notes=notes,
        created_by=created_by,
    )
    db.add(order)
    db.flush()

    department_ids: list[int] = []
    for line_number, (item, department, section) in enumerate(prepared, start=1):
        _add_line(db, order=order, line_number=line_number, item=item, department=department, section=section)
        if department.id not in department_ids:
            department_ids.append(department.id)
    for department_id in department_ids:
        _ensure_order_department(db, order_id=order.id, department_id=department_id)
    recompute_totals(db, order)

    for ref in discounts or []:
        _apply_rule(db, order=order, rule=_load_rule(db, ref))
    if discounts:
        recompute_totals(db, order)
    # A fully discounted or free order is paid without any payment.
    _start_paid_order(db, order=order, was_paid=False, actor=created_by)

    log_audit(
        db,
        actor=created_by,
        action='order.create',
        subject='order',
        subject_id=order.id,
        metadata={'order_number': order.order_number, 'lines': len(prepared), 'total': order.total},
    )
    db.flush()
    refresh_stats_for_order(db, order_id=order.id)
    logger.info('created order %s total=%s lines=%s', order.order_number, order.total, len(prepared))
    return order


def apply_discount(
    db: Session,
    *,
    order_id: int,
    discount_type: DiscountType | str,
    discount_code: str | None = None,
    discount_amount: int | None = None,
    actor: str | None = None,
) -> OrderDiscount:
    order = get_order(db, order_id)
    _require_pending(order, 'discount')
    was_paid = order.payment_status == PaymentStatus.PAID
    kind = DiscountType(discount_type)

    if kind in RULE_DISCOUNT_TYPES or (kind == DiscountType.FIXED and discount_amount is None):
        if not discount_code:
            raise DiscountError('Discount code is required')
        rule = _load_rule(db, discount_code)
        if DiscountType(rule.type) != kind and not (kind in RULE_DISCOUNT_TYPES and rule.type in RULE_DISCOUNT_TYPES):
            raise DiscountError(f'Discount code {rule.code} is not a {kind.value} discount')
        discount = _apply_rule(db, order=order, rule=rule)
    else:
        if kind == DiscountType.EMPLOYEE:
            value = settings.employee_discount_percent
            amount = percentage_of(order.subtotal, value)
        else:
            validate_cents(discount_amount, 'discount amount')
            value = None
            amount = discount_amount
        proposed = _existing_discount_total(db, order.id) + amount
        if proposed > order.subtotal:
            raise DiscountError(f'Total discount ({proposed}) cannot exceed subtotal ({order.subtotal})')
        discount = OrderDiscount(
            order_header_id=order.id,
            discount_rule_id=None,
            discount_type=kind,
            discount_code=discount_code,
            discount_value=value,
            discount_amount=amount,
        )
        db.add(discount)
        db.flush()

    recompute_totals(db, order)
    paid = get_paid_amount(db, order.id)
    if paid > order.total:
        raise DiscountError(f'Discount would reduce the total ({order.total}) below the amount already paid ({paid})')
    _start_paid_order(db, order=order, was_paid=was_paid, payment=_latest_payment(db, order.id), actor=actor)

    log_audit(
        db,
        actor=actor,
        action='order.discount',
        subject='order',
        subject_id=order.id,
        metadata={'type': kind.value, 'code': discount_code, 'amount': discount.discount_amount},
    )
    db.flush()
    refresh_stats_for_order(db, order_id=order.id)
    return discount


def add_line_item(db: Session, *, order_id: int, item: LineItemInput | dict) -> OrderLine:
    order = get_order(db, order_id)
    _require_pending(order, 'add items to')
    parsed = _parse_item(item)
    [(parsed, department, section)] = _prepare_lines(db, items=[parsed], order_section=None)

    last_number = db.execute(
        select(func.coalesce(func.max(OrderLine.line_number), 0)).where(OrderLine.order_header_id == order.id)
    ).scalar_one()
    line = _add_line(
        db, order=order, line_number=int(last_number) + 1, item=parsed, department=department, section=section
    )
    _ensure_order_department(db, order_id=order.id, department_id=department.id)
    recompute_totals(db, order)
    refresh_stats_for_order(db, order_id=order.id)
    return line


def remove_line_item(db: Session, *, order_id: int, line_id: int) -> OrderHeader:
    order = get_order(db, order_id)
    _require_pending(order, 'remove items from')
    was_paid = order.payment_status == PaymentStatus.PAID
    line = db.execute(
        select(OrderLine).where(OrderLine.id == line_id, OrderLine.order_header_id == order.id)
    ).scalar_one_or_none()
    if not line:
        raise NotFoundError('Order line not found')
    remaining = db.execute(
        select(func.count(OrderLine.id)).where(OrderLine.order_header_id == order.id, OrderLine.id != line.id)
    ).scalar_one()
    if remaining == 0:
        raise OrderStateError('Cannot remove the last line; cancel the order instead')

    removed_section_id = line.department_section_id
    removed_code = parent_code(line.department_code)
    release_reservations(db, order_id=order.id, line_id=line.id)
    for reservation in db.execute(
        select(InventoryReservation).where(InventoryReservation.order_line_id == line.id)
    ).scalars().all():
        reservation.order_line_id = None
    db.execute(delete(OrderFulfillment).where(OrderFulfillment.order_line_id == line.id))
    db.delete(line)
    db.flush()

    still_used = db.execute(
        select(OrderLine.id)
        .where(
            OrderLine.order_header_id == order.id,
            or_(
                OrderLine.department_code == removed_code,
                OrderLine.department_code.startswith(f'{removed_code}{SECTION_SEPARATOR}'),
            ),
        )
        .limit(1)
    ).first()
    if not still_used:
        department = get_department_by_code(db, removed_code)
        db.execute(
            delete(OrderDepartment).where(
                OrderDepartment.order_header_id == order.id,
                OrderDepartment.department_id == department.id,
            )
        )

    recompute_totals(db, order)
    paid = get_paid_amount(db, order.id)
    if paid > order.total:
        raise OrderStateError(
            f'Removing this line would reduce the total ({order.total}) below the amount already paid ({paid})'
        )
    _start_paid_order(db, order=order, was_paid=was_paid, payment=_latest_payment(db, order.id))
    refresh_stats_for_order(
        db,
        order_id=order.id,
        extra_section_ids={removed_section_id} if removed_section_id is not None else None,
        extra_department_codes={removed_code},
    )
    return order


def _write_last_transaction(
    db: Session, *, order: OrderHeader, payment: OrderPayment | None, actor: str | None
) -> None:
    codes = _department_codes(db, order.id)
    if not codes:
        return
    departments = db.execute(select(Department).where(Department.code.in_(codes))).scalars().all()
    for department in departments:
        department.meta = {
            **(department.meta or {}),
            'lastTransaction': {
                'orderId': order.id,
                'paymentId': payment.id if payment else None,
                'amount': payment.amount if payment else 0,
                'initiatedBy': actor,
                'at': _now().isoformat(),
            },
        }


def validate_payment_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise PaymentError(f'Payment amount must be integer cents: {amount!r}')
    if amount <= 0:
        raise PaymentError('Payment amount must be greater than zero')


def _latest_payment(db: Session, order_id: int) -> OrderPayment | None:
    return db.execute(
        select(OrderPayment)
        .where(OrderPayment.order_header_id == order_id, OrderPayment.status == PaymentRecordStatus.COMPLETED)
        .order_by(OrderPayment.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def _start_paid_order(
    db: Session,
    *,
    order: OrderHeader,
    was_paid: bool,
    payment: OrderPayment | None = None,
    actor: str | None = None,
) -> None:
    """Run once when an order becomes fully paid, whatever its fulfillment status."""
    if was_paid or order.payment_status != PaymentStatus.PAID:
        return
    now = _now()
    if order.status == OrderStatus.PENDING:
        order.status = OrderStatus.PROCESSING
        for row in db.execute(
            select(OrderDepartment).where(
                OrderDepartment.order_header_id == order.id,
                OrderDepartment.status == OrderStatus.PENDING,
            )
        ).scalars().all():
            row.status = OrderStatus.PROCESSING
            row.updated_at = now
    db.flush()
    consume_reservations(db, order=order)
    _write_last_transaction(db, order=order, payment=payment, actor=actor)


def settle_payment(db: Session, *, order: OrderHeader, payment: OrderPayment, actor: str | None = None) -> OrderHeader:
    """Re-derive the payment status after ``payment`` changed and start the order if it is now fully paid."""
    was_paid = order.payment_status == PaymentStatus.PAID
    order.payment_status = payment_status_for(get_paid_amount(db, order.id), order.total)
    order.updated_at = _now()
    _start_paid_order(db, order=order, was_paid=was_paid, payment=payment, actor=actor)
    db.flush()
    refresh_stats_for_order(db, order_id=order.id)
    return order


def record_payment(
    db: Session,
    *,
    order_id: int,
    amount: int,
    payment_method: str,
    transaction_reference: str | None = None,
    actor: str | None = None,
) -> OrderPayment:
    validate_payment_amount(amount)
    method = (payment_method or '').strip()
    if not method:
        raise PaymentError('Payment method is required')

    order = get_order(db, order_id)
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Cannot record payment on a {OrderStatus(order.status).value} order')
    paid = get_paid_amount(db, order.id)
    pending = get_pending_amount(db, order.id)
    if paid + pending + amount > order.total:
        raise PaymentError(f'Payment amount exceeds balance due ({order.total - paid - pending})')

    payment = OrderPayment(
        order_header_id=order.id,
        amount=amount,
        payment_method=method,
        status=PaymentRecordStatus.COMPLETED,
        transaction_reference=transaction_reference,
        processed_at=_now(),
    )
    db.add(payment)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='order.payment',
        subject='order',
        subject_id=order.id,
        metadata={'payment_id': payment.id, 'amount': amount, 'method': method},
    )
    settle_payment(db, order=order, payment=payment, actor=actor)
    logger.info(
        'order %s payment %s amount=%s status=%s',
        order.order_number,
        payment.id,
        amount,
        order.payment_status.value,
    )
    return payment


def get_order_detail(db: Session, order_id: int) -> dict:
    order = get_order(db, order_id)
    paid = get_paid_amount(db, order.id)
    payments = db.execute(
        select(OrderPayment).where(OrderPayment.order_header_id == order.id).order_by(OrderPayment.id.asc())
    ).scalars().all()
    departments = db.execute(
        select(Department.code, OrderDepartment.status)
        .join(OrderDepartment, OrderDepartment.department_id == Department.id)
        .where(OrderDepartment.order_header_id == order.id)
        .order_by(Department.code.asc())
    ).all()
    return {
        'id': order.id,
        'order_number': order.order_number,
        'customer_id': order.customer_id,
        'status': OrderStatus(order.status).value,
        'payment_status': PaymentStatus(order.payment_status).value,
        'subtotal': order.subtotal,
        'discount_total': order.discount_total,
        'tax': order.tax,
        'total': order.total,
        'amount_paid': paid,
        'balance_due': max(order.total - paid, 0),
        'notes': order.notes,
        'created_at': order.created_at,
        'lines': [
            {
                'id': line.id,
                'line_number': line.line_number,
                'department_code': line.department_code,
                'department_section_id': line.department_section_id,
                'product_id': line.product_id,
                'product_name': line.product_name,
                'quantity': line.quantity,
                'unit_price': line.unit_price,
                'line_total': line.line_total,
                'status': LineStatus(line.status).value,
            }
            for line in _order_lines(db, order.id)
        ],
        'discounts': [
            {
                'id': discount.id,
                'type': DiscountType(discount.discount_type).value,
                'code': discount.discount_code,
                'amount': discount.discount_amount,
            }
            for discount in _order_discounts(db, order.id)
        ],
        'payments': [
            {
                'id': payment.id,
                'amount': payment.amount,
                'method': payment.payment_method,
                'status': PaymentRecordStatus(payment.status).value,
                'reference': payment.transaction_reference,
            }
            for payment in payments
        ],
        'departments': [{'code': code, 'status': OrderStatus(status).value} for code, status in departments],
    }


def list_orders(
    db: Session,
    *,
    customer_id: int | None = None,
    status: OrderStatus | str | None = None,
    department_code: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    conditions = []
    if customer_id is not None:
        conditions.append(OrderHeader.customer_id == customer_id)
    if status is not None:
        conditions.append(OrderHeader.status == OrderStatus(status))
    if department_code:
        department = get_department_by_code(db, department_code)
        conditions.append(
            OrderHeader.id.in_(
                select(OrderDepartment.order_header_id).where(OrderDepartment.department_id == department.id)
            )
        )

    total = db.execute(select(func.count(OrderHeader.id)).where(*conditions)).scalar_one()
    orders = db.execute(
        select(OrderHeader)
        .where(*conditions)
        .order_by(OrderHeader.created_at.desc(), OrderHeader.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        'items': [
            {
                'id': order.id,
                'order_number': order.order_number,
                'customer_id': order.customer_id,
                'status': OrderStatus(order.status).value,
                'payment_status': PaymentStatus(order.payment_status).value,
                'total': order.total,
                'created_at': order.created_at,
            }
            for order in orders
        ],
        'meta': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


def _set_department_statuses(db: Session, *, order_id: int, status: OrderStatus, now: datetime) -> None:
    for row in db.execute(select(OrderDepartment).where(OrderDepartment.order_header_id == order_id)).scalars().all():
        row.status = status
        row.updated_at = now


def update_order_status(db: Session, *, order_id: int, status: OrderStatus | str) -> OrderHeader:
    new_status = OrderStatus(status)
    if new_status in CLOSED_ORDER_STATUSES:
        raise ValueError(f'Use the {new_status.value} operation to mark an order {new_status.value}')
    order = get_order(db, order_id)
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Cannot change status of a {OrderStatus(order.status).value} order')

    now = _now()
    order.status = new_status
    order.updated_at = now
    _set_department_statuses(db, order_id=order.id, status=new_status, now=now)
    db.flush()
    refresh_stats_for_order(db, order_id=order.id)
    return order


def _close_fulfillments(db: Session, *, order_id: int, status: FulfillmentStatus, open_only: bool) -> None:
    stmt = select(OrderFulfillment).where(OrderFulfillment.order_header_id == order_id)
    if open_only:
        stmt = stmt.where(OrderFulfillment.status == FulfillmentStatus.IN_PROGRESS)
    else:
        stmt = stmt.where(OrderFulfillment.status != FulfillmentStatus.CANCELLED)
    for fulfillment in db.execute(stmt).scalars().all():
        fulfillment.status = status


def _refund_payments(db: Session, *, order_id: int) -> int:
    refunded = 0
    for payment in db.execute(
        select(OrderPayment).where(
            OrderPayment.order_header_id == order_id,
            OrderPayment.status == PaymentRecordStatus.COMPLETED,
        )
    ).scalars().all():
        payment.status = PaymentRecordStatus.REFUNDED
        refunded += payment.amount
    return refunded


def _append_note(order: OrderHeader, label: str, reason: str | None) -> None:
    if not reason:
        return
    note = f'{label}: {reason.strip()}'
    order.notes = f'{order.notes}\n{note}' if order.notes else note


def cancel_order(db: Session, *, order_id: int, reason: str | None = None, actor: str | None = None) -> OrderHeader:
    order = get_order(db, order_id)
    if order.status != OrderStatus.PENDING:
        raise OrderStateError(f'Only pending orders can be cancelled (order is {OrderStatus(order.status).value})')

    now = _now()
    release_reservations(db, order_id=order.id)
    _close_fulfillments(db, order_id=order.id, status=FulfillmentStatus.CANCELLED, open_only=True)
    for line in _order_lines(db, order.id):
        line.status = LineStatus.CANCELLED
    refunded = _refund_payments(db, order_id=order.id)

    order.status = OrderStatus.CANCELLED
    if refunded:
        order.payment_status = PaymentStatus.REFUNDED
    order.updated_at = now
    _append_note(order, 'Cancelled', reason)
    _set_department_statuses(db, order_id=order.id, status=OrderStatus.CANCELLED, now=now)
    log_audit(
        db,
        actor=actor,
        action='order.cancel',
        subject='order',
        subject_id=order.id,
        metadata={'reason': reason, 'refunded': refunded},
    )
    db.flush()
    refresh_stats_for_order(db, order_id=order.id)
    logger.info('cancelled order %s', order.order_number)
    return order


def refund_order(db: Session, *, order_id: int, reason: str | None = None, actor: str | None = None) -> OrderHeader:
    order = get_order(db, order_id)
    if order.status in CLOSED_ORDER_STATUSES:
        raise OrderStateError(f'Cannot refund a {OrderStatus(order.status).value} order')
    if order.payment_status not in (PaymentStatus.PAID, PaymentStatus.PARTIAL):
        raise OrderStateError('Only paid or partially paid orders can be refunded')

    now = _now()
    release_reservations(db, order_id=order.id)
    _close_fulfillments(db, order_id=order.id, status=FulfillmentStatus.REFUNDED, open_only=False)
    for line in _order_lines(db, order.id):
        if line.status != LineStatus.CANCELLED:
            line.status = LineStatus.REFUNDED
    refunded = _refund_payments(db, order_id=order.id)

    order.status = OrderStatus.REFUNDED
    order.payment_status = PaymentStatus.REFUNDED
    order.updated_at = now
    _append_note(order, 'Refunded', reason)
    _set_department_statuses(db, order_id=order.id, status=OrderStatus.REFUNDED, now=now)
    log_audit(
        db,
        actor=actor,
        action='order.refund',
        subject='order',
        subject_id=order.id,
        metadata={'reason': reason, 'refunded': refunded},
    )
    db.flush()
    refresh_stats_for_order(db, order_id=order.id)
    logger.info('refunded order %s amount=%s', order.order_number, refunded)
    return order


def get_order_stats(db: Session) -> dict:
    rows = db.execute(select(OrderHeader.status, func.count(OrderHeader.id)).group_by(OrderHeader.status)).all()
    counts = {OrderStatus(status): count for status, count in rows}
    revenue = db.execute(
        select(func.coalesce(func.sum(OrderPayment.amount), 0)).where(
            OrderPayment.status == PaymentRecordStatus.COMPLETED
        )
    ).scalar_one()
    return {
        'total_orders': sum(counts.values()),
        'active_orders': counts.get(OrderStatus.PENDING, 0) + counts.get(OrderStatus.PROCESSING, 0),
        'fulfilled_orders': counts.get(OrderStatus.FULFILLED, 0),
        'completed_orders': counts.get(OrderStatus.COMPLETED, 0),
        'cancelled_orders': counts.get(OrderStatus.CANCELLED, 0),
        'refunded_orders': counts.get(OrderStatus.REFUNDED, 0),
        'total_revenue': int(revenue or 0),
    }
