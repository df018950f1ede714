from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hospitality_pos.config import settings
from hospitality_pos.errors import InsufficientStockError, NotFoundError
from hospitality_pos.models import (
    Department,
    DepartmentInventory,
    InventoryItem,
    InventoryMovement,
    InventoryReservation,
    LineStatus,
    MovementType,
    OrderHeader,
    OrderLine,
    ReservationStatus,
)
from hospitality_pos.services.department_codes import parent_code

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Availability:
    has_stock: bool
    available: int
    required: int
    message: str | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def tracks_inventory(department_code: str | None) -> bool:
    return parent_code(department_code) in settings.inventory_department_codes


def _section_clause(column, section_id: int | None):
    if section_id is None:
        return column.is_(None)
    return column == section_id


def _inventory_row(
    db: Session, *, item_id: int, department_id: int, section_id: int | None
) -> DepartmentInventory | None:
    return db.execute(
        select(DepartmentInventory).where(
            DepartmentInventory.inventory_item_id == item_id,
            DepartmentInventory.department_id == department_id,
            _section_clause(DepartmentInventory.section_id, section_id),
        )
    ).scalar_one_or_none()


def _reserved_quantity(db: Session, *, item_id: int, department_id: int, section_id: int | None) -> int:
    reserved = db.execute(
        select(func.coalesce(func.sum(InventoryReservation.quantity), 0)).where(
            InventoryReservation.inventory_item_id == item_id,
            InventoryReservation.department_id == department_id,
            _section_clause(InventoryReservation.section_id, section_id),
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
    ).scalar_one()
    return int(reserved or 0)


def get_on_hand(db: Session, *, item_id: int, department_id: int, section_id: int | None = None) -> int:
    row = _inventory_row(db, item_id=item_id, department_id=department_id, section_id=section_id)
    return row.quantity if row else 0


def get_balance(db: Session, *, item_id: int, department_id: int, section_id: int | None = None) -> int:
    """Quantity that can still be sold from this scope: on hand minus active reservations."""
    on_hand = get_on_hand(db, item_id=item_id, department_id=department_id, section_id=section_id)
    reserved = _reserved_quantity(db, item_id=item_id, department_id=department_id, section_id=section_id)
    return max(on_hand - reserved, 0)


def get_balances(
    db: Session, *, item_ids: list[int], department_id: int, section_id: int | None = None
) -> dict[int, int]:
    if not item_ids:
        return {}
    on_hand = {
        row.inventory_item_id: row.quantity
        for row in db.execute(
            select(DepartmentInventory).where(
                DepartmentInventory.inventory_item_id.in_(item_ids),
                DepartmentInventory.department_id == department_id,
                _section_clause(DepartmentInventory.section_id, section_id),
            )
        ).scalars().all()
    }
    reserved_rows = db.execute(
        select(InventoryReservation.inventory_item_id, func.sum(InventoryReservation.quantity))
        .where(
            InventoryReservation.inventory_item_id.in_(item_ids),
            InventoryReservation.department_id == department_id,
            _section_clause(InventoryReservation.section_id, section_id),
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
        .group_by(InventoryReservation.inventory_item_id)
    ).all()
    reserved = {item_id: int(qty or 0) for item_id, qty in reserved_rows}
    return {item_id: max(on_hand.get(item_id, 0) - reserved.get(item_id, 0), 0) for item_id in item_ids}


def check_availability(
    db: Session,
    *,
    item_id: int,
    department_id: int,
    section_id: int | None,
    required: int,
) -> Availability:
    available = get_balance(db, item_id=item_id, department_id=department_id, section_id=section_id)
    if available >= required:
        return Availability(has_stock=True, available=available, required=required)
    return Availability(
        has_stock=False,
        available=available,
        required=required,
        message=f'Insufficient stock: {available} available, {required} required',
    )


def reserve_for_line(db: Session, *, line: OrderLine, department: Department) -> InventoryReservation | None:
    if line.inventory_item_id is None or not tracks_inventory(department.code):
        return None
    availability = check_availability(
        db,
        item_id=line.inventory_item_id,
        department_id=department.id,
        section_id=line.department_section_id,
        required=line.quantity,
    )
    if not availability.has_stock:
        raise InsufficientStockError(
            f'{availability.message} for {line.product_name}',
            available=availability.available,
            required=availability.required,
        )
    reservation = InventoryReservation(
        order_header_id=line.order_header_id,
        order_line_id=line.id,
        inventory_item_id=line.inventory_item_id,
        department_id=department.id,
        section_id=line.department_section_id,
        quantity=line.quantity,
        status=ReservationStatus.RESERVED,
    )
    db.add(reservation)
    db.flush()
    return reservation


def release_reservations(db: Session, *, order_id: int, line_id: int | None = None) -> int:
    stmt = select(InventoryReservation).where(
        InventoryReservation.order_header_id == order_id,
        InventoryReservation.status == ReservationStatus.RESERVED,
    )
    if line_id is not None:
        stmt = stmt.where(InventoryReservation.order_line_id == line_id)
    reservations = db.execute(stmt).scalars().all()
    now = _now()
    for reservation in reservations:
        reservation.status = ReservationStatus.RELEASED
        reservation.released_at = now
    db.flush()
    return len(reservations)


def _record_movement(
    db: Session,
    *,
    item_id: int,
    department_id: int,
    section_id: int | None,
    movement_type: MovementType,
    quantity: int,
    reason: str,
    reference: str | None,
) -> InventoryMovement:
    movement = InventoryMovement(
        inventory_item_id=item_id,
        department_id=department_id,
        section_id=section_id,
        movement_type=movement_type,
        quantity=quantity,
        reason=reason,
        reference=reference,
    )
    db.add(movement)
    return movement


def consume_reservations(db: Session, *, order: OrderHeader) -> list[InventoryMovement]:
    lines = db.execute(
        select(OrderLine)
        .where(
            OrderLine.order_header_id == order.id,
            OrderLine.inventory_item_id.is_not(None),
            OrderLine.status.not_in((LineStatus.CANCELLED, LineStatus.REFUNDED)),
        )
        .order_by(OrderLine.line_number.asc())
    ).scalars().all()
    reservations_by_line: dict[int, list[InventoryReservation]] = {}
    for reservation in db.execute(
        select(InventoryReservation).where(
            InventoryReservation.order_header_id == order.id,
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
    ).scalars().all():
        reservations_by_line.setdefault(reservation.order_line_id, []).append(reservation)

    # Lines already consumed have no active reservation left.
    lines = [line for line in lines if tracks_inventory(line.department_code) and line.id in reservations_by_line]
    if not lines:
        return []

    departments = {
        dept.code: dept
        for dept in db.execute(
            select(Department).where(Department.code.in_({parent_code(line.department_code) for line in lines}))
        ).scalars().all()
    }

    now = _now()
    movements: list[InventoryMovement] = []
    for line in lines:
        department = departments.get(parent_code(line.department_code))
        if not department:
            raise NotFoundError(f'Department not found: {parent_code(line.department_code)}')
        row = _inventory_row(
            db,
            item_id=line.inventory_item_id,
            department_id=department.id,
            section_id=line.department_section_id,
        )
        on_hand = row.quantity if row else 0
        if row is None or on_hand < line.quantity:
            raise InsufficientStockError(
                f'Insufficient stock for {line.product_name}: {on_hand} on hand, {line.quantity} required',
                available=on_hand,
                required=line.quantity,
            )
        row.quantity = on_hand - line.quantity
        row.updated_at = now
        movements.append(
            _record_movement(
                db,
                item_id=line.inventory_item_id,
                department_id=department.id,
                section_id=line.department_section_id,
                movement_type=MovementType.OUT,
                quantity=line.quantity,
                reason='sale',
                reference=order.order_number,
            )
        )
        for reservation in reservations_by_line[line.id]:
            reservation.status = ReservationStatus.CONSUMED
            reservation.consumed_at = now

    db.flush()
    logger.info('order %s consumed stock for %s lines', order.order_number, len(movements))
    return movements


def adjust_stock(
    db: Session,
    *,
    item_id: int,
    department_id: int,
    section_id: int | None = None,
    delta: int,
    reason: str,
    reference: str | None = None,
) -> DepartmentInventory:
    if delta == 0:
        raise ValueError('Stock adjustment cannot be zero')
    if not db.execute(select(InventoryItem.id).where(InventoryItem.id == item_id)).scalar_one_or_none():
        raise NotFoundError('Inventory item not found')
    if not db.execute(select(Department.id).where(Department.id == department_id)).scalar_one_or_none():
        raise NotFoundError('Department not found')

    row = _inventory_row(db, item_id=item_id, department_id=department_id, section_id=section_id)
    if row is None:
        row = DepartmentInventory(
            department_id=department_id,
            section_id=section_id,
            inventory_item_id=item_id,
            quantity=0,
        )
        db.add(row)

    current = row.quantity or 0
    if current + delta < 0:
        raise InsufficientStockError(
            f'Cannot remove {-delta}: only {current} on hand',
            available=current,
            required=-delta,
        )
    row.quantity = current + delta
    row.updated_at = _now()
    _record_movement(
        db,
        item_id=item_id,
        department_id=department_id,
        section_id=section_id,
        movement_type=MovementType.IN if delta > 0 else MovementType.OUT,
        quantity=abs(delta),
        reason=reason,
        reference=reference,
    )
    db.flush()
    return row


def transfer_stock(
    db: Session,
    *,
    item_id: int,
    from_department_id: int,
    from_section_id: int | None,
    to_department_id: int,
    to_section_id: int | None,
    quantity: int,
    reference: str | None = None,
) -> tuple[InventoryMovement, InventoryMovement]:
    """Move stock between two scopes, writing an ``out`` and an ``in`` movement."""
    if quantity <= 0:
        raise ValueError('Transfer quantity must be greater than zero')
    if from_department_id == to_department_id and from_section_id == to_section_id:
        raise ValueError('Cannot transfer stock to the same location')
    if not db.execute(select(InventoryItem.id).where(InventoryItem.id == item_id)).scalar_one_or_none():
        raise NotFoundError('Inventory item not found')

    # Reserved units belong to open orders and cannot leave the source.
    available = get_balance(db, item_id=item_id, department_id=from_department_id, section_id=from_section_id)
    if available < quantity:
        raise InsufficientStockError(
            f'Cannot transfer {quantity}: only {available} available',
            available=available,
            required=quantity,
        )

    now = _now()
    source = _inventory_row(db, item_id=item_id, department_id=from_department_id, section_id=from_section_id)
    source.quantity -= quantity
    source.updated_at = now

    target = _inventory_row(db, item_id=item_id, department_id=to_department_id, section_id=to_section_id)
    if target is None:
        target = DepartmentInventory(
            department_id=to_department_id,
            section_id=to_section_id,
            inventory_item_id=item_id,
            quantity=0,
        )
        db.add(target)
    target.quantity = (target.quantity or 0) + quantity
    target.updated_at = now

    out_movement = _record_movement(
        db,
        item_id=item_id,
        department_id=from_department_id,
        section_id=from_section_id,
        movement_type=MovementType.OUT,
        quantity=quantity,
        reason='transfer_out',
        reference=reference,
    )
    in_movement = _record_movement(
        db,
        item_id=item_id,
        department_id=to_department_id,
        section_id=to_section_id,
        movement_type=MovementType.IN,
        quantity=quantity,
        reason='transfer_in',
        reference=reference,
    )
    db.flush()
    return out_movement, in_movement
