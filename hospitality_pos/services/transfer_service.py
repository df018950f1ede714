from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import InsufficientStockError, NotFoundError, TransferError
from hospitality_pos.models import (
    Department,
    DepartmentSection,
    DepartmentTransfer,
    DepartmentTransferItem,
    InventoryItem,
    TransferStatus,
)
from hospitality_pos.services.audit_service import log_audit
from hospitality_pos.services.department_codes import split_department_code
from hospitality_pos.services.department_service import get_department_by_code, resolve_section
from hospitality_pos.services.stock_service import get_balance, transfer_stock

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _resolve_scope(db: Session, code: str) -> tuple[Department, DepartmentSection | None]:
    """A bare code is the department's own stock; ``PARENT:slug`` is one section."""
    dept_code, section_key = split_department_code(code)
    department = get_department_by_code(db, dept_code)
    if section_key is None:
        return department, None
    return department, resolve_section(db, code)


def _scope_label(department: Department, section: DepartmentSection | None) -> str:
    if section is None:
        return department.code
    return f'{department.code}:{section.slug or section.id}'


def _clean_items(db: Session, items: list[dict]) -> list[tuple[int, int]]:
    if not items:
        raise ValueError('Transfer needs at least one item')
    cleaned: list[tuple[int, int]] = []
    for entry in items:
        item_id = entry.get('inventory_item_id')
        quantity = entry.get('quantity')
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise ValueError('Transfer quantity must be a positive whole number')
        if not db.execute(select(InventoryItem.id).where(InventoryItem.id == item_id)).scalar_one_or_none():
            raise NotFoundError(f'Inventory item not found: {item_id}')
        cleaned.append((item_id, quantity))
    return cleaned


def create_transfer(
    db: Session,
    *,
    from_code: str,
    to_code: str,
    items: list[dict],
    created_by: str | None = None,
    notes: str | None = None,
) -> DepartmentTransfer:
    source, source_section = _resolve_scope(db, from_code)
    target, target_section = _resolve_scope(db, to_code)
    source_section_id = source_section.id if source_section else None
    target_section_id = target_section.id if target_section else None
    if source.id == target.id and source_section_id == target_section_id:
        raise TransferError('Cannot transfer stock to the same location')
    cleaned = _clean_items(db, items)

    transfer = DepartmentTransfer(
        from_department_id=source.id,
        from_section_id=source_section_id,
        to_department_id=target.id,
        to_section_id=target_section_id,
        status=TransferStatus.PENDING,
        notes=notes,
        created_by=created_by,
    )
    db.add(transfer)
    db.flush()
    for item_id, quantity in cleaned:
        db.add(DepartmentTransferItem(transfer_id=transfer.id, inventory_item_id=item_id, quantity=quantity))
    log_audit(
        db,
        actor=created_by,
        action='transfer.create',
        subject='department_transfer',
        subject_id=transfer.id,
        metadata={
            'from': _scope_label(source, source_section),
            'to': _scope_label(target, target_section),
            'items': len(cleaned),
        },
    )
    db.flush()
    logger.info(
        'transfer %s created from %s to %s',
        transfer.id,
        _scope_label(source, source_section),
        _scope_label(target, target_section),
    )
    return transfer


def get_transfer(db: Session, transfer_id: int) -> DepartmentTransfer:
    transfer = db.execute(
        select(DepartmentTransfer).where(DepartmentTransfer.id == transfer_id)
    ).scalar_one_or_none()
    if not transfer:
        raise NotFoundError('Transfer not found')
    return transfer


def get_transfer_items(db: Session, transfer_id: int) -> list[DepartmentTransferItem]:
    return db.execute(
        select(DepartmentTransferItem)
        .where(DepartmentTransferItem.transfer_id == transfer_id)
        .order_by(DepartmentTransferItem.id.asc())
    ).scalars().all()


def _require_pending(transfer: DepartmentTransfer) -> None:
    if transfer.status != TransferStatus.PENDING:
        raise TransferError(f'Transfer is already {TransferStatus(transfer.status).value}')


def approve_transfer(db: Session, *, transfer_id: int, actor: str | None = None) -> DepartmentTransfer:
    transfer = get_transfer(db, transfer_id)
    _require_pending(transfer)
    items = get_transfer_items(db, transfer.id)

    required: dict[int, int] = {}
    for item in items:
        required[item.inventory_item_id] = required.get(item.inventory_item_id, 0) + item.quantity
    # Every item is checked before any stock moves.
    for item_id, quantity in required.items():
        available = get_balance(
            db,
            item_id=item_id,
            department_id=transfer.from_department_id,
            section_id=transfer.from_section_id,
        )
        if available < quantity:
            raise InsufficientStockError(
                f'Cannot transfer {quantity} of item {item_id}: only {available} available',
                available=available,
                required=quantity,
            )

    reference = f'transfer:{transfer.id}'
    for item in items:
        transfer_stock(
            db,
            item_id=item.inventory_item_id,
            from_department_id=transfer.from_department_id,
            from_section_id=transfer.from_section_id,
            to_department_id=transfer.to_department_id,
            to_section_id=transfer.to_section_id,
            quantity=item.quantity,
            reference=reference,
        )

    now = _now()
    transfer.status = TransferStatus.COMPLETED
    transfer.approved_by = actor
    transfer.completed_at = now
    transfer.updated_at = now
    log_audit(
        db,
        actor=actor,
        action='transfer.approve',
        subject='department_transfer',
        subject_id=transfer.id,
        metadata={'items': len(items), 'units': sum(required.values())},
    )
    db.flush()
    logger.info('transfer %s completed', transfer.id)
    return transfer


def reject_transfer(
    db: Session, *, transfer_id: int, actor: str | None = None, reason: str | None = None
) -> DepartmentTransfer:
    transfer = get_transfer(db, transfer_id)
    _require_pending(transfer)
    transfer.status = TransferStatus.REJECTED
    transfer.approved_by = actor
    transfer.updated_at = _now()
    if reason:
        transfer.notes = f'{transfer.notes}\n{reason}' if transfer.notes else reason
    log_audit(
        db,
        actor=actor,
        action='transfer.reject',
        subject='department_transfer',
        subject_id=transfer.id,
        metadata={'reason': reason},
    )
    db.flush()
    return transfer


def list_transfers(
    db: Session,
    *,
    department_code: str | None = None,
    status: TransferStatus | str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    conditions = []
    if department_code:
        department = get_department_by_code(db, department_code)
        conditions.append(
            or_(
                DepartmentTransfer.from_department_id == department.id,
                DepartmentTransfer.to_department_id == department.id,
            )
        )
    if status is not None:
        conditions.append(DepartmentTransfer.status == TransferStatus(status))

    total = db.execute(select(func.count(DepartmentTransfer.id)).where(*conditions)).scalar_one()
    transfers = db.execute(
        select(DepartmentTransfer)
        .where(*conditions)
        .order_by(DepartmentTransfer.created_at.desc(), DepartmentTransfer.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).scalars().all()
    return {
        'items': [
            {
                'id': transfer.id,
                'from_department_id': transfer.from_department_id,
                'from_section_id': transfer.from_section_id,
                'to_department_id': transfer.to_department_id,
                'to_section_id': transfer.to_section_id,
                'status': TransferStatus(transfer.status).value,
                'notes': transfer.notes,
                'created_by': transfer.created_by,
                'approved_by': transfer.approved_by,
                'completed_at': transfer.completed_at,
                'created_at': transfer.created_at,
                'items': [
                    {'inventory_item_id': item.inventory_item_id, 'quantity': item.quantity}
                    for item in get_transfer_items(db, transfer.id)
                ],
            }
            for transfer in transfers
        ],
        'meta': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }
