from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
IdType = BigInteger().with_variant(Integer, 'sqlite')


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    pass


class OrderStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    FULFILLED = 'fulfilled'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class PaymentStatus(str, Enum):
    UNPAID = 'unpaid'
    PARTIAL = 'partial'
    PAID = 'paid'
    REFUNDED = 'refunded'


class LineStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    FULFILLED = 'fulfilled'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class PaymentRecordStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class FulfillmentStatus(str, Enum):
    IN_PROGRESS = 'in_progress'
    FULFILLED = 'fulfilled'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'


class ReservationStatus(str, Enum):
    RESERVED = 'reserved'
    CONSUMED = 'consumed'
    RELEASED = 'released'


class MovementType(str, Enum):
    IN = 'in'
    OUT = 'out'


class TransferStatus(str, Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    REJECTED = 'rejected'


class DiscountType(str, Enum):
    PERCENTAGE = 'percentage'
    FIXED = 'fixed'
    EMPLOYEE = 'employee'
    BULK = 'bulk'


def _enum(enum_cls: type[Enum], name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


class Department(Base):
    __tablename__ = 'departments'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    type: Mapped[str | None] = mapped_column(String(64))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class DepartmentSection(Base):
    __tablename__ = 'department_sections'
    __table_args__ = (
        UniqueConstraint('department_id', 'slug', name='department_sections_department_slug_key'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str | None] = mapped_column(String(128))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class Customer(Base):
    __tablename__ = 'customers'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str | None] = mapped_column(Text)
    phone: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class InventoryItem(Base):
    __tablename__ = 'inventory_items'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    sku: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64))
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class DepartmentInventory(Base):
    __tablename__ = 'department_inventories'
    __table_args__ = (
        UniqueConstraint(
            'department_id', 'section_id', 'inventory_item_id', name='department_inventories_scope_item_key'
        ),
        CheckConstraint('quantity >= 0', name='department_inventories_quantity_non_negative'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), nullable=False)
    section_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('department_sections.id'))
    inventory_item_id: Mapped[int] = mapped_column(IdType, ForeignKey('inventory_items.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class DiscountRule(Base):
    __tablename__ = 'discount_rules'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    type: Mapped[DiscountType] = mapped_column(_enum(DiscountType, 'discount_type'), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    min_order_amount: Mapped[int | None] = mapped_column(Integer)
    max_usage_per_customer: Mapped[int | None] = mapped_column(Integer)
    max_total_usage: Mapped[int | None] = mapped_column(Integer)
    current_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    applicable_departments: Mapped[list] = mapped_column(JSON, nullable=False, default=list, server_default='[]')
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class OrderHeader(Base):
    __tablename__ = 'order_headers'
    __table_args__ = (
        CheckConstraint('subtotal >= 0', name='order_headers_subtotal_non_negative'),
        CheckConstraint('discount_total >= 0', name='order_headers_discount_non_negative'),
        CheckConstraint('total >= 0', name='order_headers_total_non_negative'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    customer_id: Mapped[int] = mapped_column(IdType, ForeignKey('customers.id'), nullable=False)
    subtotal: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    discount_total: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    tax: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, 'order_status'), nullable=False, default=OrderStatus.PENDING, server_default='pending'
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum(PaymentStatus, 'payment_status'), nullable=False, default=PaymentStatus.UNPAID, server_default='unpaid'
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class OrderLine(Base):
    __tablename__ = 'order_lines'
    __table_args__ = (
        UniqueConstraint('order_header_id', 'line_number', name='order_lines_order_line_number_key'),
        CheckConstraint('quantity > 0', name='order_lines_quantity_positive'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_header_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('order_headers.id', ondelete='CASCADE'), nullable=False
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False)
    department_code: Mapped[str] = mapped_column(String(128), nullable=False)
    department_section_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('department_sections.id'))
    product_id: Mapped[str] = mapped_column(Text, nullable=False)
    product_type: Mapped[str | None] = mapped_column(String(64))
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    inventory_item_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('inventory_items.id'))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_discount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    line_total: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[LineStatus] = mapped_column(
        _enum(LineStatus, 'line_status'), nullable=False, default=LineStatus.PENDING, server_default='pending'
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class OrderDepartment(Base):
    __tablename__ = 'order_departments'

    order_header_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('order_headers.id', ondelete='CASCADE'), primary_key=True
    )
    department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), primary_key=True)
    status: Mapped[OrderStatus] = mapped_column(
        _enum(OrderStatus, 'order_status'), nullable=False, default=OrderStatus.PENDING, server_default='pending'
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class OrderDiscount(Base):
    __tablename__ = 'order_discounts'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_header_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('order_headers.id', ondelete='CASCADE'), nullable=False
    )
    discount_rule_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('discount_rules.id'))
    discount_type: Mapped[DiscountType] = mapped_column(_enum(DiscountType, 'discount_type'), nullable=False)
    discount_code: Mapped[str | None] = mapped_column(String(64))
    discount_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class OrderPayment(Base):
    __tablename__ = 'order_payments'
    __table_args__ = (
        CheckConstraint('amount > 0', name='order_payments_amount_positive'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_header_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('order_headers.id', ondelete='CASCADE'), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[PaymentRecordStatus] = mapped_column(
        _enum(PaymentRecordStatus, 'payment_record_status'),
        nullable=False,
        default=PaymentRecordStatus.COMPLETED,
        server_default='completed',
    )
    transaction_reference: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class OrderFulfillment(Base):
    __tablename__ = 'order_fulfillments'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_header_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('order_headers.id', ondelete='CASCADE'), nullable=False
    )
    order_line_id: Mapped[int] = mapped_column(IdType, ForeignKey('order_lines.id', ondelete='CASCADE'), nullable=False)
    status: Mapped[FulfillmentStatus] = mapped_column(
        _enum(FulfillmentStatus, 'fulfillment_status'),
        nullable=False,
        default=FulfillmentStatus.IN_PROGRESS,
        server_default='in_progress',
    )
    fulfilled_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    fulfilled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class InventoryReservation(Base):
    __tablename__ = 'inventory_reservations'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    order_header_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('order_headers.id', ondelete='CASCADE'), nullable=False
    )
    order_line_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('order_lines.id', ondelete='SET NULL'))
    inventory_item_id: Mapped[int] = mapped_column(IdType, ForeignKey('inventory_items.id'), nullable=False)
    department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), nullable=False)
    section_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('department_sections.id'))
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[ReservationStatus] = mapped_column(
        _enum(ReservationStatus, 'reservation_status'),
        nullable=False,
        default=ReservationStatus.RESERVED,
        server_default='reserved',
    )
    consumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class InventoryMovement(Base):
    __tablename__ = 'inventory_movements'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    inventory_item_id: Mapped[int] = mapped_column(IdType, ForeignKey('inventory_items.id'), nullable=False)
    department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), nullable=False)
    section_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('department_sections.id'))
    movement_type: Mapped[MovementType] = mapped_column(_enum(MovementType, 'movement_type'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    reference: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class DepartmentTransfer(Base):
    __tablename__ = 'department_transfers'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    from_department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), nullable=False)
    from_section_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('department_sections.id'))
    to_department_id: Mapped[int] = mapped_column(IdType, ForeignKey('departments.id'), nullable=False)
    to_section_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('department_sections.id'))
    status: Mapped[TransferStatus] = mapped_column(
        _enum(TransferStatus, 'transfer_status'),
        nullable=False,
        default=TransferStatus.PENDING,
        server_default='pending',
    )
    notes: Mapped[str | None] = mapped_column(Text)
    created_by: Mapped[str | None] = mapped_column(Text)
    approved_by: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )


class DepartmentTransferItem(Base):
    __tablename__ = 'department_transfer_items'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='department_transfer_items_quantity_positive'),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    transfer_id: Mapped[int] = mapped_column(
        IdType, ForeignKey('department_transfers.id', ondelete='CASCADE'), nullable=False
    )
    inventory_item_id: Mapped[int] = mapped_column(IdType, ForeignKey('inventory_items.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    subject_id: Mapped[int | None] = mapped_column(IdType)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now()
    )
