from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from hospitality_pos.errors import DiscountError, NotFoundError
from hospitality_pos.models import DiscountRule, DiscountType, OrderDiscount, OrderHeader
from hospitality_pos.services.audit_service import log_audit
from hospitality_pos.services.department_codes import parent_code
from hospitality_pos.services.money import calculate_discount

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = (
    'name',
    'description',
    'value',
    'min_order_amount',
    'max_usage_per_customer',
    'max_total_usage',
    'applicable_departments',
    'start_date',
    'end_date',
    'is_active',
)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _normalize_rule_code(code: str) -> str:
    clean = (code or '').strip().upper()
    if not clean:
        raise ValueError('Discount code is required')
    return clean


def _parse_value(value, discount_type: DiscountType) -> Decimal:
    try:
        parsed = Decimal(str(value))
    except (InvalidOperation, TypeError) as exc:
        raise ValueError('Invalid discount value') from exc
    if not parsed.is_finite() or parsed < 0:
        raise ValueError('Discount value cannot be negative')
    if discount_type != DiscountType.FIXED and parsed > 100:
        raise ValueError('Percentage discount cannot exceed 100')
    return parsed


def create_discount_rule(
    db: Session,
    *,
    code: str,
    name: str,
    discount_type: DiscountType | str,
    value: Decimal | int | str,
    description: str | None = None,
    min_order_amount: int | None = None,
    max_usage_per_customer: int | None = None,
    max_total_usage: int | None = None,
    applicable_departments: list[str] | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    actor: str | None = None,
) -> DiscountRule:
    rule_code = _normalize_rule_code(code)
    clean_name = (name or '').strip()
    if not clean_name:
        raise ValueError('Discount name is required')
    kind = DiscountType(discount_type)
    if start_date and end_date and _as_utc(end_date) < _as_utc(start_date):
        raise ValueError('Discount end date cannot be before start date')
    if min_order_amount is not None and min_order_amount < 0:
        raise ValueError('Minimum order amount cannot be negative')

    existing = db.execute(select(DiscountRule.id).where(DiscountRule.code == rule_code)).scalar_one_or_none()
    if existing:
        raise DiscountError('Discount code already exists')

    rule = DiscountRule(
        code=rule_code,
        name=clean_name,
        description=description,
        type=kind,
        value=_parse_value(value, kind),
        min_order_amount=min_order_amount,
        max_usage_per_customer=max_usage_per_customer,
        max_total_usage=max_total_usage,
        current_usage=0,
        applicable_departments=[parent_code(dept) for dept in (applicable_departments or [])],
        start_date=start_date,
        end_date=end_date,
        is_active=True,
    )
    db.add(rule)
    db.flush()
    log_audit(
        db,
        actor=actor,
        action='discount_rule.create',
        subject='discount_rule',
        subject_id=rule.id,
        metadata={'code': rule.code, 'type': kind.value, 'value': str(rule.value)},
    )
    db.flush()
    return rule


def get_rule(db: Session, id_or_code: int | str) -> DiscountRule:
    rule = None
    if isinstance(id_or_code, int) or str(id_or_code).strip().isdigit():
        rule = db.execute(select(DiscountRule).where(DiscountRule.id == int(id_or_code))).scalar_one_or_none()
    if rule is None:
        code = str(id_or_code).strip().upper()
        rule = db.execute(select(DiscountRule).where(DiscountRule.code == code)).scalar_one_or_none()
    if rule is None:
        raise NotFoundError(f'Discount rule not found: {id_or_code}')
    return rule


def validate_discount_rule(
    db: Session,
    *,
    rule: DiscountRule,
    order_amount: int,
    customer_id: int | None = None,
    department_codes: set[str] | None = None,
    now: datetime | None = None,
) -> None:
    current = _as_utc(now) or _now()
    if not rule.is_active:
        raise DiscountError(f'Discount code {rule.code} is inactive')
    if rule.start_date and current < _as_utc(rule.start_date):
        raise DiscountError(f'Discount code {rule.code} is not yet active')
    if rule.end_date and current > _as_utc(rule.end_date):
        raise DiscountError(f'Discount code {rule.code} has expired')
    if rule.max_total_usage and rule.current_usage >= rule.max_total_usage:
        raise DiscountError(f'Discount code {rule.code} usage limit exceeded')

    if rule.max_usage_per_customer and customer_id is not None:
        customer_usage = db.execute(
            select(func.count(OrderDiscount.id))
            .join(OrderHeader, OrderHeader.id == OrderDiscount.order_header_id)
            .where(OrderDiscount.discount_rule_id == rule.id, OrderHeader.customer_id == customer_id)
        ).scalar_one()
        if customer_usage >= rule.max_usage_per_customer:
            raise DiscountError(f'Customer has reached the usage limit for {rule.code}')

    if rule.min_order_amount and order_amount < rule.min_order_amount:
        raise DiscountError(f'Minimum order amount of {rule.min_order_amount} cents required for {rule.code}')

    applicable = {parent_code(code) for code in (rule.applicable_departments or [])}
    if applicable and department_codes is not None:
        if not applicable & {parent_code(code) for code in department_codes}:
            raise DiscountError(f'Discount code {rule.code} does not apply to these departments')


def calculate_discount_amount(rule: DiscountRule, base: int) -> int:
    return calculate_discount(base, rule.value, rule.type)


def _rule_row(rule: DiscountRule) -> dict:
    return {
        'id': rule.id,
        'code': rule.code,
        'name': rule.name,
        'description': rule.description,
        'type': DiscountType(rule.type).value,
        'value': rule.value,
        'min_order_amount': rule.min_order_amount,
        'max_usage_per_customer': rule.max_usage_per_customer,
        'max_total_usage': rule.max_total_usage,
        'current_usage': rule.current_usage,
        'applicable_departments': list(rule.applicable_departments or []),
        'start_date': rule.start_date,
        'end_date': rule.end_date,
        'is_active': rule.is_active,
    }


def list_rules(
    db: Session,
    *,
    is_active: bool | None = None,
    discount_type: DiscountType | str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    page = max(page, 1)
    limit = max(limit, 1)
    stmt = select(DiscountRule)
    count_stmt = select(func.count(DiscountRule.id))
    if is_active is not None:
        stmt = stmt.where(DiscountRule.is_active.is_(is_active))
        count_stmt = count_stmt.where(DiscountRule.is_active.is_(is_active))
    if discount_type is not None:
        kind = DiscountType(discount_type)
        stmt = stmt.where(DiscountRule.type == kind)
        count_stmt = count_stmt.where(DiscountRule.type == kind)

    total = db.execute(count_stmt).scalar_one()
    rules = db.execute(
        stmt.order_by(DiscountRule.created_at.desc(), DiscountRule.id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return {
        'items': [_rule_row(rule) for rule in rules],
        'meta': {'page': page, 'limit': limit, 'total': total, 'pages': -(-total // limit)},
    }


def get_active_rules(db: Session, *, now: datetime | None = None) -> list[DiscountRule]:
    current = _as_utc(now) or _now()
    rules = db.execute(
        select(DiscountRule).where(DiscountRule.is_active.is_(True)).order_by(DiscountRule.code.asc())
    ).scalars().all()
    return [
        rule
        for rule in rules
        if (not rule.start_date or _as_utc(rule.start_date) <= current)
        and (not rule.end_date or _as_utc(rule.end_date) >= current)
    ]


def update_rule(db: Session, *, rule_id: int, changes: dict, actor: str | None = None) -> DiscountRule:
    rule = get_rule(db, rule_id)
    unknown = set(changes) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f'Cannot update discount fields: {", ".join(sorted(unknown))}')

    for field, value in changes.items():
        if field == 'value':
            value = _parse_value(value, DiscountType(rule.type))
        elif field == 'name':
            value = (value or '').strip()
            if not value:
                raise ValueError('Discount name is required')
        elif field == 'applicable_departments':
            value = [parent_code(code) for code in (value or [])]
        setattr(rule, field, value)

    if rule.start_date and rule.end_date and _as_utc(rule.end_date) < _as_utc(rule.start_date):
        raise ValueError('Discount end date cannot be before start date')

    log_audit(
        db,
        actor=actor,
        action='discount_rule.update',
        subject='discount_rule',
        subject_id=rule.id,
        metadata={'fields': sorted(changes)},
    )
    db.flush()
    return rule


def deactivate_rule(db: Session, *, rule_id: int, actor: str | None = None) -> DiscountRule:
    rule = get_rule(db, rule_id)
    rule.is_active = False
    log_audit(
        db,
        actor=actor,
        action='discount_rule.deactivate',
        subject='discount_rule',
        subject_id=rule.id,
        metadata={'code': rule.code},
    )
    db.flush()
    logger.info('discount rule %s deactivated', rule.code)
    return rule


def get_discount_stats(db: Session) -> dict:
    total_rules = db.execute(select(func.count(DiscountRule.id))).scalar_one()
    active_rules = db.execute(select(func.count(DiscountRule.id)).where(DiscountRule.is_active.is_(True))).scalar_one()
    applied, amount = db.execute(
        select(func.count(OrderDiscount.id), func.coalesce(func.sum(OrderDiscount.discount_amount), 0))
    ).one()
    return {
        'total_rules': total_rules,
        'active_rules': active_rules,
        'total_discounts_applied': applied,
        'total_discount_amount': int(amount or 0),
    }
