from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from hospitality_pos.db import create_all, session_scope
from hospitality_pos.logging_config import configure_logging
from hospitality_pos.models import Customer, DepartmentSection, DiscountRule, DiscountType, InventoryItem
from hospitality_pos.services.department_service import get_department_by_code, initialize_departments
from hospitality_pos.services.discount_service import create_discount_rule
from hospitality_pos.services.section_service import create_section
from hospitality_pos.services.stock_service import adjust_stock

SECTIONS = (
    ('RESTAURANT', 'Main Floor', 'main'),
    ('RESTAURANT', 'Terrace', 'terrace'),
    ('BAR_CLUB', 'Main Bar', 'main-bar'),
    ('GAMES_ENTERTAINMENT', 'Arcade', 'arcade'),
)

ITEMS = (
    # sku, name, category, unit price (cents), department, section slug, opening stock
    ('FOOD-BURGER', 'House Burger', 'food', 1450, 'RESTAURANT', 'main', 40),
    ('FOOD-SALAD', 'Garden Salad', 'food', 950, 'RESTAURANT', 'main', 30),
    ('FOOD-PASTA', 'Pasta of the Day', 'food', 1600, 'RESTAURANT', 'terrace', 25),
    ('DRINK-LAGER', 'Draft Lager', 'drink', 650, 'BAR_CLUB', 'main-bar', 120),
    ('DRINK-COLA', 'Cola', 'drink', 300, 'BAR_CLUB', 'main-bar', 200),
)


def _ensure_section(db: Session, *, department_code: str, name: str, slug: str) -> DepartmentSection:
    department = get_department_by_code(db, department_code)
    section = db.execute(
        select(DepartmentSection).where(DepartmentSection.department_id == department.id, DepartmentSection.slug == slug)
    ).scalar_one_or_none()
    if section:
        return section
    return create_section(db, department_id=department.id, name=name, slug=slug, actor='seed')


def seed(db: Session) -> None:
    initialize_departments(db)

    sections = {}
    for department_code, name, slug in SECTIONS:
        sections[(department_code, slug)] = _ensure_section(db, department_code=department_code, name=name, slug=slug)

    for sku, name, category, unit_price, department_code, slug, opening in ITEMS:
        item = db.execute(select(InventoryItem).where(InventoryItem.sku == sku)).scalar_one_or_none()
        if item:
            continue
        item = InventoryItem(sku=sku, name=name, category=category, unit_price=unit_price)
        db.add(item)
        db.flush()
        section = sections[(department_code, slug)]
        adjust_stock(
            db,
            item_id=item.id,
            department_id=section.department_id,
            section_id=section.id,
            delta=opening,
            reason='opening_stock',
            reference='seed',
        )

    if not db.execute(select(Customer).where(Customer.name == 'Walk-in Guest')).scalar_one_or_none():
        db.add(Customer(name='Walk-in Guest'))

    if not db.execute(select(DiscountRule).where(DiscountRule.code == 'WELCOME10')).scalar_one_or_none():
        create_discount_rule(
            db,
            code='WELCOME10',
            name='Welcome 10%',
            discount_type=DiscountType.PERCENTAGE,
            value=10,
            max_usage_per_customer=1,
            actor='seed',
        )
    db.flush()


def main() -> None:
    configure_logging()
    create_all()
    with session_scope() as db:
        seed(db)
    print('Seed complete')


if __name__ == '__main__':
    main()
