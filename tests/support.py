from __future__ import annotations

import unittest

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hospitality_pos.models import Base, Customer, Department, DepartmentSection, InventoryItem
from hospitality_pos.services.department_service import initialize_departments
from hospitality_pos.services.section_service import create_section
from hospitality_pos.services.stock_service import adjust_stock


def make_session_factory() -> sessionmaker:
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class ServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.factory = make_session_factory()
        self.db: Session = self.factory()
        self.addCleanup(self.db.close)
        initialize_departments(self.db)
        self.customer = Customer(name='Ada Guest', email='ada@example.com')
        self.db.add(self.customer)
        self.db.flush()

    def department(self, code: str) -> Department:
        return self.db.execute(select(Department).where(Department.code == code)).scalar_one()

    def section(self, code: str, slug: str, name: str | None = None) -> DepartmentSection:
        return create_section(self.db, department_id=self.department(code).id, name=name or slug.title(), slug=slug)

    def item(self, sku: str, *, price: int = 1000, stock: int = 0, code: str = 'RESTAURANT', section=None) -> InventoryItem:
        item = InventoryItem(sku=sku, name=sku.title(), category='food', unit_price=price)
        self.db.add(item)
        self.db.flush()
        if stock:
            adjust_stock(
                self.db,
                item_id=item.id,
                department_id=self.department(code).id,
                section_id=section.id if section else None,
                delta=stock,
                reason='restock',
            )
        return item

    def line(self, code: str, *, price: int, quantity: int = 1, name: str = 'Item', item=None, **extra) -> dict:
        data = {
            'product_id': str(item.id) if item else name.lower(),
            'product_name': name,
            'department_code': code,
            'quantity': quantity,
            'unit_price': price,
            'inventory_item_id': item.id if item else None,
        }
        data.update(extra)
        return data
