from __future__ import annotations

import unittest

from sqlalchemy import func, select

from hospitality_pos.models import Customer, DepartmentSection, InventoryItem
from hospitality_pos.seed import seed
from hospitality_pos.services.discount_service import get_rule
from hospitality_pos.services.stock_service import get_balance
from tests.support import make_session_factory


class SeedTests(unittest.TestCase):
    def test_seed_is_repeatable(self) -> None:
        db = make_session_factory()()
        self.addCleanup(db.close)
        seed(db)
        seed(db)

        self.assertEqual(db.execute(select(func.count(DepartmentSection.id))).scalar_one(), 4)
        self.assertEqual(db.execute(select(func.count(InventoryItem.id))).scalar_one(), 5)
        self.assertEqual(db.execute(select(func.count(Customer.id))).scalar_one(), 1)
        self.assertEqual(get_rule(db, 'WELCOME10').max_usage_per_customer, 1)

        arcade = db.execute(select(DepartmentSection).where(DepartmentSection.slug == 'arcade')).scalar_one()
        self.assertEqual(arcade.meta['module'], 'games')

        lager = db.execute(select(InventoryItem).where(InventoryItem.sku == 'DRINK-LAGER')).scalar_one()
        bar = db.execute(select(DepartmentSection).where(DepartmentSection.slug == 'main-bar')).scalar_one()
        self.assertEqual(get_balance(db, item_id=lager.id, department_id=bar.department_id, section_id=bar.id), 120)


if __name__ == '__main__':
    unittest.main()
