from __future__ import annotations

import unittest

from sqlalchemy import select

from hospitality_pos.errors import InsufficientStockError, NotFoundError, TransferError
from hospitality_pos.models import AuditLog, InventoryMovement, MovementType, TransferStatus
from hospitality_pos.services.order_service import create_order
from hospitality_pos.services.stock_service import get_balance, get_on_hand, transfer_stock
from hospitality_pos.services.transfer_service import (
    approve_transfer,
    create_transfer,
    get_transfer_items,
    list_transfers,
    reject_transfer,
)
from tests.support import ServiceTestCase


class TransferServiceTests(ServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.main = self.section('RESTAURANT', 'main')
        self.bar = self.section('BAR_CLUB', 'main-bar')
        self.burger = self.item('FOOD-BURGER', price=1000, stock=10, section=self.main)

    def _on_hand(self, section=None, department_id=None) -> int:
        return get_on_hand(
            self.db,
            item_id=self.burger.id,
            department_id=department_id or section.department_id,
            section_id=section.id if section else None,
        )

    def test_approved_transfer_moves_stock_with_paired_movements(self) -> None:
        transfer = create_transfer(
            self.db,
            from_code='RESTAURANT:main',
            to_code='BAR_CLUB:main-bar',
            items=[{'inventory_item_id': self.burger.id, 'quantity': 4}],
            created_by='manager',
            notes='bar snacks',
        )
        self.assertEqual(transfer.status, TransferStatus.PENDING)
        self.assertEqual([item.quantity for item in get_transfer_items(self.db, transfer.id)], [4])
        self.assertEqual(self._on_hand(self.main), 10)

        approve_transfer(self.db, transfer_id=transfer.id, actor='supervisor')
        self.assertEqual(transfer.status, TransferStatus.COMPLETED)
        self.assertEqual(transfer.approved_by, 'supervisor')
        self.assertIsNotNone(transfer.completed_at)
        self.assertEqual(self._on_hand(self.main), 6)
        self.assertEqual(self._on_hand(self.bar), 4)

        movements = self.db.execute(
            select(InventoryMovement).where(InventoryMovement.reference == f'transfer:{transfer.id}')
        ).scalars().all()
        self.assertEqual(
            sorted((m.movement_type, m.reason, m.section_id, m.quantity) for m in movements),
            sorted([
                (MovementType.OUT, 'transfer_out', self.main.id, 4),
                (MovementType.IN, 'transfer_in', self.bar.id, 4),
            ]),
        )
        actions = self.db.execute(
            select(AuditLog.action).where(AuditLog.subject == 'department_transfer')
        ).scalars().all()
        self.assertEqual(sorted(actions), ['transfer.approve', 'transfer.create'])

        with self.assertRaises(TransferError):
            approve_transfer(self.db, transfer_id=transfer.id)

    def test_transfer_cannot_take_reserved_stock(self) -> None:
        create_order(
            self.db,
            customer_id=self.customer.id,
            items=[self.line('RESTAURANT:main', price=1000, quantity=5, name='Burger', item=self.burger)],
        )
        transfer = create_transfer(
            self.db,
            from_code='RESTAURANT:main',
            to_code='RESTAURANT',
            items=[{'inventory_item_id': self.burger.id, 'quantity': 6}],
        )
        with self.assertRaises(InsufficientStockError) as ctx:
            approve_transfer(self.db, transfer_id=transfer.id)
        self.assertEqual(ctx.exception.available, 5)
        self.assertEqual(ctx.exception.required, 6)
        self.assertEqual(transfer.status, TransferStatus.PENDING)
        self.assertEqual(self._on_hand(self.main), 10)

    def test_transfer_to_department_level_stock(self) -> None:
        transfer = create_transfer(
            self.db,
            from_code='RESTAURANT:main',
            to_code='RESTAURANT',
            items=[{'inventory_item_id': self.burger.id, 'quantity': 3}],
        )
        self.assertIsNone(transfer.to_section_id)
        approve_transfer(self.db, transfer_id=transfer.id)
        self.assertEqual(self._on_hand(department_id=self.main.department_id), 3)
        self.assertEqual(
            get_balance(self.db, item_id=self.burger.id, department_id=self.main.department_id, section_id=self.main.id),
            7,
        )

    def test_create_transfer_validates_input(self) -> None:
        with self.assertRaises(TransferError):
            create_transfer(
                self.db,
                from_code='RESTAURANT:main',
                to_code='RESTAURANT:main',
                items=[{'inventory_item_id': self.burger.id, 'quantity': 1}],
            )
        with self.assertRaises(ValueError):
            create_transfer(self.db, from_code='RESTAURANT:main', to_code='BAR_CLUB', items=[])
        with self.assertRaises(ValueError):
            create_transfer(
                self.db,
                from_code='RESTAURANT:main',
                to_code='BAR_CLUB',
                items=[{'inventory_item_id': self.burger.id, 'quantity': 0}],
            )
        with self.assertRaises(NotFoundError):
            create_transfer(
                self.db,
                from_code='RESTAURANT:main',
                to_code='BAR_CLUB',
                items=[{'inventory_item_id': 999999, 'quantity': 1}],
            )
        with self.assertRaises(NotFoundError):
            create_transfer(
                self.db,
                from_code='RESTAURANT:missing',
                to_code='BAR_CLUB',
                items=[{'inventory_item_id': self.burger.id, 'quantity': 1}],
            )

    def test_reject_and_list(self) -> None:
        first = create_transfer(
            self.db,
            from_code='RESTAURANT:main',
            to_code='BAR_CLUB:main-bar',
            items=[{'inventory_item_id': self.burger.id, 'quantity': 2}],
        )
        create_transfer(
            self.db,
            from_code='RESTAURANT:main',
            to_code='RESTAURANT',
            items=[{'inventory_item_id': self.burger.id, 'quantity': 1}],
        )
        reject_transfer(self.db, transfer_id=first.id, actor='supervisor', reason='bar closed')
        self.assertEqual(first.status, TransferStatus.REJECTED)
        self.assertIn('bar closed', first.notes)
        self.assertEqual(self._on_hand(self.main), 10)
        with self.assertRaises(TransferError):
            approve_transfer(self.db, transfer_id=first.id)

        self.assertEqual(list_transfers(self.db)['meta']['total'], 2)
        bar = list_transfers(self.db, department_code='BAR_CLUB')
        self.assertEqual([row['id'] for row in bar['items']], [first.id])
        self.assertEqual(bar['items'][0]['items'], [{'inventory_item_id': self.burger.id, 'quantity': 2}])
        self.assertEqual(list_transfers(self.db, status='pending')['meta']['total'], 1)

    def test_transfer_stock_rejects_bad_moves(self) -> None:
        kwargs = {
            'item_id': self.burger.id,
            'from_department_id': self.main.department_id,
            'from_section_id': self.main.id,
            'to_department_id': self.bar.department_id,
            'to_section_id': self.bar.id,
        }
        with self.assertRaises(ValueError):
            transfer_stock(self.db, quantity=0, **kwargs)
        with self.assertRaises(InsufficientStockError):
            transfer_stock(self.db, quantity=11, **kwargs)
        with self.assertRaises(ValueError):
            transfer_stock(
                self.db,
                item_id=self.burger.id,
                from_department_id=self.main.department_id,
                from_section_id=self.main.id,
                to_department_id=self.main.department_id,
                to_section_id=self.main.id,
                quantity=1,
            )
        self.assertEqual(self._on_hand(self.main), 10)


if __name__ == '__main__':
    unittest.main()
