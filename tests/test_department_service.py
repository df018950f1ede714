from __future__ import annotations

import unittest

from sqlalchemy import func, select

from hospitality_pos.errors import NotFoundError, OrderStateError
from hospitality_pos.models import (
    AuditLog,
    Department,
    FulfillmentStatus,
    LineStatus,
    OrderFulfillment,
    OrderLine,
    OrderStatus,
)
from hospitality_pos.services.department_service import (
    complete_line_item_fulfillment,
    get_department_by_code,
    get_department_pending_items,
    get_department_stats,
    get_orders_by_department,
    initialize_departments,
    list_departments,
    mark_item_in_progress,
    resolve_section,
    split_department_code,
    update_department_fulfillment,
)
from hospitality_pos.services.order_service import cancel_order, create_order, record_payment
from hospitality_pos.services.section_service import create_section, deactivate_section, list_sections
from tests.support import ServiceTestCase


class DepartmentServiceTests(ServiceTestCase):
    def test_initialize_is_idempotent(self) -> None:
        initialize_departments(self.db)
        count = self.db.execute(select(func.count(Department.id))).scalar_one()
        self.assertEqual(count, 8)
        self.assertEqual(len(list_departments(self.db)), 8)
        self.assertEqual(get_department_by_code(self.db, 'GAMES_ENTERTAINMENT').type, 'games')
        with self.assertRaises(NotFoundError):
            get_department_by_code(self.db, 'SPA')

    def test_split_and_resolve_section(self) -> None:
        self.assertEqual(split_department_code('RESTAURANT:main'), ('RESTAURANT', 'main'))
        self.assertEqual(split_department_code('RESTAURANT'), ('RESTAURANT', None))
        self.assertEqual(split_department_code(' BAR_CLUB: '), ('BAR_CLUB', None))

        self.assertIsNone(resolve_section(self.db, 'RESTAURANT'))
        main = self.section('RESTAURANT', 'main')
        terrace = self.section('RESTAURANT', 'terrace')
        self.assertEqual(resolve_section(self.db, 'RESTAURANT').id, main.id)
        self.assertEqual(resolve_section(self.db, 'RESTAURANT:terrace').id, terrace.id)
        self.assertEqual(resolve_section(self.db, f'RESTAURANT:{terrace.id}').id, terrace.id)
        with self.assertRaises(NotFoundError):
            resolve_section(self.db, 'RESTAURANT:rooftop')

        deactivate_section(self.db, section_id=main.id)
        self.assertEqual(resolve_section(self.db, 'RESTAURANT').id, terrace.id)

    def test_fulfillment_flow(self) -> None:
        main = self.section('RESTAURANT', 'main')
        order = create_order(
            self.db,
            customer_id=self.customer.id,
            items=[self.line('RESTAURANT', price=1000, quantity=2, name='Burger')],
        )
        record_payment(self.db, order_id=order.id, amount=order.total, payment_method='cash')
        line = self.db.execute(select(OrderLine).where(OrderLine.order_header_id == order.id)).scalar_one()

        pending = get_department_pending_items(self.db, 'RESTAURANT')
        self.assertEqual([item['line_id'] for item in pending], [line.id])
        self.assertEqual(pending[0]['customer_name'], 'Ada Guest')

        mark_item_in_progress(self.db, line_id=line.id)
        self.assertEqual(line.status, LineStatus.PROCESSING)
        with self.assertRaises(OrderStateError):
            mark_item_in_progress(self.db, line_id=line.id)
        with self.assertRaises(ValueError):
            complete_line_item_fulfillment(self.db, line_id=line.id, quantity=3)

        complete_line_item_fulfillment(self.db, line_id=line.id, quantity=2)
        self.assertEqual(line.status, LineStatus.FULFILLED)
        self.assertEqual(order.status, OrderStatus.FULFILLED)
        fulfillment = self.db.execute(select(OrderFulfillment).where(OrderFulfillment.order_line_id == line.id)).scalar_one()
        self.assertEqual(fulfillment.status, FulfillmentStatus.FULFILLED)
        self.assertEqual(fulfillment.fulfilled_quantity, 2)
        self.assertEqual(get_department_pending_items(self.db, 'RESTAURANT'), [])

        stats = main.meta['sectionStats']
        self.assertEqual(stats['paid']['fulfilledOrders'], 1)
        self.assertEqual(stats['paid']['fulfillmentRate'], 100)
        self.assertEqual(stats['paid']['amountFulfilled'], order.total)
        self.assertEqual(get_department_stats(self.db, 'RESTAURANT')['fulfilled_orders'], 1)

    def test_department_fulfillment_completes_order_when_all_departments_done(self) -> None:
        order = create_order(
            self.db,
            customer_id=self.customer.id,
            items=[self.line('RESTAURANT', price=1000), self.line('BAR_CLUB', price=500, name='Cola')],
        )
        record_payment(self.db, order_id=order.id, amount=order.total, payment_method='cash')

        update_department_fulfillment(self.db, order_id=order.id, code='RESTAURANT', status='fulfilled')
        self.assertEqual(order.status, OrderStatus.PROCESSING)
        update_department_fulfillment(self.db, order_id=order.id, code='BAR_CLUB', status='fulfilled')
        self.assertEqual(order.status, OrderStatus.FULFILLED)

        with self.assertRaises(NotFoundError):
            update_department_fulfillment(self.db, order_id=order.id, code='GYM_MEMBERSHIP', status='fulfilled')

        stats = get_department_stats(self.db, 'BAR_CLUB')
        self.assertEqual(stats['fulfilled_orders'], 1)
        self.assertEqual(stats['total_orders'], 1)

    def test_cancelled_orders_are_closed_to_the_kitchen(self) -> None:
        order = create_order(self.db, customer_id=self.customer.id, items=[self.line('RESTAURANT', price=1000)])
        line = self.db.execute(select(OrderLine).where(OrderLine.order_header_id == order.id)).scalar_one()
        cancel_order(self.db, order_id=order.id)
        self.assertEqual(get_department_pending_items(self.db, 'RESTAURANT'), [])
        with self.assertRaises(OrderStateError):
            mark_item_in_progress(self.db, line_id=line.id)
        with self.assertRaises(OrderStateError):
            update_department_fulfillment(self.db, order_id=order.id, code='RESTAURANT', status='fulfilled')

    def test_orders_by_department(self) -> None:
        first = create_order(self.db, customer_id=self.customer.id, items=[self.line('RESTAURANT', price=1000)])
        create_order(self.db, customer_id=self.customer.id, items=[self.line('RESTAURANT', price=2000)])
        record_payment(self.db, order_id=first.id, amount=first.total, payment_method='cash')

        result = get_orders_by_department(self.db, code='RESTAURANT', limit=1)
        self.assertEqual(result['meta']['total'], 2)
        self.assertEqual(result['meta']['pages'], 2)
        self.assertEqual(len(result['items']), 1)
        processing = get_orders_by_department(self.db, code='RESTAURANT', status='processing')
        self.assertEqual([item['id'] for item in processing['items']], [first.id])


class SectionServiceTests(ServiceTestCase):
    def test_create_section_tags_games_departments(self) -> None:
        games = self.department('GAMES_ENTERTAINMENT')
        section = create_section(self.db, department_id=games.id, name='VR Arena', actor='admin')
        self.assertEqual(section.slug, 'vr-arena')
        self.assertEqual(section.meta['sectionType'], 'games')
        self.assertEqual(section.meta['module'], 'games')

        bar = create_section(self.db, department_id=self.department('BAR_CLUB').id, name='Rooftop', metadata={'floor': 5})
        self.assertEqual(bar.meta, {'floor': 5})

        audit = self.db.execute(
            select(AuditLog).where(AuditLog.action == 'department_section.create', AuditLog.subject_id == section.id)
        ).scalar_one()
        self.assertEqual(audit.actor, 'admin')

    def test_create_section_validation(self) -> None:
        restaurant = self.department('RESTAURANT')
        create_section(self.db, department_id=restaurant.id, name='Main', slug='main')
        with self.assertRaises(ValueError):
            create_section(self.db, department_id=restaurant.id, name='Main again', slug='main')
        with self.assertRaises(ValueError):
            create_section(self.db, department_id=restaurant.id, name='  ')
        with self.assertRaises(ValueError):
            create_section(self.db, department_id=restaurant.id, name='Table', slug='42')
        with self.assertRaises(NotFoundError):
            create_section(self.db, department_id=9999, name='Ghost')

    def test_list_and_deactivate(self) -> None:
        restaurant = self.department('RESTAURANT')
        first = create_section(self.db, department_id=restaurant.id, name='Main')
        second = create_section(self.db, department_id=restaurant.id, name='Terrace')
        result = list_sections(self.db, department_id=restaurant.id)
        self.assertEqual([item['id'] for item in result['items']], [second.id, first.id])

        deactivate_section(self.db, section_id=first.id, actor='admin')
        result = list_sections(self.db, department_id=restaurant.id)
        self.assertEqual([item['id'] for item in result['items']], [second.id])
        self.assertEqual(result['meta']['total'], 1)
        with self.assertRaises(NotFoundError):
            deactivate_section(self.db, section_id=9999)


if __name__ == '__main__':
    unittest.main()
