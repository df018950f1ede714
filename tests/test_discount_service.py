from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from hospitality_pos.errors import DiscountError, NotFoundError
from hospitality_pos.models import AuditLog, DiscountType
from hospitality_pos.services.discount_service import (
    calculate_discount_amount,
    create_discount_rule,
    deactivate_rule,
    get_active_rules,
    get_discount_stats,
    get_rule,
    list_rules,
    update_rule,
    validate_discount_rule,
)
from hospitality_pos.services.order_service import create_order
from tests.support import ServiceTestCase


class DiscountServiceTests(ServiceTestCase):
    def test_create_and_lookup_rule(self) -> None:
        rule = create_discount_rule(
            self.db,
            code=' happy ',
            name='Happy hour',
            discount_type='percentage',
            value='20',
            applicable_departments=['BAR_CLUB:main-bar'],
            actor='manager',
        )
        self.assertEqual(rule.code, 'HAPPY')
        self.assertEqual(rule.value, Decimal('20'))
        self.assertEqual(rule.applicable_departments, ['BAR_CLUB'])
        self.assertIs(get_rule(self.db, rule.id), rule)
        self.assertIs(get_rule(self.db, str(rule.id)), rule)
        self.assertIs(get_rule(self.db, 'happy'), rule)
        with self.assertRaises(NotFoundError):
            get_rule(self.db, 'NOPE')

        audit = self.db.execute(select(AuditLog).where(AuditLog.action == 'discount_rule.create')).scalar_one()
        self.assertEqual(audit.subject_id, rule.id)

        with self.assertRaises(DiscountError):
            create_discount_rule(self.db, code='HAPPY', name='Again', discount_type='fixed', value=5)

    def test_rejects_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            create_discount_rule(self.db, code='BIG', name='Big', discount_type='percentage', value=150)
        with self.assertRaises(ValueError):
            create_discount_rule(self.db, code='NEG', name='Neg', discount_type='fixed', value=-1)
        with self.assertRaises(ValueError):
            create_discount_rule(self.db, code='', name='Blank', discount_type='fixed', value=1)

    def test_validation_rules(self) -> None:
        now = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
        rule = create_discount_rule(
            self.db,
            code='SUMMER',
            name='Summer',
            discount_type='percentage',
            value=10,
            min_order_amount=1000,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=1),
            applicable_departments=['RESTAURANT'],
        )
        validate_discount_rule(self.db, rule=rule, order_amount=1500, department_codes={'RESTAURANT'}, now=now)

        with self.assertRaises(DiscountError):
            validate_discount_rule(self.db, rule=rule, order_amount=999, now=now)
        with self.assertRaises(DiscountError):
            validate_discount_rule(self.db, rule=rule, order_amount=1500, now=now + timedelta(days=2))
        with self.assertRaises(DiscountError):
            validate_discount_rule(self.db, rule=rule, order_amount=1500, now=now - timedelta(days=2))
        with self.assertRaises(DiscountError):
            validate_discount_rule(self.db, rule=rule, order_amount=1500, department_codes={'BAR_CLUB'}, now=now)

        rule.max_total_usage = 1
        rule.current_usage = 1
        with self.assertRaises(DiscountError):
            validate_discount_rule(self.db, rule=rule, order_amount=1500, now=now)

        rule.max_total_usage = None
        rule.is_active = False
        with self.assertRaises(DiscountError):
            validate_discount_rule(self.db, rule=rule, order_amount=1500, now=now)

    def test_per_customer_usage_limit(self) -> None:
        create_discount_rule(
            self.db, code='ONCE', name='Once', discount_type='percentage', value=5, max_usage_per_customer=1
        )
        create_order(
            self.db,
            customer_id=self.customer.id,
            items=[self.line('RESTAURANT', price=1000)],
            discounts=['ONCE'],
        )
        rule = get_rule(self.db, 'ONCE')
        self.assertEqual(rule.current_usage, 1)
        with self.assertRaises(DiscountError):
            create_order(
                self.db,
                customer_id=self.customer.id,
                items=[self.line('RESTAURANT', price=1000)],
                discounts=['ONCE'],
            )

    def test_calculate_discount_amount(self) -> None:
        fixed = create_discount_rule(self.db, code='FIVE', name='Five off', discount_type='fixed', value='5.00')
        bulk = create_discount_rule(self.db, code='BULK', name='Bulk', discount_type=DiscountType.BULK, value=12)
        self.assertEqual(calculate_discount_amount(fixed, 2000), 500)
        self.assertEqual(calculate_discount_amount(fixed, 300), 300)
        self.assertEqual(calculate_discount_amount(bulk, 2500), 300)

    def test_list_update_deactivate_and_stats(self) -> None:
        first = create_discount_rule(self.db, code='A1', name='A1', discount_type='percentage', value=5)
        create_discount_rule(self.db, code='B1', name='B1', discount_type='fixed', value=2)

        result = list_rules(self.db, discount_type='fixed')
        self.assertEqual([item['code'] for item in result['items']], ['B1'])
        self.assertEqual(result['meta']['total'], 1)

        update_rule(self.db, rule_id=first.id, changes={'value': '7.5', 'name': 'A one'})
        self.assertEqual(first.value, Decimal('7.5'))
        self.assertEqual(first.name, 'A one')
        with self.assertRaises(ValueError):
            update_rule(self.db, rule_id=first.id, changes={'code': 'X'})

        deactivate_rule(self.db, rule_id=first.id)
        self.assertEqual([rule.code for rule in get_active_rules(self.db)], ['B1'])
        self.assertEqual(list_rules(self.db, is_active=False)['meta']['total'], 1)

        create_order(
            self.db,
            customer_id=self.customer.id,
            items=[self.line('RESTAURANT', price=1000)],
            discounts=['B1'],
        )
        stats = get_discount_stats(self.db)
        self.assertEqual(stats['total_rules'], 2)
        self.assertEqual(stats['active_rules'], 1)
        self.assertEqual(stats['total_discounts_applied'], 1)
        self.assertEqual(stats['total_discount_amount'], 200)


if __name__ == '__main__':
    unittest.main()
