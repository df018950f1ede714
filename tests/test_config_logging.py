from __future__ import annotations

import json
import logging
import unittest
from unittest import mock

from hospitality_pos.config import Settings
from hospitality_pos.logging_config import JsonFormatter, build_logging_config


class SettingsTests(unittest.TestCase):
    def test_database_url_is_normalized_for_psycopg(self) -> None:
        cases = {
            'postgres://u:p@db:5432/pos': 'postgresql+psycopg://u:p@db:5432/pos',
            'postgresql://u:p@db:5432/pos': 'postgresql+psycopg://u:p@db:5432/pos',
            ' sqlite:///pos.db ': 'sqlite:///pos.db',
        }
        for raw, expected in cases.items():
            with self.subTest(raw=raw):
                self.assertEqual(Settings(database_url=raw).database_url_normalized, expected)

    def test_reads_environment(self) -> None:
        env = {'TAX_RATE_PERCENT': '8', 'LOG_JSON': 'true', 'INVENTORY_DEPARTMENT_CODES': '["BAR_CLUB"]'}
        with mock.patch.dict('os.environ', env):
            current = Settings(_env_file=None)
        self.assertEqual(current.tax_rate_percent, 8)
        self.assertTrue(current.log_json)
        self.assertEqual(current.inventory_department_codes, ['BAR_CLUB'])


class LoggingConfigTests(unittest.TestCase):
    def test_build_logging_config(self) -> None:
        config = build_logging_config('debug', json_lines=True)
        self.assertEqual(config['loggers']['']['level'], 'DEBUG')
        self.assertEqual(config['handlers']['console']['formatter'], 'json')
        self.assertEqual(build_logging_config('info', json_lines=False)['handlers']['console']['formatter'], 'standard')

    def test_json_formatter(self) -> None:
        record = logging.LogRecord('hospitality_pos.test', logging.WARNING, __file__, 1, 'order %s failed', ('ORD-1',), None)
        data = json.loads(JsonFormatter().format(record))
        self.assertEqual(data['level'], 'WARNING')
        self.assertEqual(data['logger'], 'hospitality_pos.test')
        self.assertEqual(data['message'], 'order ORD-1 failed')
        self.assertNotIn('exc_info', data)


if __name__ == '__main__':
    unittest.main()
