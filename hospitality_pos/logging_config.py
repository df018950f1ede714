from __future__ import annotations

import json
import logging
import logging.config
from datetime import datetime, timezone

from hospitality_pos.config import settings


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            'timestamp': datetime.now(tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.exc_info:
            data['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(data)


def build_logging_config(level: str | None = None, json_lines: bool | None = None) -> dict:
    lvl = (level or settings.log_level).upper()
    use_json = settings.log_json if json_lines is None else json_lines
    return {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'standard': {
                'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
                'datefmt': '%Y-%m-%d %H:%M:%S',
            },
            'json': {'()': JsonFormatter},
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'formatter': 'json' if use_json else 'standard',
                'stream': 'ext://sys.stdout',
            },
        },
        'loggers': {
            '': {'handlers': ['console'], 'level': lvl},
            'sqlalchemy.engine': {'level': 'INFO' if settings.sql_echo else 'WARNING'},
        },
    }


def configure_logging(level: str | None = None, json_lines: bool | None = None) -> None:
    logging.config.dictConfig(build_logging_config(level, json_lines))
