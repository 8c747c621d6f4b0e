"""Logging helpers.

The runtime uses Python logging with a JSON formatter so window and job
activity can be followed line by line.
"""

from __future__ import annotations

import json
import logging
import logging.config
from pathlib import Path
from typing import Any

import yaml

from errors import ConfigurationError
from utils import format_rfc3339, utcnow

_STRUCTURED_EXTRAS = ("event", "code", "state", "network", "job", "block", "window_start", "window_end")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "ts": format_rfc3339(utcnow()),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }

        for k in _STRUCTURED_EXTRAS:
            v = getattr(record, k, None)
            if v is not None:
                base[k] = v

        if record.exc_info:
            base["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(base, ensure_ascii=True, sort_keys=True)


def apply_logging_config(logging_config_path: Path) -> None:
    if not logging_config_path.exists():
        raise ConfigurationError(f"Missing required logging config file: {logging_config_path}")
    raw = yaml.safe_load(logging_config_path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Invalid logging config YAML root object: {logging_config_path}")
    logging.config.dictConfig(raw)
