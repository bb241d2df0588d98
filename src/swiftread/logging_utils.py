from __future__ import annotations

import logging.config
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

PACKAGE_LOGGER = "swiftread"


def _decode_path(value: str) -> str:
    try:
        return unquote(value, encoding="utf-8", errors="replace")
    except Exception:
        return value


class Utf8AccessFormatter(UvicornAccessFormatter):
    """Uvicorn access log formatter that prints decoded UTF-8 paths."""

    def formatMessage(self, record):  # type: ignore[override]
        try:
            client_addr, method, full_path, http_version, status_code = record.args
        except Exception:
            return super().formatMessage(record)
        decoded_path = _decode_path(full_path) if isinstance(full_path, str) else full_path
        new_record = copy(record)
        new_record.args = (client_addr, method, decoded_path, http_version, status_code)
        return super().formatMessage(new_record)


def build_log_config(debug: bool = False) -> dict[str, Any]:
    """
    Return uvicorn's logging config extended with the swiftread package logger.

    The same dict is handed to ``uvicorn.run`` for the web server and to
    ``logging.config.dictConfig`` for the other CLI commands, so engine
    messages look the same everywhere.
    """
    config = deepcopy(LOGGING_CONFIG)
    formatters = config.setdefault("formatters", {})
    access = formatters.get("access")
    if isinstance(access, dict):
        access["()"] = "swiftread.logging_utils.Utf8AccessFormatter"
    default = formatters.get("default")
    if isinstance(default, dict):
        default["fmt"] = "%(levelprefix)s %(name)s: %(message)s"
    config.setdefault("loggers", {})[PACKAGE_LOGGER] = {
        "handlers": ["default"],
        "level": "DEBUG" if debug else "INFO",
        "propagate": False,
    }
    return config


def configure_logging(debug: bool = False) -> None:
    logging.config.dictConfig(build_log_config(debug))
