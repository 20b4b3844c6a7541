"""
Logging configuration.

The packaged `logging.yaml` holds handlers and formats. At startup the level from
settings (`ROUTEGUARD_LOG_LEVEL`) is applied to the root logger and its handlers.
Chatty third-party loggers pinned in the YAML (httpx) stay quiet unless the service
runs at DEBUG, where request-level traces help diagnose dataset refreshes.
"""

from __future__ import annotations

import copy
import logging.config

from routeguard.config.settings import Settings, get_logging_config, get_settings

_THIRD_PARTY_LOGGERS = ("httpx", "httpcore")


def configure_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    config = copy.deepcopy(get_logging_config())

    level = settings.app.log_level.upper()
    config.setdefault("root", {})["level"] = level
    for handler in config.get("handlers", {}).values():
        if isinstance(handler, dict) and "level" in handler:
            handler["level"] = level

    if level == "DEBUG":
        loggers = config.setdefault("loggers", {})
        for name in _THIRD_PARTY_LOGGERS:
            loggers.setdefault(name, {})["level"] = "DEBUG"

    logging.config.dictConfig(config)
