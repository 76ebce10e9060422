"""
structlog setup for the Strategy Engine.

Every record carries service, logger, level, an ISO timestamp and the event
name under event_type. Fields that could hold treasury key material or a raw
signed transaction are replaced by a placeholder before rendering, whatever
module logged them. LOG_FORMAT=json (default) renders one JSON object per
line; anything else uses the console renderer.

Configured once on import. Imports nothing from strategy_engine so every
package can log without import cycles.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

import structlog

SERVICE = "strategy-engine"
REDACTED = "[redacted]"

# Field names that must never reach a log sink with their value
SECRET_FIELDS = frozenset(
    {
        "private_key",
        "treasury_private_key",
        "key",
        "secret",
        "raw_transaction",
        "raw_tx",
        "signed_transaction",
    }
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_LEVEL_VALUE = getattr(logging, LOG_LEVEL, logging.INFO)
LOG_FORMAT = os.getenv("LOG_FORMAT", "json").strip().lower()


def redact_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Blank secret-looking fields, including inside one level of nested dicts (error details)."""
    for name, value in list(event_dict.items()):
        if name.lower() in SECRET_FIELDS:
            event_dict[name] = REDACTED
        elif isinstance(value, dict):
            event_dict[name] = {
                k: REDACTED if str(k).lower() in SECRET_FIELDS else v for k, v in value.items()
            }
    return event_dict


def _add_service(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    event_dict.setdefault("service", SERVICE)
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _event_type(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "event" in event_dict and "event_type" not in event_dict:
        event_dict["event_type"] = event_dict.pop("event")
    return event_dict


def configure_structlog(log_format: str = LOG_FORMAT, level: int = LOG_LEVEL_VALUE) -> None:
    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        redact_secrets,
        _add_service,
        _event_type,
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty(), event_key="event_type"))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


if not structlog.is_configured():
    configure_structlog()


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Module logger with the module name bound:

        logger = get_logger(__name__)
        logger.info("settlement_cycle_settled", cycle=12, tx_id="0x...")
    """
    return structlog.get_logger(name).bind(logger=name)


def bind_treasury(address: str) -> structlog.BoundLogger:
    """Logger for treasury events; every line carries the treasury address."""
    return get_logger("strategy_engine.treasury").bind(treasury=address)
