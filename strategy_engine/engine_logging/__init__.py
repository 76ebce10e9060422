"""
Structured logging for the Strategy Engine.

JSON logs with timestamp, level and event_type. Use get_logger() in every
module so RPC, treasury and engine events aggregate under consistent keys.
"""

from strategy_engine.engine_logging.logger import bind_treasury, get_logger

__all__ = ["bind_treasury", "get_logger"]
