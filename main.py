"""
Main entrypoint: FastAPI server in the main thread, configured engine in a background thread.

The engine runner is started by the API lifespan, so the API stays responsive
while settlement cycles (or monitor ticks) run. On SIGINT/SIGTERM uvicorn
shuts down and the lifespan stops the runner.

Env: ENGINE_MODE, RPC_URLS, TREASURY_PRIVATE_KEY, WITHDRAWAL_ADDRESS, STRATEGY_PORT, API_HOST, etc.

Engine only (no HTTP): python -m strategy_engine.agent_worker.runtime
"""

import os
import sys

# Configure structured JSON logging before other imports that may log
from strategy_engine.engine_logging import get_logger

logger = get_logger("main")


def main() -> None:
    from strategy_engine.config.settings import get_settings
    from strategy_engine.core.exceptions import ConfigError

    try:
        settings = get_settings()
    except ConfigError as e:
        logger.error("main_config_error", **e.to_dict())
        sys.exit(2)

    from strategy_engine.api_server.app import app
    import uvicorn

    logger.info("main_server_starting", host=settings.api_host, port=settings.api_port, mode=settings.mode)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port, log_level=os.getenv("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
