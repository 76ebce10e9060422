"""
FastAPI/ASGI application entrypoint.

Run with: uvicorn strategy_engine.api_server.app:app --host 0.0.0.0 --port 8081
"""

from strategy_engine.api_server.server import create_app

app = create_app()

__all__ = ["app"]
