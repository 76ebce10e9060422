"""
FastAPI server — status snapshots and on-demand treasury operations.

Read routes render the StatusReporter snapshots. POST /settle runs one
settlement cycle synchronously; POST /withdraw moves funds out of the treasury
(never below the reserved gas floor). Domain errors are returned as their
structured payload with a status code chosen by error class.

The lifespan builds the runtime from environment settings (unless one is
injected, as tests do) and runs the configured engine on a background thread.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from strategy_engine import __version__
from strategy_engine.agent_worker.runtime import EngineRuntime, build_runtime
from strategy_engine.agent_worker.settlement import CycleState
from strategy_engine.agent_worker.status import SERVICE_NAME
from strategy_engine.config.settings import get_settings
from strategy_engine.core.exceptions import (
    Busy,
    ConfirmationTimeout,
    EngineError,
    EngineSkipped,
    InsufficientFunds,
    RejectedBySigner,
    RpcError,
    WithdrawalError,
)
from strategy_engine.core.units import format_eth, to_wei
from strategy_engine.engine_logging import get_logger

logger = get_logger(__name__)

STATUS_ROUTES = ["/status", "/engine-status", "/earnings"]
BALANCE_ROUTES = ["/balance", "/treasury"]
SETTLE_ROUTES = ["/settle", "/execute", "/trigger-settlement"]
WITHDRAW_ROUTES = ["/withdraw", "/withdrawal", "/sweep"]

# Most specific class first
ERROR_STATUS_CODES: tuple[tuple[type[EngineError], int], ...] = (
    (Busy, 409),
    (InsufficientFunds, 400),
    (RejectedBySigner, 502),
    (ConfirmationTimeout, 504),
    (WithdrawalError, 400),
    (EngineSkipped, 412),
    (RpcError, 503),
)


def status_code_for(error: EngineError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


class WithdrawRequest(BaseModel):
    """POST /withdraw body. Omit amount_eth (or send 0) to sweep everything above the floor."""

    amount_eth: Decimal | None = Field(None, ge=0, description="Amount in ETH; null or 0 sweeps")
    destination: str | None = Field(None, max_length=64, description="Destination address; defaults to WITHDRAWAL_ADDRESS")


def _runtime(request: Request) -> EngineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Engine runtime not started")
    return runtime


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------


def root(request: Request) -> dict[str, Any]:
    return _runtime(request).reporter.overview()


def health() -> dict[str, str]:
    """Liveness probe: API is up."""
    return {"status": "ok"}


def liquidity_status(request: Request) -> dict[str, Any]:
    return _runtime(request).reporter.liquidity_status()


def engine_status(request: Request) -> dict[str, Any]:
    return _runtime(request).reporter.settlement_status()


def treasury_balance(request: Request) -> dict[str, Any]:
    """Fresh quorum read of the treasury balance plus the withdrawable ceiling."""
    runtime = _runtime(request)
    balance = runtime.signer.balance()
    floor = runtime.withdrawals.reserved_gas_floor_wei
    return {
        "address": runtime.signer.address,
        "balanceEth": format_eth(balance),
        "balanceWei": str(balance),
        "reservedGasFloorEth": format_eth(floor),
        "maxWithdrawableEth": format_eth(max(balance - floor, 0)),
        "chain": runtime.settings.chain,
    }


def trigger_settlement(request: Request) -> JSONResponse:
    """Run one settlement cycle now. Skipped or failed cycles return their recorded error."""
    runtime = _runtime(request)
    if runtime.settlement is None:
        raise HTTPException(status_code=409, detail="Settlement engine is not enabled in this deployment")
    logger.info("api_settlement_triggered")
    record = runtime.settlement.settle_now()
    payload = {"success": record.succeeded, "record": record.to_dict()}
    if record.succeeded:
        return JSONResponse(status_code=200, content=payload)
    status_code = 412 if record.state is CycleState.SKIPPED else 502
    return JSONResponse(status_code=status_code, content=payload)


def withdraw(request: Request, body: WithdrawRequest | None = None) -> dict[str, Any]:
    runtime = _runtime(request)
    body = body or WithdrawRequest()
    amount_wei = to_wei(body.amount_eth) if body.amount_eth is not None else None
    logger.info(
        "api_withdraw_called",
        amount_eth=str(body.amount_eth) if body.amount_eth is not None else None,
        destination=body.destination,
    )
    receipt = runtime.withdrawals.withdraw(amount_wei, body.destination)
    return receipt.to_dict()


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------


def create_app(runtime: EngineRuntime | None = None, *, start_background: bool = True) -> FastAPI:
    """
    Build the API. With runtime=None the lifespan builds one from environment
    settings; start_background=False leaves the periodic runner stopped.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = runtime if runtime is not None else build_runtime(get_settings())
        app.state.runtime = active
        if start_background:
            active.start()
            logger.info("api_engine_runner_started", mode=active.settings.mode, interval_sec=active.runner.interval_sec)
        yield
        if start_background:
            active.stop()
            logger.info("api_engine_runner_stopped")

    app = FastAPI(
        title=SERVICE_NAME,
        description="Quorum-read treasury settlement engine and liquidity monitor.",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_api_route("/", root, methods=["GET"])
    app.add_api_route("/health", health, methods=["GET"])
    app.add_api_route("/liquidity-status", liquidity_status, methods=["GET"])
    for path in STATUS_ROUTES:
        app.add_api_route(path, engine_status, methods=["GET"])
    for path in BALANCE_ROUTES:
        app.add_api_route(path, treasury_balance, methods=["GET"])
    for path in SETTLE_ROUTES:
        app.add_api_route(path, trigger_settlement, methods=["POST"])
    for path in WITHDRAW_ROUTES:
        app.add_api_route(path, withdraw, methods=["POST"])

    @app.exception_handler(EngineError)
    def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        """Structured error payload so callers can self-correct (balance, floor, ceiling)."""
        status_code = status_code_for(exc)
        logger.warning("api_request_failed", path=request.url.path, status_code=status_code, **exc.to_dict())
        return JSONResponse(status_code=status_code, content={"success": False, **exc.to_dict()})

    @app.exception_handler(HTTPException)
    def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Consistent JSON error response for HTTPException."""
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    return app
