"""
Application-level exceptions.

Every domain error carries a stable ``code`` and structured ``details`` so the
API server and the periodic engines can render it without string parsing:

    RpcError         Timeout, Connectivity, Disagreement, Rejected, NoQuorum, AllEndpointsUnavailable
    TransferError    InsufficientFunds, RejectedBySigner, ConfirmationTimeout, Busy
    WithdrawalError  InvalidAmount, BelowFloor, InvalidDestination
    EngineSkipped    NoCredential, BelowGasFloor
"""

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all Strategy Engine errors."""

    code = "engine_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Structured payload for HTTP responses and recorded cycle outcomes."""
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ConfigError(EngineError):
    code = "config_error"


# -----------------------------------------------------------------------------
# RPC
# -----------------------------------------------------------------------------


class RpcError(EngineError):
    code = "rpc_error"


class RpcTimeout(RpcError):
    code = "rpc_timeout"


class RpcConnectivityError(RpcError):
    code = "rpc_connectivity"


class RpcDisagreement(RpcError):
    code = "rpc_disagreement"


class RpcRejected(RpcError):
    """The node accepted the request but refused it (e.g. insufficient funds). Never retried."""

    code = "rpc_rejected"


class NoQuorum(RpcError):
    code = "no_quorum"


class AllEndpointsUnavailable(RpcError):
    code = "all_endpoints_unavailable"


# Errors worth trying on another endpoint
RETRYABLE_RPC_ERRORS = (RpcTimeout, RpcConnectivityError)


# -----------------------------------------------------------------------------
# Treasury transfers
# -----------------------------------------------------------------------------


class TransferError(EngineError):
    code = "transfer_error"


class InsufficientFunds(TransferError):
    code = "insufficient_funds"


class RejectedBySigner(TransferError):
    code = "rejected_by_signer"


class ConfirmationTimeout(TransferError):
    code = "confirmation_timeout"


class Busy(TransferError):
    code = "busy"


# -----------------------------------------------------------------------------
# Withdrawals
# -----------------------------------------------------------------------------


class WithdrawalError(EngineError):
    code = "withdrawal_error"


class InvalidAmount(WithdrawalError):
    code = "invalid_amount"


class BelowFloor(WithdrawalError):
    code = "below_floor"


class InvalidDestination(WithdrawalError):
    code = "invalid_destination"


# -----------------------------------------------------------------------------
# Engine pre-conditions
# -----------------------------------------------------------------------------


class EngineSkipped(EngineError):
    code = "engine_skipped"


class NoCredential(EngineSkipped):
    code = "no_credential"


class BelowGasFloor(EngineSkipped):
    code = "below_gas_floor"
