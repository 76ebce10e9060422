"""
RPC package: multi-endpoint Ethereum JSON-RPC with quorum voting.

EndpointPool (static descriptors) → transports (one per endpoint) →
QuorumRpcClient (fan-out reads, sequential writes, health bookkeeping).
"""

from strategy_engine.rpc.endpoints import EndpointDescriptor, EndpointHealth, EndpointPool
from strategy_engine.rpc.quorum import FeeEstimate, QuorumConfig, QuorumResult, QuorumRpcClient

__all__ = [
    "EndpointDescriptor",
    "EndpointHealth",
    "EndpointPool",
    "FeeEstimate",
    "QuorumConfig",
    "QuorumResult",
    "QuorumRpcClient",
]
