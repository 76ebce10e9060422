"""
Strategy Engine: resilient treasury settlement backend for Ethereum.

Queries several independent RPC nodes behind a quorum-voting client, runs a
periodic settlement cycle (or pool monitor) against a single treasury
account, and exposes last-known engine state to a thin FastAPI layer.
"""

__version__ = "1.0.0"
