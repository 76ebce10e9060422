"""
Environment variable loading for the Strategy Engine.

- RPC_URLS: comma-separated public endpoints (default: public mainnet nodes)
- ETHERSCAN_RPC_URL / PREFERRED_RPC_URL: dedicated endpoint, preferred over public ones
- CHAIN: declared chain identity (mainnet | sepolia | holesky)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

# Project root: config is strategy_engine/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_PACKAGE_DIR = _CONFIG_DIR.parent
_ROOT = _PACKAGE_DIR.parent
_ENV_PATH = _ROOT / ".env"

# Standard public endpoints (used as fallbacks behind any preferred endpoint)
DEFAULT_PUBLIC_RPC_URLS: tuple[str, ...] = (
    "https://ethereum-rpc.publicnode.com",
    "https://cloudflare-eth.com",
    "https://eth.meowrpc.com",
    "https://eth.llamarpc.com",
    "https://1rpc.io/eth",
)

CHAIN_IDS: dict[str, int] = {
    "mainnet": 1,
    "sepolia": 11155111,
    "holesky": 17000,
}

_QUERY_SECRET_RE = re.compile(r"((?:api-?key|apikey|token|key)=)[^&]+", re.IGNORECASE)
# Long opaque path segments (Infura/Alchemy/Etherscan style project keys)
_PATH_SECRET_RE = re.compile(r"/([A-Za-z0-9_-]{24,})(?=/|$)")


def load_engine_env() -> None:
    """Load .env from project root. Safe to call multiple times."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH)


def env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def get_public_rpc_urls() -> list[str]:
    """RPC_URLS from env (comma-separated), else the default public endpoints."""
    raw = env_str("RPC_URLS")
    if not raw:
        return list(DEFAULT_PUBLIC_RPC_URLS)
    return [u.strip() for u in raw.split(",") if u.strip()]


def get_preferred_rpc_url() -> str | None:
    """
    Dedicated, stable RPC URL prepended ahead of the public pool.
    Order: ETHERSCAN_RPC_URL > PREFERRED_RPC_URL > none.
    """
    url = env_str("ETHERSCAN_RPC_URL") or env_str("PREFERRED_RPC_URL")
    return url or None


def get_chain() -> str:
    return env_str("CHAIN", "mainnet").lower()


def mask_rpc_url(url: str) -> str:
    """Mask API keys in query strings and long key-like path segments."""
    masked = _QUERY_SECRET_RE.sub(r"\1***", url)
    return _PATH_SECRET_RE.sub("/***", masked)
