"""
RPC endpoint pool: ordered endpoint descriptors plus per-endpoint health.

The pool is static for the process lifetime. A preferred (secret-derived)
endpoint, when configured, is prepended with the best priority rank; public
endpoints follow in declaration order. Health is bookkept by the quorum client.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

from strategy_engine.config.env import mask_rpc_url

PREFERRED_PRIORITY = 0


@dataclass(frozen=True)
class EndpointDescriptor:
    """Immutable endpoint description. Lower priority rank = preferred."""

    url: str
    chain: str = "mainnet"
    priority: int = 1
    preferred: bool = False

    @property
    def label(self) -> str:
        """URL safe for logs and status payloads."""
        return mask_rpc_url(self.url)


@dataclass
class EndpointHealth:
    """Mutable health for one endpoint. Only QuorumRpcClient writes it."""

    last_success_at: float | None = None
    consecutive_failures: int = 0
    disabled_until: float | None = None
    last_error: str | None = None

    def is_enabled(self, now: float) -> bool:
        """Disabled endpoints become eligible again once their cool-down has elapsed."""
        return self.disabled_until is None or now >= self.disabled_until

    def to_dict(self, now: float) -> dict[str, object]:
        return {
            "enabled": self.is_enabled(now),
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at,
            "disabled_for_sec": round(self.disabled_until - now, 1)
            if self.disabled_until is not None and now < self.disabled_until
            else 0.0,
            "last_error": self.last_error,
        }


class EndpointPool:
    """Static, priority-ordered list of endpoint descriptors."""

    def __init__(self, descriptors: list[EndpointDescriptor]) -> None:
        if not descriptors:
            raise ValueError("EndpointPool requires at least one endpoint")
        urls = [d.url for d in descriptors]
        if len(set(urls)) != len(urls):
            raise ValueError("EndpointPool endpoints must be unique")
        # sorted() is stable: equal ranks keep declaration order
        self._descriptors = tuple(sorted(descriptors, key=lambda d: d.priority))

    @classmethod
    def from_urls(
        cls,
        urls: list[str] | tuple[str, ...],
        *,
        preferred_url: str | None = None,
        chain: str = "mainnet",
    ) -> "EndpointPool":
        """
        Build a pool from public URLs, prepending the preferred URL when set.
        A public URL equal to the preferred one is dropped rather than duplicated.
        """
        descriptors: list[EndpointDescriptor] = []
        if preferred_url:
            descriptors.append(
                EndpointDescriptor(url=preferred_url, chain=chain, priority=PREFERRED_PRIORITY, preferred=True)
            )
        seen = {preferred_url} if preferred_url else set()
        rank = PREFERRED_PRIORITY + 1
        for url in urls:
            if url in seen:
                continue
            seen.add(url)
            descriptors.append(EndpointDescriptor(url=url, chain=chain, priority=rank))
            rank += 1
        return cls(descriptors)

    @property
    def preferred(self) -> EndpointDescriptor | None:
        return next((d for d in self._descriptors if d.preferred), None)

    def ordered(self) -> tuple[EndpointDescriptor, ...]:
        return self._descriptors

    def __iter__(self) -> Iterator[EndpointDescriptor]:
        return iter(self._descriptors)

    def __len__(self) -> int:
        return len(self._descriptors)
