"""Enhancement configuration."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class TransactionOptions:
    """Options forwarded verbatim to the storage client's transaction primitive.

    ``max_wait`` and ``timeout`` are in milliseconds.
    """

    isolation_level: str | None = None
    max_wait: float | None = None
    timeout: float | None = None

    def as_kwargs(self) -> dict[str, Any]:
        return {
            "isolation_level": self.isolation_level,
            "max_wait": self.max_wait,
            "timeout": self.timeout,
        }


@dataclass
class EnhancementOptions:
    """Options shared by all enhancement layers."""

    log_queries: bool = False
    transaction: TransactionOptions = field(default_factory=TransactionOptions)

    @classmethod
    def from_env(cls) -> EnhancementOptions:
        """Create options from environment variables.

        Recognized variables:
        1. WARDEN_LOG_QUERIES: log rewritten queries at DEBUG level
        2. WARDEN_TX_ISOLATION_LEVEL: isolation level for policy transactions
        3. WARDEN_TX_MAX_WAIT / WARDEN_TX_TIMEOUT: milliseconds
        """
        log_queries = os.environ.get("WARDEN_LOG_QUERIES", "").strip().lower() in _TRUTHY
        return cls(
            log_queries=log_queries,
            transaction=TransactionOptions(
                isolation_level=os.environ.get("WARDEN_TX_ISOLATION_LEVEL") or None,
                max_wait=_float_env("WARDEN_TX_MAX_WAIT"),
                timeout=_float_env("WARDEN_TX_TIMEOUT"),
            ),
        )


def _float_env(name: str) -> float | None:
    raw = os.environ.get(name)
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc
