"""
config.py - Engine configuration

SyncConfig is an immutable bundle of the tunables shared by the tracker,
the reconciler and the session. Derive variants with with_overrides();
load deployment values from the environment with from_env().

DEFAULT_TOKENS lists the assets the city tracks balances for.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

from .core import DEFAULT_GRID_SIZE, NATIVE_ASSET_ADDRESS, TokenInfo


logger = logging.getLogger(__name__)


DEFAULT_TOKENS: Tuple[TokenInfo, ...] = (
    TokenInfo("ETH", 18, NATIVE_ASSET_ADDRESS, is_native=True),
    TokenInfo("USDC", 6, "0xba50Cd2A20f6DA35D788639E581bca8d0B5d4D5f"),
)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """
    Tunables for the synchronization engine.

    Attributes:
        grid_size: Side length of the square grid
        poll_interval: Seconds between receipt polls
        confirmation_timeout: Seconds a tracker waits for inclusion before TIMED_OUT
        max_poll_errors: Consecutive receipt-poll failures tolerated before TIMED_OUT
        max_submit_attempts: Signer attempts on NetworkError before FAILED
        backoff_base: First retry delay in seconds
        backoff_cap: Upper bound on any retry delay
        refresh_interval: Seconds between periodic reconciliations (0 disables the timer)
        pending_ttl: Seconds a timed-out placement keeps its cell before it expires
        reference_symbol: Asset that portfolio value is also reported in
        valuation_currency: Currency prices are quoted in
    """
    grid_size: int = DEFAULT_GRID_SIZE
    poll_interval: float = 2.0
    confirmation_timeout: float = 120.0
    max_poll_errors: int = 5
    max_submit_attempts: int = 3
    backoff_base: float = 0.5
    backoff_cap: float = 8.0
    refresh_interval: float = 60.0
    pending_ttl: float = 900.0
    reference_symbol: str = "ETH"
    valuation_currency: str = "USD"

    def __post_init__(self):
        if self.grid_size < 1:
            raise ValueError(f"grid_size must be positive, got {self.grid_size}")
        if self.poll_interval <= 0:
            raise ValueError(f"poll_interval must be positive, got {self.poll_interval}")
        if self.confirmation_timeout <= 0:
            raise ValueError(f"confirmation_timeout must be positive, got {self.confirmation_timeout}")
        if self.max_poll_errors < 0:
            raise ValueError(f"max_poll_errors cannot be negative, got {self.max_poll_errors}")
        if self.max_submit_attempts < 1:
            raise ValueError(f"max_submit_attempts must be at least 1, got {self.max_submit_attempts}")
        if self.backoff_base < 0 or self.backoff_cap < self.backoff_base:
            raise ValueError(
                f"backoff requires 0 <= base <= cap, got base={self.backoff_base} cap={self.backoff_cap}"
            )
        if self.refresh_interval < 0:
            raise ValueError(f"refresh_interval cannot be negative, got {self.refresh_interval}")
        if self.pending_ttl <= 0:
            raise ValueError(f"pending_ttl must be positive, got {self.pending_ttl}")

    def backoff_delay(self, attempt: int) -> float:
        """Exponential delay before retry number `attempt` (1-based), capped."""
        if attempt < 1:
            return 0.0
        return min(self.backoff_cap, self.backoff_base * (2 ** (attempt - 1)))

    def with_overrides(self, **changes: Any) -> SyncConfig:
        """Return a copy with the given fields replaced (validated again)."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None,
                 prefix: str = "DEFICITY_") -> SyncConfig:
        """
        Build a config from environment variables.

        Each field maps to PREFIX + FIELD_NAME in upper case, e.g.
        DEFICITY_POLL_INTERVAL=0.5. Values are cast to the type of the
        field's default. Unset variables keep the default.

        Raises:
            ValueError: If a variable cannot be cast or fails validation
        """
        environ = os.environ if environ is None else environ
        defaults = cls()
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            key = f"{prefix}{f.name.upper()}"
            if key not in environ:
                continue
            raw = environ[key]
            kind = type(getattr(defaults, f.name))
            try:
                overrides[f.name] = kind(raw)
            except ValueError as exc:
                raise ValueError(f"{key}={raw!r} is not a valid {kind.__name__}") from exc
        if overrides:
            logger.debug("SyncConfig overrides from environment: %s", sorted(overrides))
        return replace(defaults, **overrides)
