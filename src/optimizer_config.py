"""
ShieldRoute - Runtime Configuration

Economic and timing parameters for the request lifecycle.

Environment Variables:
    SHIELDROUTE_MIN_STAKE=10000000000000000
    SHIELDROUTE_FEE_PERCENT=2
    SHIELDROUTE_MAX_ITEMS=50
    SHIELDROUTE_REQUEST_TIMEOUT=86400
    SHIELDROUTE_PROCESSING_TIMEOUT=3600
    SHIELDROUTE_OWNER=0x...
    SHIELDROUTE_OPERATORS=0x...,0x...
    SHIELDROUTE_PAUSERS=0x...,0x...
    SHIELDROUTE_SWEEP_INTERVAL=0
"""

import os
from dataclasses import dataclass, field
from typing import Any

from route_exceptions import ConfigurationError

# Defaults
DEFAULT_MIN_STAKE = 10**16  # 0.01 of an 18-decimal unit
DEFAULT_FEE_PERCENT = 2
DEFAULT_MAX_ITEMS = 50
REQUEST_TIMEOUT_SECONDS = 24 * 60 * 60
PROCESSING_TIMEOUT_SECONDS = 60 * 60

# Obfuscation bands (upper bounds exclusive)
MULTIPLIER_MIN = 1000
MULTIPLIER_MAX = 9999
NOISE_BOUND = 100

# Item slots are addressed with an 8-bit index
ITEM_INDEX_LIMIT = 255


def _split_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class OptimizerConfig:
    """Configuration for the request lifecycle."""

    # Economics
    min_stake: int = DEFAULT_MIN_STAKE
    fee_percent: int = DEFAULT_FEE_PERCENT

    # Request shape
    max_items: int = DEFAULT_MAX_ITEMS

    # Timeouts
    request_timeout_seconds: int = REQUEST_TIMEOUT_SECONDS
    processing_timeout_seconds: int = PROCESSING_TIMEOUT_SECONDS

    # Obfuscation
    multiplier_min: int = MULTIPLIER_MIN
    multiplier_max: int = MULTIPLIER_MAX
    noise_bound: int = NOISE_BOUND

    # Initial capability holders
    owner: str = "0xowner"
    operators: list[str] = field(default_factory=list)
    pausers: list[str] = field(default_factory=list)

    # Optional background scan (0 disables)
    sweep_interval_seconds: int = 0

    @classmethod
    def from_env(cls) -> "OptimizerConfig":
        """Create configuration from environment variables."""
        return cls(
            min_stake=int(os.getenv("SHIELDROUTE_MIN_STAKE", str(DEFAULT_MIN_STAKE))),
            fee_percent=int(os.getenv("SHIELDROUTE_FEE_PERCENT", str(DEFAULT_FEE_PERCENT))),
            max_items=int(os.getenv("SHIELDROUTE_MAX_ITEMS", str(DEFAULT_MAX_ITEMS))),
            request_timeout_seconds=int(
                os.getenv("SHIELDROUTE_REQUEST_TIMEOUT", str(REQUEST_TIMEOUT_SECONDS))
            ),
            processing_timeout_seconds=int(
                os.getenv("SHIELDROUTE_PROCESSING_TIMEOUT", str(PROCESSING_TIMEOUT_SECONDS))
            ),
            owner=os.getenv("SHIELDROUTE_OWNER", "0xowner"),
            operators=_split_list(os.getenv("SHIELDROUTE_OPERATORS", "")),
            pausers=_split_list(os.getenv("SHIELDROUTE_PAUSERS", "")),
            sweep_interval_seconds=int(os.getenv("SHIELDROUTE_SWEEP_INTERVAL", "0")),
        )

    def validate(self) -> "OptimizerConfig":
        """
        Check parameter ranges.

        Returns:
            self, so calls can be chained

        Raises:
            ConfigurationError: If any parameter is out of range
        """
        problems = []
        if not 0 <= self.fee_percent <= 100:
            problems.append("fee_percent must be between 0 and 100")
        if not 1 <= self.max_items <= ITEM_INDEX_LIMIT:
            problems.append(f"max_items must be between 1 and {ITEM_INDEX_LIMIT}")
        if self.min_stake < 0:
            problems.append("min_stake must not be negative")
        if self.request_timeout_seconds <= 0 or self.processing_timeout_seconds <= 0:
            problems.append("timeouts must be positive")
        if self.multiplier_min >= self.multiplier_max or self.multiplier_min <= 0:
            problems.append("multiplier band is empty")
        if self.noise_bound <= 0:
            problems.append("noise_bound must be positive")
        if self.sweep_interval_seconds < 0:
            problems.append("sweep_interval_seconds must not be negative")
        if not self.owner:
            problems.append("owner is required")

        if problems:
            raise ConfigurationError(
                "; ".join(problems), operation="validate_config", details={"problems": problems}
            )
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "min_stake": self.min_stake,
            "fee_percent": self.fee_percent,
            "max_items": self.max_items,
            "request_timeout_seconds": self.request_timeout_seconds,
            "processing_timeout_seconds": self.processing_timeout_seconds,
            "multiplier_range": [self.multiplier_min, self.multiplier_max],
            "noise_bound": self.noise_bound,
            "sweep_interval_seconds": self.sweep_interval_seconds,
        }
