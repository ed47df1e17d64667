"""
Ledger Configuration

Constants the accrual core depends on are injected at construction, never
hardcoded in the ledgers. `from_env` follows the deployment convention of
reading overrides from the process environment.
"""

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional

# 30 days
DEFAULT_BILLING_PERIOD_SECONDS = 2_592_000


@dataclass(frozen=True)
class LedgerConfig:
    """Admission limits and the billing period for one ledger."""
    min_fee: int = 1
    billing_period_seconds: int = DEFAULT_BILLING_PERIOD_SECONDS
    max_providers: int = 200
    min_providers_per_subscriber: int = 3
    max_providers_per_subscriber: int = 14

    # Deposit must cover this many billing periods of aggregate fees
    solvency_periods: int = 2

    def validate(self) -> "LedgerConfig":
        if self.min_fee < 0:
            raise ValueError("min_fee must be non-negative")
        if self.billing_period_seconds <= 0:
            raise ValueError("billing_period_seconds must be positive")
        if self.max_providers <= 0:
            raise ValueError("max_providers must be positive")
        if self.min_providers_per_subscriber < 1:
            raise ValueError("min_providers_per_subscriber must be at least 1")
        if self.max_providers_per_subscriber < self.min_providers_per_subscriber:
            raise ValueError("max_providers_per_subscriber below minimum")
        if self.solvency_periods < 0:
            raise ValueError("solvency_periods must be non-negative")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LedgerConfig":
        """
        Build a config from LEDGER_* environment variables.

        Unset variables fall back to the dataclass defaults.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def read(name: str, default: int) -> int:
            raw = env.get(f"LEDGER_{name.upper()}")
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(f"LEDGER_{name.upper()} must be an integer, got {raw!r}")

        return cls(
            min_fee=read("min_fee", defaults.min_fee),
            billing_period_seconds=read("billing_period_seconds", defaults.billing_period_seconds),
            max_providers=read("max_providers", defaults.max_providers),
            min_providers_per_subscriber=read(
                "min_providers_per_subscriber", defaults.min_providers_per_subscriber
            ),
            max_providers_per_subscriber=read(
                "max_providers_per_subscriber", defaults.max_providers_per_subscriber
            ),
            solvency_periods=read("solvency_periods", defaults.solvency_periods),
        ).validate()
