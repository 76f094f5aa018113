"""Harness configuration constants and environment-driven settings."""

from __future__ import annotations

import os
from dataclasses import dataclass

# Timeouts
DEFAULT_SCENARIO_TIMEOUT_MS = 240_000
DEFAULT_CHAIN_TIMEOUT_MS = 60_000
HTTP_REQUEST_TIMEOUT = 30.0

# Balance comparison: significant digits kept when redacting numbers
DEFAULT_PRECISION = 3

# Units
UNIT = 10**10
DEFAULT_ENDOWMENT = 1000 * UNIT

# Default simulation parameters for in-memory chains
DEFAULT_TX_FEE = 15_000_000
DEFAULT_EXECUTION_FEE = 4_000_000
DEFAULT_ADDRESS_ENCODING = 42

# Snapshots
DEFAULT_SNAPSHOT_DIR = "__snapshots__"

# Storage keys understood by the in-memory backend
REMOVE_PREFIX = "$removePrefix"

_TRUTHY = ("true", "1", "yes")


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in _TRUTHY


@dataclass
class HarnessConfig:
    """Settings shared by every suite in a test session."""

    scenario_timeout_ms: int = DEFAULT_SCENARIO_TIMEOUT_MS
    snapshot_dir: str = DEFAULT_SNAPSHOT_DIR
    update_snapshots: bool = False
    purge_inbound_on_restore: bool = True

    @classmethod
    def from_env(cls) -> "HarnessConfig":
        """Load configuration from environment variables."""
        config = cls()

        timeout = os.environ.get("XCM_E2E_TIMEOUT")
        if timeout:
            config.scenario_timeout_ms = int(float(timeout) * 1000)

        config.snapshot_dir = os.environ.get("XCM_E2E_SNAPSHOT_DIR", DEFAULT_SNAPSHOT_DIR)
        config.update_snapshots = _env_flag("UPDATE_SNAPSHOTS")
        config.purge_inbound_on_restore = _env_flag("XCM_E2E_PURGE_INBOUND", default=True)

        return config
