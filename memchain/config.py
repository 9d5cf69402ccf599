"""
Memory Chain Configuration

Two layers:
- WATCHER_LAWS: protocol constants, frozen at import time.
- MemoryChainConfig: runtime settings, loaded from environment / .env.

Designed for: agent memory chain
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Final, Optional

from dotenv import load_dotenv

logger = logging.getLogger("memchain.config")


# ============================================================
# WATCHER LAWS - protocol constants
# ============================================================

@dataclass(frozen=True)
class WatcherLaws:
    """Frozen dataclass = immutable at runtime."""

    # --- SUBSCRIPTION LIVENESS ---
    REFRESH_INTERVAL_SECONDS: Final[float] = 240.0     # Full teardown+rebuild every 4 min
    RECONNECT_DELAY_SECONDS: Final[float] = 5.0        # Fixed wait after a transport error
    DISPATCH_QUEUE_SIZE: Final[int] = 1024             # Pending handler calls per watcher
    REPLAY_BUFFER_SIZE: Final[int] = 1024              # Recent logs a transport keeps for resubscribers

    # --- LOG POLLING ---
    POLL_INTERVAL_SECONDS: Final[float] = 4.0
    POLL_LOOKBACK_BLOCKS: Final[int] = 0               # Start from head, no history replay

    # --- TRANSACTIONS ---
    IO_TIMEOUT_SECONDS: Final[float] = 120.0
    GAS_BUFFER_RATIO: Final[float] = 1.2               # estimate * 1.2
    FALLBACK_GAS_LIMIT: Final[int] = 200_000

    # --- CHAIN ---
    ZERO_DIGEST: Final[bytes] = b"\x00" * 32
    DIGEST_SIZE: Final[int] = 32
    MAX_REPLAY_DEPTH: Final[int] = 10_000


WATCHER_LAWS = WatcherLaws()


# ============================================================
# RUNTIME CONFIG
# ============================================================

def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r} - using default {default}")
        return default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r} - using default {default}")
        return default


@dataclass
class MemoryChainConfig:
    """Everything needed to build a MemoryChain against real services."""
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 0                      # 0 = ask the node
    contract_address: str = ""
    agent_private_key: str = ""            # Never logged
    agent_address: str = ""                # Derived from key when empty
    ipfs_api_url: str = "http://127.0.0.1:5001"
    ipfs_api_token: str = ""
    io_timeout_seconds: float = WATCHER_LAWS.IO_TIMEOUT_SECONDS
    poll_interval_seconds: float = WATCHER_LAWS.POLL_INTERVAL_SECONDS
    refresh_interval_seconds: float = WATCHER_LAWS.REFRESH_INTERVAL_SECONDS
    reconnect_delay_seconds: float = WATCHER_LAWS.RECONNECT_DELAY_SECONDS
    reconnect_max_attempts: Optional[int] = None    # None = retry forever
    journal_path: str = ""                 # Empty = no journal
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "MemoryChainConfig":
        """
        Load config from environment variables (after .env, if present).

        Args:
            env_file: Optional explicit .env path. Default: search from cwd.
        """
        load_dotenv(env_file)
        defaults = cls()
        return cls(
            rpc_url=os.getenv("MEMCHAIN_RPC_URL", defaults.rpc_url),
            chain_id=_env_int("MEMCHAIN_CHAIN_ID", defaults.chain_id) or 0,
            contract_address=os.getenv("MEMCHAIN_CONTRACT_ADDRESS", ""),
            agent_private_key=os.getenv("AGENT_PRIVATE_KEY", "").strip(),
            agent_address=os.getenv("AGENT_ADDRESS", "").strip(),
            ipfs_api_url=os.getenv("IPFS_API_URL", defaults.ipfs_api_url).rstrip("/"),
            ipfs_api_token=os.getenv("IPFS_API_TOKEN", ""),
            io_timeout_seconds=_env_float("MEMCHAIN_IO_TIMEOUT", defaults.io_timeout_seconds),
            poll_interval_seconds=_env_float("MEMCHAIN_POLL_INTERVAL", defaults.poll_interval_seconds),
            refresh_interval_seconds=_env_float(
                "MEMCHAIN_REFRESH_INTERVAL", defaults.refresh_interval_seconds
            ),
            reconnect_delay_seconds=_env_float(
                "MEMCHAIN_RECONNECT_DELAY", defaults.reconnect_delay_seconds
            ),
            reconnect_max_attempts=_env_int("MEMCHAIN_RECONNECT_MAX_ATTEMPTS", None),
            journal_path=os.getenv("MEMCHAIN_JOURNAL_PATH", ""),
        )

    def describe(self) -> dict:
        """Loggable view (no secrets)."""
        return {
            "rpc_url": self.rpc_url,
            "chain_id": self.chain_id,
            "contract_address": self.contract_address,
            "agent_address": self.agent_address,
            "has_private_key": bool(self.agent_private_key),
            "ipfs_api_url": self.ipfs_api_url,
            "io_timeout_seconds": self.io_timeout_seconds,
            "refresh_interval_seconds": self.refresh_interval_seconds,
            "reconnect_delay_seconds": self.reconnect_delay_seconds,
            "reconnect_max_attempts": self.reconnect_max_attempts,
            "journal_path": self.journal_path,
        }
