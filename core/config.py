"""
Runtime settings.

Everything comes from the environment (main.py calls load_dotenv() first).
NETWORK_DEFAULTS holds per-network values; any of them can be overridden
with the matching env var.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

NETWORK_DEFAULTS = {
    "kite_testnet": {
        "rpc": "https://rpc-testnet.gokite.ai/",
        "chain_id": 2368,
        "explorer_api": "https://testnet.kitescan.ai/api",
        "settlement_token": "0x0fF5393387ad2f9f691FD6Fd28e07E3969e27e63",
        "settlement_token_decimals": 18,
        "native_symbol": "KITE",
    },
    # No public defaults yet: KITE_RPC_URL and KITE_CHAIN_ID must be set
    "kite_mainnet": {
        "rpc": "",
        "chain_id": 0,
        "explorer_api": "https://kitescan.ai/api",
        "settlement_token": "0x0fF5393387ad2f9f691FD6Fd28e07E3969e27e63",
        "settlement_token_decimals": 18,
        "native_symbol": "KITE",
    },
}

DEFAULT_NETWORK = "kite_testnet"

# Padded limits used when the bundler estimate is skipped (rungs 2 and 3)
FIXED_VERIFICATION_GAS = 1_500_000
FIXED_CALL_GAS = 500_000
FIXED_PRE_VERIFICATION_GAS = 1_200_000


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


@dataclass
class Settings:
    network: str = DEFAULT_NETWORK
    rpc_url: str = NETWORK_DEFAULTS[DEFAULT_NETWORK]["rpc"]
    rpc_timeout_ms: int = 20_000
    chain_id: int = NETWORK_DEFAULTS[DEFAULT_NETWORK]["chain_id"]
    bundler_url: str = ""
    entry_point: str = ""
    account_factory: str = ""
    account_salt: int = 0
    paymaster: str = ""
    settlement_token: str = NETWORK_DEFAULTS[DEFAULT_NETWORK]["settlement_token"]
    settlement_token_decimals: int = 18
    native_symbol: str = "KITE"
    explorer_api: str = NETWORK_DEFAULTS[DEFAULT_NETWORK]["explorer_api"]
    explorer_timeout_sec: float = 12.0
    executor_private_key: str = field(default="", repr=False)
    executor_address: str = ""
    activity_sync_ttl_ms: int = 300_000
    activity_cache_limit: int = 100
    poll_interval_sec: float = 2.0
    poll_max_attempts: int = 60
    fixed_verification_gas: int = FIXED_VERIFICATION_GAS
    fixed_call_gas: int = FIXED_CALL_GAS
    fixed_pre_verification_gas: int = FIXED_PRE_VERIFICATION_GAS
    data_dir: Path = Path("data")

    @property
    def rpc_timeout_sec(self) -> float:
        return self.rpc_timeout_ms / 1000

    @property
    def activity_db_path(self) -> Path:
        return self.data_dir / "wallet-activity.json"

    @classmethod
    def from_env(cls, network: Optional[str] = None) -> "Settings":
        network = (network or os.getenv("KITE_NETWORK", DEFAULT_NETWORK)).strip().lower()
        defaults = NETWORK_DEFAULTS.get(network)
        if defaults is None:
            # Unknown name: anything containing "test" is treated as testnet
            defaults = NETWORK_DEFAULTS["kite_testnet" if "test" in network else "kite_mainnet"]

        return cls(
            network=network,
            rpc_url=os.getenv("KITE_RPC_URL", defaults["rpc"]),
            rpc_timeout_ms=_int_env("KITE_RPC_TIMEOUT_MS", 20_000),
            chain_id=_int_env("KITE_CHAIN_ID", defaults["chain_id"]),
            bundler_url=os.getenv("BUNDLER_URL", ""),
            entry_point=os.getenv("ENTRY_POINT_ADDRESS", ""),
            account_factory=os.getenv("ACCOUNT_FACTORY_ADDRESS", ""),
            account_salt=_int_env("ACCOUNT_SALT", 0),
            paymaster=os.getenv("PAYMASTER_ADDRESS", ""),
            settlement_token=os.getenv("SETTLEMENT_TOKEN_ADDRESS", defaults["settlement_token"]),
            settlement_token_decimals=_int_env(
                "SETTLEMENT_TOKEN_DECIMALS", defaults["settlement_token_decimals"]
            ),
            native_symbol=defaults["native_symbol"],
            explorer_api=os.getenv("KITE_EXPLORER_API", defaults["explorer_api"]),
            explorer_timeout_sec=_float_env("KITE_EXPLORER_TIMEOUT_SEC", 12.0),
            executor_private_key=os.getenv("EXECUTOR_PRIVATE_KEY", ""),
            executor_address=os.getenv("EXECUTOR_ADDRESS", ""),
            activity_sync_ttl_ms=_int_env("ACTIVITY_SYNC_TTL_MS", 300_000),
            poll_interval_sec=_float_env("USEROP_POLL_INTERVAL_SEC", 2.0),
            poll_max_attempts=_int_env("USEROP_POLL_MAX_ATTEMPTS", 60),
            data_dir=Path(os.getenv("DATA_DIR", "data")),
        )

    def missing_for_operations(self) -> list[str]:
        """Settings the user-operation pipeline cannot run without."""
        missing = []
        if not self.bundler_url:
            missing.append("BUNDLER_URL")
        if not self.entry_point:
            missing.append("ENTRY_POINT_ADDRESS")
        if not self.account_factory:
            missing.append("ACCOUNT_FACTORY_ADDRESS")
        return missing
