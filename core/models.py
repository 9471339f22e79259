"""
Data model shared by the ledger and the execution pipeline.

All token amounts are integers in the token's smallest unit. Conversion to
human-readable strings happens only in format_units(), called at the edges
(vault.py, api/server.py).
"""

import time
from dataclasses import dataclass, field, asdict
from decimal import Decimal, localcontext
from enum import Enum
from typing import Optional

from web3 import Web3

from .errors import InvalidAddress

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
UINT128_MAX = (1 << 128) - 1
UINT256_MAX = (1 << 256) - 1

# uint256 has 78 digits; scaling must never round
UNITS_PRECISION = 100


def to_checksum(value: str, field_name: str = "address") -> str:
    """Validate and checksum an address. Raises InvalidAddress before any I/O."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidAddress(f"Invalid {field_name}: {value!r}")
    return Web3.to_checksum_address(value)


def format_units(amount: int, decimals: int) -> str:
    """Integer amount -> decimal string, e.g. (1_500000, 6) -> '1.5'."""
    if decimals <= 0:
        return str(amount)
    with localcontext() as ctx:
        ctx.prec = UNITS_PRECISION
        text = format(Decimal(amount).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def parse_units(amount: str, decimals: int) -> int:
    """Decimal string -> integer amount. Rejects extra precision."""
    with localcontext() as ctx:
        ctx.prec = UNITS_PRECISION
        scaled = Decimal(str(amount).strip()).scaleb(decimals)
        if not scaled.is_finite() or scaled != scaled.to_integral_value():
            raise ValueError(f"{amount} has more than {decimals} decimals")
        return int(scaled)


# ============================================================
# LEDGER
# ============================================================

@dataclass(frozen=True)
class SpendingRule:
    token: str
    time_window_seconds: int
    budget: int
    initial_window_start: int
    whitelist: frozenset = frozenset()
    blacklist: frozenset = frozenset()

    @classmethod
    def from_chain(cls, raw) -> "SpendingRule":
        """Build from the getSpendingRules() tuple:
        (token, timeWindow, budget, initialWindowStartTime, whitelist[], blacklist[])."""
        token, time_window, budget, initial_start, whitelist, blacklist = raw
        return cls(
            token=Web3.to_checksum_address(token),
            time_window_seconds=int(time_window),
            budget=int(budget),
            initial_window_start=int(initial_start),
            whitelist=frozenset(Web3.to_checksum_address(a) for a in whitelist),
            blacklist=frozenset(Web3.to_checksum_address(a) for a in blacklist),
        )

    def to_abi_tuple(self) -> tuple:
        return (
            self.token,
            self.time_window_seconds,
            self.budget,
            self.initial_window_start,
            sorted(self.whitelist),
            sorted(self.blacklist),
        )

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "timeWindow": str(self.time_window_seconds),
            "budget": str(self.budget),
            "initialWindowStartTime": str(self.initial_window_start),
            "whitelist": sorted(self.whitelist),
            "blacklist": sorted(self.blacklist),
        }


@dataclass(frozen=True)
class BudgetWindow:
    start: int


@dataclass(frozen=True)
class ActivityEvent:
    """One SpendExecuted log. timestamp is 0 until the block is resolved."""
    tx_hash: str
    block_number: int
    executor: str
    recipient: str
    amount: int
    timestamp: int = 0
    log_index: int = 0


@dataclass
class Reconciliation:
    window_start: int
    spent_in_window: int
    remaining_budget: int
    recent_events: list = field(default_factory=list)   # newest first, display only
    events_scanned: int = 0
    from_block: int = 0


# ============================================================
# WALLET ACTIVITY (explorer-sourced)
# ============================================================

@dataclass
class ActivityRecord:
    hash: str
    from_address: str
    to_address: str
    timestamp: int
    value: int
    decimals: int = 18
    symbol: str = ""
    status: str = "confirmed"     # confirmed | failed
    kind: str = "native"          # native | token
    token_address: str = ""
    address: str = ""             # wallet the record was synced for

    @property
    def dedup_key(self) -> tuple:
        return (self.hash, self.kind, (self.token_address or "").lower())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["amount"] = format_units(self.value, self.decimals)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ActivityRecord":
        return cls(
            hash=data.get("hash", ""),
            from_address=data.get("from_address", ""),
            to_address=data.get("to_address", ""),
            timestamp=int(data.get("timestamp", 0)),
            value=int(data.get("value", 0)),
            decimals=int(data.get("decimals", 18)),
            symbol=data.get("symbol", ""),
            status=data.get("status", "confirmed"),
            kind=data.get("kind", "native"),
            token_address=data.get("token_address", "") or "",
            address=data.get("address", ""),
        )


@dataclass
class ActivitySyncState:
    last_synced_at: int = 0             # epoch ms, 0 = never
    last_error: Optional[str] = None
    records: list = field(default_factory=list)


@dataclass
class ActivitySnapshot:
    address: str
    records: list
    last_synced_at: int
    syncing: bool
    error: Optional[str] = None


# ============================================================
# EXECUTION PIPELINE
# ============================================================

@dataclass(frozen=True)
class OperationIntent:
    target: str
    value: int = 0
    call_data: bytes = b""


@dataclass
class GasEstimate:
    verification_gas_limit: int
    call_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    sponsorship_available: bool = False


@dataclass
class UserOperation:
    sender: str
    nonce: int
    call_data: bytes
    verification_gas_limit: int
    call_gas_limit: int
    pre_verification_gas: int
    max_fee_per_gas: int = 0
    max_priority_fee_per_gas: int = 0
    init_code: bytes = b""
    paymaster_and_data: bytes = b""
    signature: Optional[bytes] = None


class PaymentKind(Enum):
    SPONSORED = "sponsored"
    FEE_TOKEN = "fee_token"


@dataclass(frozen=True)
class PaymentMode:
    kind: PaymentKind
    token: str = ZERO_ADDRESS

    @classmethod
    def sponsored(cls) -> "PaymentMode":
        return cls(PaymentKind.SPONSORED, ZERO_ADDRESS)

    @classmethod
    def fee_token(cls, token: str) -> "PaymentMode":
        return cls(PaymentKind.FEE_TOKEN, token)


class SignMethod(Enum):
    PREFIXED = "personal_sign"    # EIP-191 "\x19Ethereum Signed Message:\n32" + hash
    RAW = "eth_sign"              # raw secp256k1 over the hash


class ExecutionStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class SigningAttempt:
    rung: str
    strategy: str
    sign_method: str
    hash: str = ""
    signature: str = ""
    error: Optional[str] = None
    error_code: Optional[str] = None
    recovered_prefixed: str = ""
    recovered_raw: str = ""
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExecutionResult:
    status: ExecutionStatus
    transaction_hash: Optional[str] = None
    reason: Optional[str] = None
    user_op_hash: Optional[str] = None
    error_code: Optional[str] = None
    attempts: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "transactionHash": self.transaction_hash,
            "reason": self.reason,
            "userOpHash": self.user_op_hash,
            "errorCode": self.error_code,
            "attempts": [a.to_dict() for a in self.attempts],
        }
