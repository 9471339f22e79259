"""
User Operation construction

- pack_gas_limits / unpack_gas_limits: two uint128 values in one bytes32
  (high 128 bits = verificationGasLimit, low 128 bits = callGasLimit)
- user_operation_hash: canonical EntryPoint v0.7 hash (what gets signed)
- OperationBuilder: intent + signer -> UserOperation (sender, nonce,
  initCode, wrapped call data, gas fields)
- negotiate_payment: sponsored vs fee-token payment from the gas estimate

Packing happens before anything touches the network, so an out-of-range
gas value fails with GasLimitOverflow and no RPC is issued.
"""

import logging
from typing import Optional

from eth_abi import encode
from eth_utils import keccak
from web3 import Web3

from . import abi
from .config import Settings
from .errors import GasLimitOverflow
from .models import (
    UINT128_MAX,
    GasEstimate,
    OperationIntent,
    PaymentKind,
    PaymentMode,
    UserOperation,
    to_checksum,
)

logger = logging.getLogger("paypai.userop")

PAYMASTER_VERIFICATION_GAS = 100_000
PAYMASTER_POST_OP_GAS = 100_000

# 65-byte placeholder so the bundler can simulate validation before signing
DUMMY_SIGNATURE = b"\xff" * 64 + b"\x1c"


# ============================================================
# PACKING
# ============================================================

def pack_uint128_pair(high: int, low: int, label: str = "gas limit") -> bytes:
    for name, value in (("high", high), ("low", low)):
        if not isinstance(value, int) or value < 0 or value > UINT128_MAX:
            raise GasLimitOverflow(f"{label} ({name}) {value} is outside the uint128 range")
    return ((high << 128) | low).to_bytes(32, "big")


def unpack_uint128_pair(packed: bytes) -> tuple[int, int]:
    if len(packed) != 32:
        raise ValueError(f"expected 32 bytes, got {len(packed)}")
    value = int.from_bytes(packed, "big")
    return value >> 128, value & UINT128_MAX


def pack_gas_limits(verification_gas_limit: int, call_gas_limit: int) -> bytes:
    return pack_uint128_pair(verification_gas_limit, call_gas_limit, "gas limit")


def unpack_gas_limits(packed: bytes) -> tuple[int, int]:
    """-> (verification_gas_limit, call_gas_limit)"""
    return unpack_uint128_pair(packed)


def pack_gas_fees(max_priority_fee_per_gas: int, max_fee_per_gas: int) -> bytes:
    return pack_uint128_pair(max_priority_fee_per_gas, max_fee_per_gas, "gas fee")


# ============================================================
# HASH / WIRE FORMAT
# ============================================================

def user_operation_hash(op: UserOperation, entry_point: str, chain_id: int) -> bytes:
    packed = encode(
        ["address", "uint256", "bytes32", "bytes32", "bytes32", "uint256", "bytes32", "bytes32"],
        [
            op.sender,
            op.nonce,
            keccak(op.init_code),
            keccak(op.call_data),
            pack_gas_limits(op.verification_gas_limit, op.call_gas_limit),
            op.pre_verification_gas,
            pack_gas_fees(op.max_priority_fee_per_gas, op.max_fee_per_gas),
            keccak(op.paymaster_and_data),
        ],
    )
    return keccak(encode(["bytes32", "address", "uint256"], [keccak(packed), entry_point, chain_id]))


def to_rpc(op: UserOperation) -> dict:
    """Packed JSON-RPC shape sent to the bundler."""
    return {
        "sender": op.sender,
        "nonce": hex(op.nonce),
        "initCode": Web3.to_hex(op.init_code),
        "callData": Web3.to_hex(op.call_data),
        "accountGasLimits": Web3.to_hex(pack_gas_limits(op.verification_gas_limit, op.call_gas_limit)),
        "preVerificationGas": hex(op.pre_verification_gas),
        "gasFees": Web3.to_hex(pack_gas_fees(op.max_priority_fee_per_gas, op.max_fee_per_gas)),
        "paymasterAndData": Web3.to_hex(op.paymaster_and_data),
        "signature": Web3.to_hex(op.signature if op.signature is not None else DUMMY_SIGNATURE),
    }


# ============================================================
# PAYMENT
# ============================================================

def negotiate_payment(estimate: GasEstimate, settlement_token: str) -> PaymentMode:
    if estimate.sponsorship_available:
        return PaymentMode.sponsored()
    return PaymentMode.fee_token(settlement_token)


def paymaster_and_data(paymaster: str, mode: Optional[PaymentMode]) -> bytes:
    """paymaster(20) | verificationGas(16) | postOpGas(16) | fee token(20)."""
    if not paymaster or mode is None:
        return b""
    token = mode.token if mode.kind == PaymentKind.FEE_TOKEN else "0x" + "00" * 20
    return (
        Web3.to_bytes(hexstr=to_checksum(paymaster, "paymaster"))
        + PAYMASTER_VERIFICATION_GAS.to_bytes(16, "big")
        + PAYMASTER_POST_OP_GAS.to_bytes(16, "big")
        + Web3.to_bytes(hexstr=token)
    )


# ============================================================
# BUILDER
# ============================================================

class OperationBuilder:
    """
    Turns an OperationIntent into a UserOperation for the signer's smart account.

    Usage:
        builder = OperationBuilder(chain, bundler, settings)
        estimate = await builder.estimate(intent, signer)
        op = await builder.build(intent, signer, estimate=estimate)
        op_fixed = await builder.build(intent, signer)          # padded, no estimate
    """

    def __init__(self, chain, bundler, settings: Settings):
        self.chain = chain
        self.bundler = bundler
        self.settings = settings

    async def resolve_sender(self, signer_address: str) -> tuple[str, bool]:
        """(smart account address, already deployed?)"""
        sender = await self.chain.get_account_address(
            self.settings.account_factory, signer_address, self.settings.account_salt
        )
        deployed = await self.chain.is_deployed(sender)
        return sender, deployed

    def _init_code(self, signer_address: str) -> bytes:
        factory = Web3.to_bytes(hexstr=to_checksum(self.settings.account_factory, "account factory"))
        return factory + abi.create_account(signer_address, self.settings.account_salt)

    async def build(
        self,
        intent: OperationIntent,
        signer_address: str,
        estimate: Optional[GasEstimate] = None,
        payment_mode: Optional[PaymentMode] = None,
        gas_override: Optional[tuple[int, int, int]] = None,
    ) -> UserOperation:
        signer_address = to_checksum(signer_address, "signer address")
        target = to_checksum(intent.target, "intent target")

        if estimate is not None:
            verification, call, pre_verification = (
                estimate.verification_gas_limit,
                estimate.call_gas_limit,
                estimate.pre_verification_gas,
            )
        else:
            verification, call, pre_verification = gas_override or (
                self.settings.fixed_verification_gas,
                self.settings.fixed_call_gas,
                self.settings.fixed_pre_verification_gas,
            )
        # Fail before any RPC if the limits cannot be packed
        pack_gas_limits(verification, call)

        sender, deployed = await self.resolve_sender(signer_address)
        nonce = await self.chain.get_nonce(self.settings.entry_point, sender)

        op = UserOperation(
            sender=sender,
            nonce=nonce,
            call_data=abi.account_execute(target, intent.value, intent.call_data),
            verification_gas_limit=verification,
            call_gas_limit=call,
            pre_verification_gas=pre_verification,
            max_fee_per_gas=estimate.max_fee_per_gas if estimate else 0,
            max_priority_fee_per_gas=estimate.max_priority_fee_per_gas if estimate else 0,
            init_code=b"" if deployed else self._init_code(signer_address),
        )
        op.paymaster_and_data = paymaster_and_data(self.settings.paymaster, payment_mode)

        if not op.max_fee_per_gas:
            fees = await self.bundler.gas_fees()
            op.max_fee_per_gas = fees.get("max_fee_per_gas", 0)
            op.max_priority_fee_per_gas = fees.get("max_priority_fee_per_gas", 0)
        return op

    async def estimate(self, intent: OperationIntent, signer_address: str) -> GasEstimate:
        """Draft the operation with padded limits and ask the bundler for real ones."""
        draft = await self.build(intent, signer_address)
        estimate = await self.bundler.estimate_user_operation(draft)
        logger.debug(
            f"Estimate for {draft.sender[:10]}...: verification={estimate.verification_gas_limit} "
            f"call={estimate.call_gas_limit} pre={estimate.pre_verification_gas} "
            f"sponsored={estimate.sponsorship_available}"
        )
        return estimate
