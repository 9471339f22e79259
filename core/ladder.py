"""
Signing Escalation Ladder

Wallets disagree on what "sign this hash" means, and bundler gas estimates
are sometimes produced against a digest the wallet then refuses to sign
the same way. The ladder tries three rungs, strictly in order, and stops at
the first success:

    rung 1  ESTIMATED_PREFIXED  bundler gas estimate   personal_sign
    rung 2  FIXED_PREFIXED      padded fixed gas        personal_sign
    rung 3  FIXED_RAW           padded fixed gas        eth_sign (raw)

Transition rule (next_rung): advance only when the rung failed with a
SignatureValidationFailure. Any other failure (insufficient funds, policy
revert, timeout, bad gas values) ends the run immediately; a different
signature cannot fix it.

Every rung appends a SigningAttempt to the trail, and the trail is returned
with the result whether the run succeeded or not.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from web3 import Web3

from .config import Settings
from .errors import OperationTimeout, SignatureValidationFailure, VaultError, classify_failure, error_message
from .models import (
    ExecutionResult,
    ExecutionStatus,
    OperationIntent,
    PaymentMode,
    SigningAttempt,
    SignMethod,
)
from .signers import call_signer, recover_prefixed, recover_raw
from .userop import negotiate_payment, user_operation_hash

logger = logging.getLogger("paypai.ladder")


class Rung(Enum):
    ESTIMATED_PREFIXED = 1
    FIXED_PREFIXED = 2
    FIXED_RAW = 3


@dataclass(frozen=True)
class RungSpec:
    use_estimate: bool
    sign_method: SignMethod
    strategy: str


RUNG_SPECS = {
    Rung.ESTIMATED_PREFIXED: RungSpec(True, SignMethod.PREFIXED, "estimate+personal_sign"),
    Rung.FIXED_PREFIXED: RungSpec(False, SignMethod.PREFIXED, "no-estimate+personal_sign"),
    Rung.FIXED_RAW: RungSpec(False, SignMethod.RAW, "no-estimate+eth_sign"),
}

_ORDER = [Rung.ESTIMATED_PREFIXED, Rung.FIXED_PREFIXED, Rung.FIXED_RAW]


def next_rung(current: Rung, result: ExecutionResult) -> Optional[Rung]:
    """The rung to try after `current` failed with `result`, or None to stop."""
    if result.status == ExecutionStatus.SUCCESS:
        return None
    if result.error_code != SignatureValidationFailure.code:
        return None
    index = _ORDER.index(current)
    return _ORDER[index + 1] if index + 1 < len(_ORDER) else None


def _failure(err: VaultError) -> ExecutionResult:
    status = ExecutionStatus.TIMEOUT if isinstance(err, OperationTimeout) else ExecutionStatus.FAILED
    return ExecutionResult(status=status, reason=err.message, error_code=err.code)


class SigningEscalationLadder:
    """
    Usage:
        ladder = SigningEscalationLadder(builder, submitter, poller, settings)
        result = await ladder.execute(intent, signer_address, {
            SignMethod.PREFIXED: wallet.personal_sign,
            SignMethod.RAW: wallet.eth_sign,
        })
        result.attempts   # full diagnostic trail
    """

    def __init__(self, builder, submitter, poller, settings: Settings):
        self.builder = builder
        self.submitter = submitter
        self.poller = poller
        self.settings = settings

    async def _run_rung(self, rung: Rung, intent: OperationIntent, signer_address: str,
                        sign_fns: dict, state: dict) -> tuple[ExecutionResult, SigningAttempt]:
        plan = RUNG_SPECS[rung]
        attempt = SigningAttempt(rung=rung.name, strategy=plan.strategy, sign_method=plan.sign_method.value)

        try:
            estimate = None
            if plan.use_estimate:
                estimate = await self.builder.estimate(intent, signer_address)
                if state["payment_mode"] is None and self.settings.paymaster:
                    state["payment_mode"] = negotiate_payment(estimate, self.settings.settlement_token)
            elif state["payment_mode"] is None and self.settings.paymaster:
                # No estimate means no sponsorship answer: pay in the settlement token
                state["payment_mode"] = PaymentMode.fee_token(self.settings.settlement_token)

            op = await self.builder.build(
                intent,
                signer_address,
                estimate=estimate,
                payment_mode=state["payment_mode"],
                gas_override=state["gas_override"],
            )
            op_hash = user_operation_hash(op, self.settings.entry_point, self.settings.chain_id)
            attempt.hash = Web3.to_hex(op_hash)

            sign_fn = sign_fns.get(plan.sign_method)
            if sign_fn is None:
                raise VaultError(f"{plan.sign_method.value} is not available for this signer")
            signature = await call_signer(sign_fn, op_hash)
            op.signature = signature
            attempt.signature = Web3.to_hex(signature)
            self._record_recovery(attempt, op_hash, signature)

            handle = await self.submitter.submit(op, state["payment_mode"])
            result = await self.poller.poll_status(handle)
        except VaultError as e:
            result = _failure(e)
        except Exception as e:
            # Wallet callbacks raise whatever their transport raises
            result = _failure(classify_failure(error_message(e)))

        if not result.succeeded:
            attempt.error = result.reason
            attempt.error_code = result.error_code
        return result, attempt

    @staticmethod
    def _record_recovery(attempt: SigningAttempt, op_hash: bytes, signature: bytes) -> None:
        try:
            attempt.recovered_prefixed = recover_prefixed(op_hash, signature)
            attempt.recovered_raw = recover_raw(op_hash, signature)
        except Exception as e:
            logger.debug(f"Signature recovery failed: {e}")

    async def execute(
        self,
        intent: OperationIntent,
        signer_address: str,
        sign_fns: dict,
        payment_mode: Optional[PaymentMode] = None,
        start_rung: Rung = Rung.ESTIMATED_PREFIXED,
        gas_override: Optional[tuple[int, int, int]] = None,
    ) -> ExecutionResult:
        state = {"payment_mode": payment_mode, "gas_override": gas_override}
        attempts: list[SigningAttempt] = []
        rung: Optional[Rung] = start_rung
        result = ExecutionResult(status=ExecutionStatus.FAILED, reason="no rung attempted")

        while rung is not None:
            result, attempt = await self._run_rung(rung, intent, signer_address, sign_fns, state)
            attempts.append(attempt)
            logger.info(
                f"Rung {rung.value} [{attempt.strategy}] -> {result.status.value}"
                + (f" | {result.error_code}: {result.reason}" if not result.succeeded else "")
            )
            rung = next_rung(rung, result)

        result.attempts = attempts
        return result
