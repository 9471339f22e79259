"""
Unit tests for the signing escalation ladder.

Coverage targets:
- Escalation only on signature-validation failures
- Terminal failures (policy, funding, timeout) stop at the current rung
- Diagnostic trail: one attempt per rung, recovered signer addresses
- Payment negotiation on the estimate rung
"""

import dataclasses

import pytest

from conftest import PAYMASTER, RECIPIENT, TOKEN, no_sleep
from core.errors import SignatureValidationFailure, SubmissionRejected, classify_failure
from core.ladder import Rung, SigningEscalationLadder, next_rung
from core.models import ExecutionResult, ExecutionStatus, OperationIntent, PaymentMode, SignMethod
from core.submitter import OperationSubmitter, StatusPoller
from core.userop import OperationBuilder

INTENT = OperationIntent(RECIPIENT, 1, b"")


def _ladder(chain, bundler, settings):
    return SigningEscalationLadder(
        OperationBuilder(chain, bundler, settings),
        OperationSubmitter(bundler, settings.paymaster),
        StatusPoller(bundler, interval=0, max_attempts=settings.poll_max_attempts, sleep=no_sleep),
        settings,
    )


def _sig_failure():
    return SignatureValidationFailure("FailedOp(0, AA24 signature error)")


# ============================================================
# TRANSITIONS
# ============================================================

def test_next_rung_advances_only_on_signature_failure():
    sig = ExecutionResult(ExecutionStatus.FAILED, reason="AA33 reverted", error_code=SignatureValidationFailure.code)
    other = ExecutionResult(ExecutionStatus.FAILED, reason="AA21", error_code=SubmissionRejected.code)
    ok = ExecutionResult(ExecutionStatus.SUCCESS)

    assert next_rung(Rung.ESTIMATED_PREFIXED, sig) == Rung.FIXED_PREFIXED
    assert next_rung(Rung.FIXED_PREFIXED, sig) == Rung.FIXED_RAW
    assert next_rung(Rung.FIXED_RAW, sig) is None
    assert next_rung(Rung.ESTIMATED_PREFIXED, other) is None
    assert next_rung(Rung.ESTIMATED_PREFIXED, ok) is None


def test_classification_is_by_marker():
    assert isinstance(classify_failure("UserOperation reverted: AA33 reverted (or OOG)"), SignatureValidationFailure)
    assert isinstance(classify_failure("AA24 signature error"), SignatureValidationFailure)
    rejected = classify_failure("AA21 didn't pay prefund")
    assert type(rejected) is SubmissionRejected
    assert rejected.action_hint


# ============================================================
# EXECUTION
# ============================================================

@pytest.mark.asyncio
async def test_signature_failure_then_success_on_rung_two(chain, bundler, settings, signer):
    bundler.send_outcomes = [_sig_failure()]

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.status == ExecutionStatus.SUCCESS
    assert len(result.attempts) == 2
    first, second = result.attempts
    assert first.rung == Rung.ESTIMATED_PREFIXED.name
    assert first.error_code == SignatureValidationFailure.code
    assert second.rung == Rung.FIXED_PREFIXED.name and second.error is None
    assert bundler.sent[0].verification_gas_limit == bundler.estimate.verification_gas_limit
    assert bundler.sent[1].verification_gas_limit == settings.fixed_verification_gas
    assert result.transaction_hash


@pytest.mark.asyncio
async def test_escalates_to_raw_signature(chain, bundler, settings, signer):
    bundler.send_outcomes = [_sig_failure(), _sig_failure()]

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.succeeded
    assert [a.sign_method for a in result.attempts] == ["personal_sign", "personal_sign", "eth_sign"]
    assert result.attempts[0].recovered_prefixed == signer.address
    assert result.attempts[2].recovered_raw == signer.address


@pytest.mark.asyncio
async def test_all_rungs_fail(chain, bundler, settings, signer):
    bundler.send_outcomes = [_sig_failure(), _sig_failure(), _sig_failure()]

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == SignatureValidationFailure.code
    assert len(result.attempts) == 3


@pytest.mark.asyncio
async def test_signature_failure_reported_by_receipt_escalates(chain, bundler, settings, signer):
    bundler.receipts["0x" + f"{1:064x}"] = {"success": False, "reason": "AA24 signature error"}

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.succeeded
    assert len(result.attempts) == 2


@pytest.mark.asyncio
async def test_signer_policy_rejection_is_terminal(chain, bundler, settings, signer, failing_signer):
    sign_fns = {SignMethod.PREFIXED: failing_signer, SignMethod.RAW: signer.sign_raw}

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, sign_fns)

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == "policy_rejected"
    assert len(result.attempts) == 1
    assert bundler.sent == []


@pytest.mark.asyncio
async def test_non_signature_submission_failure_is_terminal(chain, bundler, settings, signer):
    bundler.send_outcomes = [classify_failure("AA21 didn't pay prefund")]

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.status == ExecutionStatus.FAILED
    assert result.error_code == SubmissionRejected.code
    assert len(result.attempts) == 1
    assert len(bundler.sent) == 1


@pytest.mark.asyncio
async def test_timeout_is_terminal(chain, bundler, settings, signer):
    bundler.pending = True

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.status == ExecutionStatus.TIMEOUT
    assert result.error_code == "timeout"
    assert result.user_op_hash
    assert len(result.attempts) == 1
    assert bundler.polls == settings.poll_max_attempts


@pytest.mark.asyncio
async def test_wallet_callback_error_is_classified(chain, bundler, settings, signer):
    def _flaky(op_hash):
        raise RuntimeError("wallet rejected: AA24 signature error")

    sign_fns = {SignMethod.PREFIXED: _flaky, SignMethod.RAW: signer.sign_raw}
    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, sign_fns)

    assert result.succeeded
    assert [a.rung for a in result.attempts] == ["ESTIMATED_PREFIXED", "FIXED_PREFIXED", "FIXED_RAW"]


@pytest.mark.asyncio
async def test_start_rung_and_gas_override(chain, bundler, settings, signer):
    result = await _ladder(chain, bundler, settings).execute(
        INTENT, signer.address, signer.methods(),
        start_rung=Rung.FIXED_PREFIXED, gas_override=(1_500_000, 500_000, 1_200_000),
    )
    assert result.succeeded
    assert bundler.estimates == 0
    op = bundler.sent[0]
    assert (op.verification_gas_limit, op.call_gas_limit, op.pre_verification_gas) == (1_500_000, 500_000, 1_200_000)


@pytest.mark.asyncio
async def test_estimate_rung_negotiates_payment(chain, bundler, settings, signer):
    settings = dataclasses.replace(settings, paymaster=PAYMASTER, settlement_token=TOKEN)
    bundler.estimate = dataclasses.replace(bundler.estimate, sponsorship_available=True)

    result = await _ladder(chain, bundler, settings).execute(INTENT, signer.address, signer.methods())

    assert result.succeeded
    op = bundler.sent[0]
    assert len(op.paymaster_and_data) == 72
    assert op.paymaster_and_data[52:] == b"\x00" * 20


@pytest.mark.asyncio
async def test_fixed_rungs_pay_in_settlement_token(chain, bundler, settings, signer):
    settings = dataclasses.replace(settings, paymaster=PAYMASTER, settlement_token=TOKEN)

    result = await _ladder(chain, bundler, settings).execute(
        INTENT, signer.address, signer.methods(), start_rung=Rung.FIXED_PREFIXED
    )

    assert result.succeeded
    assert bundler.sent[0].paymaster_and_data[52:].hex() == TOKEN[2:]


@pytest.mark.asyncio
async def test_explicit_payment_mode_is_kept(chain, bundler, settings, signer):
    settings = dataclasses.replace(settings, paymaster=PAYMASTER, settlement_token=TOKEN)
    bundler.send_outcomes = [_sig_failure()]

    result = await _ladder(chain, bundler, settings).execute(
        INTENT, signer.address, signer.methods(), payment_mode=PaymentMode.sponsored()
    )

    assert result.succeeded
    assert all(op.paymaster_and_data[52:] == b"\x00" * 20 for op in bundler.sent)
