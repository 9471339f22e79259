"""
Operation submission + status polling.

submit() hands a signed operation to the bundler and returns its handle
(the userOpHash). poll_status() waits for a terminal state:

    success  -> transaction hash
    failed   -> reason (+ typed error_code from classify_failure)
    timeout  -> no terminal state within max_attempts; the operation may
                still land, so callers can poll the same handle again later

Polling by handle is idempotent: abandoning a poll leaves the operation
pending on-chain and a later poll_status(handle) picks it back up.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import OperationTimeout, SubmissionRejected, VaultError, classify_failure
from .models import ExecutionResult, ExecutionStatus, PaymentMode, UserOperation
from .userop import paymaster_and_data

logger = logging.getLogger("paypai.submitter")


class OperationSubmitter:
    def __init__(self, bundler, paymaster: str = ""):
        self.bundler = bundler
        self.paymaster = paymaster

    async def submit(self, op: UserOperation, payment_mode: Optional[PaymentMode] = None) -> str:
        if op.signature is None:
            raise SubmissionRejected("UserOperation is not signed")
        expected = paymaster_and_data(self.paymaster, payment_mode)
        if op.paymaster_and_data != expected:
            # paymasterAndData is covered by the signature; it cannot be swapped now
            raise SubmissionRejected("UserOperation was built for a different payment mode")

        mode = payment_mode.kind.value if payment_mode else "self-paid"
        handle = await self.bundler.send_user_operation(op)
        logger.info(f"UserOp submitted: {handle[:18]}... | sender={op.sender[:10]}... | payment={mode}")
        return handle


class StatusPoller:
    def __init__(self, bundler, interval: float = 2.0, max_attempts: int = 60,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.bundler = bundler
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    @staticmethod
    def _terminal(handle: str, receipt: dict) -> ExecutionResult:
        inner = receipt.get("receipt") or {}
        tx_hash = inner.get("transactionHash") or receipt.get("transactionHash")
        if receipt.get("success"):
            return ExecutionResult(
                status=ExecutionStatus.SUCCESS,
                transaction_hash=tx_hash,
                user_op_hash=handle,
            )
        reason = receipt.get("reason") or "UserOperation reverted"
        return ExecutionResult(
            status=ExecutionStatus.FAILED,
            transaction_hash=tx_hash,
            reason=reason,
            user_op_hash=handle,
            error_code=classify_failure(reason).code,
        )

    async def poll_status(self, handle: str) -> ExecutionResult:
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                receipt = await self.bundler.get_user_operation_receipt(handle)
            except (OperationTimeout, SubmissionRejected) as e:
                # Transient transport problem: keep polling the same handle
                last_error = e.message
                logger.debug(f"Receipt poll {attempt}/{self.max_attempts} failed: {e.message}")
                receipt = None
            except VaultError as e:
                return ExecutionResult(
                    status=ExecutionStatus.FAILED,
                    reason=e.message,
                    user_op_hash=handle,
                    error_code=e.code,
                )

            if receipt:
                result = self._terminal(handle, receipt)
                logger.info(f"UserOp {handle[:18]}... -> {result.status.value}")
                return result
            if attempt < self.max_attempts:
                await self._sleep(self.interval)

        reason = f"No receipt after {self.max_attempts} polls"
        if last_error:
            reason += f" (last error: {last_error})"
        logger.warning(f"UserOp {handle[:18]}... timed out: {reason}")
        return ExecutionResult(
            status=ExecutionStatus.TIMEOUT,
            reason=reason,
            user_op_hash=handle,
            error_code=OperationTimeout.code,
        )
