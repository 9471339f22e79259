"""
Error taxonomy for the vault core.

Every failure that crosses a module boundary is one of these types. Raw
bundler / RPC failure strings are classified exactly once, at the I/O
boundary (bundler.py, chain.py, submitter.py), by classify_failure().
Everything downstream (the escalation ladder, the API) only looks at the
type, never at the message text.

Signature-validation markers:
- AA24: EntryPoint "signature error" (account rejected the signature)
- AA33: validation reverted; seen when the wallet signs the wrong digest
"""

from typing import Optional

SIGNATURE_ERROR_MARKERS = ("AA24", "AA33")


class VaultError(Exception):
    """Base class. `code` is stable and safe to show to API callers."""

    code = "vault_error"

    def __init__(self, message: str, action_hint: str = "", details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.action_hint = action_hint
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.action_hint:
            payload["action_hint"] = self.action_hint
        return payload


class InvalidAddress(VaultError):
    code = "invalid_address"


class VaultNotDeployed(VaultError):
    code = "vault_not_deployed"


class ChainReadError(VaultError):
    code = "chain_read_error"


class GasLimitOverflow(VaultError):
    code = "gas_limit_overflow"


class SignatureValidationFailure(VaultError):
    code = "signature_validation_failure"


class SubmissionRejected(VaultError):
    code = "submission_rejected"


class OperationTimeout(VaultError):
    code = "timeout"


class PolicyRejected(VaultError):
    code = "policy_rejected"

    def __init__(self, message: str, reason: str = "", action_hint: str = ""):
        super().__init__(message, action_hint=action_hint)
        self.reason = reason


def is_signature_failure_reason(reason: str) -> bool:
    return any(marker in (reason or "") for marker in SIGNATURE_ERROR_MARKERS)


def classify_failure(reason: str, details: Optional[dict] = None) -> VaultError:
    """Map a raw failure reason to a typed error. Pure function of the text."""
    reason = (reason or "").strip() or "Unknown error"
    if is_signature_failure_reason(reason):
        return SignatureValidationFailure(
            reason,
            action_hint="re-sign the operation hash with a different signing method",
            details=details,
        )
    lowered = reason.lower()
    if "insufficient" in lowered or "aa21" in lowered or "aa31" in lowered:
        return SubmissionRejected(
            reason,
            action_hint="top up the smart account or the paymaster deposit",
            details=details,
        )
    return SubmissionRejected(reason, details=details)


def error_message(err: BaseException) -> str:
    """Best-effort human readable message for an arbitrary exception."""
    if isinstance(err, VaultError):
        return err.message
    text = str(err).strip()
    return text or type(err).__name__
