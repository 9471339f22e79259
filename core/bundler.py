"""
Bundler JSON-RPC client (aiohttp)

Methods used:
- eth_estimateUserOperationGas(op, entryPoint)
- eth_sendUserOperation(op, entryPoint) -> userOpHash
- eth_getUserOperationReceipt(userOpHash) -> receipt | null
- eth_gasPrice / eth_maxPriorityFeePerGas (fee fields for fixed-gas builds)

Error responses are classified here, once, into the typed taxonomy
(SignatureValidationFailure vs SubmissionRejected). Transport timeouts
become OperationTimeout.
"""

import asyncio
import itertools
import logging
from typing import Any, Optional

import aiohttp

from .errors import OperationTimeout, SubmissionRejected, classify_failure
from .models import GasEstimate, UserOperation
from .userop import to_rpc

logger = logging.getLogger("paypai.bundler")


def _quantity(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, str):
        return int(value, 16) if value.lower().startswith("0x") else int(value)
    return int(value)


def _error_text(error: dict) -> str:
    """JSON-RPC error -> one string. Some bundlers nest the revert reason in data."""
    message = str(error.get("message", "") or "")
    data = error.get("data")
    if isinstance(data, dict):
        nested = data.get("message") or data.get("reason") or ""
        if nested and nested not in message:
            message = f"{message}: {nested}" if message else str(nested)
    elif isinstance(data, str) and data and data not in message:
        message = f"{message} ({data})"
    return message or "bundler returned an error without message"


class BundlerClient:
    """
    Usage:
        bundler = BundlerClient(settings.bundler_url, settings.entry_point)
        estimate = await bundler.estimate_user_operation(op)
        op_hash = await bundler.send_user_operation(op)
        await bundler.close()
    """

    def __init__(self, url: str, entry_point: str, timeout: float = 30.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = url
        self.entry_point = entry_point
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._ids = itertools.count(1)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _rpc(self, method: str, params: list) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        session = await self._get_session()
        try:
            async with session.post(self.url, json=payload) as resp:
                body = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            raise OperationTimeout(f"{method} timed out")
        except aiohttp.ClientError as e:
            raise SubmissionRejected(f"{method} transport error: {e}")
        except ValueError:
            # Gateway error pages (502 HTML) instead of JSON-RPC
            raise SubmissionRejected(f"{method}: malformed response")

        if not isinstance(body, dict):
            raise SubmissionRejected(f"{method}: malformed response")
        if body.get("error"):
            reason = _error_text(body["error"])
            logger.debug(f"{method} error: {reason}")
            raise classify_failure(reason, details={"method": method, "error": body["error"]})
        return body.get("result")

    async def estimate_user_operation(self, op: UserOperation) -> GasEstimate:
        result = await self._rpc("eth_estimateUserOperationGas", [to_rpc(op), self.entry_point]) or {}
        return GasEstimate(
            verification_gas_limit=_quantity(result.get("verificationGasLimit")),
            call_gas_limit=_quantity(result.get("callGasLimit")),
            pre_verification_gas=_quantity(result.get("preVerificationGas")),
            max_fee_per_gas=_quantity(result.get("maxFeePerGas")),
            max_priority_fee_per_gas=_quantity(result.get("maxPriorityFeePerGas")),
            sponsorship_available=bool(result.get("sponsorshipAvailable", False)),
        )

    async def send_user_operation(self, op: UserOperation) -> str:
        result = await self._rpc("eth_sendUserOperation", [to_rpc(op), self.entry_point])
        if not result:
            raise SubmissionRejected("eth_sendUserOperation returned no operation hash")
        return str(result)

    async def get_user_operation_receipt(self, op_hash: str) -> Optional[dict]:
        return await self._rpc("eth_getUserOperationReceipt", [op_hash])

    async def gas_fees(self) -> dict:
        gas_price = _quantity(await self._rpc("eth_gasPrice", []))
        try:
            priority = _quantity(await self._rpc("eth_maxPriorityFeePerGas", []))
        except SubmissionRejected:
            priority = gas_price
        return {"max_fee_per_gas": gas_price, "max_priority_fee_per_gas": min(priority, gas_price)}
