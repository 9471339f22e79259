"""
Chain Access - RPC reads + executor transactions

Two classes:
- ChainReader: every read the ledger and the vault service need
  (blocks, logs, code, balances, vault/token views, EntryPoint nonce).
- ChainExecutor: signs and sends plain EOA transactions with the executor
  key (executeSpend), the way the vault expects its executor to call.

Design:
- Sync Web3 calls wrapped in asyncio.run_in_executor() (web3.py async is fragile)
- Every call carries its own timeout (asyncio.wait_for over the executor future)
- Any RPC failure / timeout surfaces as ChainReadError, never a raw web3 exception
- Gas estimation + 20% buffer, nonce auto from chain (executor transactions)
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from web3 import Web3
from web3.exceptions import BlockNotFound

from .abi import (
    ACCOUNT_FACTORY_ABI,
    ENTRY_POINT_ABI,
    ERC20_ABI,
    SPEND_EXECUTED_TOPIC,
    VAULT_ABI,
)
from .errors import ChainReadError, VaultNotDeployed, error_message
from .models import ActivityEvent, SpendingRule, to_checksum

logger = logging.getLogger("paypai.chain")

DEFAULT_GAS_LIMIT = 200_000
GAS_BUFFER = 1.2


def _as_bytes(value) -> bytes:
    if isinstance(value, str):
        return Web3.to_bytes(hexstr=value)
    return bytes(value)


def decode_spend_log(log) -> ActivityEvent:
    """SpendExecuted(address indexed executor, address indexed recipient, uint256 amount)."""
    topics = log["topics"]
    if len(topics) < 3:
        raise ChainReadError(f"Malformed SpendExecuted log: {len(topics)} topics")
    executor = Web3.to_checksum_address(_as_bytes(topics[1])[-20:])
    recipient = Web3.to_checksum_address(_as_bytes(topics[2])[-20:])
    amount = int.from_bytes(_as_bytes(log["data"])[:32], "big")
    return ActivityEvent(
        tx_hash=Web3.to_hex(_as_bytes(log["transactionHash"])),
        block_number=int(log["blockNumber"]),
        executor=executor,
        recipient=recipient,
        amount=amount,
        log_index=int(log.get("logIndex", 0) or 0),
    )


# ============================================================
# READER
# ============================================================

class ChainReader:
    """
    Async facade over a (sync) Web3 HTTP provider.

    Usage:
        chain = ChainReader(settings.rpc_url, timeout=settings.rpc_timeout_sec)
        latest = await chain.get_block_number()
        rules = await chain.get_spending_rules(vault)
    """

    def __init__(self, rpc_url: str, timeout: float = 20.0, w3: Optional[Web3] = None):
        self.rpc_url = rpc_url
        self.timeout = timeout
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))

    async def _call(self, label: str, fn: Callable, *args):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, fn, *args), timeout=self.timeout
            )
        except ChainReadError:
            raise
        except asyncio.TimeoutError:
            raise ChainReadError(f"{label} timed out after {self.timeout}s")
        except Exception as e:
            raise ChainReadError(f"{label} failed: {error_message(e)}") from e

    def _vault(self, vault: str):
        return self.w3.eth.contract(address=to_checksum(vault, "vault address"), abi=VAULT_ABI)

    def _token(self, token: str):
        return self.w3.eth.contract(address=to_checksum(token, "token address"), abi=ERC20_ABI)

    # ---- blocks / logs ----

    async def get_block_number(self) -> int:
        return int(await self._call("getBlockNumber", lambda: self.w3.eth.block_number))

    async def get_block_timestamp(self, block_number: int) -> int:
        def _fetch():
            try:
                block = self.w3.eth.get_block(block_number)
            except BlockNotFound:
                raise ChainReadError(f"Block {block_number} not available")
            if block is None:
                raise ChainReadError(f"Block {block_number} not available")
            return int(block["timestamp"])

        return await self._call(f"getBlock({block_number})", _fetch)

    async def get_spend_events(self, vault: str, from_block: int) -> list[ActivityEvent]:
        """All SpendExecuted logs for `vault` from `from_block` to latest (timestamps unresolved)."""
        params = {
            "address": to_checksum(vault, "vault address"),
            "fromBlock": from_block,
            "toBlock": "latest",
            "topics": [SPEND_EXECUTED_TOPIC],
        }
        logs = await self._call("getLogs", self.w3.eth.get_logs, params)
        return [decode_spend_log(log) for log in logs]

    # ---- accounts ----

    async def get_code(self, address: str) -> bytes:
        address = to_checksum(address)
        return bytes(await self._call("getCode", self.w3.eth.get_code, address))

    async def is_deployed(self, address: str) -> bool:
        code = await self.get_code(address)
        return len(code) > 0 and code != b"\x00"

    async def ensure_vault_deployed(self, vault: str) -> None:
        if not await self.is_deployed(vault):
            raise VaultNotDeployed(
                f"Vault not deployed at {vault}",
                action_hint="deploy the vault or check the address and network",
            )

    async def get_balance(self, address: str) -> int:
        address = to_checksum(address)
        return int(await self._call("getBalance", self.w3.eth.get_balance, address))

    # ---- vault views ----

    async def get_spending_rules(self, vault: str) -> list[SpendingRule]:
        raw = await self._call("getSpendingRules", self._vault(vault).functions.getSpendingRules().call)
        return [SpendingRule.from_chain(r) for r in raw or []]

    async def settlement_token(self, vault: str) -> str:
        return await self._call("settlementToken", self._vault(vault).functions.settlementToken().call)

    async def spending_account(self, vault: str) -> str:
        return await self._call("spendingAccount", self._vault(vault).functions.spendingAccount().call)

    async def owner(self, vault: str) -> str:
        return await self._call("owner", self._vault(vault).functions.owner().call)

    async def is_executor(self, vault: str, executor: str) -> bool:
        fn = self._vault(vault).functions.isExecutor(to_checksum(executor, "executor address"))
        return bool(await self._call("isExecutor", fn.call))

    async def current_budget(self, vault: str) -> int:
        return int(await self._call("currentBudget", self._vault(vault).functions.currentBudget().call))

    async def check_spend_allowed(self, vault: str, amount: int, recipient: str) -> bool:
        fn = self._vault(vault).functions.checkSpendAllowed(amount, to_checksum(recipient, "recipient"))
        return bool(await self._call("checkSpendAllowed", fn.call))

    # ---- ERC-20 ----

    async def balance_of(self, token: str, account: str) -> int:
        fn = self._token(token).functions.balanceOf(to_checksum(account))
        return int(await self._call("balanceOf", fn.call))

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        fn = self._token(token).functions.allowance(to_checksum(owner), to_checksum(spender))
        return int(await self._call("allowance", fn.call))

    async def token_metadata(self, token: str, default_symbol: str, default_decimals: int) -> tuple[str, int]:
        """(symbol, decimals). Non-standard tokens fall back to the defaults."""
        contract = self._token(token)
        try:
            symbol = await self._call("symbol", contract.functions.symbol().call)
        except ChainReadError as e:
            logger.debug(f"symbol() failed for {token}: {e}")
            symbol = default_symbol
        try:
            decimals = int(await self._call("decimals", contract.functions.decimals().call))
        except ChainReadError as e:
            logger.debug(f"decimals() failed for {token}: {e}")
            decimals = default_decimals
        return symbol, decimals

    # ---- account abstraction ----

    async def get_nonce(self, entry_point: str, sender: str, key: int = 0) -> int:
        contract = self.w3.eth.contract(address=to_checksum(entry_point, "entry point"), abi=ENTRY_POINT_ABI)
        fn = contract.functions.getNonce(to_checksum(sender), key)
        return int(await self._call("getNonce", fn.call))

    async def get_account_address(self, factory: str, owner: str, salt: int = 0) -> str:
        contract = self.w3.eth.contract(address=to_checksum(factory, "account factory"), abi=ACCOUNT_FACTORY_ABI)
        fn = contract.functions.getAddress(to_checksum(owner, "signer address"), salt)
        return Web3.to_checksum_address(await self._call("getAddress", fn.call))


# ============================================================
# EXECUTOR (plain transactions)
# ============================================================

@dataclass
class ChainTxResult:
    """Result of an executor transaction attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    gas_used: int = 0


class ChainExecutor:
    """
    Sends transactions signed by the executor key.

    Usage:
        executor = ChainExecutor(reader, settings.executor_private_key, settings.chain_id)
        result = await executor.send_transaction(vault, abi.execute_spend(amount, recipient))
    """

    def __init__(self, reader: ChainReader, private_key: str, chain_id: int, receipt_timeout: int = 120):
        from eth_account import Account

        self.reader = reader
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._private_key = private_key
        self.address = Account.from_key(private_key).address

    async def send_transaction(self, to: str, data: bytes, value: int = 0) -> ChainTxResult:
        w3 = self.reader.w3
        to = to_checksum(to, "transaction target")

        def _execute():
            tx = {
                "from": self.address,
                "to": to,
                "data": Web3.to_hex(data),
                "value": value,
                "nonce": w3.eth.get_transaction_count(self.address),
                "gasPrice": w3.eth.gas_price,
                "chainId": self.chain_id,
            }

            # Gas estimation + 20% buffer
            try:
                tx["gas"] = int(w3.eth.estimate_gas(tx) * GAS_BUFFER)
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed, using default {DEFAULT_GAS_LIMIT}: {gas_err}")
                tx["gas"] = DEFAULT_GAS_LIMIT

            signed = w3.eth.account.sign_transaction(tx, self._private_key)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
            return receipt, Web3.to_hex(tx_hash)

        try:
            receipt, tx_hash_hex = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR to {to[:10]}...: {error}")
            return ChainTxResult(success=False, error=error)

        if receipt["status"] == 1:
            gas_used = receipt.get("gasUsed", 0)
            logger.info(f"TX SUCCESS: {tx_hash_hex[:16]}... | gas={gas_used}")
            return ChainTxResult(success=True, tx_hash=tx_hash_hex, gas_used=gas_used)

        error = f"TX reverted: {tx_hash_hex}"
        logger.warning(f"TX FAILED: {error}")
        return ChainTxResult(success=False, tx_hash=tx_hash_hex, error=error)
