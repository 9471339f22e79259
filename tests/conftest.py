"""
Test configuration and fixtures

In-memory fakes for the chain reader, the bundler and the executor. They
implement the same async methods as core.chain / core.bundler, so the real
ledger, builder, ladder, submitter, poller and vault service run on top of
them unchanged.
"""

import pytest

from core.chain import ChainTxResult
from core.config import Settings
from core.errors import ChainReadError, PolicyRejected, VaultNotDeployed
from core.models import ActivityEvent, GasEstimate, SpendingRule
from core.signers import LocalKeySigner

VAULT = "0x1111111111111111111111111111111111111111"
TOKEN = "0x0ff5393387ad2f9f691fd6fd28e07e3969e27e63"
SPENDER = "0x2222222222222222222222222222222222222222"
OWNER = "0x3333333333333333333333333333333333333333"
RECIPIENT = "0x4444444444444444444444444444444444444444"
EXECUTOR = "0x5555555555555555555555555555555555555555"
ACCOUNT = "0x6666666666666666666666666666666666666666"
ENTRY_POINT = "0x0000000071727de22e5e9d8baf0edac6f37da032"
FACTORY = "0x7777777777777777777777777777777777777777"
PAYMASTER = "0x8888888888888888888888888888888888888888"
BAD = "0x" + "bad0" * 10

T0 = 1_700_000_000
DAY = 86_400

# Well-known throwaway key (eth-account docs); never funded
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

TX_HASH = "0x" + "ab" * 32


class FakeChain:
    """Chain with block i at T0 + step*i and scripted vault / token state."""

    def __init__(self, block_count: int = 101, step: int = 1000, start: int = T0):
        self.block_times = [start + step * i for i in range(block_count)]
        self.missing_blocks: set = set()
        self.events: list = []
        self.block_fetches = 0
        self.log_queries: list = []
        self.calls = 0

        self.deployed = {VAULT.lower(), ACCOUNT.lower()}
        self.rules = [SpendingRule(TOKEN, DAY, 100_000000, T0)]
        self.settlement = TOKEN
        self.spending_account_addr = SPENDER
        self.owner_addr = OWNER
        self.native_balance = 10**18
        self.budget = 100_000000
        self.token_balance = 500_000000
        self.allowance_value = 200_000000
        self.symbol = "USDT"
        self.decimals = 6
        self.executors = {EXECUTOR.lower()}
        self.on_chain_allowed = True
        self.failing: set = set()
        self.nonce = 0
        self.account = ACCOUNT

    def _maybe_fail(self, name: str):
        self.calls += 1
        if name in self.failing:
            raise ChainReadError(f"{name} failed: rpc down")

    def add_event(self, block: int, amount: int, recipient: str = RECIPIENT, log_index: int = 0):
        self.events.append(ActivityEvent(
            tx_hash="0x" + f"{len(self.events) + 1:064x}",
            block_number=block,
            executor=EXECUTOR,
            recipient=recipient,
            amount=amount,
            log_index=log_index,
        ))

    # ---- blocks / logs ----

    async def get_block_number(self) -> int:
        self._maybe_fail("get_block_number")
        return len(self.block_times) - 1

    async def get_block_timestamp(self, block_number: int) -> int:
        self._maybe_fail("get_block_timestamp")
        self.block_fetches += 1
        if block_number in self.missing_blocks or block_number >= len(self.block_times):
            raise ChainReadError(f"Block {block_number} not available")
        return self.block_times[block_number]

    async def get_spend_events(self, vault: str, from_block: int) -> list:
        self._maybe_fail("get_spend_events")
        self.log_queries.append(from_block)
        return [e for e in self.events if e.block_number >= from_block]

    # ---- accounts ----

    async def is_deployed(self, address: str) -> bool:
        self._maybe_fail("is_deployed")
        return address.lower() in self.deployed

    async def ensure_vault_deployed(self, vault: str) -> None:
        if not await self.is_deployed(vault):
            raise VaultNotDeployed(f"Vault not deployed at {vault}")

    async def get_balance(self, address: str) -> int:
        self._maybe_fail("get_balance")
        return self.native_balance

    # ---- vault views ----

    async def get_spending_rules(self, vault: str) -> list:
        self._maybe_fail("get_spending_rules")
        return list(self.rules)

    async def settlement_token(self, vault: str) -> str:
        self._maybe_fail("settlement_token")
        return self.settlement

    async def spending_account(self, vault: str) -> str:
        self._maybe_fail("spending_account")
        return self.spending_account_addr

    async def owner(self, vault: str) -> str:
        self._maybe_fail("owner")
        return self.owner_addr

    async def is_executor(self, vault: str, executor: str) -> bool:
        self._maybe_fail("is_executor")
        return executor.lower() in self.executors

    async def current_budget(self, vault: str) -> int:
        self._maybe_fail("current_budget")
        return self.budget

    async def check_spend_allowed(self, vault: str, amount: int, recipient: str) -> bool:
        self._maybe_fail("check_spend_allowed")
        return self.on_chain_allowed

    # ---- ERC-20 ----

    async def balance_of(self, token: str, account: str) -> int:
        self._maybe_fail("balance_of")
        return self.token_balance

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        self._maybe_fail("allowance")
        return self.allowance_value

    async def token_metadata(self, token: str, default_symbol: str, default_decimals: int) -> tuple:
        if "token_metadata" in self.failing:
            return default_symbol, default_decimals
        return self.symbol, self.decimals

    # ---- account abstraction ----

    async def get_nonce(self, entry_point: str, sender: str, key: int = 0) -> int:
        self._maybe_fail("get_nonce")
        return self.nonce

    async def get_account_address(self, factory: str, owner: str, salt: int = 0) -> str:
        self._maybe_fail("get_account_address")
        return self.account


class FakeBundler:
    """
    send_outcomes: consumed one per eth_sendUserOperation; an Exception is
    raised, anything else means accepted.
    receipts: handle -> receipt dict. pending=True makes every poll return None.
    """

    def __init__(self):
        self.estimate = GasEstimate(120_000, 80_000, 60_000, 2_000_000_000, 1_000_000_000)
        self.estimate_error = None
        self.estimates = 0
        self.send_outcomes: list = []
        self.sent: list = []
        self.receipts: dict = {}
        self.pending = False
        self.polls = 0

    async def estimate_user_operation(self, op):
        self.estimates += 1
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.estimate

    async def send_user_operation(self, op) -> str:
        self.sent.append(op)
        outcome = self.send_outcomes.pop(0) if self.send_outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return "0x" + f"{len(self.sent):064x}"

    async def get_user_operation_receipt(self, handle: str):
        self.polls += 1
        if self.pending:
            return None
        return self.receipts.get(handle, {"success": True, "receipt": {"transactionHash": TX_HASH}})

    async def gas_fees(self) -> dict:
        return {"max_fee_per_gas": 3_000_000_000, "max_priority_fee_per_gas": 1_000_000_000}


class FakeExecutor:
    def __init__(self, address: str = EXECUTOR, success: bool = True):
        self.address = address
        self.success = success
        self.sent: list = []

    async def send_transaction(self, to: str, data: bytes, value: int = 0) -> ChainTxResult:
        self.sent.append((to, data, value))
        if not self.success:
            return ChainTxResult(success=False, tx_hash=TX_HASH, error=f"TX reverted: {TX_HASH}")
        return ChainTxResult(success=True, tx_hash=TX_HASH, gas_used=50_000)


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def settings(tmp_path):
    return Settings(
        bundler_url="http://bundler.test",
        entry_point=ENTRY_POINT,
        account_factory=FACTORY,
        chain_id=2368,
        poll_interval_sec=0,
        poll_max_attempts=3,
        data_dir=tmp_path,
        settlement_token_decimals=6,
    )


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def bundler():
    return FakeBundler()


@pytest.fixture
def signer():
    return LocalKeySigner(TEST_KEY)


@pytest.fixture
def failing_signer():
    """Wallet callback that refuses to sign with a non-signature error."""
    def _sign(op_hash: bytes) -> bytes:
        raise PolicyRejected("wallet policy forbids this call", reason="wallet_policy")
    return _sign
