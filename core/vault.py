"""
Vault Service - read model + write paths for one spending vault

What the HTTP layer talks to. Wraps the chain reader, the ledger, the
recipient policy, the executor and the escalation ladder:

- get_vault_info: deployment, rules, token meta, balances, allowance,
  executor authorization, funding diagnostics
- get_activity: budget reconciliation for the primary rule, formatted
- execute_spend: executor-signed executeSpend, gated off-chain by the
  policy pre-flight and on-chain by checkSpendAllowed
- intent factories + run_intent: owner operations through the ladder

Design:
- Read paths never raise on chain failures: they return a result object
  with `error` / `error_code` set, so a partial view is still renderable
- InvalidAddress is raised (caller input), never folded into a result
- Amounts stay integers until to_dict(); format_units() only at the edge
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Union

from . import abi
from .config import Settings
from .errors import ChainReadError, PolicyRejected, VaultError, VaultNotDeployed
from .ladder import Rung
from .ledger import ActivityReconciler, BlockTimestampLocator
from .models import (
    UINT256_MAX,
    ZERO_ADDRESS,
    ExecutionResult,
    OperationIntent,
    PaymentMode,
    Reconciliation,
    SpendingRule,
    format_units,
    parse_units,
    to_checksum,
)
from .policy import preflight_spend

logger = logging.getLogger("paypai.vault")

# addSupportedToken runs the account's own validation twice; estimates come back too low
ADD_TOKEN_GAS = (1_500_000, 500_000, 1_200_000)


# ============================================================
# RESULT TYPES
# ============================================================

@dataclass
class FundingIssue:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass
class VaultInfo:
    address: str
    deployed: bool = False
    settlement_token: str = ""
    spending_account: str = ""
    owner: str = ""
    native_balance: int = 0
    rules: list = field(default_factory=list)
    current_budget: int = 0
    token_balance: int = 0
    allowance: int = 0
    token_symbol: str = "KITE"
    token_decimals: int = 18
    executor_address: str = ""
    executor_authorized: bool = False
    funding_issues: list = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_max_allowance(self) -> bool:
        return self.allowance == UINT256_MAX

    @property
    def available(self) -> int:
        """What the vault can actually pull right now."""
        return min(self.token_balance, self.allowance)

    def to_dict(self) -> dict:
        d = self.token_decimals
        payload = {
            "address": self.address,
            "deployed": self.deployed,
            "vault": None,
            "spendingRules": [r.to_dict() for r in self.rules],
            "tokenBalance": format_units(self.token_balance, d),
            "currentBudget": format_units(self.current_budget, d),
            "allowance": "unlimited" if self.is_max_allowance else format_units(self.allowance, d),
            "allowanceRaw": str(self.allowance),
            "isMaxAllowance": self.is_max_allowance,
            "available": format_units(self.available, d),
            "tokenMeta": {"symbol": self.token_symbol, "decimals": d},
            "spendingAccount": self.spending_account,
            "executor": {"address": self.executor_address, "authorized": self.executor_authorized},
            "fundingIssues": [i.to_dict() for i in self.funding_issues],
        }
        if self.deployed:
            payload["vault"] = {
                "settlementToken": self.settlement_token,
                "spendingAccount": self.spending_account,
                "admin": self.owner,
                "balance": format_units(self.native_balance, 18),
            }
        if self.error:
            payload["error"] = self.error
            payload["errorCode"] = self.error_code
        return payload


@dataclass
class VaultActivity:
    address: str
    token_address: str = ""
    token_symbol: str = "KITE"
    token_decimals: int = 18
    reconciliation: Optional[Reconciliation] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        d = self.token_decimals
        payload = {
            "tokenAddress": self.token_address,
            "tokenSymbol": self.token_symbol,
            "tokenDecimals": d,
            "activity": [],
        }
        r = self.reconciliation
        if r is not None:
            payload.update({
                "windowStart": r.window_start,
                "fromBlock": r.from_block,
                "spentInWindow": format_units(r.spent_in_window, d),
                "remainingBudget": format_units(r.remaining_budget, d),
                "spentInWindowRaw": str(r.spent_in_window),
                "remainingBudgetRaw": str(r.remaining_budget),
                "activity": [
                    {
                        "txHash": e.tx_hash,
                        "blockNumber": e.block_number,
                        "executor": e.executor,
                        "recipient": e.recipient,
                        "amount": format_units(e.amount, d),
                        "timestamp": e.timestamp,
                    }
                    for e in r.recent_events
                ],
            })
        if self.error:
            payload["error"] = self.error
            payload["errorCode"] = self.error_code
        return payload


@dataclass
class SpendResult:
    success: bool
    transaction_hash: str = ""
    amount: int = 0
    recipient: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        payload = {"success": self.success}
        if self.transaction_hash:
            payload["transactionHash"] = self.transaction_hash
        if self.error:
            payload["error"] = self.error
        return payload


# ============================================================
# FUNDING DIAGNOSTICS
# ============================================================

def diagnose_funding(info: VaultInfo) -> list[FundingIssue]:
    """Specific, actionable reasons an executeSpend would fail right now."""
    if not info.deployed:
        return [FundingIssue("vault_not_deployed", "Vault not deployed at this address")]

    issues = []
    symbol = info.token_symbol
    if not info.rules:
        issues.append(FundingIssue("no_spending_rules", "No spending rules configured; every spend will be rejected"))
    if not info.executor_address:
        issues.append(FundingIssue("executor_not_configured", "No executor configured on this server"))
    elif not info.executor_authorized:
        issues.append(FundingIssue(
            "executor_not_authorized",
            f"Executor {info.executor_address} is not authorized on this vault; call setExecutor first",
        ))
    if info.allowance == 0:
        issues.append(FundingIssue(
            "zero_allowance",
            f"Spending account has not approved the vault to pull {symbol} (allowance is 0)",
        ))
    if info.token_balance == 0:
        issues.append(FundingIssue("insufficient_balance", f"Spending account holds no {symbol}"))
    elif info.allowance and info.token_balance < info.allowance and not info.is_max_allowance:
        issues.append(FundingIssue(
            "insufficient_balance",
            f"Spending account holds {format_units(info.token_balance, info.token_decimals)} {symbol}, "
            f"less than the approved {format_units(info.allowance, info.token_decimals)}",
        ))
    if info.rules and info.current_budget == 0:
        issues.append(FundingIssue("budget_exhausted", "No budget left in the current window"))
    return issues


# ============================================================
# INTENT FACTORIES
# ============================================================

def set_executor_intent(vault: str, executor: str, allowed: bool = True) -> OperationIntent:
    executor = to_checksum(executor, "executor address")
    return OperationIntent(to_checksum(vault, "vault address"), 0, abi.set_executor(executor, allowed))


def configure_rules_intent(vault: str, rules: list[SpendingRule]) -> OperationIntent:
    return OperationIntent(to_checksum(vault, "vault address"), 0, abi.configure_spending_rules(rules))


def withdraw_intent(vault: str, token: str, amount: int, recipient: str) -> OperationIntent:
    return OperationIntent(
        to_checksum(vault, "vault address"),
        0,
        abi.withdraw(to_checksum(token, "token address"), amount, to_checksum(recipient, "recipient")),
    )


def approve_intent(token: str, spender: str, amount: Optional[int] = None) -> OperationIntent:
    """amount=None approves the maximum uint256."""
    amount = UINT256_MAX if amount is None else amount
    return OperationIntent(
        to_checksum(token, "token address"), 0, abi.approve(to_checksum(spender, "spender"), amount)
    )


def transfer_intent(token: str, recipient: str, amount: int) -> OperationIntent:
    return OperationIntent(
        to_checksum(token, "token address"), 0, abi.transfer(to_checksum(recipient, "recipient"), amount)
    )


def native_send_intent(recipient: str, amount_wei: int) -> OperationIntent:
    return OperationIntent(to_checksum(recipient, "recipient"), amount_wei, b"")


def add_supported_token_intent(account: str, token: str) -> OperationIntent:
    return OperationIntent(
        to_checksum(account, "account address"), 0, abi.add_supported_token(to_checksum(token, "token address"))
    )


def deploy_intent(signer_address: str) -> OperationIntent:
    """Empty self-call: the first operation carries initCode and deploys the account."""
    return OperationIntent(to_checksum(signer_address, "signer address"), 0, b"")


# ============================================================
# SERVICE
# ============================================================

class VaultService:
    """
    Usage:
        service = VaultService(settings, chain, executor=executor, ladder=ladder)
        info = await service.get_vault_info(vault)
        activity = await service.get_activity(vault)
        spend = await service.execute_spend(vault, recipient, "1.5")
    """

    def __init__(self, settings: Settings, chain, executor=None, ladder=None, builder=None):
        self.settings = settings
        self.chain = chain
        self.executor = executor
        self.ladder = ladder
        self.builder = builder
        self.locator = BlockTimestampLocator(chain, lookup_genesis=True)

    @property
    def executor_address(self) -> str:
        if self.executor is not None:
            return self.executor.address
        return self.settings.executor_address

    # ---- reads ----

    async def get_vault_info(self, vault: str) -> VaultInfo:
        vault = to_checksum(vault, "vault address")
        info = VaultInfo(
            address=vault,
            token_decimals=self.settings.settlement_token_decimals,
            token_symbol=self.settings.native_symbol,
            executor_address=self.executor_address,
        )
        try:
            await self._fill_vault_info(info)
        except VaultNotDeployed as e:
            info.error, info.error_code = "Vault not deployed at this address", e.code
        except ChainReadError as e:
            logger.warning(f"Vault info read failed for {vault[:10]}...: {e.message}")
            info.error, info.error_code = e.message, e.code
        info.funding_issues = diagnose_funding(info)
        return info

    async def _fill_vault_info(self, info: VaultInfo) -> None:
        chain, vault = self.chain, info.address
        await chain.ensure_vault_deployed(vault)
        info.deployed = True

        (info.settlement_token, info.spending_account, info.owner,
         info.native_balance, info.rules) = await asyncio.gather(
            chain.settlement_token(vault),
            chain.spending_account(vault),
            chain.owner(vault),
            chain.get_balance(vault),
            chain.get_spending_rules(vault),
        )

        try:
            info.current_budget = await chain.current_budget(vault)
        except ChainReadError:
            info.current_budget = 0

        token = info.settlement_token
        if token and token != ZERO_ADDRESS:
            info.token_symbol, info.token_decimals = await chain.token_metadata(
                token, self.settings.native_symbol, self.settings.settlement_token_decimals
            )
            if info.spending_account and info.spending_account != ZERO_ADDRESS:
                try:
                    info.token_balance = await chain.balance_of(token, info.spending_account)
                except ChainReadError:
                    info.token_balance = 0
                try:
                    info.allowance = await chain.allowance(token, info.spending_account, vault)
                except ChainReadError:
                    info.allowance = 0

        if info.executor_address:
            try:
                info.executor_authorized = await chain.is_executor(vault, info.executor_address)
            except ChainReadError:
                info.executor_authorized = False

    async def primary_rule(self, vault: str) -> tuple[SpendingRule, str]:
        """(first spending rule, its token). A vault without rules gets a zero-budget rule."""
        rules, settlement = await asyncio.gather(
            self.chain.get_spending_rules(vault), self.chain.settlement_token(vault)
        )
        if rules:
            rule = rules[0]
            token = rule.token if rule.token != ZERO_ADDRESS else settlement
            return rule, token
        return SpendingRule(token=settlement, time_window_seconds=0, budget=0, initial_window_start=0), settlement

    async def get_activity(self, vault: str, now: Optional[int] = None) -> VaultActivity:
        vault = to_checksum(vault, "vault address")
        result = VaultActivity(address=vault, token_decimals=self.settings.settlement_token_decimals)
        now = int(time.time()) if now is None else now
        try:
            await self.chain.ensure_vault_deployed(vault)
            rule, token = await self.primary_rule(vault)
            result.token_address = token
            if token and token != ZERO_ADDRESS:
                result.token_symbol, result.token_decimals = await self.chain.token_metadata(
                    token, self.settings.native_symbol, self.settings.settlement_token_decimals
                )
            reconciler = ActivityReconciler(self.chain, vault, locator=self.locator)
            result.reconciliation = await reconciler.reconcile(rule, now)
        except VaultNotDeployed as e:
            result.error, result.error_code = "Vault not deployed", e.code
        except ChainReadError as e:
            logger.warning(f"Activity read failed for {vault[:10]}...: {e.message}")
            result.error, result.error_code = e.message, e.code
        return result

    # ---- executor spend ----

    async def execute_spend(self, vault: str, recipient: str, amount: Union[str, int],
                            now: Optional[int] = None) -> SpendResult:
        """
        Executor-signed executeSpend. `amount` is a decimal string in token
        units or an int in the smallest unit.

        Raises PolicyRejected when the off-chain pre-flight or the vault's own
        checkSpendAllowed says no; other VaultErrors for configuration or
        chain problems.
        """
        vault = to_checksum(vault, "vault address")
        recipient = to_checksum(recipient, "recipient")
        if self.executor is None:
            raise VaultError(
                "Executor not configured on server",
                action_hint="set EXECUTOR_PRIVATE_KEY",
            )

        await self.chain.ensure_vault_deployed(vault)
        rule, token = await self.primary_rule(vault)
        if isinstance(amount, int):
            amount_raw = amount
        else:
            _, decimals = await self.chain.token_metadata(
                token, self.settings.native_symbol, self.settings.settlement_token_decimals
            )
            try:
                amount_raw = parse_units(amount, decimals)
            except (ArithmeticError, ValueError) as e:
                raise PolicyRejected(f"Invalid amount {amount!r}: {e}", reason="invalid_amount")

        now = int(time.time()) if now is None else now
        reconciliation = await ActivityReconciler(self.chain, vault, locator=self.locator).reconcile(rule, now)
        preflight_spend(rule, amount_raw, recipient, reconciliation.spent_in_window)

        if not await self.chain.check_spend_allowed(vault, amount_raw, recipient):
            raise PolicyRejected("Spend rejected by vault rules", reason="vault_rejected")

        tx = await self.executor.send_transaction(vault, abi.execute_spend(amount_raw, recipient))
        if not tx.success:
            logger.warning(f"executeSpend failed on {vault[:10]}...: {tx.error}")
            return SpendResult(success=False, transaction_hash=tx.tx_hash, amount=amount_raw,
                               recipient=recipient, error=tx.error)

        logger.info(f"executeSpend {amount_raw} -> {recipient[:10]}... on {vault[:10]}... tx={tx.tx_hash[:16]}...")
        return SpendResult(success=True, transaction_hash=tx.tx_hash, amount=amount_raw, recipient=recipient)

    # ---- owner operations ----

    def _require_ladder(self):
        if self.ladder is None:
            missing = ", ".join(self.settings.missing_for_operations()) or "pipeline components"
            raise VaultError(f"User operations are not configured (missing {missing})")
        return self.ladder

    async def run_intent(self, intent: OperationIntent, signer_address: str, sign_fns: dict,
                         payment_mode: Optional[PaymentMode] = None) -> ExecutionResult:
        ladder = self._require_ladder()
        return await ladder.execute(intent, signer_address, sign_fns, payment_mode=payment_mode)

    async def deploy_account(self, signer_address: str, sign_fns: dict) -> ExecutionResult:
        return await self.run_intent(deploy_intent(signer_address), signer_address, sign_fns)

    async def add_supported_token(self, signer_address: str, token: str, sign_fns: dict) -> ExecutionResult:
        """Self-call on the smart account with raised fixed gas; the estimate rung is skipped."""
        ladder = self._require_ladder()
        if self.builder is None:
            raise VaultError("Operation builder not configured")
        account, _ = await self.builder.resolve_sender(signer_address)
        payment = PaymentMode.sponsored() if self.settings.paymaster else None
        return await ladder.execute(
            add_supported_token_intent(account, token),
            signer_address,
            sign_fns,
            payment_mode=payment,
            start_rung=Rung.FIXED_PREFIXED,
            gas_override=ADD_TOKEN_GAS,
        )
