"""
Unit tests for the vault service: read model, funding diagnostics,
executor spends and owner-operation intents.
"""

import dataclasses

import pytest

from conftest import (
    ACCOUNT,
    DAY,
    EXECUTOR,
    RECIPIENT,
    T0,
    TOKEN,
    TX_HASH,
    VAULT,
    FakeExecutor,
    no_sleep,
)
from core import abi
from core.errors import InvalidAddress, PolicyRejected, VaultError
from core.ladder import SigningEscalationLadder
from core.models import UINT256_MAX, SpendingRule
from core.submitter import OperationSubmitter, StatusPoller
from core.userop import OperationBuilder
from core.vault import (
    ADD_TOKEN_GAS,
    VaultInfo,
    VaultService,
    approve_intent,
    configure_rules_intent,
    diagnose_funding,
    native_send_intent,
    set_executor_intent,
    transfer_intent,
    withdraw_intent,
)

NOW = T0 + 50_000


def _service(settings, chain, executor=None, bundler=None):
    if bundler is None:
        return VaultService(settings, chain, executor=executor)
    builder = OperationBuilder(chain, bundler, settings)
    ladder = SigningEscalationLadder(
        builder,
        OperationSubmitter(bundler, settings.paymaster),
        StatusPoller(bundler, interval=0, max_attempts=settings.poll_max_attempts, sleep=no_sleep),
        settings,
    )
    return VaultService(settings, chain, executor=executor, ladder=ladder, builder=builder)


def _codes(issues) -> set:
    return {i.code for i in issues}


# ============================================================
# VAULT INFO
# ============================================================

@pytest.mark.asyncio
async def test_info_for_deployed_vault(settings, chain):
    info = await _service(settings, chain, FakeExecutor()).get_vault_info(VAULT)

    assert info.deployed and info.error is None
    assert info.token_symbol == "USDT" and info.token_decimals == 6
    assert info.available == 200_000000
    assert info.executor_address == EXECUTOR and info.executor_authorized
    assert info.funding_issues == []

    payload = info.to_dict()
    assert payload["available"] == "200"
    assert payload["tokenBalance"] == "500"
    assert payload["currentBudget"] == "100"
    assert payload["isMaxAllowance"] is False
    assert payload["vault"]["settlementToken"] == TOKEN
    assert payload["spendingRules"][0]["budget"] == str(100_000000)


@pytest.mark.asyncio
async def test_info_for_missing_vault_is_a_result_not_an_exception(settings, chain):
    chain.deployed.discard(VAULT.lower())
    info = await _service(settings, chain).get_vault_info(VAULT)

    assert not info.deployed
    assert info.error == "Vault not deployed at this address"
    assert info.error_code == "vault_not_deployed"
    assert _codes(info.funding_issues) == {"vault_not_deployed"}
    assert info.to_dict()["vault"] is None


@pytest.mark.asyncio
async def test_info_rejects_invalid_address(settings, chain):
    with pytest.raises(InvalidAddress):
        await _service(settings, chain).get_vault_info("0x1234")


@pytest.mark.asyncio
async def test_info_chain_failure_is_folded_into_error(settings, chain):
    chain.failing.add("owner")
    info = await _service(settings, chain).get_vault_info(VAULT)

    assert info.deployed
    assert info.error_code == "chain_read_error"
    assert "owner failed" in info.to_dict()["error"]


@pytest.mark.asyncio
async def test_info_budget_read_failure_falls_back_to_zero(settings, chain):
    chain.failing.add("current_budget")
    info = await _service(settings, chain, FakeExecutor()).get_vault_info(VAULT)

    assert info.error is None
    assert info.current_budget == 0
    assert _codes(info.funding_issues) == {"budget_exhausted"}


@pytest.mark.asyncio
async def test_info_max_allowance(settings, chain):
    chain.allowance_value = UINT256_MAX
    info = await _service(settings, chain, FakeExecutor()).get_vault_info(VAULT)

    assert info.is_max_allowance
    assert info.available == chain.token_balance
    assert info.to_dict()["allowance"] == "unlimited"


@pytest.mark.asyncio
async def test_unauthorized_executor_is_diagnosed(settings, chain):
    chain.executors.clear()
    info = await _service(settings, chain, FakeExecutor()).get_vault_info(VAULT)
    assert not info.executor_authorized
    assert "executor_not_authorized" in _codes(info.funding_issues)


def test_funding_diagnostics():
    info = VaultInfo(address=VAULT, deployed=True, token_symbol="USDT", token_decimals=6)
    assert _codes(diagnose_funding(info)) == {
        "no_spending_rules", "executor_not_configured", "zero_allowance", "insufficient_balance",
    }

    info.rules = [SpendingRule(TOKEN, DAY, 100, T0)]
    info.executor_address, info.executor_authorized = EXECUTOR, True
    info.token_balance, info.allowance, info.current_budget = 50, 80, 100
    issues = diagnose_funding(info)
    assert _codes(issues) == {"insufficient_balance"}
    assert "less than the approved" in issues[0].message


# ============================================================
# ACTIVITY
# ============================================================

@pytest.mark.asyncio
async def test_activity_formats_window_totals(settings, chain):
    chain.add_event(10, 80_000000)
    activity = await _service(settings, chain).get_activity(VAULT, now=NOW)

    payload = activity.to_dict()
    assert payload["windowStart"] == T0
    assert payload["fromBlock"] == 0
    assert payload["spentInWindow"] == "80"
    assert payload["remainingBudget"] == "20"
    assert payload["tokenSymbol"] == "USDT"
    assert payload["activity"][0]["amount"] == "80"
    assert payload["activity"][0]["timestamp"] == T0 + 10_000


@pytest.mark.asyncio
async def test_activity_window_at_genesis_skips_block_search(settings, chain):
    service = _service(settings, chain)
    await service.get_activity(VAULT, now=NOW)
    await service.get_activity(VAULT, now=NOW)

    assert chain.log_queries == [0, 0]
    assert chain.block_fetches == 1
    assert service.locator.probes == 0


@pytest.mark.asyncio
async def test_activity_for_missing_vault(settings, chain):
    chain.deployed.discard(VAULT.lower())
    payload = (await _service(settings, chain).get_activity(VAULT, now=NOW)).to_dict()
    assert payload["errorCode"] == "vault_not_deployed"
    assert payload["activity"] == []


@pytest.mark.asyncio
async def test_activity_log_failure_is_reported(settings, chain):
    chain.failing.add("get_spend_events")
    activity = await _service(settings, chain).get_activity(VAULT, now=NOW)
    assert activity.reconciliation is None
    assert activity.error_code == "chain_read_error"


# ============================================================
# EXECUTE SPEND
# ============================================================

@pytest.mark.asyncio
async def test_execute_spend_success(settings, chain):
    executor = FakeExecutor()
    result = await _service(settings, chain, executor).execute_spend(VAULT, RECIPIENT, "30", now=NOW)

    assert result.success
    assert result.amount == 30_000000
    assert result.to_dict() == {"success": True, "transactionHash": TX_HASH}
    target, data, value = executor.sent[0]
    assert target == VAULT
    assert data == abi.execute_spend(30_000000, RECIPIENT)
    assert value == 0


@pytest.mark.asyncio
async def test_execute_spend_over_remaining_budget(settings, chain):
    chain.add_event(10, 80_000000)
    executor = FakeExecutor()

    with pytest.raises(PolicyRejected) as exc:
        await _service(settings, chain, executor).execute_spend(VAULT, RECIPIENT, "30", now=NOW)

    assert exc.value.reason == "budget_exceeded"
    assert executor.sent == []


@pytest.mark.asyncio
async def test_execute_spend_rejected_on_chain(settings, chain):
    chain.on_chain_allowed = False
    executor = FakeExecutor()

    with pytest.raises(PolicyRejected) as exc:
        await _service(settings, chain, executor).execute_spend(VAULT, RECIPIENT, "1", now=NOW)

    assert exc.value.message == "Spend rejected by vault rules"
    assert exc.value.reason == "vault_rejected"
    assert executor.sent == []


@pytest.mark.asyncio
async def test_execute_spend_blacklisted_recipient(settings, chain):
    chain.rules = [dataclasses.replace(chain.rules[0], blacklist=frozenset({RECIPIENT}))]

    with pytest.raises(PolicyRejected) as exc:
        await _service(settings, chain, FakeExecutor()).execute_spend(VAULT, RECIPIENT, "1", now=NOW)
    assert exc.value.reason == "recipient_blacklisted"


@pytest.mark.asyncio
async def test_execute_spend_invalid_amount(settings, chain):
    with pytest.raises(PolicyRejected) as exc:
        await _service(settings, chain, FakeExecutor()).execute_spend(VAULT, RECIPIENT, "lots", now=NOW)
    assert exc.value.reason == "invalid_amount"


@pytest.mark.asyncio
async def test_execute_spend_requires_executor(settings, chain):
    with pytest.raises(VaultError) as exc:
        await _service(settings, chain).execute_spend(VAULT, RECIPIENT, "1", now=NOW)
    assert exc.value.message == "Executor not configured on server"


@pytest.mark.asyncio
async def test_execute_spend_invalid_recipient(settings, chain):
    with pytest.raises(InvalidAddress):
        await _service(settings, chain, FakeExecutor()).execute_spend(VAULT, "0x123", "1", now=NOW)


@pytest.mark.asyncio
async def test_execute_spend_reverted_transaction(settings, chain):
    result = await _service(settings, chain, FakeExecutor(success=False)).execute_spend(
        VAULT, RECIPIENT, "1", now=NOW
    )
    assert not result.success
    assert result.error.startswith("TX reverted")


# ============================================================
# OWNER OPERATIONS
# ============================================================

def test_intent_factories():
    approve = approve_intent(TOKEN, VAULT)
    assert approve.call_data == abi.approve(VAULT, UINT256_MAX)
    assert approve_intent(TOKEN, VAULT, 5).call_data == abi.approve(VAULT, 5)

    withdraw = withdraw_intent(VAULT, TOKEN, 7, RECIPIENT)
    assert withdraw.target == VAULT and withdraw.value == 0

    assert set_executor_intent(VAULT, EXECUTOR).call_data == abi.set_executor(EXECUTOR, True)
    assert transfer_intent(TOKEN, RECIPIENT, 3).call_data == abi.transfer(RECIPIENT, 3)
    rules = [SpendingRule(TOKEN, DAY, 100, T0)]
    assert configure_rules_intent(VAULT, rules).call_data == abi.configure_spending_rules(rules)
    assert native_send_intent(RECIPIENT, 10).value == 10
    with pytest.raises(InvalidAddress):
        native_send_intent("nope", 1)


@pytest.mark.asyncio
async def test_add_supported_token_skips_estimate_with_raised_gas(settings, chain, bundler, signer):
    service = _service(settings, chain, bundler=bundler)

    result = await service.add_supported_token(signer.address, TOKEN, signer.methods())

    assert result.succeeded
    assert result.attempts[0].rung == "FIXED_PREFIXED"
    assert bundler.estimates == 0
    op = bundler.sent[0]
    assert op.sender == ACCOUNT
    assert (op.verification_gas_limit, op.call_gas_limit, op.pre_verification_gas) == ADD_TOKEN_GAS


@pytest.mark.asyncio
async def test_owner_operations_need_pipeline(settings, chain, signer):
    with pytest.raises(VaultError) as exc:
        await _service(settings, chain).deploy_account(signer.address, signer.methods())
    assert "not configured" in exc.value.message


@pytest.mark.asyncio
async def test_run_intent_through_ladder(settings, chain, bundler, signer):
    service = _service(settings, chain, bundler=bundler)
    result = await service.run_intent(approve_intent(TOKEN, VAULT), signer.address, signer.methods())
    assert result.succeeded
    assert len(bundler.sent) == 1
