"""
Minimal ABI: only the vault / token / account calls we encode or read.

Read-side ABIs are web3 contract dicts (used with w3.eth.contract).
Write-side calls are encoded directly with eth_abi so call data can be
built without a provider, which keeps intents pure values.
"""

from eth_abi import encode
from eth_utils import function_signature_to_4byte_selector, keccak

SPEND_EXECUTED_SIGNATURE = "SpendExecuted(address,address,uint256)"
SPEND_EXECUTED_TOPIC = "0x" + keccak(text=SPEND_EXECUTED_SIGNATURE).hex()

SPENDING_RULE_TUPLE = "(address,uint256,uint256,uint256,address[],address[])"

_RULE_COMPONENTS = [
    {"name": "token", "type": "address"},
    {"name": "timeWindow", "type": "uint256"},
    {"name": "budget", "type": "uint256"},
    {"name": "initialWindowStartTime", "type": "uint256"},
    {"name": "whitelist", "type": "address[]"},
    {"name": "blacklist", "type": "address[]"},
]


def _view(name: str, inputs: list, outputs: list) -> dict:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": outputs,
        "stateMutability": "view",
        "type": "function",
    }


VAULT_ABI = [
    _view("getSpendingRules", [], [{"name": "", "type": "tuple[]", "components": _RULE_COMPONENTS}]),
    _view("settlementToken", [], [{"name": "", "type": "address"}]),
    _view("spendingAccount", [], [{"name": "", "type": "address"}]),
    _view("owner", [], [{"name": "", "type": "address"}]),
    _view("isExecutor", [{"name": "executor", "type": "address"}], [{"name": "", "type": "bool"}]),
    _view("currentBudget", [], [{"name": "", "type": "uint256"}]),
    _view(
        "checkSpendAllowed",
        [{"name": "amount", "type": "uint256"}, {"name": "provider", "type": "address"}],
        [{"name": "", "type": "bool"}],
    ),
]

ERC20_ABI = [
    _view("balanceOf", [{"name": "account", "type": "address"}], [{"name": "", "type": "uint256"}]),
    _view(
        "allowance",
        [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        [{"name": "", "type": "uint256"}],
    ),
    _view("symbol", [], [{"name": "", "type": "string"}]),
    _view("decimals", [], [{"name": "", "type": "uint8"}]),
]

ENTRY_POINT_ABI = [
    _view(
        "getNonce",
        [{"name": "sender", "type": "address"}, {"name": "key", "type": "uint192"}],
        [{"name": "nonce", "type": "uint256"}],
    ),
]

ACCOUNT_FACTORY_ABI = [
    _view(
        "getAddress",
        [{"name": "owner", "type": "address"}, {"name": "salt", "type": "uint256"}],
        [{"name": "", "type": "address"}],
    ),
]


def encode_call(signature: str, arg_types: list, args: list) -> bytes:
    """4-byte selector of `signature` followed by the ABI-encoded args."""
    return function_signature_to_4byte_selector(signature) + encode(arg_types, args)


# ============================================================
# WRITE CALLS
# ============================================================

def set_executor(executor: str, allowed: bool) -> bytes:
    return encode_call("setExecutor(address,bool)", ["address", "bool"], [executor, allowed])


def configure_spending_rules(rules: list) -> bytes:
    return encode_call(
        f"configureSpendingRules({SPENDING_RULE_TUPLE}[])",
        [f"{SPENDING_RULE_TUPLE}[]"],
        [[rule.to_abi_tuple() for rule in rules]],
    )


def execute_spend(amount: int, recipient: str) -> bytes:
    return encode_call("executeSpend(uint256,address)", ["uint256", "address"], [amount, recipient])


def check_spend_allowed(amount: int, recipient: str) -> bytes:
    return encode_call("checkSpendAllowed(uint256,address)", ["uint256", "address"], [amount, recipient])


def withdraw(token: str, amount: int, recipient: str) -> bytes:
    return encode_call(
        "withdraw(address,uint256,address)",
        ["address", "uint256", "address"],
        [token, amount, recipient],
    )


def approve(spender: str, amount: int) -> bytes:
    return encode_call("approve(address,uint256)", ["address", "uint256"], [spender, amount])


def transfer(recipient: str, amount: int) -> bytes:
    return encode_call("transfer(address,uint256)", ["address", "uint256"], [recipient, amount])


def add_supported_token(token: str) -> bytes:
    return encode_call("addSupportedToken(address)", ["address"], [token])


def account_execute(target: str, value: int, data: bytes) -> bytes:
    """Smart-account entry point that forwards an intent."""
    return encode_call("execute(address,uint256,bytes)", ["address", "uint256", "bytes"], [target, value, data])


def create_account(owner: str, salt: int) -> bytes:
    return encode_call("createAccount(address,uint256)", ["address", "uint256"], [owner, salt])
