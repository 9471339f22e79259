"""
Recipient policy + spend pre-flight.

Off-chain copy of the vault's authorization check. It exists to reject
doomed executeSpend calls before paying gas, so it must agree with the
contract: blacklist wins, an empty whitelist allows everyone, and the amount
must fit in what is left of the current window's budget.
"""

import logging

from .errors import PolicyRejected
from .models import SpendingRule

logger = logging.getLogger("paypai.policy")


def _contains(addresses: frozenset, address: str) -> bool:
    target = address.lower()
    return any(a.lower() == target for a in addresses)


def is_allowed(rule: SpendingRule, recipient: str) -> bool:
    if _contains(rule.blacklist, recipient):
        return False
    if not rule.whitelist:
        return True
    return _contains(rule.whitelist, recipient)


def check_spend_allowed(rule: SpendingRule, amount: int, recipient: str, spent_in_window: int) -> bool:
    """Reference simulation of the vault's checkSpendAllowed(amount, recipient)."""
    if amount <= 0:
        return False
    if not is_allowed(rule, recipient):
        return False
    return spent_in_window + amount <= rule.budget


def preflight_spend(rule: SpendingRule, amount: int, recipient: str, spent_in_window: int) -> None:
    """Raise PolicyRejected with a specific reason if the spend cannot succeed."""
    if amount <= 0:
        raise PolicyRejected("Amount must be greater than zero", reason="invalid_amount")
    if _contains(rule.blacklist, recipient):
        raise PolicyRejected(
            f"Recipient {recipient} is blacklisted by the vault",
            reason="recipient_blacklisted",
            action_hint="remove the address from the blacklist or pick another recipient",
        )
    if rule.whitelist and not _contains(rule.whitelist, recipient):
        raise PolicyRejected(
            f"Recipient {recipient} is not on the vault whitelist",
            reason="recipient_not_whitelisted",
            action_hint="add the address to the whitelist",
        )
    remaining = max(rule.budget - spent_in_window, 0)
    if amount > remaining:
        logger.info(f"Pre-flight rejected: amount={amount} remaining={remaining}")
        raise PolicyRejected(
            f"Amount {amount} exceeds the remaining budget {remaining} for this window",
            reason="budget_exceeded",
            action_hint="wait for the next window or raise the budget",
        )
