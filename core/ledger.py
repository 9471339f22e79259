"""
Spending-Authorization Ledger

Answers "how much of the executor budget is left in the current window",
using only the vault's SpendExecuted log and its spending rule.

Pieces:
- current_window_start(): rolling window arithmetic (pure)
- BlockTimestampLocator: lower-bound binary search, timestamp -> block
- ActivityReconciler: window -> first block -> logs -> timestamps -> sum

Window rollover: a rule with timeWindow=86400 anchored at T0 has windows
[T0, T0+86400), [T0+86400, T0+172800), ... Only events whose block timestamp
is >= the active window's start count. The block search narrows the log
query; the timestamp filter is what actually decides inclusion.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Optional, Protocol

from .errors import ChainReadError
from .models import ActivityEvent, BudgetWindow, Reconciliation, SpendingRule

logger = logging.getLogger("paypai.ledger")

RECENT_EVENTS_LIMIT = 10


class BlockSource(Protocol):
    async def get_block_number(self) -> int: ...
    async def get_block_timestamp(self, block_number: int) -> int: ...


class SpendEventSource(BlockSource, Protocol):
    async def get_spend_events(self, vault: str, from_block: int) -> list[ActivityEvent]: ...


# ============================================================
# WINDOW
# ============================================================

def current_window_start(rule: SpendingRule, now: int) -> int:
    """Start of the window containing `now` (largest boundary <= now)."""
    start = rule.initial_window_start
    window = rule.time_window_seconds
    if window <= 0 or now < start:
        return start
    windows_elapsed = (now - start) // window
    return start + windows_elapsed * window


def current_window(rule: SpendingRule, now: int) -> BudgetWindow:
    return BudgetWindow(start=current_window_start(rule, now))


# ============================================================
# BLOCK LOCATOR
# ============================================================

class BlockTimestampLocator:
    """
    Finds the lowest block whose timestamp is >= a target.

    Relies on block timestamps being non-decreasing. One getBlock per probe,
    O(log N) probes. A missing block aborts the search with ChainReadError
    instead of silently returning a partial bound.

    Targets at or before genesis resolve to block 0 without probing. The
    genesis timestamp is either passed in or, with lookup_genesis=True, read
    from block 0 on first use and cached.
    """

    def __init__(self, chain: BlockSource, genesis_timestamp: Optional[int] = None,
                 lookup_genesis: bool = False):
        self.chain = chain
        self.genesis_timestamp = genesis_timestamp
        self.lookup_genesis = lookup_genesis
        self.probes = 0

    async def _genesis(self) -> Optional[int]:
        if self.genesis_timestamp is None and self.lookup_genesis:
            self.genesis_timestamp = await self.chain.get_block_timestamp(0)
            logger.debug(f"Genesis timestamp cached: {self.genesis_timestamp}")
        return self.genesis_timestamp

    async def locate(self, target_timestamp: int) -> int:
        if target_timestamp <= 0:
            return 0
        genesis = await self._genesis()
        if genesis is not None and target_timestamp <= genesis:
            return 0

        low = 0
        high = await self.chain.get_block_number()
        while low < high:
            mid = (low + high) // 2
            self.probes += 1
            timestamp = await self.chain.get_block_timestamp(mid)
            if timestamp < target_timestamp:
                low = mid + 1
            else:
                high = mid
        return low


# ============================================================
# RECONCILER
# ============================================================

class ActivityReconciler:
    """
    Rebuilds spent / remaining budget for one vault rule.

    Stateless apart from its collaborators: calling reconcile() twice against
    unchanged chain state returns identical numbers.
    """

    def __init__(self, chain: SpendEventSource, vault: str, locator: Optional[BlockTimestampLocator] = None):
        self.chain = chain
        self.vault = vault
        self.locator = locator or BlockTimestampLocator(chain)

    async def _resolve_timestamps(self, events: list[ActivityEvent]) -> dict[int, int]:
        # One fetch per distinct block, not per event
        blocks = sorted({e.block_number for e in events})
        timestamps = await asyncio.gather(*(self.chain.get_block_timestamp(b) for b in blocks))
        return dict(zip(blocks, timestamps))

    async def reconcile(self, rule: SpendingRule, now: int) -> Reconciliation:
        window_start = current_window_start(rule, now)
        from_block = await self.locator.locate(window_start) if window_start > 0 else 0

        events = await self.chain.get_spend_events(self.vault, from_block)
        block_times = await self._resolve_timestamps(events) if events else {}

        resolved = []
        spent = 0
        for event in events:
            timestamp = block_times.get(event.block_number)
            if timestamp is None:
                raise ChainReadError(f"No timestamp for block {event.block_number}")
            event = replace(event, timestamp=timestamp)
            if timestamp >= window_start:
                spent += event.amount
            resolved.append(event)

        remaining = max(rule.budget - spent, 0)
        recent = sorted(resolved, key=lambda e: (e.timestamp, e.block_number, e.log_index), reverse=True)

        logger.debug(
            f"Reconciled {self.vault[:10]}...: window_start={window_start} from_block={from_block} "
            f"events={len(resolved)} spent={spent} remaining={remaining}"
        )
        return Reconciliation(
            window_start=window_start,
            spent_in_window=spent,
            remaining_budget=remaining,
            recent_events=recent[:RECENT_EVENTS_LIMIT],
            events_scanned=len(resolved),
            from_block=from_block,
        )
