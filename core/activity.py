"""
Wallet Activity Sync

Keeps a per-address cache of explorer-sourced activity (native + token
transfers) fresh without hammering the explorer:

- ActivityStore: JSON file, newest-first, deduplicated by
  (hash, kind, token address), capped per address
- ExplorerClient: txlist + tokentx from the block explorer API (aiohttp)
- ActivitySyncCoordinator: TTL freshness + single-flight per address

Single-flight: the coordinator owns an explicit {address: Task} registry.
A caller that finds a job in flight joins it instead of starting another.
A failed sync still advances lastSynced (so a broken explorer is retried
once per TTL, not on every request) and records lastError; the cached
records stay visible.
"""

import asyncio
import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiohttp

from .errors import ChainReadError, error_message
from .models import ActivityRecord, ActivitySnapshot, ActivitySyncState, to_checksum

logger = logging.getLogger("paypai.activity")

DEFAULT_TTL_MS = 5 * 60 * 1000
DEFAULT_LIMIT = 100


# ============================================================
# STORE
# ============================================================

class ActivityStore:
    """Persisted cache: {"wallets": {address: {"activity": [...], "lastSynced": ms, "lastError": str}}}"""

    def __init__(self, path: Optional[Path] = None, limit: int = DEFAULT_LIMIT):
        self.path = Path(path) if path else None
        self.limit = limit
        self._wallets: dict[str, ActivitySyncState] = {}
        self._loaded = False
        self._write_lock = asyncio.Lock()

    def _load(self):
        if self._loaded:
            return
        self._loaded = True
        if self.path is None or not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, ValueError) as e:
            logger.warning(f"Activity store unreadable, starting empty: {e}")
            return
        for address, entry in (data.get("wallets") or {}).items():
            self._wallets[address] = ActivitySyncState(
                last_synced_at=int(entry.get("lastSynced", 0) or 0),
                last_error=entry.get("lastError"),
                records=[ActivityRecord.from_dict(r) for r in entry.get("activity", [])],
            )
        logger.info(f"Loaded activity for {len(self._wallets)} wallets")

    def _payload(self) -> dict:
        payload = {"wallets": {}}
        for address, state in self._wallets.items():
            entry = {
                "activity": [r.to_dict() for r in state.records],
                "lastSynced": state.last_synced_at,
            }
            if state.last_error:
                entry["lastError"] = state.last_error
            payload["wallets"][address] = entry
        return payload

    def _write(self, payload: dict):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Atomic write: temp file in the same directory, then rename
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp", prefix="activity_")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, str(self.path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def _save(self):
        if self.path is not None:
            self._write(self._payload())

    async def save_async(self) -> bool:
        """
        Persist on a worker thread. The payload is snapshotted on the loop
        under a lock so writes land in order. A failed write is logged and
        reported as False; the in-memory cache stays authoritative.
        """
        if self.path is None:
            return True
        async with self._write_lock:
            payload = self._payload()
            try:
                await asyncio.get_running_loop().run_in_executor(None, self._write, payload)
            except OSError as e:
                logger.warning(f"Activity store write failed ({self.path}): {e}")
                return False
        return True

    def get(self, address: str) -> ActivitySyncState:
        self._load()
        return self._wallets.setdefault(address, ActivitySyncState())

    def records(self, address: str, limit: Optional[int] = None) -> list[ActivityRecord]:
        return list(self.get(address).records[: limit or self.limit])

    def upsert(self, address: str, rows: list[ActivityRecord], save: bool = True) -> None:
        if not rows:
            return
        state = self.get(address)
        merged: dict[tuple, ActivityRecord] = {r.dedup_key: r for r in state.records}
        for row in rows:
            row.address = address
            merged[row.dedup_key] = row
        state.records = sorted(merged.values(), key=lambda r: r.timestamp, reverse=True)[: self.limit]
        if save:
            self._save()

    def mark_synced(self, address: str, timestamp_ms: int, save: bool = True) -> None:
        state = self.get(address)
        state.last_synced_at = timestamp_ms
        state.last_error = None
        if save:
            self._save()

    def mark_failed(self, address: str, timestamp_ms: int, message: str, save: bool = True) -> None:
        state = self.get(address)
        state.last_synced_at = timestamp_ms
        state.last_error = message
        if save:
            self._save()


# ============================================================
# EXPLORER
# ============================================================

class ExplorerClient:
    """Etherscan-style explorer API: module=account&action=txlist|tokentx."""

    def __init__(self, base_url: str, timeout: float = 12.0, native_symbol: str = "KITE",
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url
        self.native_symbol = native_symbol
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get(self, params: dict):
        session = await self._get_session()
        try:
            async with session.get(self.base_url, params=params) as resp:
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                if resp.status >= 400:
                    message = (data or {}).get("message") or (data or {}).get("error") or f"HTTP {resp.status}"
                    raise ChainReadError(f"Explorer {params['action']}: {message}")
                return data
        except asyncio.TimeoutError:
            raise ChainReadError(f"Explorer {params['action']} timed out")
        except aiohttp.ClientError as e:
            raise ChainReadError(f"Explorer {params['action']} failed: {e}")

    @staticmethod
    def _rows(result) -> list:
        # status "0" covers both "No transactions found" and real errors; neither has rows
        if not result or str(result.get("status")) == "0":
            return []
        rows = result.get("result")
        return rows if isinstance(rows, list) else []

    def parse_txlist(self, result) -> list[ActivityRecord]:
        records = []
        for tx in self._rows(result):
            failed = tx.get("isError") == "1" or tx.get("txreceipt_status") == "0"
            records.append(ActivityRecord(
                hash=tx.get("hash", ""),
                from_address=tx.get("from", ""),
                to_address=tx.get("to", ""),
                timestamp=int(tx.get("timeStamp") or 0),
                value=int(tx.get("value") or 0),
                decimals=18,
                symbol=self.native_symbol,
                status="failed" if failed else "confirmed",
                kind="native",
            ))
        return records

    def parse_tokentx(self, result) -> list[ActivityRecord]:
        records = []
        for tx in self._rows(result):
            failed = tx.get("isError") == "1" or tx.get("txreceipt_status") == "0"
            records.append(ActivityRecord(
                hash=tx.get("hash", ""),
                from_address=tx.get("from", ""),
                to_address=tx.get("to", ""),
                timestamp=int(tx.get("timeStamp") or 0),
                value=int(tx.get("value") or 0),
                decimals=int(tx.get("tokenDecimal") or 18),
                symbol=tx.get("tokenSymbol") or "TOKEN",
                status="failed" if failed else "confirmed",
                kind="token",
                token_address=tx.get("contractAddress", "") or "",
            ))
        return records

    async def fetch_activity(self, address: str, limit: int = DEFAULT_LIMIT) -> list[ActivityRecord]:
        common = {"module": "account", "address": address, "page": "1", "offset": str(limit), "sort": "desc"}
        normal, token = await asyncio.gather(
            self._get({**common, "action": "txlist"}),
            self._get({**common, "action": "tokentx"}),
        )
        merged = self.parse_txlist(normal) + self.parse_tokentx(token)
        merged.sort(key=lambda r: r.timestamp, reverse=True)
        return merged[:limit]


# ============================================================
# COORDINATOR
# ============================================================

class ActivitySyncCoordinator:
    """
    Usage:
        coordinator = ActivitySyncCoordinator(store, explorer.fetch_activity)
        snapshot = await coordinator.ensure_fresh(address)                 # returns at once
        snapshot = await coordinator.ensure_fresh(address, force_refresh=True)  # waits for the sync
        await coordinator.aclose()
    """

    def __init__(self, store: ActivityStore,
                 fetcher: Callable[[str], Awaitable[list[ActivityRecord]]],
                 ttl_ms: int = DEFAULT_TTL_MS,
                 clock: Callable[[], float] = time.time):
        self.store = store
        self.fetcher = fetcher
        self.ttl_ms = ttl_ms
        self._clock = clock
        self._jobs: dict[str, asyncio.Task] = {}
        self.fetch_count = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def is_fresh(self, address: str) -> bool:
        last = self.store.get(address).last_synced_at
        return bool(last) and self._now_ms() - last < self.ttl_ms

    def is_syncing(self, address: str) -> bool:
        job = self._jobs.get(address)
        return job is not None and not job.done()

    async def _refresh(self, address: str) -> None:
        """Fetch into the in-memory store. Fetch errors become lastError."""
        try:
            self.fetch_count += 1
            records = await self.fetcher(address)
            self.store.upsert(address, records, save=False)
            self.store.mark_synced(address, self._now_ms(), save=False)
            logger.info(f"Activity synced for {address[:10]}...: {len(records)} rows")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = error_message(e) or "Sync failed"
            self.store.mark_failed(address, self._now_ms(), message, save=False)
            logger.warning(f"Activity sync failed for {address[:10]}...: {message}")

    async def _sync(self, address: str) -> None:
        try:
            await self._refresh(address)
            await self.store.save_async()
        finally:
            if self._jobs.get(address) is asyncio.current_task():
                del self._jobs[address]

    def _start(self, address: str) -> asyncio.Task:
        job = asyncio.get_running_loop().create_task(self._sync(address))
        self._jobs[address] = job
        return job

    async def join(self, address: str) -> None:
        job = self._jobs.get(to_checksum(address))
        if job is not None:
            await asyncio.shield(job)

    async def ensure_fresh(self, address: str, force_refresh: bool = False,
                           wait: Optional[bool] = None) -> ActivitySnapshot:
        """
        Start a sync when stale (or forced) unless one is already running.
        `wait` defaults to force_refresh: a forced refresh returns fresh data,
        a plain read returns the cache and reports syncing=True.
        """
        address = to_checksum(address)
        job = self._jobs.get(address)
        if job is None and (force_refresh or not self.is_fresh(address)):
            job = self._start(address)

        should_wait = force_refresh if wait is None else wait
        if job is not None and should_wait:
            await asyncio.shield(job)

        state = self.store.get(address)
        return ActivitySnapshot(
            address=address,
            records=self.store.records(address),
            last_synced_at=state.last_synced_at,
            syncing=self.is_syncing(address),
            error=state.last_error,
        )

    async def aclose(self) -> None:
        jobs = list(self._jobs.values())
        for job in jobs:
            job.cancel()
        if jobs:
            await asyncio.gather(*jobs, return_exceptions=True)
        self._jobs.clear()
