"""
Chain synchronization.

Each keychain is scanned in batches of derived scripts until ``stop_gap``
consecutive scripts without history have been seen. A batch is never larger
than the remaining gap, so at most ``stop_gap`` unused scripts past the last
used one are ever derived.

Backend calls run with bounded parallelism, are retried with exponential
backoff and a per-call timeout, and each batch is reconciled into the ledger
in one step. Progress reports are delivered to the observer from a separate
task so a slow observer never stalls the scan.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

import httpx
from loguru import logger

from descwallet.backends.base import BackendError, BlockchainBackend, HistoryEntry
from descwallet.config import SyncParameters
from descwallet.errors import NetworkFailureError
from descwallet.models import BlockTime, KeychainKind, LocalUtxo, OutPoint, TransactionRecord
from descwallet.wallet.descriptor import DescriptorResolver
from descwallet.wallet.ledger import Ledger
from descwallet.wallet.transaction import Transaction

T = TypeVar("T")

ProgressCallback = Callable[[float, str | None], None]

# Failures worth another attempt
RETRYABLE_ERRORS = (httpx.HTTPError, OSError, asyncio.TimeoutError, BackendError)

# Upper bound on waiting for a slow progress observer after the scan finished
PROGRESS_DRAIN_TIMEOUT = 5.0


class SyncState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    RECONCILING = "reconciling"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    last_used: dict[KeychainKind, int | None] = field(default_factory=dict)
    scanned: dict[KeychainKind, int] = field(default_factory=dict)
    changes: int = 0
    removed: int = 0
    cancelled: bool = False


class _ProgressPump:
    """Queue of progress updates drained by a background task."""

    def __init__(self, callback: ProgressCallback | None):
        self._callback = callback
        self._queue: asyncio.Queue[tuple[float, str | None] | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        if callback is not None:
            self._task = asyncio.create_task(self._run())
        self._last_percent = 0.0

    def report(self, percent: float, message: str | None = None) -> None:
        if self._task is None:
            return
        # Never report going backwards
        percent = min(max(percent, self._last_percent), 100.0)
        self._last_percent = percent
        self._queue.put_nowait((percent, message))

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            try:
                await asyncio.to_thread(self._callback, *item)
            except Exception as e:
                logger.warning(f"Progress observer raised {type(e).__name__}: {e}")

    async def close(self) -> None:
        if self._task is None:
            return
        self._queue.put_nowait(None)
        try:
            await asyncio.wait_for(self._task, timeout=PROGRESS_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Progress observer too slow, dropped remaining updates")


class SyncEngine:
    """Reconciles the ledger against a chain backend."""

    def __init__(
        self,
        backend: BlockchainBackend,
        ledger: Ledger,
        resolver: DescriptorResolver,
        params: SyncParameters | None = None,
        cancel_event: asyncio.Event | None = None,
    ):
        self.backend = backend
        self.ledger = ledger
        self.resolver = resolver
        self.params = params or SyncParameters()
        self.cancel_event = cancel_event or asyncio.Event()
        self.state = SyncState.IDLE
        self.position: tuple[KeychainKind, int] | None = None

        self._semaphore = asyncio.Semaphore(self.params.concurrency)
        self._seen_txids: set[str] = set()

    def cancel(self) -> None:
        self.cancel_event.set()

    async def _call(self, description: str, func: Callable[..., Awaitable[T]], *args: Any) -> T:
        """Run a backend call with bounded parallelism, timeout and retries."""
        last_error: BaseException | None = None
        attempts = self.params.retry + 1
        for attempt in range(attempts):
            try:
                async with self._semaphore:
                    if self.params.timeout is not None:
                        return await asyncio.wait_for(func(*args), timeout=self.params.timeout)
                    return await func(*args)
            except RETRYABLE_ERRORS as e:
                last_error = e
                if attempt + 1 >= attempts:
                    break
                base = self.params.retry_base_delay
                delay = base * (2**attempt) + random.uniform(0, base)
                logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{attempts}): "
                    f"{type(e).__name__}: {e}, retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise NetworkFailureError(
            f"{description} failed after {attempts} attempts: {last_error}",
            retries_exhausted=True,
        ) from last_error

    async def _gather(self, coros: Iterable[Awaitable[T]]) -> list[T]:
        """gather() that cancels the remaining calls when one of them fails."""
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def sync(self, progress: ProgressCallback | None = None) -> SyncResult:
        pump = _ProgressPump(progress)
        result = SyncResult()
        self._seen_txids = set()
        keychains = self.resolver.keychains()
        try:
            for position, keychain in enumerate(keychains):
                if self.cancel_event.is_set():
                    break

                def report(fraction: float, message: str | None, _pos: int = position) -> None:
                    pump.report((_pos + fraction) / len(keychains) * 100.0, message)

                await self._sync_keychain(keychain, result, report)

            if self.cancel_event.is_set():
                result.cancelled = True
                self.state = SyncState.CANCELLED
                logger.info("Sync cancelled, keeping already reconciled batches")
            else:
                self.state = SyncState.RECONCILING
                result.removed = self._remove_vanished()
                self.state = SyncState.IDLE
                pump.report(100.0, "Sync complete")
                logger.info(
                    f"Sync complete: {result.changes} ledger changes, "
                    f"{result.removed} transactions removed, balance {self.ledger.balance()} sats"
                )
        except NetworkFailureError:
            self.state = SyncState.FAILED
            raise
        finally:
            self.position = None
            self.cancel_event.clear()
            await pump.close()

        return result

    async def _sync_keychain(
        self,
        keychain: KeychainKind,
        result: SyncResult,
        report: Callable[[float, str | None], None],
    ) -> None:
        stop_gap = self.params.stop_gap
        if not self.resolver.is_derivable(keychain):
            stop_gap = 1

        index = 0
        unused_run = 0
        last_used: int | None = None

        while unused_run < stop_gap:
            if self.cancel_event.is_set():
                break

            batch_size = stop_gap - unused_run
            self.state = SyncState.SCANNING
            self.position = (keychain, index)
            scripts = [
                self.resolver.derive(keychain, i).script_pubkey
                for i in range(index, index + batch_size)
            ]
            histories = await self._gather(
                self._call("script history", self.backend.get_script_history, script)
                for script in scripts
            )

            batch_entries: dict[str, HistoryEntry] = {}
            for offset, history in enumerate(histories):
                if history:
                    last_used = index + offset
                    unused_run = 0
                    for entry in history:
                        batch_entries[entry.txid] = entry
                else:
                    unused_run += 1

            self.state = SyncState.RECONCILING
            result.changes += await self._reconcile(batch_entries)

            index += batch_size
            expected = (last_used + 1 if last_used is not None else 0) + stop_gap
            report(
                min(index / expected, 1.0),
                f"Scanned {keychain.value} scripts up to index {index - 1}",
            )
            logger.debug(
                f"Synced {keychain.value} batch ending at {index - 1}: "
                f"{len(batch_entries)} transactions, last used {last_used}"
            )

        result.last_used[keychain] = last_used
        result.scanned[keychain] = index
        if last_used is not None:
            self.resolver.mark_used_up_to(keychain, last_used)

    async def _reconcile(self, entries: dict[str, HistoryEntry]) -> int:
        """Fetch what is missing for a batch and merge it into the ledger."""
        new_entries = {txid: e for txid, e in entries.items() if txid not in self._seen_txids}
        self._seen_txids.update(entries)
        if not new_entries:
            return 0

        records = await self._gather(self._fetch_record(e) for e in new_entries.values())

        owned: list[LocalUtxo] = []
        for record in records:
            tx = Transaction.parse(record.raw)
            for vout, txout in enumerate(tx.outputs):
                found = self.resolver.derivation_of(txout.script_pubkey)
                if found is None:
                    continue
                owned.append(
                    LocalUtxo(outpoint=OutPoint(record.txid, vout), txout=txout, keychain=found[0])
                )

        return self.ledger.reconcile(records, owned)

    async def _fetch_record(self, entry: HistoryEntry) -> TransactionRecord:
        existing = self.ledger.get_transaction(entry.txid)
        if existing is not None:
            raw = existing.raw
        else:
            raw = await self._call(
                f"transaction {entry.txid}", self.backend.get_raw_transaction, entry.txid
            )

        confirmation = None
        if entry.height is not None:
            if existing is not None and existing.confirmation_time is not None and (
                existing.confirmation_time.height == entry.height
            ):
                confirmation = existing.confirmation_time
            else:
                timestamp = entry.timestamp
                if timestamp is None:
                    timestamp = await self._call(
                        f"block {entry.height}", self.backend.get_block_time, entry.height
                    )
                confirmation = BlockTime(height=entry.height, timestamp=timestamp)

        return TransactionRecord(txid=entry.txid, raw=raw, confirmation_time=confirmation)

    def _remove_vanished(self) -> int:
        """Drop unconfirmed transactions the chain source no longer knows."""
        vanished = [
            record.txid
            for record in self.ledger.list_transactions()
            if not record.is_confirmed and record.txid not in self._seen_txids
        ]
        if not vanished:
            return 0
        logger.info(f"Removing {len(vanished)} unconfirmed transactions no longer on chain")
        return self.ledger.remove_transactions(vanished)
