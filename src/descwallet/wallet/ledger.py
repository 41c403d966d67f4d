"""
UTXO ledger: the wallet's view of its own outputs and transactions.

All mutation happens under a re-entrant lock. Readers that need several
consistent lookups take a snapshot instead of holding the lock.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from loguru import logger

from descwallet.models import (
    Balance,
    LocalUtxo,
    OutPoint,
    TransactionDetails,
    TransactionRecord,
)
from descwallet.wallet.database import Database, MemoryDatabase
from descwallet.wallet.transaction import Transaction


@dataclass(frozen=True)
class LedgerSnapshot:
    """Point-in-time copy of the ledger."""

    utxos: dict[OutPoint, LocalUtxo] = field(default_factory=dict)
    transactions: dict[str, TransactionRecord] = field(default_factory=dict)

    def list_unspent(self) -> list[LocalUtxo]:
        return sorted(
            (u for u in self.utxos.values() if not u.is_spent), key=lambda u: u.outpoint
        )

    def get(self, outpoint: OutPoint) -> LocalUtxo | None:
        return self.utxos.get(outpoint)


class Ledger:
    """Owned outputs keyed by outpoint, plus the transactions that touch them."""

    def __init__(self, database: Database | None = None):
        self._lock = threading.RLock()
        self._db = database if database is not None else MemoryDatabase()

        self._utxos: dict[OutPoint, LocalUtxo] = {}
        self._transactions: dict[str, TransactionRecord] = {}
        self._parsed: dict[str, Transaction] = {}
        # outpoint -> txid of the stored transaction that spends it
        self._spent_by: dict[OutPoint, str] = {}

        for utxo in self._db.load_utxos():
            self._utxos[utxo.outpoint] = utxo
        for record in self._db.load_transactions():
            self._index_transaction(record)
        logger.debug(
            f"Ledger loaded {len(self._utxos)} outputs, {len(self._transactions)} transactions"
        )

    @property
    def database(self) -> Database:
        return self._db

    def _index_transaction(self, record: TransactionRecord) -> Transaction:
        tx = Transaction.parse(record.raw)
        self._transactions[record.txid] = record
        self._parsed[record.txid] = tx
        for txin in tx.inputs:
            self._spent_by[txin.prevout] = record.txid
        return tx

    # UTXO operations

    def insert(self, utxo: LocalUtxo) -> None:
        """Add or replace an output; outputs spent by a known transaction stay spent."""
        with self._lock:
            if utxo.outpoint in self._spent_by and not utxo.is_spent:
                utxo = replace(utxo, is_spent=True)
            self._utxos[utxo.outpoint] = utxo
            self._db.write_batch(utxos=[utxo])

    def mark_spent(self, outpoint: OutPoint) -> bool:
        with self._lock:
            utxo = self._utxos.get(outpoint)
            if utxo is None:
                logger.warning(f"mark_spent: outpoint {outpoint} is not in the ledger")
                return False
            if not utxo.is_spent:
                utxo = replace(utxo, is_spent=True)
                self._utxos[outpoint] = utxo
                self._db.write_batch(utxos=[utxo])
            return True

    def get(self, outpoint: OutPoint) -> LocalUtxo | None:
        with self._lock:
            return self._utxos.get(outpoint)

    def list(self) -> set[LocalUtxo]:
        with self._lock:
            return set(self._utxos.values())

    def list_unspent(self) -> list[LocalUtxo]:
        with self._lock:
            return sorted(
                (u for u in self._utxos.values() if not u.is_spent), key=lambda u: u.outpoint
            )

    def balance(self) -> int:
        """Sum of all unspent outputs across both keychains."""
        with self._lock:
            return sum(u.value for u in self._utxos.values() if not u.is_spent)

    def balance_details(self) -> Balance:
        confirmed = unconfirmed = 0
        with self._lock:
            for utxo in self._utxos.values():
                if utxo.is_spent:
                    continue
                record = self._transactions.get(utxo.outpoint.txid)
                if record is not None and record.is_confirmed:
                    confirmed += utxo.value
                else:
                    unconfirmed += utxo.value
        return Balance(confirmed=confirmed, unconfirmed=unconfirmed)

    def is_used(self, script_pubkey: bytes) -> bool:
        """True if any transaction paid to this script."""
        with self._lock:
            return any(u.txout.script_pubkey == script_pubkey for u in self._utxos.values())

    # Transaction records

    def add_transaction(self, record: TransactionRecord) -> None:
        self.reconcile([record], [])

    def get_transaction(self, txid: str) -> TransactionRecord | None:
        with self._lock:
            return self._transactions.get(txid)

    def get_parsed_transaction(self, txid: str) -> Transaction | None:
        with self._lock:
            return self._parsed.get(txid)

    def list_transactions(self) -> list[TransactionRecord]:
        with self._lock:
            return list(self._transactions.values())

    def descendants(self, txid: str) -> set[str]:
        """Stored transactions that spend outputs of txid, directly or through others."""
        found: set[str] = set()
        with self._lock:
            pending = [txid]
            while pending:
                parent = self._parsed.get(pending.pop())
                if parent is None:
                    continue
                for vout in range(len(parent.outputs)):
                    child = self._spent_by.get(OutPoint(parent.txid, vout))
                    if child is not None and child != txid and child not in found:
                        found.add(child)
                        pending.append(child)
        return found

    def remove_transaction(self, txid: str) -> bool:
        return self.remove_transactions([txid]) > 0

    def remove_transactions(self, txids: Iterable[str]) -> int:
        """
        Forget transactions and revert their effects: outputs they created are
        deleted and outputs they spent become spendable again.
        """
        removed = 0
        with self._lock:
            deleted_utxos: list[OutPoint] = []
            restored: list[LocalUtxo] = []
            deleted_txids: list[str] = []
            for txid in txids:
                record = self._transactions.pop(txid, None)
                if record is None:
                    continue
                tx = self._parsed.pop(txid)
                removed += 1
                deleted_txids.append(txid)

                for vout in range(len(tx.outputs)):
                    outpoint = OutPoint(txid, vout)
                    if self._utxos.pop(outpoint, None) is not None:
                        deleted_utxos.append(outpoint)
                for txin in tx.inputs:
                    if self._spent_by.get(txin.prevout) != txid:
                        continue
                    del self._spent_by[txin.prevout]
                    utxo = self._utxos.get(txin.prevout)
                    if utxo is not None and utxo.is_spent:
                        utxo = replace(utxo, is_spent=False)
                        self._utxos[txin.prevout] = utxo
                        restored.append(utxo)
                logger.info(f"Removed transaction {txid} from the ledger")

            if removed:
                self._db.write_batch(
                    utxos=restored,
                    deleted_utxos=deleted_utxos,
                    deleted_transactions=deleted_txids,
                )
        return removed

    def reconcile(self, records: Iterable[TransactionRecord], owned: Iterable[LocalUtxo]) -> int:
        """
        Merge chain data into the ledger as one database transaction.

        records are wallet transactions (new or with refreshed confirmation
        data); owned are the outputs of those transactions that pay the
        wallet. Returns the number of changed entries; unchanged data is not
        rewritten.
        """
        with self._lock:
            changed_records: list[TransactionRecord] = []
            changed_utxos: dict[OutPoint, LocalUtxo] = {}

            for record in records:
                existing = self._transactions.get(record.txid)
                if existing == record:
                    continue
                if existing is not None and existing.raw == record.raw:
                    self._transactions[record.txid] = record
                else:
                    tx = self._index_transaction(record)
                    for txin in tx.inputs:
                        utxo = self._utxos.get(txin.prevout)
                        if utxo is not None and not utxo.is_spent:
                            utxo = replace(utxo, is_spent=True)
                            self._utxos[txin.prevout] = utxo
                            changed_utxos[txin.prevout] = utxo
                changed_records.append(record)

            for utxo in owned:
                if utxo.outpoint in self._spent_by and not utxo.is_spent:
                    utxo = replace(utxo, is_spent=True)
                existing_utxo = self._utxos.get(utxo.outpoint)
                if existing_utxo is not None:
                    # Spent state is derived from the transaction index
                    utxo = replace(utxo, is_spent=utxo.is_spent or existing_utxo.is_spent)
                if existing_utxo == utxo:
                    continue
                self._utxos[utxo.outpoint] = utxo
                changed_utxos[utxo.outpoint] = utxo

            if changed_records or changed_utxos:
                self._db.write_batch(
                    utxos=changed_utxos.values(), transactions=changed_records
                )
            return len(changed_records) + len(changed_utxos)

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            return LedgerSnapshot(utxos=dict(self._utxos), transactions=dict(self._transactions))

    def prevout_value(self, outpoint: OutPoint) -> int | None:
        """Value of any output we know about, owned or not."""
        with self._lock:
            utxo = self._utxos.get(outpoint)
            if utxo is not None:
                return utxo.value
            tx = self._parsed.get(outpoint.txid)
            if tx is not None and outpoint.vout < len(tx.outputs):
                return tx.outputs[outpoint.vout].value
            return None

    def details(self, txid: str) -> TransactionDetails | None:
        """Wallet-relative sent/received/fee for a stored transaction."""
        with self._lock:
            tx = self._parsed.get(txid)
            if tx is None:
                return None
            sent = 0
            input_total = 0
            fee_known = True
            for txin in tx.inputs:
                utxo = self._utxos.get(txin.prevout)
                if utxo is not None:
                    sent += utxo.value
                value = self.prevout_value(txin.prevout)
                if value is None:
                    fee_known = False
                else:
                    input_total += value
            received = sum(
                u.value for op, u in self._utxos.items() if op.txid == txid
            )
            fee = input_total - sum(o.value for o in tx.outputs) if fee_known else None
            return TransactionDetails(txid=txid, sent=sent, received=received, fee=fee)

    def close(self) -> None:
        self._db.close()
