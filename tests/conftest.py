"""
Shared fixtures: deterministic keys, an in-memory chain backend and helpers
to put transactions into a wallet's ledger.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Callable

import pytest

from descwallet.backends.base import BlockchainBackend, HistoryEntry
from descwallet.config import SyncParameters
from descwallet.models import (
    BlockTime,
    KeychainKind,
    LocalUtxo,
    Network,
    OutPoint,
    TransactionRecord,
    TxOut,
)
from descwallet.wallet.address import scriptpubkey_to_address
from descwallet.wallet.bip32 import HDKey, mnemonic_to_seed
from descwallet.wallet.service import Wallet
from descwallet.wallet.transaction import Transaction, TxIn

MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)

TESTNET_ROOT = HDKey.from_seed(mnemonic_to_seed(MNEMONIC), Network.TESTNET)
MAINNET_ROOT = HDKey.from_seed(mnemonic_to_seed(MNEMONIC), Network.BITCOIN)

EXTERNAL_DESCRIPTOR = f"wpkh({TESTNET_ROOT.to_string()}/84'/1'/0'/0/*)"
INTERNAL_DESCRIPTOR = f"wpkh({TESTNET_ROOT.to_string()}/84'/1'/0'/1/*)"

# A P2WPKH output nobody in the tests owns
FOREIGN_SCRIPT = bytes([0x00, 0x14]) + b"\x11" * 20
FOREIGN_ADDRESS = scriptpubkey_to_address(FOREIGN_SCRIPT, Network.TESTNET)

BLOCK_TIME_BASE = 1_600_000_000

_prevout_counter = itertools.count(1)


def foreign_outpoint() -> OutPoint:
    """A fresh outpoint that no wallet owns."""
    return OutPoint(f"{next(_prevout_counter):064x}", 0)


def make_tx(
    outputs: list[TxOut],
    inputs: list[OutPoint] | None = None,
    sequence: int = 0xFFFFFFFF,
) -> Transaction:
    prevouts = inputs if inputs is not None else [foreign_outpoint()]
    return Transaction(
        version=2,
        inputs=[TxIn(prevout=p, sequence=sequence) for p in prevouts],
        outputs=outputs,
    )


def apply_tx(wallet: Wallet, tx: Transaction, height: int | None = None) -> None:
    """Record a transaction in the wallet ledger as a sync would."""
    confirmation = BlockTime(height, BLOCK_TIME_BASE + height) if height is not None else None
    record = TransactionRecord(tx.txid, tx.serialize(), confirmation)
    owned = []
    for vout, out in enumerate(tx.outputs):
        found = wallet.resolver.derivation_of(out.script_pubkey)
        if found is not None:
            owned.append(LocalUtxo(OutPoint(tx.txid, vout), out, found[0]))
    wallet.ledger.reconcile([record], owned)


def fund(
    wallet: Wallet,
    value: int,
    keychain: KeychainKind = KeychainKind.EXTERNAL,
    index: int = 0,
    height: int | None = 100,
) -> LocalUtxo:
    """Pay value sats from a foreign input to one of the wallet's scripts."""
    script = wallet.resolver.derive(keychain, index).script_pubkey
    tx = make_tx([TxOut(value, script)])
    apply_tx(wallet, tx, height)
    return wallet.ledger.get(OutPoint(tx.txid, 0))


class FakeBackend(BlockchainBackend):
    """
    In-memory chain: transactions are indexed by the scripts they pay and the
    scripts of the outputs they spend, like an Electrum server does.
    """

    def __init__(self) -> None:
        self.transactions: dict[str, bytes] = {}
        self.heights: dict[str, int | None] = {}
        self.history: dict[bytes, list[str]] = {}
        self.output_scripts: dict[OutPoint, bytes] = {}
        self.broadcasts: list[str] = []
        self.tip = 1000

        self.history_calls = 0
        self.fail_history: int = 0
        self.history_error: Callable[[], Exception] = lambda: OSError("connection reset")
        self.history_delay = 0.0
        self.on_history: Callable[[bytes], None] | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    def add_transaction(self, tx: Transaction, height: int | None = None) -> str:
        txid = tx.txid
        self.transactions[txid] = tx.serialize()
        self.heights[txid] = height
        scripts = []
        for vout, out in enumerate(tx.outputs):
            self.output_scripts[OutPoint(txid, vout)] = out.script_pubkey
            scripts.append(out.script_pubkey)
        for txin in tx.inputs:
            script = self.output_scripts.get(txin.prevout)
            if script is not None:
                scripts.append(script)
        for script in scripts:
            entries = self.history.setdefault(script, [])
            if txid not in entries:
                entries.append(txid)
        return txid

    def remove_transaction(self, txid: str) -> None:
        self.transactions.pop(txid)
        self.heights.pop(txid)
        for entries in self.history.values():
            if txid in entries:
                entries.remove(txid)

    def confirm(self, txid: str, height: int) -> None:
        self.heights[txid] = height

    async def get_script_history(self, script_pubkey: bytes) -> list[HistoryEntry]:
        self.history_calls += 1
        if self.on_history is not None:
            self.on_history(script_pubkey)
        if self.fail_history > 0:
            self.fail_history -= 1
            raise self.history_error()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.history_delay:
                await asyncio.sleep(self.history_delay)
            return [
                HistoryEntry(txid=txid, height=self.heights[txid])
                for txid in self.history.get(script_pubkey, [])
            ]
        finally:
            self.in_flight -= 1

    async def get_raw_transaction(self, txid: str) -> bytes:
        return self.transactions[txid]

    async def get_block_time(self, block_height: int) -> int:
        return BLOCK_TIME_BASE + block_height

    async def get_block_height(self) -> int:
        return self.tip

    async def broadcast_transaction(self, tx_hex: str) -> str:
        tx = Transaction.from_hex(tx_hex)
        self.broadcasts.append(tx_hex)
        return self.add_transaction(tx)

    async def estimate_fee(self, target_blocks: int) -> float:
        return 2.0


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def sync_params() -> SyncParameters:
    return SyncParameters(stop_gap=5, retry=2, retry_base_delay=0.0)


@pytest.fixture
def wallet(backend: FakeBackend, sync_params: SyncParameters) -> Wallet:
    return Wallet(
        EXTERNAL_DESCRIPTOR,
        INTERNAL_DESCRIPTOR,
        network=Network.TESTNET,
        backend=backend,
        sync_params=sync_params,
    )
