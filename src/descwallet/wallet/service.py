"""
Descriptor wallet service.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from descwallet.backends import create_backend
from descwallet.backends.base import BlockchainBackend
from descwallet.config import DatabaseConfig, MemoryConfig, SyncParameters, WalletSettings
from descwallet.errors import InvalidDescriptorError, WalletError
from descwallet.models import (
    AddressIndex,
    AddressInfo,
    Balance,
    Confirmed,
    KeychainKind,
    LocalUtxo,
    Network,
    TransactionStatus,
    Unconfirmed,
)
from descwallet.wallet.database import open_database
from descwallet.wallet.descriptor import Descriptor, DescriptorResolver
from descwallet.wallet.fee_bump import build_fee_bump
from descwallet.wallet.ledger import Ledger
from descwallet.wallet.psbt import PSBT
from descwallet.wallet.signing import Signer
from descwallet.wallet.sync import ProgressCallback, SyncEngine, SyncResult, SyncState
from descwallet.wallet.tx_builder import TxBuilder, TxBuilderResult


class Wallet:
    """
    Descriptor wallet.

    Owns one ledger and one descriptor resolver. Network-facing operations
    (sync, broadcast) are coroutines; building and signing are synchronous
    and work on a snapshot of the ledger.
    """

    def __init__(
        self,
        descriptor: str,
        change_descriptor: str | None = None,
        network: Network = Network.TESTNET,
        database_config: DatabaseConfig | None = None,
        backend: BlockchainBackend | None = None,
        sync_params: SyncParameters | None = None,
    ):
        self.network = network
        descriptors = {KeychainKind.EXTERNAL: Descriptor(descriptor, network)}
        if change_descriptor is not None:
            internal = Descriptor(change_descriptor, network)
            if internal.body == descriptors[KeychainKind.EXTERNAL].body:
                raise InvalidDescriptorError("External and internal descriptors are the same")
            descriptors[KeychainKind.INTERNAL] = internal

        self.database = open_database(database_config or MemoryConfig())
        self.ledger = Ledger(self.database)
        self.resolver = DescriptorResolver(
            descriptors,
            is_used=self.ledger.is_used,
            load_index=self.database.load_last_index,
            store_index=self.database.store_last_index,
        )
        self.signer = Signer(self.resolver)
        self.backend = backend
        self.sync_params = sync_params or SyncParameters()

        self._sync_lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()
        self._engine: SyncEngine | None = None

        watch_only = not any(d.has_private_keys for d in descriptors.values())
        logger.info(
            f"Initialized {network.value} wallet"
            f" ({'watch-only, ' if watch_only else ''}{len(descriptors)} keychains)"
        )

    @classmethod
    def from_settings(cls, settings: WalletSettings) -> Wallet:
        if not settings.descriptor:
            raise InvalidDescriptorError("No descriptor configured")
        backend = None
        sync_params = None
        if settings.blockchain is not None:
            backend = create_backend(settings.blockchain)
            sync_params = SyncParameters.from_config(settings.blockchain)
        return cls(
            settings.descriptor,
            settings.change_descriptor,
            network=settings.network,
            database_config=settings.database,
            backend=backend,
            sync_params=sync_params,
        )

    # Addresses

    def get_address(self, address_index: AddressIndex = AddressIndex.NEW) -> AddressInfo:
        return self.resolver.get_address(KeychainKind.EXTERNAL, address_index)

    def get_internal_address(self, address_index: AddressIndex = AddressIndex.NEW) -> AddressInfo:
        return self.resolver.get_address(KeychainKind.INTERNAL, address_index)

    def peek_address(
        self, index: int, keychain: KeychainKind = KeychainKind.EXTERNAL
    ) -> AddressInfo:
        return self.resolver.peek_address(keychain, index)

    def is_mine(self, script_pubkey: bytes) -> bool:
        return self.resolver.is_mine(script_pubkey)

    def get_descriptor(self, keychain: KeychainKind = KeychainKind.EXTERNAL) -> str:
        return str(self.resolver.descriptor_for(keychain))

    # Ledger views

    def balance(self) -> int:
        return self.ledger.balance()

    def get_balance(self) -> Balance:
        return self.ledger.balance_details()

    def list_unspent(self) -> list[LocalUtxo]:
        return self.ledger.list_unspent()

    def get_transaction(self, txid: str) -> TransactionStatus | None:
        record = self.ledger.get_transaction(txid)
        details = self.ledger.details(txid)
        if record is None or details is None:
            return None
        if record.confirmation_time is not None:
            return Confirmed(details=details, confirmation_time=record.confirmation_time)
        return Unconfirmed(details=details)

    def list_transactions(self) -> list[TransactionStatus]:
        statuses = []
        for record in self.ledger.list_transactions():
            status = self.get_transaction(record.txid)
            if status is not None:
                statuses.append(status)
        # Unconfirmed first, then newest blocks first
        statuses.sort(
            key=lambda s: (
                isinstance(s, Confirmed),
                -s.confirmation_time.height if isinstance(s, Confirmed) else 0,
                s.details.txid,
            )
        )
        return statuses

    # Sync

    @property
    def sync_state(self) -> SyncState:
        return self._engine.state if self._engine is not None else SyncState.IDLE

    async def sync(
        self,
        progress: ProgressCallback | None = None,
        backend: BlockchainBackend | None = None,
    ) -> SyncResult:
        backend = backend or self.backend
        if backend is None:
            raise WalletError("No blockchain backend configured")
        async with self._sync_lock:
            self._engine = SyncEngine(
                backend,
                self.ledger,
                self.resolver,
                self.sync_params,
                cancel_event=self._cancel_event,
            )
            try:
                return await self._engine.sync(progress)
            finally:
                self._engine = None

    def cancel_sync(self) -> None:
        """Ask a running sync to stop after its current batch."""
        if self._engine is not None:
            self._engine.cancel()

    # Spending

    def build_tx(self) -> TxBuilder:
        return TxBuilder()

    def build_fee_bump(
        self,
        txid: str,
        fee_rate: float,
        allow_shrinking: str | None = None,
        sequence: int | None = None,
    ) -> TxBuilderResult:
        return build_fee_bump(
            self, txid, fee_rate, allow_shrinking=allow_shrinking, sequence=sequence
        )

    def sign(self, psbt: PSBT) -> bool:
        return self.signer.sign(psbt)

    async def broadcast(self, psbt: PSBT, backend: BlockchainBackend | None = None) -> str:
        backend = backend or self.backend
        if backend is None:
            raise WalletError("No blockchain backend configured")
        tx = psbt.extract_tx()
        return await backend.broadcast_transaction(tx.to_hex())

    async def close(self) -> None:
        if self.backend is not None:
            await self.backend.close()
        self.ledger.close()
