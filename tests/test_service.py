"""
Tests for the Wallet facade.
"""

from pathlib import Path

import pytest

from descwallet.backends.esplora import EsploraBackend
from descwallet.config import EsploraConfig, SqliteConfig, WalletSettings
from descwallet.errors import InvalidDescriptorError, SigningIncompleteError, WalletError
from descwallet.models import AddressIndex, Confirmed, KeychainKind, Network, TxOut, Unconfirmed
from descwallet.wallet.descriptor import descriptor_checksum
from descwallet.wallet.service import Wallet
from descwallet.wallet.sync import SyncState
from tests.conftest import (
    EXTERNAL_DESCRIPTOR,
    FOREIGN_ADDRESS,
    INTERNAL_DESCRIPTOR,
    FakeBackend,
    apply_tx,
    fund,
    make_tx,
)


class TestWalletSetup:
    def test_identical_descriptors_rejected(self):
        with pytest.raises(InvalidDescriptorError):
            Wallet(EXTERNAL_DESCRIPTOR, EXTERNAL_DESCRIPTOR, network=Network.TESTNET)

    def test_descriptor_with_checksum(self, wallet: Wallet) -> None:
        rendered = wallet.get_descriptor()
        body, _, checksum = rendered.partition("#")
        assert checksum == descriptor_checksum(body)
        assert wallet.get_descriptor(KeychainKind.INTERNAL) != rendered

    def test_from_settings(self):
        settings = WalletSettings(
            descriptor=EXTERNAL_DESCRIPTOR,
            change_descriptor=INTERNAL_DESCRIPTOR,
            network=Network.TESTNET,
            blockchain=EsploraConfig(base_url="https://blockstream.info/testnet/api", stop_gap=7),
        )
        wallet = Wallet.from_settings(settings)
        assert isinstance(wallet.backend, EsploraBackend)
        assert wallet.sync_params.stop_gap == 7

    def test_from_settings_without_descriptor(self):
        with pytest.raises(InvalidDescriptorError):
            Wallet.from_settings(WalletSettings(descriptor=""))

    def test_initial_state(self, wallet: Wallet) -> None:
        assert wallet.balance() == 0
        assert wallet.list_unspent() == []
        assert wallet.list_transactions() == []
        assert wallet.sync_state is SyncState.IDLE


class TestAddresses:
    def test_new_addresses_are_sequential(self, wallet: Wallet) -> None:
        assert wallet.get_address().index == 0
        assert wallet.get_address().index == 1
        assert wallet.get_address(AddressIndex.NEW).index == 2

    def test_last_unused_repeats_until_used(self, wallet: Wallet) -> None:
        first = wallet.get_address(AddressIndex.LAST_UNUSED)
        assert wallet.get_address(AddressIndex.LAST_UNUSED) == first

        fund(wallet, 10_000, index=first.index)
        following = wallet.get_address(AddressIndex.LAST_UNUSED)
        assert following.index == first.index + 1

    def test_peek_does_not_reveal(self, wallet: Wallet) -> None:
        peeked = wallet.peek_address(5)
        assert peeked.index == 5
        assert wallet.resolver.current_index(KeychainKind.EXTERNAL) is None
        assert wallet.get_address().address != peeked.address

    def test_internal_addresses(self, wallet: Wallet) -> None:
        change = wallet.get_internal_address()
        assert change.keychain is KeychainKind.INTERNAL
        assert change.address != wallet.peek_address(0).address
        assert change.address.startswith("tb1q")

    def test_is_mine(self, wallet: Wallet) -> None:
        assert wallet.is_mine(wallet.resolver.derive(KeychainKind.INTERNAL, 3).script_pubkey)
        assert not wallet.is_mine(bytes([0x00, 0x14]) + b"\x11" * 20)

    def test_index_persisted(self, tmp_path: Path) -> None:
        config = SqliteConfig(path=str(tmp_path / "wallet.sqlite"))
        first = Wallet(
            EXTERNAL_DESCRIPTOR, INTERNAL_DESCRIPTOR, Network.TESTNET, database_config=config
        )
        first.get_address()
        first.get_address()
        first.ledger.close()

        reopened = Wallet(
            EXTERNAL_DESCRIPTOR, INTERNAL_DESCRIPTOR, Network.TESTNET, database_config=config
        )
        assert reopened.get_address().index == 2
        reopened.ledger.close()


class TestTransactions:
    def test_list_transactions_order(self, wallet: Wallet) -> None:
        script = wallet.resolver.derive(KeychainKind.EXTERNAL, 0).script_pubkey
        old = make_tx([TxOut(1_000, script)])
        new = make_tx([TxOut(2_000, script)])
        pending = make_tx([TxOut(3_000, script)])
        apply_tx(wallet, old, height=10)
        apply_tx(wallet, pending)
        apply_tx(wallet, new, height=20)

        statuses = wallet.list_transactions()

        assert [s.details.txid for s in statuses] == [pending.txid, new.txid, old.txid]
        assert isinstance(statuses[0], Unconfirmed)
        assert isinstance(statuses[1], Confirmed)

    def test_get_transaction_unknown(self, wallet: Wallet) -> None:
        assert wallet.get_transaction("00" * 32) is None

    def test_balance_split(self, wallet: Wallet) -> None:
        fund(wallet, 10_000, index=0)
        fund(wallet, 5_000, index=1, height=None)
        balance = wallet.get_balance()
        assert (balance.confirmed, balance.unconfirmed, balance.total) == (10_000, 5_000, 15_000)


class TestBroadcast:
    @pytest.mark.asyncio
    async def test_broadcast(self, wallet: Wallet, backend: FakeBackend) -> None:
        fund(wallet, 100_000)
        psbt = wallet.build_tx().add_recipient(FOREIGN_ADDRESS, 50_000).finish(wallet).psbt
        wallet.sign(psbt)
        txid = await wallet.broadcast(psbt)
        assert txid == psbt.txid()
        assert txid in backend.transactions

    @pytest.mark.asyncio
    async def test_broadcast_unsigned(self, wallet: Wallet) -> None:
        fund(wallet, 100_000)
        psbt = wallet.build_tx().add_recipient(FOREIGN_ADDRESS, 50_000).finish(wallet).psbt
        with pytest.raises(SigningIncompleteError):
            await wallet.broadcast(psbt)

    @pytest.mark.asyncio
    async def test_broadcast_without_backend(self):
        wallet = Wallet(EXTERNAL_DESCRIPTOR, network=Network.TESTNET)
        fund(wallet, 100_000)
        psbt = wallet.build_tx().add_recipient(FOREIGN_ADDRESS, 50_000).finish(wallet).psbt
        wallet.sign(psbt)
        with pytest.raises(WalletError):
            await wallet.broadcast(psbt)

    @pytest.mark.asyncio
    async def test_close(self, wallet: Wallet) -> None:
        await wallet.close()
