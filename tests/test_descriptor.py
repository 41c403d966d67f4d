"""
Tests for descriptor parsing and the descriptor resolver.
"""

import pytest

from descwallet.constants import (
    P2PKH_INPUT_WEIGHT,
    P2SH_P2WPKH_INPUT_WEIGHT,
    P2WPKH_INPUT_WEIGHT,
)
from descwallet.errors import InvalidDescriptorError
from descwallet.models import AddressIndex, KeychainKind, Network
from descwallet.wallet.bip32 import HARDENED_OFFSET
from descwallet.wallet.descriptor import Descriptor, DescriptorResolver, descriptor_checksum
from tests.conftest import (
    EXTERNAL_DESCRIPTOR,
    INTERNAL_DESCRIPTOR,
    MAINNET_ROOT,
    TESTNET_ROOT,
)

BIP84_RECEIVE_0 = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
BIP84_CHANGE_0 = "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"


class TestDescriptorParsing:
    def test_bip84_receive_and_change(self):
        receive = Descriptor(f"wpkh({MAINNET_ROOT.to_string()}/84'/0'/0'/0/*)", Network.BITCOIN)
        change = Descriptor(f"wpkh({MAINNET_ROOT.to_string()}/84'/0'/0'/1/*)", Network.BITCOIN)
        assert receive.address_at(0) == BIP84_RECEIVE_0
        assert change.address_at(0) == BIP84_CHANGE_0

    def test_watch_only_xpub_with_origin(self):
        account = MAINNET_ROOT.derive("m/84'/0'/0'").neuter()
        desc = Descriptor(f"wpkh([73c5da0a/84'/0'/0']{account.to_string()}/0/*)", Network.BITCOIN)
        assert not desc.has_private_keys
        assert desc.is_ranged
        assert desc.address_at(0) == BIP84_RECEIVE_0

        derived = desc.derive(0)
        assert derived.private_key is None
        assert derived.origin.fingerprint.hex() == "73c5da0a"
        assert derived.origin.path == (
            84 + HARDENED_OFFSET,
            HARDENED_OFFSET,
            HARDENED_OFFSET,
            0,
            0,
        )

    def test_checksum_accepted_and_rendered(self):
        desc = Descriptor(EXTERNAL_DESCRIPTOR, Network.TESTNET)
        rendered = str(desc)
        body, checksum = rendered.split("#")
        assert len(checksum) == 8
        assert checksum == descriptor_checksum(body)
        assert Descriptor(rendered, Network.TESTNET).address_at(3) == desc.address_at(3)

    def test_checksum_mismatch(self):
        rendered = str(Descriptor(EXTERNAL_DESCRIPTOR, Network.TESTNET))
        tampered = rendered[:-1] + ("q" if rendered[-1] != "q" else "p")
        with pytest.raises(InvalidDescriptorError):
            Descriptor(tampered, Network.TESTNET)

    def test_sh_wpkh(self):
        desc = Descriptor(f"sh(wpkh({TESTNET_ROOT.to_string()}/49'/1'/0'/0/*))", Network.TESTNET)
        derived = desc.derive(0)
        assert derived.redeem_script is not None
        assert desc.address_at(0).startswith("2")
        assert desc.is_segwit
        assert desc.input_weight() == P2SH_P2WPKH_INPUT_WEIGHT

    def test_pkh(self):
        desc = Descriptor(f"pkh({TESTNET_ROOT.to_string()}/44'/1'/0'/0/*)", Network.TESTNET)
        assert desc.address_at(0)[0] in ("m", "n")
        assert not desc.is_segwit
        assert desc.input_weight() == P2PKH_INPUT_WEIGHT

    def test_single_key_is_not_ranged(self):
        pubkey = TESTNET_ROOT.derive("m/84'/1'/0'/0/0").get_public_key_bytes().hex()
        desc = Descriptor(f"wpkh({pubkey})", Network.TESTNET)
        assert not desc.is_ranged
        assert desc.address_at(0) == desc.address_at(17)
        assert desc.input_weight() == P2WPKH_INPUT_WEIGHT

    def test_addr_descriptor(self):
        address = Descriptor(EXTERNAL_DESCRIPTOR, Network.TESTNET).address_at(0)
        desc = Descriptor(f"addr({address})", Network.TESTNET)
        assert not desc.is_ranged
        assert desc.address_at(5) == address

    def test_raw_descriptor(self):
        desc = Descriptor("raw(0014" + "22" * 20 + ")", Network.TESTNET)
        assert desc.derive(0).script_pubkey == bytes.fromhex("0014" + "22" * 20)

    @pytest.mark.parametrize(
        "descriptor",
        [
            "tr(xyz)",
            "wpkh()",
            "sh(pkh(02" + "11" * 32 + "))",
            "wpkh(04" + "11" * 64 + ")",
            "raw(zz)",
        ],
    )
    def test_rejected(self, descriptor: str) -> None:
        with pytest.raises(InvalidDescriptorError):
            Descriptor(descriptor, Network.TESTNET)

    def test_mainnet_key_on_testnet(self):
        with pytest.raises(InvalidDescriptorError):
            Descriptor(f"wpkh({MAINNET_ROOT.to_string()}/0/*)", Network.TESTNET)

    def test_hardened_step_needs_private_key(self):
        xpub = TESTNET_ROOT.neuter().to_string()
        with pytest.raises(InvalidDescriptorError):
            Descriptor(f"wpkh({xpub}/0'/*)", Network.TESTNET)

    def test_wildcard_must_be_last(self):
        with pytest.raises(InvalidDescriptorError):
            Descriptor(f"wpkh({TESTNET_ROOT.to_string()}/*/0)", Network.TESTNET)


def make_resolver(used: set[bytes] | None = None) -> DescriptorResolver:
    used = used if used is not None else set()
    stored: dict[KeychainKind, int] = {}
    return DescriptorResolver(
        {
            KeychainKind.EXTERNAL: Descriptor(EXTERNAL_DESCRIPTOR, Network.TESTNET),
            KeychainKind.INTERNAL: Descriptor(INTERNAL_DESCRIPTOR, Network.TESTNET),
        },
        is_used=lambda script: script in used,
        load_index=stored.get,
        store_index=stored.__setitem__,
    )


class TestDescriptorResolver:
    def test_new_increments(self):
        resolver = make_resolver()
        first = resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW)
        second = resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW)
        assert (first.index, second.index) == (0, 1)
        assert first.address != second.address

    def test_last_unused_repeats_until_used(self):
        used: set[bytes] = set()
        resolver = make_resolver(used)
        first = resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.LAST_UNUSED)
        again = resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.LAST_UNUSED)
        assert first == again

        used.add(resolver.derive(KeychainKind.EXTERNAL, first.index).script_pubkey)
        after = resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.LAST_UNUSED)
        assert after.index == first.index + 1

    def test_peek_does_not_move_cursor(self):
        resolver = make_resolver()
        peeked = resolver.peek_address(KeychainKind.EXTERNAL, 7)
        assert peeked.index == 7
        assert resolver.current_index(KeychainKind.EXTERNAL) is None
        assert resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW).index == 0

    def test_keychains_are_independent(self):
        resolver = make_resolver()
        resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW)
        resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW)
        change = resolver.get_address(KeychainKind.INTERNAL, AddressIndex.NEW)
        assert change.index == 0
        assert change.keychain is KeychainKind.INTERNAL

    def test_mark_used_up_to_only_moves_forward(self):
        resolver = make_resolver()
        resolver.mark_used_up_to(KeychainKind.EXTERNAL, 4)
        resolver.mark_used_up_to(KeychainKind.EXTERNAL, 2)
        assert resolver.current_index(KeychainKind.EXTERNAL) == 4
        assert resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW).index == 5

    def test_cursor_persisted_through_callbacks(self):
        stored: dict[KeychainKind, int] = {}
        descriptors = {KeychainKind.EXTERNAL: Descriptor(EXTERNAL_DESCRIPTOR, Network.TESTNET)}
        resolver = DescriptorResolver(
            descriptors,
            is_used=lambda script: False,
            load_index=stored.get,
            store_index=stored.__setitem__,
        )
        resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW)
        resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW)
        assert stored[KeychainKind.EXTERNAL] == 1

        reloaded = DescriptorResolver(
            descriptors, is_used=lambda script: False, load_index=stored.get
        )
        assert reloaded.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW).index == 2

    def test_derivation_of(self):
        resolver = make_resolver()
        script = resolver.derive(KeychainKind.INTERNAL, 3).script_pubkey
        fresh = make_resolver()
        assert fresh.derivation_of(script) == (KeychainKind.INTERNAL, 3)
        assert fresh.is_mine(script)
        assert not fresh.is_mine(bytes([0x00, 0x14]) + b"\x11" * 20)

    def test_missing_change_descriptor_uses_external(self):
        descriptors = {KeychainKind.EXTERNAL: Descriptor(EXTERNAL_DESCRIPTOR, Network.TESTNET)}
        resolver = DescriptorResolver(descriptors, is_used=lambda script: False)
        change = resolver.derive(KeychainKind.INTERNAL, 0).script_pubkey
        assert change == resolver.derive(KeychainKind.EXTERNAL, 0).script_pubkey

    def test_non_derivable_always_index_zero(self):
        pubkey = TESTNET_ROOT.derive("m/84'/1'/0'/0/0").get_public_key_bytes().hex()
        resolver = DescriptorResolver(
            {KeychainKind.EXTERNAL: Descriptor(f"wpkh({pubkey})", Network.TESTNET)},
            is_used=lambda script: True,
        )
        assert resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW).index == 0
        assert resolver.get_address(KeychainKind.EXTERNAL, AddressIndex.NEW).index == 0
