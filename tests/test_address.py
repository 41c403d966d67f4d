"""
Tests for address and output script helpers.
"""

import pytest

from descwallet.models import Network
from descwallet.wallet.address import (
    ScriptType,
    address_to_scriptpubkey,
    classify_script,
    dust_threshold,
    op_return_script,
    p2pkh_script,
    p2sh_script,
    p2wpkh_script,
    push_data,
    scriptpubkey_to_address,
)

PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")


class TestScripts:
    def test_p2wpkh_script(self):
        script = p2wpkh_script(PUBKEY)
        assert script.hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"
        assert classify_script(script) is ScriptType.P2WPKH

    def test_p2wpkh_rejects_uncompressed(self):
        with pytest.raises(ValueError):
            p2wpkh_script(b"\x04" + b"\x00" * 64)

    def test_p2pkh_script(self):
        script = p2pkh_script(PUBKEY)
        assert script.hex() == "76a914751e76e8199196d454941c45d1b3a323f1433bd688ac"
        assert classify_script(script) is ScriptType.P2PKH

    def test_p2sh_script(self):
        script = p2sh_script(p2wpkh_script(PUBKEY))
        assert len(script) == 23
        assert classify_script(script) is ScriptType.P2SH

    def test_op_return(self):
        script = op_return_script(b"hello")
        assert script == b"\x6a\x05hello"
        assert classify_script(script) is ScriptType.OP_RETURN

    def test_push_data_pushdata1(self):
        assert push_data(b"\x01" * 80)[:2] == bytes([0x4C, 80])

    def test_unknown_script(self):
        assert classify_script(b"\x51") is ScriptType.UNKNOWN


class TestAddresses:
    def test_mainnet_p2wpkh(self):
        script = p2wpkh_script(PUBKEY)
        address = scriptpubkey_to_address(script, Network.BITCOIN)
        assert address == "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4"
        assert address_to_scriptpubkey(address) == script

    def test_mainnet_p2pkh(self):
        script = p2pkh_script(PUBKEY)
        address = scriptpubkey_to_address(script, Network.BITCOIN)
        assert address == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"
        assert address_to_scriptpubkey(address, Network.BITCOIN) == script

    def test_testnet_and_regtest_hrp(self):
        script = p2wpkh_script(PUBKEY)
        assert scriptpubkey_to_address(script, Network.TESTNET).startswith("tb1q")
        assert scriptpubkey_to_address(script, Network.SIGNET).startswith("tb1q")
        assert scriptpubkey_to_address(script, Network.REGTEST).startswith("bcrt1q")

    def test_testnet_p2sh_prefix(self):
        script = p2sh_script(p2wpkh_script(PUBKEY))
        address = scriptpubkey_to_address(script, Network.TESTNET)
        assert address.startswith("2")
        assert address_to_scriptpubkey(address, Network.TESTNET) == script

    def test_wrong_network_rejected(self):
        with pytest.raises(ValueError):
            address_to_scriptpubkey("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", Network.TESTNET)

    def test_bad_checksum_rejected(self):
        with pytest.raises(ValueError):
            address_to_scriptpubkey("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t5")

    def test_unsupported_script(self):
        with pytest.raises(ValueError):
            scriptpubkey_to_address(op_return_script(b"x"), Network.BITCOIN)


class TestDustThreshold:
    @pytest.mark.parametrize(
        ("script", "threshold"),
        [
            (p2pkh_script(PUBKEY), 546),
            (p2sh_script(b"\x51"), 540),
            (p2wpkh_script(PUBKEY), 294),
            (bytes([0x00, 0x20]) + b"\x00" * 32, 330),
            (bytes([0x51, 0x20]) + b"\x00" * 32, 330),
            (op_return_script(b"data"), 0),
        ],
    )
    def test_core_thresholds(self, script: bytes, threshold: int) -> None:
        assert dust_threshold(script) == threshold
