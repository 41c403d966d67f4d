"""
Bitcoin address and output script utilities.
"""

from __future__ import annotations

import hashlib
from enum import Enum

import base58
import bech32

from descwallet.constants import (
    DUST_RELAY_FEE,
    DUST_SPEND_SIZE_LEGACY,
    DUST_SPEND_SIZE_WITNESS,
)
from descwallet.models import Network

OP_0 = 0x00
OP_1 = 0x51
OP_RETURN = 0x6A
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_PUSHDATA1 = 0x4C

_P2PKH_PREFIX = bytes([OP_DUP, OP_HASH160, 0x14])
_P2PKH_SUFFIX = bytes([OP_EQUALVERIFY, OP_CHECKSIG])


class ScriptType(str, Enum):
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"
    OP_RETURN = "op_return"
    UNKNOWN = "unknown"


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def push_data(data: bytes) -> bytes:
    """Minimal push of data onto the script stack."""
    if len(data) < OP_PUSHDATA1:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return bytes([OP_PUSHDATA1, len(data)]) + data
    if len(data) <= 0xFFFF:
        return bytes([0x4D]) + len(data).to_bytes(2, "little") + data
    return bytes([0x4E]) + len(data).to_bytes(4, "little") + data


def p2pkh_script(pubkey: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20-byte-hash> OP_EQUALVERIFY OP_CHECKSIG"""
    return _P2PKH_PREFIX + hash160(pubkey) + _P2PKH_SUFFIX


def p2wpkh_script(pubkey: bytes) -> bytes:
    """OP_0 <20-byte-hash>"""
    if len(pubkey) != 33:
        raise ValueError(f"Invalid compressed pubkey length: {len(pubkey)}")
    return bytes([OP_0, 0x14]) + hash160(pubkey)


def p2sh_script(redeem_script: bytes) -> bytes:
    """OP_HASH160 <20-byte-hash> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL])


def op_return_script(data: bytes) -> bytes:
    return bytes([OP_RETURN]) + push_data(data)


def classify_script(script: bytes) -> ScriptType:
    if len(script) == 25 and script[:3] == _P2PKH_PREFIX and script[23:] == _P2PKH_SUFFIX:
        return ScriptType.P2PKH
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 0x14]) and script[22] == OP_EQUAL:
        return ScriptType.P2SH
    if len(script) == 22 and script[:2] == bytes([OP_0, 0x14]):
        return ScriptType.P2WPKH
    if len(script) == 34 and script[:2] == bytes([OP_0, 0x20]):
        return ScriptType.P2WSH
    if len(script) == 34 and script[:2] == bytes([OP_1, 0x20]):
        return ScriptType.P2TR
    if script[:1] == bytes([OP_RETURN]):
        return ScriptType.OP_RETURN
    return ScriptType.UNKNOWN


def is_witness_program(script: bytes) -> bool:
    if len(script) < 4 or len(script) > 42:
        return False
    if script[0] != OP_0 and not (OP_1 <= script[0] <= 0x60):
        return False
    return script[1] + 2 == len(script)


def dust_threshold(script: bytes) -> int:
    """
    Smallest output value that is not dust for this script (Bitcoin Core policy).

    OP_RETURN outputs are unspendable and exempt.
    """
    if script[:1] == bytes([OP_RETURN]):
        return 0
    size = 8 + 1 + len(script)
    size += DUST_SPEND_SIZE_WITNESS if is_witness_program(script) else DUST_SPEND_SIZE_LEGACY
    return size * DUST_RELAY_FEE


def address_to_scriptpubkey(address: str, network: Network | None = None) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports P2PKH, P2SH, P2WPKH, P2WSH and P2TR. When a network is given the
    address must belong to it.
    """
    lowered = address.lower()
    for hrp in ("bcrt", "bc", "tb"):
        if lowered.startswith(hrp + "1"):
            if network is not None and network.hrp != hrp:
                raise ValueError(f"Address {address} is not valid for {network.value}")
            witver, witprog = bech32.decode(hrp, address)
            if witver is None or witprog is None:
                raise ValueError(f"Invalid bech32 address: {address}")
            program = bytes(witprog)
            version_op = OP_0 if witver == 0 else OP_1 + witver - 1
            return bytes([version_op, len(program)]) + program

    try:
        decoded = base58.b58decode_check(address)
    except ValueError as e:
        raise ValueError(f"Invalid address: {address}") from e
    if len(decoded) != 21:
        raise ValueError(f"Invalid base58 address length: {address}")
    version, payload = decoded[0], decoded[1:]

    networks = [network] if network is not None else list(Network)
    if any(version == n.p2pkh_version for n in networks):
        return _P2PKH_PREFIX + payload + _P2PKH_SUFFIX
    if any(version == n.p2sh_version for n in networks):
        return bytes([OP_HASH160, 0x14]) + payload + bytes([OP_EQUAL])

    raise ValueError(f"Unknown address version: {version}")


def scriptpubkey_to_address(script: bytes, network: Network) -> str:
    """Convert scriptPubKey to address."""
    script_type = classify_script(script)

    if script_type is ScriptType.P2PKH:
        return base58.b58encode_check(bytes([network.p2pkh_version]) + script[3:23]).decode()
    if script_type is ScriptType.P2SH:
        return base58.b58encode_check(bytes([network.p2sh_version]) + script[2:22]).decode()
    if script_type in (ScriptType.P2WPKH, ScriptType.P2WSH, ScriptType.P2TR):
        witver = 0 if script[0] == OP_0 else script[0] - OP_1 + 1
        result = bech32.encode(network.hrp, witver, script[2:])
        if result is None:
            raise ValueError(f"Failed to encode address for script: {script.hex()}")
        return result

    raise ValueError(f"Unsupported scriptPubKey: {script.hex()}")
