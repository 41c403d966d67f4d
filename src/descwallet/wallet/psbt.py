"""
Partially signed Bitcoin transactions (BIP174).

Known key types are decoded into fields; every other key/value pair is kept
verbatim in ``unknown`` so a decode/encode round trip loses nothing.
"""

from __future__ import annotations

import base64
import binascii
import struct
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any

from descwallet.errors import SerializationError, SigningIncompleteError
from descwallet.models import TxOut
from descwallet.wallet.descriptor import KeyOrigin
from descwallet.wallet.transaction import (
    Transaction,
    TxIn,
    encode_varint,
    read_varint,
    serialize_output,
)

PSBT_MAGIC = b"psbt\xff"

PSBT_GLOBAL_UNSIGNED_TX = 0x00

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06
PSBT_IN_FINAL_SCRIPTSIG = 0x07
PSBT_IN_FINAL_SCRIPTWITNESS = 0x08

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02


def _serialize_kv(key: bytes, value: bytes) -> bytes:
    return encode_varint(len(key)) + key + encode_varint(len(value)) + value


def _serialize_origin(origin: KeyOrigin) -> bytes:
    return origin.fingerprint + b"".join(struct.pack("<I", i) for i in origin.path)


def _parse_origin(value: bytes) -> KeyOrigin:
    if len(value) < 4 or len(value) % 4:
        raise ValueError("Invalid BIP32 derivation value")
    path = tuple(struct.unpack("<I", value[i : i + 4])[0] for i in range(4, len(value), 4))
    return KeyOrigin(value[:4], path)


def _serialize_witness(stack: list[bytes]) -> bytes:
    result = encode_varint(len(stack))
    for item in stack:
        result += encode_varint(len(item)) + item
    return result


def _parse_witness(value: bytes) -> list[bytes]:
    count, offset = read_varint(value, 0)
    stack = []
    for _ in range(count):
        size, offset = read_varint(value, offset)
        if offset + size > len(value):
            raise ValueError("Witness item out of range")
        stack.append(value[offset : offset + size])
        offset += size
    if offset != len(value):
        raise ValueError("Trailing data in witness")
    return stack


def _read_map(data: bytes, offset: int) -> tuple[list[tuple[bytes, bytes]], int]:
    """Read one key/value map up to its 0x00 separator."""
    pairs: list[tuple[bytes, bytes]] = []
    keys: set[bytes] = set()
    while True:
        key_len, offset = read_varint(data, offset)
        if key_len == 0:
            return pairs, offset
        key = data[offset : offset + key_len]
        if len(key) != key_len:
            raise ValueError("Key out of range")
        offset += key_len
        value_len, offset = read_varint(data, offset)
        value = data[offset : offset + value_len]
        if len(value) != value_len:
            raise ValueError("Value out of range")
        offset += value_len
        if key in keys:
            raise ValueError(f"Duplicate key {key.hex()}")
        keys.add(key)
        pairs.append((key, value))


@dataclass
class PSBTInput:
    non_witness_utxo: Transaction | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOrigin] = field(default_factory=dict)
    final_script_sig: bytes | None = None
    final_script_witness: list[bytes] | None = None
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    @property
    def is_finalized(self) -> bool:
        return self.final_script_sig is not None or self.final_script_witness is not None

    def serialize(self) -> bytes:
        result = b""
        if self.non_witness_utxo is not None:
            result += _serialize_kv(
                bytes([PSBT_IN_NON_WITNESS_UTXO]), self.non_witness_utxo.serialize()
            )
        if self.witness_utxo is not None:
            result += _serialize_kv(
                bytes([PSBT_IN_WITNESS_UTXO]), serialize_output(self.witness_utxo)
            )
        for pubkey, sig in self.partial_sigs.items():
            result += _serialize_kv(bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, sig)
        if self.sighash_type is not None:
            result += _serialize_kv(
                bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", self.sighash_type)
            )
        if self.redeem_script is not None:
            result += _serialize_kv(bytes([PSBT_IN_REDEEM_SCRIPT]), self.redeem_script)
        if self.witness_script is not None:
            result += _serialize_kv(bytes([PSBT_IN_WITNESS_SCRIPT]), self.witness_script)
        for pubkey, origin in self.bip32_derivations.items():
            result += _serialize_kv(
                bytes([PSBT_IN_BIP32_DERIVATION]) + pubkey, _serialize_origin(origin)
            )
        if self.final_script_sig is not None:
            result += _serialize_kv(bytes([PSBT_IN_FINAL_SCRIPTSIG]), self.final_script_sig)
        if self.final_script_witness is not None:
            result += _serialize_kv(
                bytes([PSBT_IN_FINAL_SCRIPTWITNESS]),
                _serialize_witness(self.final_script_witness),
            )
        for key, value in self.unknown.items():
            result += _serialize_kv(key, value)
        return result + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PSBTInput:
        inp = cls()
        for key, value in pairs:
            key_type, key_data = key[0], key[1:]
            if key_type == PSBT_IN_NON_WITNESS_UTXO and not key_data:
                inp.non_witness_utxo = Transaction.parse(value)
            elif key_type == PSBT_IN_WITNESS_UTXO and not key_data:
                amount = struct.unpack("<Q", value[:8])[0]
                script_len, offset = read_varint(value, 8)
                if offset + script_len != len(value):
                    raise ValueError("Invalid witness UTXO")
                inp.witness_utxo = TxOut(amount, value[offset:])
            elif key_type == PSBT_IN_PARTIAL_SIG and len(key_data) in (33, 65):
                inp.partial_sigs[key_data] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE and not key_data:
                inp.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT and not key_data:
                inp.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT and not key_data:
                inp.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION and len(key_data) in (33, 65):
                inp.bip32_derivations[key_data] = _parse_origin(value)
            elif key_type == PSBT_IN_FINAL_SCRIPTSIG and not key_data:
                inp.final_script_sig = value
            elif key_type == PSBT_IN_FINAL_SCRIPTWITNESS and not key_data:
                inp.final_script_witness = _parse_witness(value)
            else:
                inp.unknown[key] = value
        return inp


@dataclass
class PSBTOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: dict[bytes, KeyOrigin] = field(default_factory=dict)
    unknown: dict[bytes, bytes] = field(default_factory=dict)

    def serialize(self) -> bytes:
        result = b""
        if self.redeem_script is not None:
            result += _serialize_kv(bytes([PSBT_OUT_REDEEM_SCRIPT]), self.redeem_script)
        if self.witness_script is not None:
            result += _serialize_kv(bytes([PSBT_OUT_WITNESS_SCRIPT]), self.witness_script)
        for pubkey, origin in self.bip32_derivations.items():
            result += _serialize_kv(
                bytes([PSBT_OUT_BIP32_DERIVATION]) + pubkey, _serialize_origin(origin)
            )
        for key, value in self.unknown.items():
            result += _serialize_kv(key, value)
        return result + b"\x00"

    @classmethod
    def from_pairs(cls, pairs: list[tuple[bytes, bytes]]) -> PSBTOutput:
        out = cls()
        for key, value in pairs:
            key_type, key_data = key[0], key[1:]
            if key_type == PSBT_OUT_REDEEM_SCRIPT and not key_data:
                out.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT and not key_data:
                out.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION and len(key_data) in (33, 65):
                out.bip32_derivations[key_data] = _parse_origin(value)
            else:
                out.unknown[key] = value
        return out


class PSBT:
    """A BIP174 PSBT around an unsigned transaction."""

    def __init__(
        self,
        tx: Transaction,
        inputs: list[PSBTInput] | None = None,
        outputs: list[PSBTOutput] | None = None,
        unknown: dict[bytes, bytes] | None = None,
    ):
        if any(txin.script_sig or txin.witness for txin in tx.inputs):
            raise SerializationError("PSBT transaction must be unsigned")
        self.tx = tx
        self.inputs = inputs if inputs is not None else [PSBTInput() for _ in tx.inputs]
        self.outputs = outputs if outputs is not None else [PSBTOutput() for _ in tx.outputs]
        self.unknown = unknown if unknown is not None else {}
        if len(self.inputs) != len(tx.inputs) or len(self.outputs) != len(tx.outputs):
            raise SerializationError("PSBT maps do not match the transaction")

    def txid(self) -> str:
        return self.tx.txid

    def serialize(self) -> bytes:
        result = PSBT_MAGIC
        result += _serialize_kv(
            bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.tx.serialize(include_witness=False)
        )
        for key, value in self.unknown.items():
            result += _serialize_kv(key, value)
        result += b"\x00"
        for inp in self.inputs:
            result += inp.serialize()
        for out in self.outputs:
            result += out.serialize()
        return result

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def __str__(self) -> str:
        return self.to_base64()

    @classmethod
    def parse(cls, data: bytes) -> PSBT:
        if not data.startswith(PSBT_MAGIC):
            raise SerializationError("Missing PSBT magic bytes")
        try:
            offset = len(PSBT_MAGIC)
            global_pairs, offset = _read_map(data, offset)

            tx: Transaction | None = None
            unknown: dict[bytes, bytes] = {}
            for key, value in global_pairs:
                if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                    tx = Transaction.parse(value)
                else:
                    unknown[key] = value
            if tx is None:
                raise SerializationError("PSBT has no unsigned transaction")

            inputs = []
            for _ in tx.inputs:
                pairs, offset = _read_map(data, offset)
                inputs.append(PSBTInput.from_pairs(pairs))
            outputs = []
            for _ in tx.outputs:
                pairs, offset = _read_map(data, offset)
                outputs.append(PSBTOutput.from_pairs(pairs))
        except (IndexError, ValueError, struct.error) as e:
            raise SerializationError(f"Malformed PSBT: {e}") from e

        if offset != len(data):
            raise SerializationError(f"Trailing data after PSBT ({len(data) - offset} bytes)")
        return cls(tx, inputs, outputs, unknown)

    @classmethod
    def from_base64(cls, psbt_base64: str) -> PSBT:
        try:
            data = base64.b64decode(psbt_base64.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise SerializationError(f"Invalid PSBT base64: {e}") from e
        return cls.parse(data)

    def input_value(self, index: int) -> int | None:
        inp = self.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo.value
        if inp.non_witness_utxo is not None:
            vout = self.tx.inputs[index].prevout.vout
            if vout < len(inp.non_witness_utxo.outputs):
                return inp.non_witness_utxo.outputs[vout].value
        return None

    def spent_output(self, index: int) -> TxOut | None:
        inp = self.inputs[index]
        if inp.witness_utxo is not None:
            return inp.witness_utxo
        if inp.non_witness_utxo is not None:
            vout = self.tx.inputs[index].prevout.vout
            if vout < len(inp.non_witness_utxo.outputs):
                return inp.non_witness_utxo.outputs[vout]
        return None

    def fee(self) -> int | None:
        """Input value minus output value; None if an input value is unknown."""
        total = 0
        for index in range(len(self.inputs)):
            value = self.input_value(index)
            if value is None:
                return None
            total += value
        return total - sum(out.value for out in self.tx.outputs)

    def is_finalized(self) -> bool:
        return all(inp.is_finalized for inp in self.inputs)

    def extract_tx(self) -> Transaction:
        """Network-ready transaction; every input must be finalized."""
        missing = [i for i, inp in enumerate(self.inputs) if not inp.is_finalized]
        if missing:
            raise SigningIncompleteError(f"Inputs not finalized: {missing}")

        inputs = [
            TxIn(
                prevout=txin.prevout,
                script_sig=inp.final_script_sig or b"",
                sequence=txin.sequence,
                witness=list(inp.final_script_witness or []),
            )
            for txin, inp in zip(self.tx.inputs, self.inputs, strict=True)
        ]
        outputs = list(self.tx.outputs)
        return Transaction(self.tx.version, inputs, outputs, self.tx.locktime)

    def fee_rate(self) -> float | None:
        """sat/vB of the finalized transaction, None before finalization."""
        fee = self.fee()
        if fee is None or not self.is_finalized():
            return None
        return fee / self.extract_tx().vsize()

    def combine(self, other: PSBT) -> PSBT:
        """Merge signatures and metadata from another PSBT of the same transaction."""
        if other.txid() != self.txid():
            raise SerializationError("Cannot combine PSBTs of different transactions")
        combined = deepcopy(self)
        combined.unknown.update(other.unknown)
        for mine, theirs in zip(combined.inputs, other.inputs, strict=True):
            mine.non_witness_utxo = mine.non_witness_utxo or theirs.non_witness_utxo
            mine.witness_utxo = mine.witness_utxo or theirs.witness_utxo
            mine.partial_sigs.update(theirs.partial_sigs)
            if mine.sighash_type is None:
                mine.sighash_type = theirs.sighash_type
            mine.redeem_script = mine.redeem_script or theirs.redeem_script
            mine.witness_script = mine.witness_script or theirs.witness_script
            mine.bip32_derivations.update(theirs.bip32_derivations)
            if mine.final_script_sig is None:
                mine.final_script_sig = theirs.final_script_sig
            if mine.final_script_witness is None:
                mine.final_script_witness = theirs.final_script_witness
            mine.unknown.update(theirs.unknown)
        for mine, theirs in zip(combined.outputs, other.outputs, strict=True):
            mine.redeem_script = mine.redeem_script or theirs.redeem_script
            mine.witness_script = mine.witness_script or theirs.witness_script
            mine.bip32_derivations.update(theirs.bip32_derivations)
            mine.unknown.update(theirs.unknown)
        return combined

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly summary used by the CLI."""
        return {
            "txid": self.txid(),
            "version": self.tx.version,
            "locktime": self.tx.locktime,
            "fee": self.fee(),
            "inputs": [
                {
                    "outpoint": str(txin.prevout),
                    "sequence": txin.sequence,
                    "value": self.input_value(i),
                    "partial_sigs": len(inp.partial_sigs),
                    "finalized": inp.is_finalized,
                }
                for i, (txin, inp) in enumerate(zip(self.tx.inputs, self.inputs, strict=True))
            ],
            "outputs": [
                {"value": out.value, "script_pubkey": out.script_pubkey.hex()}
                for out in self.tx.outputs
            ],
        }
