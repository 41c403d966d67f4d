"""
Raw Bitcoin transaction model and (de)serialization.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field

from descwallet.constants import SEQUENCE_FINAL, WITNESS_SCALE_FACTOR
from descwallet.errors import SerializationError
from descwallet.models import OutPoint, TxOut


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read a CompactSize integer, returning (value, new_offset)."""
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        size = 2
    elif first == 0xFE:
        size = 4
    else:
        size = 8
    if offset + size > len(data):
        raise IndexError("varint out of range")
    return int.from_bytes(data[offset : offset + size], "little"), offset + size


def serialize_outpoint(outpoint: OutPoint) -> bytes:
    # txid is in display order, raw transactions use internal (reversed) order
    return bytes.fromhex(outpoint.txid)[::-1] + struct.pack("<I", outpoint.vout)


def serialize_output(out: TxOut) -> bytes:
    return struct.pack("<Q", out.value) + encode_varint(len(out.script_pubkey)) + out.script_pubkey


def output_weight(script_pubkey: bytes) -> int:
    return len(serialize_output(TxOut(0, script_pubkey))) * WITNESS_SCALE_FACTOR


@dataclass
class TxIn:
    prevout: OutPoint
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        return (
            serialize_outpoint(self.prevout)
            + encode_varint(len(self.script_sig))
            + self.script_sig
            + struct.pack("<I", self.sequence)
        )


@dataclass
class Transaction:
    version: int
    inputs: list[TxIn]
    outputs: list[TxOut]
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness

        result = struct.pack("<I", self.version)
        if with_witness:
            result += b"\x00\x01"

        result += encode_varint(len(self.inputs))
        for inp in self.inputs:
            result += inp.serialize()

        result += encode_varint(len(self.outputs))
        for out in self.outputs:
            result += serialize_output(out)

        if with_witness:
            for inp in self.inputs:
                result += encode_varint(len(inp.witness))
                for item in inp.witness:
                    result += encode_varint(len(item)) + item

        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, display order."""
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * (WITNESS_SCALE_FACTOR - 1) + total

    def vsize(self) -> int:
        return -(-self.weight() // WITNESS_SCALE_FACTOR)

    def is_rbf_signaling(self) -> bool:
        return any(inp.sequence < 0xFFFFFFFE for inp in self.inputs)

    @classmethod
    def from_hex(cls, tx_hex: str) -> Transaction:
        try:
            raw = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise SerializationError(f"Invalid transaction hex: {e}") from e
        return cls.parse(raw)

    @classmethod
    def parse(cls, tx_bytes: bytes) -> Transaction:
        try:
            tx, offset = cls._parse(tx_bytes)
        except (IndexError, struct.error, ValueError) as e:
            raise SerializationError(f"Failed to parse transaction: {e}") from e
        if offset != len(tx_bytes):
            raise SerializationError(
                f"Trailing data after transaction ({len(tx_bytes) - offset} bytes)"
            )
        return tx

    @classmethod
    def _parse(cls, tx_bytes: bytes) -> tuple[Transaction, int]:
        offset = 0
        version = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4

        has_witness = False
        if tx_bytes[offset] == 0x00 and tx_bytes[offset + 1] == 0x01:
            has_witness = True
            offset += 2

        input_count, offset = read_varint(tx_bytes, offset)
        inputs: list[TxIn] = []
        for _ in range(input_count):
            if offset + 36 > len(tx_bytes):
                raise IndexError("input out of range")
            txid = tx_bytes[offset : offset + 32][::-1].hex()
            offset += 32
            vout = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4

            script_len, offset = read_varint(tx_bytes, offset)
            script_sig = tx_bytes[offset : offset + script_len]
            offset += script_len

            sequence = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
            offset += 4

            inputs.append(TxIn(OutPoint(txid, vout), script_sig, sequence))

        output_count, offset = read_varint(tx_bytes, offset)
        outputs: list[TxOut] = []
        for _ in range(output_count):
            value = struct.unpack("<Q", tx_bytes[offset : offset + 8])[0]
            offset += 8

            script_len, offset = read_varint(tx_bytes, offset)
            script = tx_bytes[offset : offset + script_len]
            if len(script) != script_len:
                raise IndexError("output script out of range")
            offset += script_len

            outputs.append(TxOut(value, script))

        if has_witness:
            for inp in inputs:
                stack_count, offset = read_varint(tx_bytes, offset)
                for _ in range(stack_count):
                    item_len, offset = read_varint(tx_bytes, offset)
                    inp.witness.append(tx_bytes[offset : offset + item_len])
                    offset += item_len

        locktime = struct.unpack("<I", tx_bytes[offset : offset + 4])[0]
        offset += 4

        return cls(version, inputs, outputs, locktime), offset
