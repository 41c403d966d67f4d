"""
Core wallet data models.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Network(str, Enum):
    BITCOIN = "bitcoin"
    TESTNET = "testnet"
    SIGNET = "signet"
    REGTEST = "regtest"

    @classmethod
    def _missing_(cls, value: object) -> Network | None:
        if isinstance(value, str) and value.lower() == "mainnet":
            return cls.BITCOIN
        return None

    @property
    def is_mainnet(self) -> bool:
        return self is Network.BITCOIN

    @property
    def hrp(self) -> str:
        """Bech32 human-readable part for segwit addresses."""
        if self is Network.BITCOIN:
            return "bc"
        if self is Network.REGTEST:
            return "bcrt"
        return "tb"

    @property
    def p2pkh_version(self) -> int:
        return 0x00 if self.is_mainnet else 0x6F

    @property
    def p2sh_version(self) -> int:
        return 0x05 if self.is_mainnet else 0xC4

    @property
    def wif_version(self) -> int:
        return 0x80 if self.is_mainnet else 0xEF

    @property
    def xpub_version(self) -> bytes:
        return bytes.fromhex("0488b21e" if self.is_mainnet else "043587cf")

    @property
    def xprv_version(self) -> bytes:
        return bytes.fromhex("0488ade4" if self.is_mainnet else "04358394")


class KeychainKind(str, Enum):
    EXTERNAL = "external"  # receive addresses
    INTERNAL = "internal"  # change addresses


class AddressIndex(str, Enum):
    """
    Address index selection strategy.

    NEW: increment the keychain cursor and return the address at the new index.
    LAST_UNUSED: return the address at the current cursor if nothing was received
    on it yet, otherwise behave as NEW.
    """

    NEW = "new"
    LAST_UNUSED = "last_unused"


@dataclass(frozen=True, order=True)
class OutPoint:
    """Reference to a transaction output (txid in RPC/display byte order)."""

    txid: str
    vout: int

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, value: str) -> OutPoint:
        txid, sep, vout = value.rpartition(":")
        if not sep or len(txid) != 64:
            raise ValueError(f"Invalid outpoint: {value}")
        bytes.fromhex(txid)
        return cls(txid=txid.lower(), vout=int(vout))


@dataclass(frozen=True)
class TxOut:
    value: int
    script_pubkey: bytes


@dataclass(frozen=True)
class LocalUtxo:
    """An output owned by the wallet."""

    outpoint: OutPoint
    txout: TxOut
    keychain: KeychainKind
    is_spent: bool = False

    @property
    def value(self) -> int:
        return self.txout.value


@dataclass(frozen=True)
class AddressInfo:
    """A derived address and the index it was found at."""

    index: int
    address: str
    keychain: KeychainKind = KeychainKind.EXTERNAL


@dataclass(frozen=True)
class TransactionDetails:
    """
    Wallet-relative view of a transaction.

    fee is None when the value of one of the spent outputs is unknown.
    """

    txid: str
    sent: int
    received: int
    fee: int | None = None


@dataclass(frozen=True)
class BlockTime:
    height: int
    timestamp: int


@dataclass(frozen=True)
class Unconfirmed:
    details: TransactionDetails


@dataclass(frozen=True)
class Confirmed:
    details: TransactionDetails
    confirmation_time: BlockTime


TransactionStatus = Unconfirmed | Confirmed


@dataclass(frozen=True)
class Balance:
    confirmed: int = 0
    unconfirmed: int = 0

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed


@dataclass(frozen=True)
class TransactionRecord:
    """A stored wallet transaction: raw bytes plus confirmation data."""

    txid: str
    raw: bytes
    confirmation_time: BlockTime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation_time is not None
