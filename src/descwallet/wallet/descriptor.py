"""
Output descriptor parsing and the descriptor resolver.

Supported forms:
- wpkh(KEY), pkh(KEY), sh(wpkh(KEY))
- addr(ADDRESS), raw(HEX)

KEY is an optional origin ``[fingerprint/path]`` followed by a hex public key,
a WIF private key, or an xpub/tpub/xprv/tprv with an optional derivation
suffix ending in at most one ``*`` wildcard.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import base58
from coincurve import PrivateKey
from loguru import logger

from descwallet.constants import (
    P2PKH_INPUT_WEIGHT,
    P2SH_P2WPKH_INPUT_WEIGHT,
    P2WPKH_INPUT_WEIGHT,
)
from descwallet.errors import InvalidDescriptorError
from descwallet.models import AddressIndex, AddressInfo, KeychainKind, Network
from descwallet.wallet.address import (
    ScriptType,
    address_to_scriptpubkey,
    classify_script,
    p2pkh_script,
    p2sh_script,
    p2wpkh_script,
    scriptpubkey_to_address,
)
from descwallet.wallet.bip32 import HARDENED_OFFSET, HDKey, parse_path

# Environment variable to enable sensitive logging (descriptors, addresses, etc.)
SENSITIVE_LOGGING = os.environ.get("SENSITIVE_LOGGING", "").lower() in ("1", "true", "yes")

# Scripts derived ahead of the cursor when resolving ownership of a script
DEFAULT_LOOKAHEAD = 20


def _polymod(c: int, val: int) -> int:
    c0 = c >> 35
    c = ((c & 0x7FFFFFFFF) << 5) ^ val
    if c0 & 1:
        c ^= 0xF5DEE51989
    if c0 & 2:
        c ^= 0xA9FDCA3312
    if c0 & 4:
        c ^= 0x1BAB10E32D
    if c0 & 8:
        c ^= 0x3706B1677A
    if c0 & 16:
        c ^= 0x644D626FFD
    return c


_INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    "ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
)
_INPUT_CHARSET_INV = {c: i for (i, c) in enumerate(_INPUT_CHARSET)}
_CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"


def descriptor_checksum(desc: str) -> str:
    """Bitcoin Core descriptor checksum (8 characters)."""
    c = 1
    cls = 0
    clscount = 0
    for ch in desc:
        pos = _INPUT_CHARSET_INV.get(ch)
        if pos is None:
            raise InvalidDescriptorError(f"Invalid character in descriptor: {ch!r}")
        c = _polymod(c, pos & 31)
        cls = cls * 3 + (pos >> 5)
        clscount += 1
        if clscount == 3:
            c = _polymod(c, cls)
            cls = 0
            clscount = 0
    if clscount > 0:
        c = _polymod(c, cls)
    for _ in range(8):
        c = _polymod(c, 0)
    c ^= 1
    return "".join(_CHECKSUM_CHARSET[(c >> (5 * (7 - j))) & 31] for j in range(8))


class DescriptorType(str, Enum):
    WPKH = "wpkh"
    PKH = "pkh"
    SH_WPKH = "sh(wpkh)"
    ADDR = "addr"
    RAW = "raw"


@dataclass(frozen=True)
class KeyOrigin:
    fingerprint: bytes
    path: tuple[int, ...]


@dataclass(frozen=True, eq=False)
class DerivedScript:
    """Script and signing material for one descriptor index."""

    index: int
    script_pubkey: bytes
    pubkey: bytes | None = None
    private_key: PrivateKey | None = None
    redeem_script: bytes | None = None
    origin: KeyOrigin | None = None


def _parse_wif(wif: str) -> tuple[PrivateKey, bool, bool]:
    """Returns (private_key, compressed, is_mainnet)."""
    raw = base58.b58decode_check(wif)
    if len(raw) == 34 and raw[33] == 0x01:
        compressed = True
    elif len(raw) == 33:
        compressed = False
    else:
        raise ValueError("Invalid WIF length")
    if raw[0] not in (0x80, 0xEF):
        raise ValueError(f"Unknown WIF version: {raw[0]:#x}")
    return PrivateKey(raw[1:33]), compressed, raw[0] == 0x80


class DescriptorKey:
    """A key expression inside a descriptor."""

    def __init__(
        self,
        origin: KeyOrigin | None,
        pubkey: bytes | None = None,
        private_key: PrivateKey | None = None,
        extkey: HDKey | None = None,
        suffix: tuple[int, ...] = (),
        wildcard: bool = False,
        hardened_wildcard: bool = False,
    ):
        self.origin = origin
        self.pubkey = pubkey
        self.private_key = private_key
        self.extkey = extkey
        self.suffix = suffix
        self.wildcard = wildcard
        self.hardened_wildcard = hardened_wildcard

    @property
    def is_ranged(self) -> bool:
        return self.wildcard

    @property
    def has_private(self) -> bool:
        if self.extkey is not None:
            return self.extkey.is_private
        return self.private_key is not None

    @classmethod
    def parse(cls, expr: str, network: Network) -> DescriptorKey:
        origin = None
        if expr.startswith("["):
            end = expr.find("]")
            if end == -1:
                raise InvalidDescriptorError(f"Unterminated key origin in {expr!r}")
            origin_parts = expr[1:end].split("/", 1)
            try:
                fingerprint = bytes.fromhex(origin_parts[0])
                path = parse_path(origin_parts[1]) if len(origin_parts) > 1 else []
            except ValueError as e:
                raise InvalidDescriptorError(f"Invalid key origin: {e}") from e
            if len(fingerprint) != 4:
                raise InvalidDescriptorError("Key origin fingerprint must be 4 bytes")
            origin = KeyOrigin(fingerprint, tuple(path))
            expr = expr[end + 1 :]

        key_str, *path_parts = expr.split("/")

        if key_str[:4] in ("xpub", "xprv", "tpub", "tprv"):
            try:
                extkey = HDKey.from_string(key_str)
            except ValueError as e:
                raise InvalidDescriptorError(f"Invalid extended key: {e}") from e
            if extkey.is_mainnet != network.is_mainnet:
                raise InvalidDescriptorError(f"Extended key is not valid for {network.value}")

            wildcard = hardened_wildcard = False
            if path_parts and path_parts[-1] in ("*", "*'", "*h"):
                wildcard = True
                hardened_wildcard = path_parts[-1] != "*"
                path_parts = path_parts[:-1]
            if any("*" in p for p in path_parts):
                raise InvalidDescriptorError("Wildcard only allowed in last position")
            try:
                suffix = tuple(parse_path("/".join(path_parts)))
            except ValueError as e:
                raise InvalidDescriptorError(f"Invalid derivation path: {e}") from e
            needs_private = hardened_wildcard or any(i >= HARDENED_OFFSET for i in suffix)
            if needs_private and not extkey.is_private:
                raise InvalidDescriptorError("Hardened derivation requires a private key")
            return cls(
                origin,
                extkey=extkey,
                suffix=suffix,
                wildcard=wildcard,
                hardened_wildcard=hardened_wildcard,
            )

        if path_parts:
            raise InvalidDescriptorError("Derivation path on a non-extended key")

        if len(key_str) in (66, 130):
            try:
                pubkey = bytes.fromhex(key_str)
            except ValueError as e:
                raise InvalidDescriptorError(f"Invalid hex public key: {e}") from e
            if pubkey[0] not in (0x02, 0x03, 0x04):
                raise InvalidDescriptorError("Invalid public key prefix")
            return cls(origin, pubkey=pubkey)

        try:
            private_key, compressed, is_mainnet = _parse_wif(key_str)
        except ValueError as e:
            raise InvalidDescriptorError(f"Unrecognised key expression: {key_str!r}") from e
        if is_mainnet != network.is_mainnet:
            raise InvalidDescriptorError(f"WIF key is not valid for {network.value}")
        pubkey = private_key.public_key.format(compressed=compressed)
        return cls(origin, pubkey=pubkey, private_key=private_key)

    def derive(self, index: int) -> tuple[bytes, PrivateKey | None, KeyOrigin | None]:
        if self.extkey is None:
            return self.pubkey, self.private_key, self.origin

        path = list(self.suffix)
        if self.wildcard:
            path.append(index + HARDENED_OFFSET if self.hardened_wildcard else index)
        child = self.extkey.derive(path)

        if self.origin is not None:
            origin = KeyOrigin(self.origin.fingerprint, self.origin.path + tuple(path))
        else:
            origin = KeyOrigin(self.extkey.fingerprint, tuple(path))
        return child.get_public_key_bytes(), child.private_key, origin


def _strip_func(expr: str, name: str) -> str | None:
    prefix = name + "("
    if expr.startswith(prefix) and expr.endswith(")"):
        return expr[len(prefix) : -1]
    return None


class Descriptor:
    """A parsed single-key output descriptor."""

    def __init__(self, descriptor: str, network: Network):
        self.network = network
        descriptor = descriptor.strip()

        body, sep, checksum = descriptor.partition("#")
        if sep:
            expected = descriptor_checksum(body)
            if checksum != expected:
                raise InvalidDescriptorError(
                    f"Descriptor checksum mismatch: got {checksum}, expected {expected}"
                )
        else:
            # Validates the character set
            descriptor_checksum(body)
        self.body = body

        self.key: DescriptorKey | None = None
        self.fixed_script: bytes | None = None

        if (inner := _strip_func(body, "sh")) is not None:
            key_expr = _strip_func(inner, "wpkh")
            if key_expr is None:
                raise InvalidDescriptorError(f"Unsupported sh() descriptor: {body}")
            self.kind = DescriptorType.SH_WPKH
            self.key = DescriptorKey.parse(key_expr, network)
        elif (key_expr := _strip_func(body, "wpkh")) is not None:
            self.kind = DescriptorType.WPKH
            self.key = DescriptorKey.parse(key_expr, network)
        elif (key_expr := _strip_func(body, "pkh")) is not None:
            self.kind = DescriptorType.PKH
            self.key = DescriptorKey.parse(key_expr, network)
        elif (address := _strip_func(body, "addr")) is not None:
            self.kind = DescriptorType.ADDR
            try:
                self.fixed_script = address_to_scriptpubkey(address, network)
            except ValueError as e:
                raise InvalidDescriptorError(str(e)) from e
        elif (script_hex := _strip_func(body, "raw")) is not None:
            self.kind = DescriptorType.RAW
            try:
                self.fixed_script = bytes.fromhex(script_hex)
            except ValueError as e:
                raise InvalidDescriptorError(f"Invalid raw script: {e}") from e
        else:
            raise InvalidDescriptorError(f"Unsupported descriptor: {body}")

        if self.kind in (DescriptorType.WPKH, DescriptorType.SH_WPKH):
            pubkey = self.key.pubkey
            if pubkey is not None and len(pubkey) != 33:
                raise InvalidDescriptorError("Segwit descriptors require compressed keys")

    def __str__(self) -> str:
        return f"{self.body}#{descriptor_checksum(self.body)}"

    @property
    def is_ranged(self) -> bool:
        return self.key is not None and self.key.is_ranged

    @property
    def has_private_keys(self) -> bool:
        return self.key is not None and self.key.has_private

    @property
    def script_type(self) -> ScriptType:
        if self.kind is DescriptorType.WPKH:
            return ScriptType.P2WPKH
        if self.kind is DescriptorType.PKH:
            return ScriptType.P2PKH
        if self.kind is DescriptorType.SH_WPKH:
            return ScriptType.P2SH
        return classify_script(self.fixed_script)

    @property
    def is_segwit(self) -> bool:
        return self.kind in (DescriptorType.WPKH, DescriptorType.SH_WPKH) or (
            self.script_type in (ScriptType.P2WPKH, ScriptType.P2WSH, ScriptType.P2TR)
        )

    def input_weight(self) -> int:
        """Worst-case weight of an input spending an output of this descriptor."""
        if self.kind is DescriptorType.WPKH:
            return P2WPKH_INPUT_WEIGHT
        if self.kind is DescriptorType.SH_WPKH:
            return P2SH_P2WPKH_INPUT_WEIGHT
        if self.kind is DescriptorType.PKH:
            return P2PKH_INPUT_WEIGHT
        # addr()/raw(): only the script is known, assume the common satisfactions
        if self.script_type is ScriptType.P2WPKH:
            return P2WPKH_INPUT_WEIGHT
        return P2PKH_INPUT_WEIGHT

    def derive(self, index: int) -> DerivedScript:
        if self.key is None:
            return DerivedScript(index=0, script_pubkey=self.fixed_script)

        if not self.is_ranged:
            index = 0
        pubkey, private_key, origin = self.key.derive(index)

        if self.kind is DescriptorType.WPKH:
            return DerivedScript(index, p2wpkh_script(pubkey), pubkey, private_key, None, origin)
        if self.kind is DescriptorType.SH_WPKH:
            redeem_script = p2wpkh_script(pubkey)
            return DerivedScript(
                index, p2sh_script(redeem_script), pubkey, private_key, redeem_script, origin
            )
        return DerivedScript(index, p2pkh_script(pubkey), pubkey, private_key, None, origin)

    def address_at(self, index: int) -> str:
        return scriptpubkey_to_address(self.derive(index).script_pubkey, self.network)


class DescriptorResolver:
    """
    Maps (keychain, index) to scripts and hands out receive/change addresses.

    The per-keychain cursor is the last revealed index; it only moves forward
    and is persisted through the supplied load/store callbacks.
    """

    def __init__(
        self,
        descriptors: dict[KeychainKind, Descriptor],
        is_used: Callable[[bytes], bool],
        load_index: Callable[[KeychainKind], int | None] | None = None,
        store_index: Callable[[KeychainKind, int], None] | None = None,
    ):
        self.descriptors = descriptors
        self._is_used = is_used
        self._store_index = store_index
        self._lock = threading.RLock()

        self._cursor: dict[KeychainKind, int | None] = {}
        for keychain in descriptors:
            self._cursor[keychain] = load_index(keychain) if load_index else None

        self.script_cache: dict[bytes, tuple[KeychainKind, int]] = {}
        self._derived: dict[tuple[KeychainKind, int], DerivedScript] = {}

    def keychains(self) -> list[KeychainKind]:
        return list(self.descriptors)

    def descriptor_for(self, keychain: KeychainKind) -> Descriptor:
        # Wallets without a change descriptor use the external one for change
        if keychain not in self.descriptors:
            return self.descriptors[KeychainKind.EXTERNAL]
        return self.descriptors[keychain]

    @property
    def change_keychain(self) -> KeychainKind:
        """Keychain that change outputs are actually derived from."""
        if KeychainKind.INTERNAL in self.descriptors:
            return KeychainKind.INTERNAL
        return KeychainKind.EXTERNAL

    def is_derivable(self, keychain: KeychainKind) -> bool:
        return self.descriptor_for(keychain).is_ranged

    def derive(self, keychain: KeychainKind, index: int) -> DerivedScript:
        if keychain not in self.descriptors:
            keychain = KeychainKind.EXTERNAL
        if not self.is_derivable(keychain):
            index = 0
        cache_key = (keychain, index)
        with self._lock:
            derived = self._derived.get(cache_key)
            if derived is None:
                derived = self.descriptors[keychain].derive(index)
                self._derived[cache_key] = derived
                self.script_cache.setdefault(derived.script_pubkey, (keychain, index))
        return derived

    def derive_address(self, keychain: KeychainKind, index: int) -> tuple[str, bytes]:
        derived = self.derive(keychain, index)
        network = self.descriptor_for(keychain).network
        return scriptpubkey_to_address(derived.script_pubkey, network), derived.script_pubkey

    def current_index(self, keychain: KeychainKind) -> int | None:
        if keychain not in self.descriptors:
            keychain = KeychainKind.EXTERNAL
        with self._lock:
            return self._cursor.get(keychain)

    def _set_cursor(self, keychain: KeychainKind, index: int) -> None:
        self._cursor[keychain] = index
        if self._store_index is not None:
            self._store_index(keychain, index)

    def next_index(self, keychain: KeychainKind, strategy: AddressIndex) -> int:
        if keychain not in self.descriptors:
            keychain = KeychainKind.EXTERNAL
        if not self.is_derivable(keychain):
            return 0

        with self._lock:
            current = self._cursor.get(keychain)
            if strategy is AddressIndex.LAST_UNUSED and current is not None:
                script = self.derive(keychain, current).script_pubkey
                if not self._is_used(script):
                    return current
            index = 0 if current is None else current + 1
            self._set_cursor(keychain, index)
            return index

    def get_address(self, keychain: KeychainKind, strategy: AddressIndex) -> AddressInfo:
        index = self.next_index(keychain, strategy)
        address, _ = self.derive_address(keychain, index)
        if SENSITIVE_LOGGING:
            logger.debug(f"Revealed {keychain.value} address {index}: {address}")
        return AddressInfo(index=index, address=address, keychain=keychain)

    def peek_address(self, keychain: KeychainKind, index: int) -> AddressInfo:
        """Address at an index without moving the cursor."""
        if not self.is_derivable(keychain):
            index = 0
        address, _ = self.derive_address(keychain, index)
        return AddressInfo(index=index, address=address, keychain=keychain)

    def mark_used_up_to(self, keychain: KeychainKind, index: int) -> None:
        """Advance the cursor so NEW never hands out an index <= a used one."""
        if keychain not in self.descriptors or not self.is_derivable(keychain):
            return
        with self._lock:
            current = self._cursor.get(keychain)
            if current is None or current < index:
                self._set_cursor(keychain, index)

    def derivation_of(self, script: bytes) -> tuple[KeychainKind, int] | None:
        """Find the keychain and index that produce a script, if it is ours."""
        with self._lock:
            found = self.script_cache.get(script)
            if found is not None:
                return found
            for keychain in self.descriptors:
                if not self.is_derivable(keychain):
                    self.derive(keychain, 0)
                    continue
                current = self._cursor.get(keychain)
                upper = (current if current is not None else -1) + DEFAULT_LOOKAHEAD
                for index in range(upper + 1):
                    self.derive(keychain, index)
            return self.script_cache.get(script)

    def is_mine(self, script: bytes) -> bool:
        return self.derivation_of(script) is not None
