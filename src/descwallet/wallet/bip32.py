"""
BIP32 HD key derivation.

Supports both private (xprv/tprv) and public-only (xpub/tpub) extended keys,
so watch-only descriptors can derive addresses without secrets.
"""

from __future__ import annotations

import hashlib
import hmac

import base58
from coincurve import PrivateKey, PublicKey

from descwallet.models import Network
from descwallet.wallet.address import hash160

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED_OFFSET = 0x80000000

_PRIVATE_VERSIONS = {bytes.fromhex("0488ade4"): True, bytes.fromhex("04358394"): False}
_PUBLIC_VERSIONS = {bytes.fromhex("0488b21e"): True, bytes.fromhex("043587cf"): False}


def parse_path(path: str) -> list[int]:
    """
    Parse a derivation path ("m/84'/0'/0'" or "0/1h") into child indexes.
    ' or h indicates hardened derivation.
    """
    parts = [p for p in path.split("/") if p]
    if parts and parts[0] == "m":
        parts = parts[1:]

    indexes = []
    for part in parts:
        hardened = part.endswith("'") or part.endswith("h")
        index_str = part.rstrip("'h")
        if not index_str.isdigit():
            raise ValueError(f"Invalid path element: {part}")
        index = int(index_str)
        if index >= HARDENED_OFFSET:
            raise ValueError(f"Path element out of range: {part}")
        indexes.append(index + HARDENED_OFFSET if hardened else index)
    return indexes


def format_path(indexes: list[int]) -> str:
    parts = ["m"]
    for index in indexes:
        if index >= HARDENED_OFFSET:
            parts.append(f"{index - HARDENED_OFFSET}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 derivation.
    """

    def __init__(
        self,
        chain_code: bytes,
        private_key: PrivateKey | None = None,
        public_key: PublicKey | None = None,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00" * 4,
        child_number: int = 0,
        is_mainnet: bool = True,
    ):
        if private_key is None and public_key is None:
            raise ValueError("HDKey needs a private or a public key")
        self._private_key = private_key
        self._public_key = public_key if public_key is not None else private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number
        self.is_mainnet = is_mainnet

    @property
    def is_private(self) -> bool:
        return self._private_key is not None

    @property
    def private_key(self) -> PrivateKey | None:
        """Return the coincurve PrivateKey instance (None for public-only keys)."""
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        """Return the coincurve PublicKey instance."""
        return self._public_key

    @property
    def fingerprint(self) -> bytes:
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes, network: Network = Network.BITCOIN) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)

        return cls(chain_code, private_key=private_key, is_mainnet=network.is_mainnet)

    @classmethod
    def from_string(cls, xkey: str) -> HDKey:
        """Parse a base58 xprv/xpub/tprv/tpub."""
        try:
            raw = base58.b58decode_check(xkey)
        except ValueError as e:
            raise ValueError(f"Invalid extended key checksum: {e}") from e
        if len(raw) != 78:
            raise ValueError(f"Invalid extended key length: {len(raw)}")

        version = raw[:4]
        depth = raw[4]
        parent_fingerprint = raw[5:9]
        child_number = int.from_bytes(raw[9:13], "big")
        chain_code = raw[13:45]
        key_data = raw[45:78]

        if version in _PRIVATE_VERSIONS:
            if key_data[0] != 0:
                raise ValueError("Invalid private key prefix in extended key")
            return cls(
                chain_code,
                private_key=PrivateKey(key_data[1:]),
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
                is_mainnet=_PRIVATE_VERSIONS[version],
            )
        if version in _PUBLIC_VERSIONS:
            return cls(
                chain_code,
                public_key=PublicKey(key_data),
                depth=depth,
                parent_fingerprint=parent_fingerprint,
                child_number=child_number,
                is_mainnet=_PUBLIC_VERSIONS[version],
            )
        raise ValueError(f"Unknown extended key version: {version.hex()}")

    def to_string(self) -> str:
        network = Network.BITCOIN if self.is_mainnet else Network.TESTNET
        if self.is_private:
            version = network.xprv_version
            key_data = b"\x00" + self._private_key.secret
        else:
            version = network.xpub_version
            key_data = self.get_public_key_bytes()

        raw = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58.b58encode_check(raw).decode()

    def neuter(self) -> HDKey:
        """Public-only copy of this key."""
        return HDKey(
            self.chain_code,
            public_key=self._public_key,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
            is_mainnet=self.is_mainnet,
        )

    def derive(self, path: str | list[int]) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/84'/0'/0'/0/0") or index list.
        """
        indexes = parse_path(path) if isinstance(path, str) else path
        key = self
        for index in indexes:
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED_OFFSET

        if hardened:
            if self._private_key is None:
                raise ValueError("Cannot derive hardened child from a public key")
            data = b"\x00" + self._private_key.secret + index.to_bytes(4, "big")
        else:
            data = self.get_public_key_bytes() + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        if int.from_bytes(key_offset, "big") >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_private: PrivateKey | None = None
        child_public: PublicKey | None = None
        if self._private_key is not None:
            parent_key_int = int.from_bytes(self._private_key.secret, "big")
            offset_int = int.from_bytes(key_offset, "big")
            child_key_int = (parent_key_int + offset_int) % SECP256K1_N
            if child_key_int == 0:
                raise ValueError("Invalid child key")
            child_private = PrivateKey(child_key_int.to_bytes(32, "big"))
        else:
            child_public = self._public_key.add(key_offset)

        return HDKey(
            child_chain,
            private_key=child_private,
            public_key=child_public,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
            is_mainnet=self.is_mainnet,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        if self._private_key is None:
            raise ValueError("Public-only key has no private key")
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert BIP39 mnemonic to seed (PBKDF2-HMAC-SHA512, no wordlist check).
    """
    mnemonic_bytes = mnemonic.encode("utf-8")
    salt = ("mnemonic" + passphrase).encode("utf-8")

    return hashlib.pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)
