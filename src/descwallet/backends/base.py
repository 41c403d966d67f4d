"""
Base blockchain backend interface.
"""

from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass


class BackendError(Exception):
    """The chain source answered with an error."""


@dataclass(frozen=True)
class HistoryEntry:
    """One transaction touching a script; height None means mempool."""

    txid: str
    height: int | None = None
    timestamp: int | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.height is not None


def script_hash(script_pubkey: bytes) -> str:
    """Electrum/Esplora script hash: reversed SHA256 of the script, hex."""
    return hashlib.sha256(script_pubkey).digest()[::-1].hex()


class BlockchainBackend(ABC):
    """
    Abstract chain data source.

    Implementations raise httpx.HTTPError, OSError, asyncio.TimeoutError or
    BackendError on failure; retries are the caller's concern.
    """

    @abstractmethod
    async def get_script_history(self, script_pubkey: bytes) -> list[HistoryEntry]:
        """All transactions paying to or spending from a script"""

    @abstractmethod
    async def get_raw_transaction(self, txid: str) -> bytes:
        """Raw transaction bytes"""

    @abstractmethod
    async def get_block_time(self, block_height: int) -> int:
        """Block header timestamp for a height"""

    @abstractmethod
    async def get_block_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    async def broadcast_transaction(self, tx_hex: str) -> str:
        """Broadcast transaction, returns txid"""

    @abstractmethod
    async def estimate_fee(self, target_blocks: int) -> float:
        """Estimate fee in sat/vbyte for target confirmation blocks"""

    async def close(self) -> None:
        """Close backend connection"""
        pass

    async def __aenter__(self) -> BlockchainBackend:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
