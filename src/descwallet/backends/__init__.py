"""
Blockchain backend implementations.

Available backends:
- EsploraBackend: Esplora REST API (blockstream.info, mempool.space, self-hosted)
- ElectrumBackend: Electrum protocol server over TCP/TLS, optionally via SOCKS5
"""

from descwallet.backends.base import (
    BackendError,
    BlockchainBackend,
    HistoryEntry,
    script_hash,
)
from descwallet.backends.electrum import ElectrumBackend
from descwallet.backends.esplora import EsploraBackend
from descwallet.config import BlockchainConfig, ElectrumConfig, EsploraConfig


def create_backend(config: BlockchainConfig) -> BlockchainBackend:
    if isinstance(config, ElectrumConfig):
        return ElectrumBackend(url=config.url, socks5=config.socks5, timeout=config.timeout)
    if isinstance(config, EsploraConfig):
        return EsploraBackend(base_url=config.base_url, proxy=config.proxy, timeout=config.timeout)
    raise TypeError(f"Unknown blockchain config: {type(config).__name__}")


__all__ = [
    "BackendError",
    "BlockchainBackend",
    "ElectrumBackend",
    "EsploraBackend",
    "HistoryEntry",
    "create_backend",
    "script_hash",
]
