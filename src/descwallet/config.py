"""
Wallet configuration: database and blockchain variants plus env-backed settings.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from descwallet.constants import DEFAULT_CONCURRENCY, DEFAULT_RETRY, DEFAULT_STOP_GAP
from descwallet.models import Network


class MemoryConfig(BaseModel):
    """Keep the ledger in memory only."""

    type: Literal["memory"] = "memory"


class SledConfig(BaseModel):
    """Key-value tree store: ``tree_name`` is a separate namespace under ``path``."""

    type: Literal["sled"] = "sled"
    path: str
    tree_name: str = Field(..., pattern=r"^[A-Za-z0-9_]+$")


class SqliteConfig(BaseModel):
    type: Literal["sqlite"] = "sqlite"
    path: str


DatabaseConfig = Annotated[
    MemoryConfig | SledConfig | SqliteConfig, Field(discriminator="type")
]


class ElectrumConfig(BaseModel):
    """Electrum server, e.g. ``ssl://electrum.blockstream.info:60002``."""

    type: Literal["electrum"] = "electrum"
    url: str
    socks5: str | None = Field(default=None, description="host:port of a SOCKS5 proxy")
    retry: int = Field(default=DEFAULT_RETRY, ge=0, le=255)
    timeout: int | None = Field(default=None, ge=1, le=255, description="Seconds")
    stop_gap: int = Field(default=DEFAULT_STOP_GAP, ge=1)


class EsploraConfig(BaseModel):
    """Esplora REST service, e.g. ``https://blockstream.info/api/``."""

    type: Literal["esplora"] = "esplora"
    base_url: str
    proxy: str | None = None
    concurrency: int | None = Field(default=None, ge=1, le=255)
    stop_gap: int = Field(default=DEFAULT_STOP_GAP, ge=1)
    timeout: int | None = Field(default=None, ge=1, description="Seconds")
    retry: int = Field(default=DEFAULT_RETRY, ge=0, le=255)


BlockchainConfig = Annotated[ElectrumConfig | EsploraConfig, Field(discriminator="type")]


class SyncParameters(BaseModel):
    """Gap limit, retry and parallelism knobs the sync engine runs with."""

    stop_gap: int = Field(default=DEFAULT_STOP_GAP, ge=1)
    retry: int = Field(default=DEFAULT_RETRY, ge=0)
    timeout: float | None = Field(default=None, gt=0)
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)

    @classmethod
    def from_config(cls, config: ElectrumConfig | EsploraConfig) -> SyncParameters:
        if isinstance(config, ElectrumConfig):
            # one Electrum connection, requests are pipelined on it
            return cls(
                stop_gap=config.stop_gap,
                retry=config.retry,
                timeout=config.timeout,
                concurrency=1,
            )
        if isinstance(config, EsploraConfig):
            return cls(
                stop_gap=config.stop_gap,
                retry=config.retry,
                timeout=config.timeout,
                concurrency=config.concurrency or DEFAULT_CONCURRENCY,
            )
        raise TypeError(f"Unknown blockchain config: {type(config).__name__}")


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DESCWALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    descriptor: str = ""
    change_descriptor: str | None = None
    network: Network = Network.TESTNET

    database: DatabaseConfig = Field(default_factory=MemoryConfig)
    blockchain: BlockchainConfig | None = None

    log_level: str = "INFO"


def get_settings() -> WalletSettings:
    return WalletSettings()
