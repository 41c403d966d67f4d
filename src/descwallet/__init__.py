"""
descwallet - Descriptor-based Bitcoin wallet engine

Derives addresses from output descriptors, syncs against Electrum or Esplora
servers, builds and signs PSBTs, and bumps fees of unconfirmed transactions.
"""

__version__ = "0.1.0"

from descwallet.config import (
    ElectrumConfig,
    EsploraConfig,
    MemoryConfig,
    SledConfig,
    SqliteConfig,
    SyncParameters,
    WalletSettings,
)
from descwallet.errors import (
    ConflictingFeePolicyError,
    DustOutputError,
    FeeBumpError,
    InsufficientFundsError,
    InvalidDescriptorError,
    InvalidRbfSequenceError,
    NetworkFailureError,
    SerializationError,
    SigningIncompleteError,
    TxBuilderError,
    UnknownUtxoError,
    WalletError,
)
from descwallet.models import (
    AddressIndex,
    AddressInfo,
    Balance,
    BlockTime,
    Confirmed,
    KeychainKind,
    LocalUtxo,
    Network,
    OutPoint,
    TransactionDetails,
    TxOut,
    Unconfirmed,
)
from descwallet.wallet.fee_bump import BumpFeeTxBuilder
from descwallet.wallet.psbt import PSBT
from descwallet.wallet.service import Wallet
from descwallet.wallet.tx_builder import TxBuilder, TxBuilderResult, TxOrdering

__all__ = [
    "__version__",
    # Config
    "ElectrumConfig",
    "EsploraConfig",
    "MemoryConfig",
    "SledConfig",
    "SqliteConfig",
    "SyncParameters",
    "WalletSettings",
    # Errors
    "ConflictingFeePolicyError",
    "DustOutputError",
    "FeeBumpError",
    "InsufficientFundsError",
    "InvalidDescriptorError",
    "InvalidRbfSequenceError",
    "NetworkFailureError",
    "SerializationError",
    "SigningIncompleteError",
    "TxBuilderError",
    "UnknownUtxoError",
    "WalletError",
    # Models
    "AddressIndex",
    "AddressInfo",
    "Balance",
    "BlockTime",
    "Confirmed",
    "KeychainKind",
    "LocalUtxo",
    "Network",
    "OutPoint",
    "TransactionDetails",
    "TxOut",
    "Unconfirmed",
    # Wallet
    "BumpFeeTxBuilder",
    "PSBT",
    "TxBuilder",
    "TxBuilderResult",
    "TxOrdering",
    "Wallet",
]
