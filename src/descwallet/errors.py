"""
Wallet exception hierarchy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from descwallet.models import OutPoint


class WalletError(Exception):
    """Base class for all wallet errors."""


class InsufficientFundsError(WalletError):
    """Selected (or selectable) inputs cannot cover outputs plus fee."""

    def __init__(self, needed: int, available: int):
        self.needed = needed
        self.available = available
        self.shortfall = max(needed - available, 0)
        super().__init__(
            f"Insufficient funds: need {needed} sats, have {available} sats "
            f"(short {self.shortfall} sats)"
        )


class InvalidDescriptorError(WalletError):
    pass


class UnknownUtxoError(WalletError):
    def __init__(self, outpoint: OutPoint):
        self.outpoint = outpoint
        super().__init__(f"Unknown UTXO: {outpoint}")


class ConflictingFeePolicyError(WalletError):
    def __init__(self) -> None:
        super().__init__("fee_rate and fee_absolute are mutually exclusive")


class InvalidRbfSequenceError(WalletError):
    def __init__(self, value: int):
        self.value = value
        super().__init__(f"Sequence {value:#x} does not signal replaceability (max 0xfffffffd)")


class DustOutputError(WalletError):
    def __init__(self, value: int, threshold: int):
        self.value = value
        self.threshold = threshold
        super().__init__(f"Output value {value} is below the dust threshold {threshold}")


class NetworkFailureError(WalletError):
    """Chain backend unreachable after exhausting the configured retries."""

    def __init__(self, message: str, retries_exhausted: bool = True):
        self.retries_exhausted = retries_exhausted
        super().__init__(message)


class SerializationError(WalletError):
    pass


class SigningIncompleteError(WalletError):
    pass


class TxBuilderError(WalletError):
    """Invalid use of a transaction builder."""


class FeeBumpError(TxBuilderError):
    pass
