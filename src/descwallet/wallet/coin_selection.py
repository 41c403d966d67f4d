"""
Coin selection.

Must-spend outputs are always included; the remaining candidates are added
largest-first until the selection covers the target plus the fee of the
transaction with the inputs chosen so far.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from loguru import logger

from descwallet.constants import SEGWIT_MARKER_WEIGHT, WITNESS_SCALE_FACTOR
from descwallet.errors import InsufficientFundsError, UnknownUtxoError
from descwallet.models import LocalUtxo, OutPoint


def weight_to_vsize(weight: int) -> int:
    return math.ceil(weight / WITNESS_SCALE_FACTOR)


@dataclass(frozen=True)
class FeeRate:
    sat_per_vb: float

    def __post_init__(self) -> None:
        if self.sat_per_vb < 0 or math.isnan(self.sat_per_vb):
            raise ValueError(f"Invalid fee rate: {self.sat_per_vb}")

    def fee_for_weight(self, weight: int) -> int:
        return math.ceil(weight_to_vsize(weight) * self.sat_per_vb)


@dataclass(frozen=True)
class FeeAbsolute:
    amount: int

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"Invalid absolute fee: {self.amount}")

    def fee_for_weight(self, weight: int) -> int:
        return self.amount


FeePolicy = FeeRate | FeeAbsolute


@dataclass(frozen=True)
class WeightedUtxo:
    """A spendable output and the weight its input will add to a transaction."""

    utxo: LocalUtxo
    satisfaction_weight: int
    is_segwit: bool

    @property
    def outpoint(self) -> OutPoint:
        return self.utxo.outpoint

    @property
    def value(self) -> int:
        return self.utxo.value


def transaction_weight(base_weight: int, inputs: Iterable[WeightedUtxo]) -> int:
    """Base weight (overhead + outputs) plus inputs and the segwit marker if needed."""
    weight = base_weight
    segwit = False
    for weighted in inputs:
        weight += weighted.satisfaction_weight
        segwit = segwit or weighted.is_segwit
    if segwit:
        weight += SEGWIT_MARKER_WEIGHT
    return weight


@dataclass
class CoinSelectionResult:
    selected: list[WeightedUtxo]
    fee: int
    weight: int

    @property
    def selected_amount(self) -> int:
        return sum(w.value for w in self.selected)


class CoinSelector:
    """Largest-first coin selection."""

    def select(
        self,
        target: int,
        candidates: Sequence[WeightedUtxo],
        fee_policy: FeePolicy,
        base_weight: int,
        must_spend: Sequence[OutPoint] = (),
        unspendable: Iterable[OutPoint] = (),
        manual_only: bool = False,
    ) -> CoinSelectionResult:
        by_outpoint = {w.outpoint: w for w in candidates}

        selected: list[WeightedUtxo] = []
        seen: set[OutPoint] = set()
        for outpoint in must_spend:
            if outpoint in seen:
                continue
            weighted = by_outpoint.get(outpoint)
            if weighted is None:
                raise UnknownUtxoError(outpoint)
            selected.append(weighted)
            seen.add(outpoint)

        def fee_and_weight() -> tuple[int, int]:
            weight = transaction_weight(base_weight, selected)
            return fee_policy.fee_for_weight(weight), weight

        fee, weight = fee_and_weight()
        selected_amount = sum(w.value for w in selected)

        if selected and selected_amount >= target + fee:
            return CoinSelectionResult(selected, fee, weight)

        if manual_only:
            raise InsufficientFundsError(needed=target + fee, available=selected_amount)

        excluded = set(unspendable) | seen
        remaining = sorted(
            (w for w in candidates if w.outpoint not in excluded),
            key=lambda w: (-w.value, w.outpoint),
        )

        for weighted in remaining:
            selected.append(weighted)
            selected_amount += weighted.value
            fee, weight = fee_and_weight()
            if selected_amount >= target + fee:
                logger.debug(
                    f"Selected {len(selected)} inputs ({selected_amount} sats) "
                    f"for target {target} + fee {fee}"
                )
                return CoinSelectionResult(selected, fee, weight)

        raise InsufficientFundsError(needed=target + fee, available=selected_amount)
