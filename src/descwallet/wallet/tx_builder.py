"""
Transaction builder.

A TxBuilder collects the build policy for exactly one transaction:
- recipients and an optional OP_RETURN payload
- must-spend and unspendable outputs, change spending policy
- fee rate or absolute fee, RBF signalling
- drain behaviour and output ordering

finish() validates the policy before touching coin selection, selects inputs,
computes fee and change, and returns an unsigned PSBT. It never modifies the
ledger.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from loguru import logger

from descwallet.constants import (
    MAX_OP_RETURN_DATA,
    SEQUENCE_FINAL,
    SEQUENCE_RBF,
    TX_OVERHEAD_WEIGHT,
    TX_VERSION,
)
from descwallet.errors import (
    ConflictingFeePolicyError,
    DustOutputError,
    InsufficientFundsError,
    InvalidRbfSequenceError,
    TxBuilderError,
    UnknownUtxoError,
)
from descwallet.models import (
    AddressIndex,
    KeychainKind,
    LocalUtxo,
    OutPoint,
    TransactionDetails,
    TxOut,
)
from descwallet.wallet.address import (
    address_to_scriptpubkey,
    dust_threshold,
    op_return_script,
)
from descwallet.wallet.coin_selection import (
    CoinSelector,
    FeeAbsolute,
    FeePolicy,
    FeeRate,
    WeightedUtxo,
    transaction_weight,
)
from descwallet.wallet.descriptor import DescriptorResolver
from descwallet.wallet.psbt import PSBT, PSBTInput, PSBTOutput
from descwallet.wallet.transaction import Transaction, TxIn, output_weight

if TYPE_CHECKING:
    from descwallet.wallet.service import Wallet

DEFAULT_FEE_RATE = 1.0  # sat/vB


class TxOrdering(str, Enum):
    UNTOUCHED = "untouched"  # inputs in selection order; recipients, data, change
    BIP69 = "bip69"  # lexicographic inputs and outputs


class ChangeSpendPolicy(str, Enum):
    CHANGE_ALLOWED = "change_allowed"
    ONLY_CHANGE = "only_change"
    CHANGE_FORBIDDEN = "change_forbidden"


@dataclass
class TxBuilderResult:
    psbt: PSBT
    details: TransactionDetails


@dataclass
class BuildPolicy:
    """Everything a single build needs to know; never shared between builds."""

    recipients: list[tuple[str | bytes, int]] = field(default_factory=list)
    utxos: list[OutPoint] = field(default_factory=list)
    unspendable: set[OutPoint] = field(default_factory=set)
    manual_only: bool = False
    fee_rate: float | None = None
    fee_absolute: int | None = None
    change_policy: ChangeSpendPolicy = ChangeSpendPolicy.CHANGE_ALLOWED
    drain_wallet: bool = False
    drain_to: str | bytes | None = None
    rbf_sequence: int | None = None
    data: bytes | None = None
    ordering: TxOrdering = TxOrdering.UNTOUCHED


@dataclass
class BuildOutcome:
    psbt: PSBT
    details: TransactionDetails
    weight: int


class TxBuilder:
    """
    Fluent single-use transaction builder.

    Usage:
        result = (
            TxBuilder()
            .add_recipient("bc1q...", 50_000)
            .fee_rate(2.0)
            .enable_rbf()
            .finish(wallet)
        )
    """

    def __init__(self) -> None:
        self._policy = BuildPolicy()
        self._finished = False

    def _check_open(self) -> None:
        if self._finished:
            raise TxBuilderError("TxBuilder already finished; create a new builder")

    def add_recipient(self, recipient: str | bytes, amount: int) -> TxBuilder:
        """Pay amount sats to an address string or a raw scriptPubKey."""
        self._check_open()
        if amount < 0:
            raise TxBuilderError(f"Negative amount: {amount}")
        self._policy.recipients.append((recipient, amount))
        return self

    def set_recipients(self, recipients: Iterable[tuple[str | bytes, int]]) -> TxBuilder:
        self._check_open()
        self._policy.recipients = []
        for recipient, amount in recipients:
            self.add_recipient(recipient, amount)
        return self

    def add_utxo(self, outpoint: OutPoint) -> TxBuilder:
        """Spend this output no matter what coin selection decides."""
        self._check_open()
        if outpoint not in self._policy.utxos:
            self._policy.utxos.append(outpoint)
        return self

    def add_utxos(self, outpoints: Iterable[OutPoint]) -> TxBuilder:
        for outpoint in outpoints:
            self.add_utxo(outpoint)
        return self

    def add_unspendable(self, outpoint: OutPoint) -> TxBuilder:
        self._check_open()
        self._policy.unspendable.add(outpoint)
        return self

    def manually_selected_only(self) -> TxBuilder:
        self._check_open()
        self._policy.manual_only = True
        return self

    def fee_rate(self, sat_per_vbyte: float) -> TxBuilder:
        self._check_open()
        if sat_per_vbyte < 0:
            raise TxBuilderError(f"Negative fee rate: {sat_per_vbyte}")
        self._policy.fee_rate = sat_per_vbyte
        return self

    def fee_absolute(self, fee_amount: int) -> TxBuilder:
        self._check_open()
        if fee_amount < 0:
            raise TxBuilderError(f"Negative fee: {fee_amount}")
        self._policy.fee_absolute = fee_amount
        return self

    def do_not_spend_change(self) -> TxBuilder:
        self._check_open()
        self._policy.change_policy = ChangeSpendPolicy.CHANGE_FORBIDDEN
        return self

    def only_spend_change(self) -> TxBuilder:
        self._check_open()
        self._policy.change_policy = ChangeSpendPolicy.ONLY_CHANGE
        return self

    def drain_wallet(self) -> TxBuilder:
        """Spend every eligible output."""
        self._check_open()
        self._policy.drain_wallet = True
        return self

    def drain_to(self, recipient: str | bytes) -> TxBuilder:
        """Send whatever is left after recipients and fee here instead of to change."""
        self._check_open()
        self._policy.drain_to = recipient
        return self

    def enable_rbf(self) -> TxBuilder:
        self._check_open()
        self._policy.rbf_sequence = SEQUENCE_RBF
        return self

    def enable_rbf_with_sequence(self, nsequence: int) -> TxBuilder:
        self._check_open()
        self._policy.rbf_sequence = nsequence
        return self

    def add_data(self, data: bytes) -> TxBuilder:
        """Attach a zero-value OP_RETURN output."""
        self._check_open()
        self._policy.data = bytes(data)
        return self

    def ordering(self, ordering: TxOrdering) -> TxBuilder:
        self._check_open()
        self._policy.ordering = ordering
        return self

    def finish(self, wallet: Wallet) -> TxBuilderResult:
        self._check_open()
        self._finished = True
        outcome = create_tx(wallet, self._policy)
        return TxBuilderResult(psbt=outcome.psbt, details=outcome.details)


def _to_script(recipient: str | bytes, wallet: Wallet) -> bytes:
    if isinstance(recipient, bytes):
        return recipient
    try:
        return address_to_scriptpubkey(recipient, wallet.network)
    except ValueError as e:
        raise TxBuilderError(f"Invalid recipient address {recipient!r}: {e}") from e


def weighted_utxo(wallet: Wallet, utxo: LocalUtxo) -> WeightedUtxo:
    descriptor = wallet.resolver.descriptor_for(utxo.keychain)
    return WeightedUtxo(
        utxo=utxo,
        satisfaction_weight=descriptor.input_weight(),
        is_segwit=descriptor.is_segwit,
    )


def _validate(policy: BuildPolicy) -> None:
    if policy.fee_rate is not None and policy.fee_absolute is not None:
        raise ConflictingFeePolicyError()
    if policy.rbf_sequence is not None and policy.rbf_sequence > SEQUENCE_RBF:
        raise InvalidRbfSequenceError(policy.rbf_sequence)
    if policy.data is not None and len(policy.data) > MAX_OP_RETURN_DATA:
        raise TxBuilderError(
            f"OP_RETURN data is {len(policy.data)} bytes, max {MAX_OP_RETURN_DATA}"
        )
    if not policy.recipients and policy.drain_to is None:
        raise TxBuilderError("No recipients and no drain address")
    if not policy.recipients and not policy.drain_wallet and not policy.utxos:
        raise TxBuilderError("drain_to without recipients needs drain_wallet or added utxos")


def _sort_bip69(
    inputs: list[WeightedUtxo], outputs: list[TxOut]
) -> tuple[list[WeightedUtxo], list[TxOut]]:
    inputs = sorted(inputs, key=lambda w: (w.outpoint.txid, w.outpoint.vout))
    outputs = sorted(outputs, key=lambda o: (o.value, o.script_pubkey))
    return inputs, outputs


def create_tx(
    wallet: Wallet,
    policy: BuildPolicy,
    extra_utxos: Sequence[LocalUtxo] = (),
    excluded_txids: Iterable[str] = (),
) -> BuildOutcome:
    """
    Build an unsigned transaction for a policy.

    extra_utxos are spendable in addition to the ledger's unspent outputs
    (the inputs of a transaction being replaced); outputs created by
    excluded_txids are never selected.
    """
    _validate(policy)

    recipients = [(_to_script(r, wallet), amount) for r, amount in policy.recipients]
    for script, amount in recipients:
        threshold = dust_threshold(script)
        if amount < threshold:
            raise DustOutputError(amount, threshold)

    snapshot = wallet.ledger.snapshot()
    excluded = set(excluded_txids)
    available: dict[OutPoint, LocalUtxo] = {}
    for utxo in snapshot.list_unspent():
        if utxo.outpoint.txid not in excluded:
            available[utxo.outpoint] = utxo
    for utxo in extra_utxos:
        available[utxo.outpoint] = utxo

    for outpoint in policy.utxos:
        if outpoint not in available:
            raise UnknownUtxoError(outpoint)

    unspendable = set(policy.unspendable)
    if policy.change_policy is ChangeSpendPolicy.ONLY_CHANGE:
        unspendable |= {op for op, u in available.items() if u.keychain is KeychainKind.EXTERNAL}
    elif policy.change_policy is ChangeSpendPolicy.CHANGE_FORBIDDEN:
        unspendable |= {op for op, u in available.items() if u.keychain is KeychainKind.INTERNAL}

    fee_policy: FeePolicy
    if policy.fee_absolute is not None:
        fee_policy = FeeAbsolute(policy.fee_absolute)
    else:
        fee_policy = FeeRate(policy.fee_rate if policy.fee_rate is not None else DEFAULT_FEE_RATE)

    outputs = [TxOut(amount, script) for script, amount in recipients]
    if policy.data is not None:
        outputs.append(TxOut(0, op_return_script(policy.data)))
    target = sum(o.value for o in outputs)
    base_weight = TX_OVERHEAD_WEIGHT + sum(output_weight(o.script_pubkey) for o in outputs)

    candidates = [weighted_utxo(wallet, u) for u in available.values()]
    must_spend = list(policy.utxos)

    if policy.drain_wallet:
        by_outpoint = {w.outpoint: w for w in candidates}
        selected = [by_outpoint[op] for op in must_spend]
        if not policy.manual_only:
            blocked = unspendable | set(must_spend)
            selected += sorted(
                (w for w in candidates if w.outpoint not in blocked),
                key=lambda w: (-w.value, w.outpoint),
            )
        if not selected:
            raise InsufficientFundsError(needed=target, available=0)
    else:
        selection = CoinSelector().select(
            target=target,
            candidates=candidates,
            fee_policy=fee_policy,
            base_weight=base_weight,
            must_spend=must_spend,
            unspendable=unspendable,
            manual_only=policy.manual_only,
        )
        selected = selection.selected

    input_total = sum(w.value for w in selected)
    weight_no_change = transaction_weight(base_weight, selected)
    fee_no_change = fee_policy.fee_for_weight(weight_no_change)
    if input_total < target + fee_no_change:
        raise InsufficientFundsError(needed=target + fee_no_change, available=input_total)

    # Change (or drain) output
    if policy.drain_to is not None:
        change_script = _to_script(policy.drain_to, wallet)
        reveal_change = False
    else:
        change_script = _peek_change_script(wallet)
        reveal_change = True

    weight_with_change = weight_no_change + output_weight(change_script)
    fee_with_change = fee_policy.fee_for_weight(weight_with_change)
    change_value = input_total - target - fee_with_change
    change_threshold = dust_threshold(change_script)

    if change_value >= change_threshold:
        outputs.append(TxOut(change_value, change_script))
        weight = weight_with_change
        if reveal_change:
            wallet.resolver.get_address(KeychainKind.INTERNAL, AddressIndex.LAST_UNUSED)
    elif not outputs:
        raise InsufficientFundsError(
            needed=fee_with_change + change_threshold, available=input_total
        )
    else:
        if change_value > 0:
            logger.debug(f"Change of {change_value} sats is dust, adding it to the fee")
        weight = weight_no_change

    fee = input_total - sum(o.value for o in outputs)

    if policy.ordering is TxOrdering.BIP69:
        selected, outputs = _sort_bip69(selected, outputs)

    sequence = policy.rbf_sequence if policy.rbf_sequence is not None else SEQUENCE_FINAL
    tx = Transaction(
        version=TX_VERSION,
        inputs=[TxIn(prevout=w.outpoint, sequence=sequence) for w in selected],
        outputs=outputs,
        locktime=0,
    )
    psbt = _make_psbt(wallet, tx, selected)

    received = sum(o.value for o in outputs if wallet.resolver.is_mine(o.script_pubkey))
    details = TransactionDetails(txid=tx.txid, sent=input_total, received=received, fee=fee)
    logger.info(
        f"Built transaction {tx.txid}: {len(selected)} inputs, {len(outputs)} outputs, "
        f"fee {fee} sats (~{-(-weight // 4)} vB)"
    )
    return BuildOutcome(psbt=psbt, details=details, weight=weight)


def _peek_change_script(wallet: Wallet) -> bytes:
    """Script the next change output would use, without revealing it yet."""
    resolver = wallet.resolver
    keychain = KeychainKind.INTERNAL
    current = resolver.current_index(keychain)
    if current is not None:
        script = resolver.derive(keychain, current).script_pubkey
        if not wallet.ledger.is_used(script):
            return script
    index = 0 if current is None else current + 1
    return resolver.derive(keychain, index).script_pubkey


def _make_psbt(wallet: Wallet, tx: Transaction, selected: list[WeightedUtxo]) -> PSBT:
    psbt = PSBT(tx)
    resolver = wallet.resolver

    for inp, weighted in zip(psbt.inputs, selected, strict=True):
        utxo = weighted.utxo
        if weighted.is_segwit:
            inp.witness_utxo = utxo.txout
        prev_tx = wallet.ledger.get_parsed_transaction(utxo.outpoint.txid)
        if prev_tx is not None:
            inp.non_witness_utxo = prev_tx
        _add_key_info(resolver, inp, utxo.txout.script_pubkey)

    for out, txout in zip(psbt.outputs, tx.outputs, strict=True):
        _add_key_info(resolver, out, txout.script_pubkey)
    return psbt


def _add_key_info(
    resolver: DescriptorResolver, entry: PSBTInput | PSBTOutput, script_pubkey: bytes
) -> None:
    found = resolver.derivation_of(script_pubkey)
    if found is None:
        return
    derived = resolver.derive(*found)
    if derived.redeem_script is not None:
        entry.redeem_script = derived.redeem_script
    if derived.pubkey is not None and derived.origin is not None:
        entry.bip32_derivations[derived.pubkey] = derived.origin
