"""
Replace-by-fee: rebuild an unconfirmed wallet transaction at a higher fee rate.
"""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from loguru import logger

from descwallet.constants import MIN_RELAY_INCREMENT, SEQUENCE_RBF, WITNESS_SCALE_FACTOR
from descwallet.errors import FeeBumpError
from descwallet.models import LocalUtxo
from descwallet.wallet.address import address_to_scriptpubkey
from descwallet.wallet.tx_builder import BuildPolicy, TxBuilderResult, create_tx

if TYPE_CHECKING:
    from descwallet.wallet.service import Wallet


class BumpFeeTxBuilder:
    """
    Builds a replacement for an RBF-signalling wallet transaction.

    The original inputs are always spent again. Outputs paying the wallet's
    change keychain are treated as change and recomputed; all other outputs
    are kept unchanged. An output nominated with allow_shrinking() instead
    absorbs the fee increase: no inputs are added, change keeps its value and
    the nominated output is reduced (or dropped once it falls below dust).
    """

    def __init__(self, txid: str, new_fee_rate: float):
        if new_fee_rate <= 0:
            raise FeeBumpError(f"Invalid fee rate: {new_fee_rate}")
        self.txid = txid
        self.new_fee_rate = new_fee_rate
        self._shrink_address: str | None = None
        self._sequence: int | None = None
        self._finished = False

    def _check_open(self) -> None:
        if self._finished:
            raise FeeBumpError("BumpFeeTxBuilder already finished; create a new builder")

    def allow_shrinking(self, address: str) -> BumpFeeTxBuilder:
        self._check_open()
        self._shrink_address = address
        return self

    def enable_rbf(self) -> BumpFeeTxBuilder:
        self._check_open()
        self._sequence = SEQUENCE_RBF
        return self

    def enable_rbf_with_sequence(self, nsequence: int) -> BumpFeeTxBuilder:
        self._check_open()
        self._sequence = nsequence
        return self

    def finish(self, wallet: Wallet) -> TxBuilderResult:
        self._check_open()
        self._finished = True
        return build_fee_bump(
            wallet,
            self.txid,
            self.new_fee_rate,
            allow_shrinking=self._shrink_address,
            sequence=self._sequence,
        )


def build_fee_bump(
    wallet: Wallet,
    txid: str,
    new_fee_rate: float,
    allow_shrinking: str | None = None,
    sequence: int | None = None,
) -> TxBuilderResult:
    ledger = wallet.ledger
    record = ledger.get_transaction(txid)
    tx = ledger.get_parsed_transaction(txid)
    if record is None or tx is None:
        raise FeeBumpError(f"Transaction {txid} not found in wallet")
    if record.is_confirmed:
        raise FeeBumpError(f"Transaction {txid} is already confirmed")
    if not tx.is_rbf_signaling():
        raise FeeBumpError(f"Transaction {txid} does not signal replaceability")

    details = ledger.details(txid)
    if details is None or details.fee is None:
        raise FeeBumpError(f"Fee of transaction {txid} is unknown")
    original_fee = details.fee

    original_inputs: list[LocalUtxo] = []
    for txin in tx.inputs:
        utxo = ledger.get(txin.prevout)
        if utxo is None:
            raise FeeBumpError(f"Input {txin.prevout} of {txid} is not owned by this wallet")
        original_inputs.append(replace(utxo, is_spent=False))

    shrink_script = None
    if allow_shrinking is not None:
        try:
            shrink_script = address_to_scriptpubkey(allow_shrinking, wallet.network)
        except ValueError as e:
            raise FeeBumpError(f"Invalid address {allow_shrinking!r}: {e}") from e
        if not any(out.script_pubkey == shrink_script for out in tx.outputs):
            raise FeeBumpError(f"{allow_shrinking} is not an output of {txid}")

    # With a nominated output every other output, change included, keeps its
    # value and the nominated one absorbs the whole fee increase
    recipients: list[tuple[str | bytes, int]] = []
    change_script = None
    change_keychain = wallet.resolver.change_keychain
    for out in tx.outputs:
        if shrink_script is not None:
            if out.script_pubkey != shrink_script:
                recipients.append((out.script_pubkey, out.value))
            continue
        found = wallet.resolver.derivation_of(out.script_pubkey)
        if found is not None and found[0] is change_keychain:
            change_script = change_script or out.script_pubkey
            continue
        recipients.append((out.script_pubkey, out.value))

    drain_to = shrink_script
    if drain_to is None and not recipients:
        # Self-transfer to change only: keep paying the same change script
        drain_to = change_script

    policy = BuildPolicy(
        recipients=recipients,
        utxos=[u.outpoint for u in original_inputs],
        manual_only=shrink_script is not None,
        fee_rate=new_fee_rate,
        drain_to=drain_to,
        rbf_sequence=sequence if sequence is not None else SEQUENCE_RBF,
    )
    # Outputs of the replaced transaction or of anything spending them would
    # not exist once the replacement confirms
    excluded = {txid} | ledger.descendants(txid)
    outcome = create_tx(wallet, policy, extra_utxos=original_inputs, excluded_txids=excluded)

    if shrink_script is not None:
        original_value = sum(o.value for o in tx.outputs if o.script_pubkey == shrink_script)
        new_outputs = outcome.psbt.tx.outputs
        new_value = sum(o.value for o in new_outputs if o.script_pubkey == shrink_script)
        if new_value > original_value:
            raise FeeBumpError(
                f"Output to {allow_shrinking} would grow from {original_value} "
                f"to {new_value} sats"
            )

    new_fee = outcome.details.fee
    new_vsize = -(-outcome.weight // WITNESS_SCALE_FACTOR)
    min_fee = original_fee + MIN_RELAY_INCREMENT * new_vsize
    if new_fee < min_fee:
        raise FeeBumpError(
            f"New fee {new_fee} sats does not exceed the original fee {original_fee} "
            f"by the minimum relay increment (need at least {min_fee} sats)"
        )

    logger.info(f"Fee bump of {txid}: fee {original_fee} -> {new_fee} sats")
    return TxBuilderResult(psbt=outcome.psbt, details=outcome.details)
