"""
PSBT signing and finalization for P2WPKH, P2SH-P2WPKH and P2PKH inputs.
"""

from __future__ import annotations

import struct

from coincurve import PrivateKey
from loguru import logger

from descwallet.wallet.address import (
    ScriptType,
    classify_script,
    hash160,
    p2pkh_script,
    p2sh_script,
    p2wpkh_script,
    push_data,
)
from descwallet.wallet.descriptor import DerivedScript, DescriptorResolver
from descwallet.wallet.psbt import PSBT
from descwallet.wallet.transaction import (
    Transaction,
    TxIn,
    encode_varint,
    hash256,
    serialize_outpoint,
    serialize_output,
)

SIGHASH_ALL = 0x01


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """BIP143 signature hash."""
    if input_index >= len(tx.inputs):
        raise IndexError("Input index out of range")

    hash_prevouts = hash256(b"".join(serialize_outpoint(inp.prevout) for inp in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", inp.sequence) for inp in tx.inputs))
    hash_outputs = hash256(b"".join(serialize_output(out) for out in tx.outputs))

    target_input = tx.inputs[input_index]

    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + serialize_outpoint(target_input.prevout)
        + encode_varint(len(script_code))
        + script_code
        + value.to_bytes(8, "little")
        + struct.pack("<I", target_input.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + sighash_type.to_bytes(4, "little")
    )

    return hash256(preimage)


def compute_sighash_legacy(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    sighash_type: int = SIGHASH_ALL,
) -> bytes:
    """Pre-segwit signature hash (SIGHASH_ALL only)."""
    if input_index >= len(tx.inputs):
        raise IndexError("Input index out of range")

    inputs = [
        TxIn(
            prevout=inp.prevout,
            script_sig=script_code if i == input_index else b"",
            sequence=inp.sequence,
        )
        for i, inp in enumerate(tx.inputs)
    ]
    stripped = Transaction(tx.version, inputs, list(tx.outputs), tx.locktime)
    return hash256(stripped.serialize(include_witness=False) + struct.pack("<I", sighash_type))


def create_p2wpkh_script_code(pubkey_bytes: bytes) -> bytes:
    """Create the scriptCode for P2WPKH signing (BIP 143).

    For P2WPKH, the scriptCode is the P2PKH script:
    OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG

    Returns 25 bytes (without length prefix - the preimage serialization adds that).
    """
    return p2pkh_script(pubkey_bytes)


def sign_sighash(sighash: bytes, private_key: PrivateKey, sighash_type: int = SIGHASH_ALL) -> bytes:
    # sighash is already SHA256d; coincurve's sign() with hasher=None skips hashing
    signature = private_key.sign(sighash, hasher=None)
    return signature + bytes([sighash_type])


def create_witness_stack(signature: bytes, pubkey_bytes: bytes) -> list[bytes]:
    return [signature, pubkey_bytes]


class Signer:
    """Signs every PSBT input the wallet holds keys for, then finalizes it."""

    def __init__(self, resolver: DescriptorResolver):
        self.resolver = resolver

    def _derived_for(self, script_pubkey: bytes) -> DerivedScript | None:
        found = self.resolver.derivation_of(script_pubkey)
        if found is None:
            return None
        keychain, index = found
        return self.resolver.derive(keychain, index)

    def sign(self, psbt: PSBT) -> bool:
        """
        Add our signatures and finalize what we can.

        Returns True only when every input is finalized. False is the normal
        outcome for watch-only wallets or inputs owned by someone else.
        """
        signed = 0
        for index, inp in enumerate(psbt.inputs):
            if inp.is_finalized:
                continue
            spent = psbt.spent_output(index)
            if spent is None:
                logger.debug(f"Input {index}: spent output unknown, skipping")
                continue
            derived = self._derived_for(spent.script_pubkey)
            if derived is None or derived.pubkey is None:
                continue

            if derived.private_key is not None and derived.pubkey not in inp.partial_sigs:
                if self._sign_input(psbt, index, spent.value, spent.script_pubkey, derived):
                    signed += 1
            self._finalize_input(psbt, index, spent.script_pubkey, derived)

        complete = psbt.is_finalized()
        logger.info(
            f"Signed {signed} of {len(psbt.inputs)} inputs"
            + ("" if complete else " (PSBT not yet complete)")
        )
        return complete

    def _sign_input(
        self,
        psbt: PSBT,
        index: int,
        value: int,
        script_pubkey: bytes,
        derived: DerivedScript,
    ) -> bool:
        inp = psbt.inputs[index]
        sighash_type = inp.sighash_type if inp.sighash_type is not None else SIGHASH_ALL
        if sighash_type != SIGHASH_ALL:
            logger.warning(f"Input {index}: unsupported sighash type {sighash_type}")
            return False

        script_type = classify_script(script_pubkey)
        if script_type is ScriptType.P2WPKH:
            script_code = create_p2wpkh_script_code(derived.pubkey)
            sighash = compute_sighash_segwit(psbt.tx, index, script_code, value, sighash_type)
        elif script_type is ScriptType.P2SH and derived.redeem_script is not None:
            if p2sh_script(derived.redeem_script) != script_pubkey:
                return False
            inp.redeem_script = derived.redeem_script
            script_code = create_p2wpkh_script_code(derived.pubkey)
            sighash = compute_sighash_segwit(psbt.tx, index, script_code, value, sighash_type)
        elif script_type is ScriptType.P2PKH:
            sighash = compute_sighash_legacy(psbt.tx, index, script_pubkey, sighash_type)
        else:
            logger.debug(f"Input {index}: unsupported script type {script_type.value}")
            return False

        inp.partial_sigs[derived.pubkey] = sign_sighash(sighash, derived.private_key, sighash_type)
        return True

    def _finalize_input(
        self, psbt: PSBT, index: int, script_pubkey: bytes, derived: DerivedScript
    ) -> bool:
        inp = psbt.inputs[index]
        signature = inp.partial_sigs.get(derived.pubkey)
        if signature is None:
            return False

        script_type = classify_script(script_pubkey)
        if script_type is ScriptType.P2WPKH:
            inp.final_script_witness = create_witness_stack(signature, derived.pubkey)
        elif script_type is ScriptType.P2SH:
            redeem_script = inp.redeem_script or p2wpkh_script(derived.pubkey)
            if hash160(redeem_script) != script_pubkey[2:22]:
                return False
            inp.final_script_sig = push_data(redeem_script)
            inp.final_script_witness = create_witness_stack(signature, derived.pubkey)
        elif script_type is ScriptType.P2PKH:
            inp.final_script_sig = push_data(signature) + push_data(derived.pubkey)
        else:
            return False

        # Finalized inputs drop the signing metadata
        inp.partial_sigs = {}
        inp.sighash_type = None
        inp.redeem_script = None
        inp.witness_script = None
        inp.bip32_derivations = {}
        return True
