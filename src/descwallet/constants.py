"""
Bitcoin policy constants used by transaction building and fee estimation.

Dust thresholds follow Bitcoin Core's GetDustThreshold() at the default
dust relay fee of 3 sat/vB:
- P2PKH: 546 sats
- P2SH: 540 sats
- P2WPKH: 294 sats
- P2WSH / P2TR: 330 sats
"""

from __future__ import annotations

# Dust relay fee in sat/vB (Bitcoin Core -dustrelayfee default, 3000 sat/kvB)
DUST_RELAY_FEE = 3

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Extra bytes Core assumes for spending an output when computing dust
# (outpoint 36 + scriptSig len 1 + sequence 4 + spending data)
DUST_SPEND_SIZE_LEGACY = 32 + 4 + 1 + 107 + 4  # 148
DUST_SPEND_SIZE_WITNESS = 32 + 4 + 1 + (107 // 4) + 4  # 67

# Sequence numbers (BIP125 / BIP68)
SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_ENABLE_LOCKTIME = 0xFFFFFFFE
SEQUENCE_RBF = 0xFFFFFFFD  # highest sequence that still signals replaceability

# Transaction version used for new transactions
TX_VERSION = 2

# Weight accounting (weight units, WU = 4 * non-witness byte + witness byte)
WITNESS_SCALE_FACTOR = 4
# version (4) + input count (1) + output count (1) + locktime (4)
TX_OVERHEAD_WEIGHT = 10 * WITNESS_SCALE_FACTOR
# segwit marker + flag bytes
SEGWIT_MARKER_WEIGHT = 2

# Worst-case input weights with a 72-byte DER signature
P2WPKH_INPUT_WEIGHT = 41 * WITNESS_SCALE_FACTOR + (1 + 1 + 72 + 1 + 33)  # 272 WU, 68 vB
P2SH_P2WPKH_INPUT_WEIGHT = 64 * WITNESS_SCALE_FACTOR + (1 + 1 + 72 + 1 + 33)  # 364 WU, 91 vB
P2PKH_INPUT_WEIGHT = 148 * WITNESS_SCALE_FACTOR  # 592 WU, 148 vB

# Minimum feerate increment required for a replacement (BIP125 rule 4)
MIN_RELAY_INCREMENT = 1  # sat/vB

# Largest OP_RETURN payload relayed by default policy
MAX_OP_RETURN_DATA = 80

# Sync defaults
DEFAULT_STOP_GAP = 20
DEFAULT_RETRY = 5
DEFAULT_CONCURRENCY = 4
