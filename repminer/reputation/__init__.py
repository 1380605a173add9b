"""Verifiable reputation state.

Reputation amounts live in an authenticated map keyed by
(organization, skill, participant). Every batch of change-log deltas is
committed as a new immutable version, and any committed version can still
produce inclusion proofs after later versions have been written.

Versions are persisted with a snapshot+delta model:
- Snapshots: every leaf (version 1 and every ``snapshot_interval`` after)
- Deltas: only the leaves written by that version's batch
"""

from .applier import ChangeLogApplier
from .errors import (
    AmountOverflow,
    InvalidRequest,
    KeyNotFound,
    ReputationError,
    StateCorruption,
    VersionNotFound,
)
from .keys import decode_value, derive_key, encode_value
from .models import ChangeLogEntry, ProofResponse, VersionRecord
from .oracle import NOT_FOUND_MESSAGE, OracleAnswer, ReputationOracle
from .state import LATEST, VersionedState
from .trie import EMPTY_ROOT, Proof, ReputationTrie, verify_proof

__all__ = [
    "EMPTY_ROOT",
    "LATEST",
    "NOT_FOUND_MESSAGE",
    "AmountOverflow",
    "ChangeLogApplier",
    "ChangeLogEntry",
    "InvalidRequest",
    "KeyNotFound",
    "OracleAnswer",
    "Proof",
    "ProofResponse",
    "ReputationError",
    "ReputationOracle",
    "ReputationTrie",
    "StateCorruption",
    "VersionNotFound",
    "VersionRecord",
    "VersionedState",
    "decode_value",
    "derive_key",
    "encode_value",
    "verify_proof",
]
