"""Pydantic models for the reputation state and its wire formats.

- ChangeLogEntry: one reputation delta from the external change log
- VersionRecord: a committed version as persisted (snapshot or delta)
- ProofResponse: what the oracle serves for a (root, key) lookup
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .keys import decode_value, derive_key, normalize_address, parse_skill_id
from .trie import Proof


# ---------------------------------------------------------------------------
# Schema version - bump on breaking changes to the persisted record format
# ---------------------------------------------------------------------------

STATE_SCHEMA_VERSION = 1


# ---------------------------------------------------------------------------
# Change log
# ---------------------------------------------------------------------------


class ChangeLogEntry(BaseModel):
    """A single reputation delta, keyed by (organization, skill, participant)."""

    organization: str
    skill_id: int = Field(ge=0)
    participant: str
    delta: int
    sequence: int = Field(ge=1, description="Strictly increasing log position")

    @field_validator("organization", "participant")
    @classmethod
    def _check_address(cls, v: str) -> str:
        return normalize_address(v)

    @field_validator("skill_id", mode="before")
    @classmethod
    def _check_skill(cls, v: int | str) -> int:
        return parse_skill_id(v)

    @property
    def key(self) -> bytes:
        return derive_key(self.organization, self.skill_id, self.participant)


# ---------------------------------------------------------------------------
# Persisted versions
# ---------------------------------------------------------------------------


class LeafRecord(BaseModel):
    """Hex-encoded (key, value) pair."""

    key: str = Field(pattern=r"^[0-9a-f]{64}$")
    value: str = Field(pattern=r"^[0-9a-f]{128}$")

    @classmethod
    def from_bytes(cls, key: bytes, value: bytes) -> LeafRecord:
        return cls(key=key.hex(), value=value.hex())

    def to_bytes(self) -> tuple[bytes, bytes]:
        return bytes.fromhex(self.key), bytes.fromhex(self.value)


class VersionRecord(BaseModel):
    """A committed version of the reputation state.

    ``kind == "snapshot"`` carries every leaf; ``kind == "delta"`` carries
    only the leaves written since ``version - 1``.
    """

    schema_version: int = STATE_SCHEMA_VERSION
    version: int = Field(ge=1)
    kind: Literal["snapshot", "delta"]
    root: str = Field(pattern=r"^[0-9a-f]{64}$")
    parent_root: str = Field(pattern=r"^[0-9a-f]{64}$")
    watermark: int = Field(ge=0, description="Last applied change-log sequence")
    n_keys: int = Field(ge=0)
    content_hash: str = Field(description="SHA256 hex digest of the leaves section")
    created_at: datetime
    leaves: list[LeafRecord] = Field(default_factory=list)

    @property
    def root_bytes(self) -> bytes:
        return bytes.fromhex(self.root)


# ---------------------------------------------------------------------------
# Oracle responses
# ---------------------------------------------------------------------------


class ProofResponse(BaseModel):
    """Proof of a reputation value under a specific root.

    On the wire the mask and amount travel as ``branchMask`` and
    ``derivedAmount``; dump with ``by_alias=True``.
    """

    model_config = ConfigDict(populate_by_name=True)

    branch_mask: str = Field(alias="branchMask", description="Hex, no prefix")
    siblings: list[str]
    key: str
    value: str
    derived_amount: str = Field(alias="derivedAmount", description="Decimal amount decoded from value")
    root: str
    version: int

    @classmethod
    def from_proof(cls, proof: Proof, root: bytes, version: int) -> ProofResponse:
        amount, _ = decode_value(proof.value)
        return cls(
            branch_mask=format(proof.branch_mask, "x"),
            siblings=["0x" + s.hex() for s in proof.siblings],
            key="0x" + proof.key.hex(),
            value="0x" + proof.value.hex(),
            derived_amount=str(amount),
            root="0x" + root.hex(),
            version=version,
        )

    def to_proof(self) -> Proof:
        """Rebuild the binary proof for local verification."""
        return Proof(
            key=bytes.fromhex(_strip(self.key)),
            value=bytes.fromhex(_strip(self.value)),
            branch_mask=int(self.branch_mask, 16),
            siblings=tuple(bytes.fromhex(_strip(s)) for s in self.siblings),
        )


def _strip(hex_str: str) -> str:
    return hex_str[2:] if hex_str.startswith("0x") else hex_str


def compute_section_hash(leaves: list[LeafRecord]) -> str:
    """SHA256 over the canonical JSON of a leaves section."""
    payload = {"items": [leaf.model_dump(mode="json") for leaf in leaves]}
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode()
    return hashlib.sha256(raw).hexdigest()


__all__ = [
    "STATE_SCHEMA_VERSION",
    "ChangeLogEntry",
    "LeafRecord",
    "ProofResponse",
    "VersionRecord",
    "compute_section_hash",
]
