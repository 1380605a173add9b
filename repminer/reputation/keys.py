"""Key derivation and the fixed-format value record.

Key:   sha256(organization[20] || skill_id[32, big-endian] || participant[20])
Value: amount[32, two's complement] || insertion_index[32, unsigned]
"""

from __future__ import annotations

import hashlib
import re

from .errors import AmountOverflow, InvalidRequest

KEY_BYTES = 32
KEY_BITS = KEY_BYTES * 8
AMOUNT_BYTES = 32
INDEX_BYTES = 32
VALUE_BYTES = AMOUNT_BYTES + INDEX_BYTES

MIN_AMOUNT = -(2 ** (AMOUNT_BYTES * 8 - 1))
MAX_AMOUNT = 2 ** (AMOUNT_BYTES * 8 - 1) - 1
MAX_SKILL_ID = 2 ** 256 - 1

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
_DIGEST_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_DECIMAL_RE = re.compile(r"^[0-9]+$")


def normalize_address(address: str) -> str:
    """Lower-case a 0x-prefixed 20-byte hex address, rejecting anything else."""
    if not isinstance(address, str) or not _ADDRESS_RE.fullmatch(address):
        raise InvalidRequest(f"invalid address: {address!r}")
    return address.lower()


def parse_skill_id(skill_id: int | str) -> int:
    """Accept an int or a decimal string; reject negatives and > uint256."""
    if isinstance(skill_id, bool):
        raise InvalidRequest(f"invalid skill id: {skill_id!r}")
    if isinstance(skill_id, str):
        if not _DECIMAL_RE.fullmatch(skill_id):
            raise InvalidRequest(f"invalid skill id: {skill_id!r}")
        skill_id = int(skill_id)
    if not isinstance(skill_id, int) or not 0 <= skill_id <= MAX_SKILL_ID:
        raise InvalidRequest(f"invalid skill id: {skill_id!r}")
    return skill_id


def parse_digest(digest: str) -> bytes:
    """Parse a 32-byte hex digest with or without 0x prefix."""
    if not isinstance(digest, str) or not _DIGEST_RE.fullmatch(digest):
        raise InvalidRequest(f"invalid root digest: {digest!r}")
    return bytes.fromhex(digest[2:] if digest.startswith("0x") else digest)


def derive_key(organization: str, skill_id: int | str, participant: str) -> bytes:
    """Derive the 32-byte trie key for an (organization, skill, participant) triple."""
    org = bytes.fromhex(normalize_address(organization)[2:])
    user = bytes.fromhex(normalize_address(participant)[2:])
    skill = parse_skill_id(skill_id).to_bytes(32, "big")
    return hashlib.sha256(org + skill + user).digest()


def encode_value(amount: int, index: int) -> bytes:
    """Pack (amount, insertion_index) into the 64-byte value record."""
    if not MIN_AMOUNT <= amount <= MAX_AMOUNT:
        raise AmountOverflow(amount)
    if index < 0 or index >= 2 ** (INDEX_BYTES * 8):
        raise ValueError(f"insertion index out of range: {index}")
    return amount.to_bytes(AMOUNT_BYTES, "big", signed=True) + index.to_bytes(INDEX_BYTES, "big")


def decode_value(raw: bytes) -> tuple[int, int]:
    """Unpack a value record into (amount, insertion_index)."""
    if len(raw) != VALUE_BYTES:
        raise ValueError(f"value must be {VALUE_BYTES} bytes, got {len(raw)}")
    amount = int.from_bytes(raw[:AMOUNT_BYTES], "big", signed=True)
    index = int.from_bytes(raw[AMOUNT_BYTES:], "big")
    return amount, index


__all__ = [
    "KEY_BITS",
    "KEY_BYTES",
    "MAX_AMOUNT",
    "MIN_AMOUNT",
    "VALUE_BYTES",
    "decode_value",
    "derive_key",
    "encode_value",
    "normalize_address",
    "parse_digest",
    "parse_skill_id",
]
