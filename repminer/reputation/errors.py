"""Error taxonomy for the reputation state.

Recoverable lookups (KeyNotFound, VersionNotFound, InvalidRequest) are
answered as "not found" by the oracle. AmountOverflow rejects a whole
change-log batch. StateCorruption is fatal: nothing is served or
published from an unverifiable state.
"""

from __future__ import annotations


class ReputationError(Exception):
    """Base class for reputation state errors."""


class KeyNotFound(ReputationError):
    """The key is not present in the requested version."""

    def __init__(self, key: bytes, version: int | None = None):
        self.key = key
        self.version = version
        where = "current state" if version is None else f"version {version}"
        super().__init__(f"key 0x{key.hex()} not found in {where}")


class VersionNotFound(ReputationError):
    """No committed version matches the requested id or root."""


class InvalidRequest(ReputationError, ValueError):
    """Malformed address, skill id or digest in a lookup."""


class AmountOverflow(ReputationError):
    """An amount no longer fits the fixed-width value record."""

    def __init__(self, amount: int, key: bytes | None = None):
        self.amount = amount
        self.key = key
        suffix = f" for key 0x{key.hex()}" if key is not None else ""
        super().__init__(f"amount {amount} exceeds the 256-bit signed range{suffix}")


class StateCorruption(ReputationError):
    """A persisted version record is unreadable or fails verification."""


__all__ = [
    "AmountOverflow",
    "InvalidRequest",
    "KeyNotFound",
    "ReputationError",
    "StateCorruption",
    "VersionNotFound",
]
