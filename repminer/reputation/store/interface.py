"""VersionStore protocol - pluggable persistence for committed versions.

Implementations: FilesystemVersionStore (default), SQLVersionStore.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from repminer.reputation.models import VersionRecord


@runtime_checkable
class VersionStore(Protocol):
    """Durable, append-only map of version id -> VersionRecord."""

    async def put_version(self, record: VersionRecord) -> int:
        """Atomically persist the next version. Returns its id."""
        ...

    async def get_version(self, version: int) -> VersionRecord | None:
        """Fetch a version by id, or None if it was never committed."""
        ...

    async def latest_version(self) -> int:
        """Highest committed version id (0 when empty)."""
        ...

    async def version_for_root(self, root: str) -> int | None:
        """Lowest version id whose root digest (hex) matches."""
        ...

    async def list_versions(self) -> list[int]:
        """All committed version ids, ascending."""
        ...

    async def close(self) -> None:
        ...


__all__ = ["VersionStore"]
