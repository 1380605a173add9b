"""Versioned reputation state.

Wraps the live ReputationTrie with a VersionStore so that every committed
version stays provable forever. Versions are persisted as a full snapshot
every ``snapshot_interval`` versions (always at version 1) and as deltas
of the changed leaves in between, the same checkpoint+delta split used
for exported ledger windows.

Reads never see a partial write: the writer builds the next trie on a
private copy and the current pointer is swapped only after the store has
durably accepted the version. Historical versions are rebuilt on demand
from the nearest snapshot in a worker thread, one rebuild per version no
matter how many readers ask, and kept in a small LRU cache. A commit
that fails after the store moved ahead halts the state.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable

import bittensor as bt

from .errors import KeyNotFound, StateCorruption, VersionNotFound
from .models import LeafRecord, VersionRecord, compute_section_hash
from .store.interface import VersionStore
from .trie import EMPTY_ROOT, Proof, ReputationTrie

LATEST = -1
"""Version sentinel meaning "whatever is current right now"."""


class VersionedState:
    """Current reputation trie plus every previously committed version."""

    def __init__(
        self,
        store: VersionStore,
        cache_size: int = 16,
        snapshot_interval: int = 50,
    ):
        if snapshot_interval < 1:
            raise ValueError("snapshot_interval must be >= 1")
        self.store = store
        self.cache_size = cache_size
        self.snapshot_interval = snapshot_interval

        self._current = ReputationTrie()
        self._version = 0
        self._watermark = 0
        self._cache: OrderedDict[int, ReputationTrie] = OrderedDict()
        self._rebuilding: dict[int, asyncio.Future] = {}
        self._commit_lock = asyncio.Lock()
        self._halted: str | None = None

    # -- Lifecycle --

    async def open(self) -> None:
        """Load the latest committed version from the store."""
        latest = await self.store.latest_version()
        if latest == 0:
            bt.logging.info({"reputation_state": {"event": "empty", "version": 0}})
            return

        trie, record = await self._rebuild(latest)
        self._current = trie
        self._version = latest
        self._watermark = record.watermark
        self._remember(latest, trie)
        bt.logging.info({
            "reputation_state": {
                "event": "loaded",
                "version": latest,
                "root": self._current.root.hex(),
                "watermark": self._watermark,
                "n_keys": len(self._current),
            }
        })

    # -- Current state --

    @property
    def version(self) -> int:
        return self._version

    @property
    def root(self) -> bytes:
        return self._current.root

    @property
    def watermark(self) -> int:
        return self._watermark

    @property
    def n_keys(self) -> int:
        return len(self._current)

    @property
    def halted(self) -> str | None:
        """Reason the state stopped serving, or None while healthy."""
        return self._halted

    @property
    def current(self) -> ReputationTrie:
        """A private handle on the current trie (O(1) copy)."""
        return self._current.copy()

    def get(self, key: bytes) -> bytes | None:
        return self._current.get(key)

    # -- Writes --

    async def commit(
        self,
        trie: ReputationTrie,
        watermark: int,
        changed_keys: Iterable[bytes],
    ) -> int:
        """Persist ``trie`` as the next version and make it current."""
        async with self._commit_lock:
            self._check_halted()
            if watermark < self._watermark:
                raise ValueError(f"watermark moved backwards: {watermark} < {self._watermark}")

            snapshot = trie.copy()
            version = self._version + 1
            if (version - 1) % self.snapshot_interval == 0:
                kind = "snapshot"
                leaves = [LeafRecord.from_bytes(k, v) for k, v in snapshot.items()]
            else:
                kind = "delta"
                leaves = []
                for key in sorted(set(changed_keys)):
                    value = snapshot.get(key)
                    if value is None:
                        raise ValueError(f"changed key 0x{key.hex()} missing from trie")
                    leaves.append(LeafRecord.from_bytes(key, value))

            record = VersionRecord(
                version=version,
                kind=kind,
                root=snapshot.root.hex(),
                parent_root=self._current.root.hex(),
                watermark=watermark,
                n_keys=len(snapshot),
                content_hash=compute_section_hash(leaves),
                created_at=datetime.now(timezone.utc),
                leaves=leaves,
            )
            try:
                await self.store.put_version(record)
            except Exception as e:
                await self._check_store_after_failure(version, e)
                raise

            self._current = snapshot
            self._version = version
            self._watermark = watermark
            self._remember(version, snapshot)

            bt.logging.info({
                "reputation_commit": {
                    "version": version,
                    "kind": kind,
                    "root": record.root,
                    "watermark": watermark,
                    "n_keys": record.n_keys,
                    "leaves": len(leaves),
                }
            })
            return version

    # -- Historical reads --

    async def root_at(self, version: int = LATEST) -> bytes:
        self._check_halted()
        if version == LATEST or version == self._version:
            return self._current.root
        if version == 0:
            return EMPTY_ROOT
        record = await self._load(version)
        return record.root_bytes

    async def version_for_root(self, root: bytes) -> int:
        """Version id whose root is ``root`` (the current one preferred)."""
        self._check_halted()
        if root == self._current.root:
            return self._version
        if root == EMPTY_ROOT:
            return 0
        version = await self.store.version_for_root(root.hex())
        if version is None:
            raise VersionNotFound(f"no version with root 0x{root.hex()}")
        return version

    async def reconstruct(self, version: int = LATEST) -> ReputationTrie:
        """Trie exactly as it was at ``version``."""
        self._check_halted()
        if version == LATEST or version == self._version:
            return self._current.copy()
        if version == 0:
            return ReputationTrie()
        if version < 0 or version > self._version:
            raise VersionNotFound(f"version {version} has not been committed")

        cached = self._cache.get(version)
        if cached is not None:
            self._cache.move_to_end(version)
            return cached.copy()

        trie, _ = await self._rebuild(version)
        self._remember(version, trie)
        return trie.copy()

    async def prove(self, key: bytes, version: int = LATEST) -> Proof:
        """Inclusion proof for ``key`` at ``version`` (LATEST = current)."""
        if version == LATEST:
            version = self._version
        trie = await self.reconstruct(version)
        try:
            return trie.prove(key)
        except KeyNotFound:
            raise KeyNotFound(key, version) from None

    # -- Internals --

    def _check_halted(self) -> None:
        if self._halted is not None:
            raise StateCorruption(f"reputation state halted: {self._halted}")

    def _halt(self, reason: str) -> None:
        if self._halted is None:
            self._halted = reason
            bt.logging.error({"reputation_state": {"event": "halted", "reason": reason}})

    def _remember(self, version: int, trie: ReputationTrie) -> None:
        self._cache[version] = trie
        self._cache.move_to_end(version)
        while len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def _load(self, version: int) -> VersionRecord:
        try:
            record = await self.store.get_version(version)
        except StateCorruption as e:
            self._halt(str(e))
            raise
        if record is None:
            raise VersionNotFound(f"version {version} has not been committed")
        if record.version != version:
            self._fail(f"store returned version {record.version} for {version}")
        if await asyncio.to_thread(compute_section_hash, record.leaves) != record.content_hash:
            self._fail(f"content hash mismatch in version {version}")
        return record

    async def _check_store_after_failure(self, version: int, error: Exception) -> None:
        """Halt when a failed put_version still left the store ahead of memory."""
        try:
            stored = await self.store.latest_version()
        except Exception as e:
            # Checked again on the next commit attempt
            stored = None
            bt.logging.warning({"reputation_commit": {"event": "store_unreadable", "error": str(e)}})
        if stored is None or stored == self._version:
            bt.logging.warning({
                "reputation_commit": {"event": "failed", "version": version, "error": str(error)}
            })
            return
        reason = (
            f"commit of version {version} failed ({error}) but the store is at "
            f"version {stored} while memory holds {self._version}; restart to reload"
        )
        self._halt(reason)
        raise StateCorruption(reason) from error

    def _fail(self, reason: str) -> None:
        self._halt(reason)
        raise StateCorruption(reason)

    async def _rebuild(self, version: int) -> tuple[ReputationTrie, VersionRecord]:
        """Rebuild ``version``, sharing one replay between concurrent callers."""
        task = self._rebuilding.get(version)
        if task is None:
            task = asyncio.ensure_future(self._replay_version(version))
            self._rebuilding[version] = task
            task.add_done_callback(lambda _: self._rebuilding.pop(version, None))
        return await asyncio.shield(task)

    async def _replay_version(self, version: int) -> tuple[ReputationTrie, VersionRecord]:
        """Replay from the nearest snapshot (or cached version) up to ``version``."""
        chain: list[VersionRecord] = []
        base: ReputationTrie | None = None
        v = version
        # chain[0] is always ``version`` itself; the cache only shortcuts below it
        while True:
            cached = self._cache.get(v) if v != version else None
            if cached is not None:
                base = cached.copy()
                break
            if v < 1:
                self._fail(f"no snapshot found below version {version}")
            record = await self._load(v)
            chain.append(record)
            if record.kind == "snapshot":
                base = ReputationTrie()
                break
            v -= 1

        # CPU-bound, runs off the event loop
        try:
            trie = await asyncio.to_thread(_replay, base, list(reversed(chain)))
        except StateCorruption as e:
            self._halt(str(e))
            raise
        return trie, chain[0]


def _replay(trie: ReputationTrie, records: list[VersionRecord]) -> ReputationTrie:
    for record in records:
        if record.kind == "delta" and record.parent_root != trie.root.hex():
            raise StateCorruption(f"version {record.version} does not extend its parent")
        for leaf in record.leaves:
            trie.put(*leaf.to_bytes())
        if trie.root.hex() != record.root:
            raise StateCorruption(
                f"version {record.version} root mismatch: "
                f"recorded {record.root[:16]}..., rebuilt {trie.root.hex()[:16]}..."
            )
        if len(trie) != record.n_keys:
            raise StateCorruption(f"version {record.version} key count mismatch")
    return trie


__all__ = ["LATEST", "VersionedState"]
