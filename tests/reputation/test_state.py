"""Tests for VersionedState: commits, historical proofs and corruption handling."""

import asyncio
import gzip
import json
import tempfile
import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from repminer.reputation.errors import KeyNotFound, StateCorruption, VersionNotFound
from repminer.reputation.keys import decode_value, derive_key, encode_value
from repminer.reputation.state import LATEST, VersionedState
from repminer.reputation.store import filesystem
from repminer.reputation.store.filesystem import FilesystemVersionStore
from repminer.reputation.trie import EMPTY_ROOT

ORG = "0x" + "01" * 20


def _k(i: int) -> bytes:
    return derive_key(ORG, 1, "0x" + f"{i:040x}")


@pytest.fixture
def tmp_dir():
    with tempfile.TemporaryDirectory() as d:
        yield d


async def _open(data_dir: str, **kwargs) -> VersionedState:
    state = VersionedState(FilesystemVersionStore(data_dir), **kwargs)
    await state.open()
    return state


async def _commit(state: VersionedState, writes: dict[int, int], watermark: int) -> int:
    """Commit ``{key_id: amount}`` on top of the current trie."""
    trie = state.current
    changed = []
    for i, amount in writes.items():
        raw = trie.get(_k(i))
        index = decode_value(raw)[1] if raw is not None else len(trie)
        trie.put(_k(i), encode_value(amount, index))
        changed.append(_k(i))
    return await state.commit(trie, watermark, changed)


@pytest.mark.asyncio
class TestCommit:

    async def test_empty_state(self, tmp_dir):
        state = await _open(tmp_dir)
        assert state.version == 0
        assert state.root == EMPTY_ROOT
        assert await state.root_at(0) == EMPTY_ROOT
        assert await state.version_for_root(EMPTY_ROOT) == 0

    async def test_commit_advances_version(self, tmp_dir):
        state = await _open(tmp_dir)
        v1 = await _commit(state, {1: 100}, watermark=1)
        v2 = await _commit(state, {2: 5}, watermark=2)
        assert (v1, v2) == (1, 2)
        assert state.version == 2
        assert state.watermark == 2
        assert state.n_keys == 2
        assert decode_value(state.get(_k(1))) == (100, 0)

    async def test_watermark_cannot_move_backwards(self, tmp_dir):
        state = await _open(tmp_dir)
        await _commit(state, {1: 1}, watermark=5)
        with pytest.raises(ValueError):
            await _commit(state, {1: 2}, watermark=4)
        assert state.version == 1

    async def test_current_handle_is_private(self, tmp_dir):
        state = await _open(tmp_dir)
        await _commit(state, {1: 1}, watermark=1)
        handle = state.current
        handle.put(_k(9), encode_value(9, 1))
        assert state.get(_k(9)) is None


@pytest.mark.asyncio
class TestHistory:

    async def test_old_versions_still_prove(self, tmp_dir):
        state = await _open(tmp_dir)
        await _commit(state, {1: 100, 2: 50}, watermark=2)
        root_v1 = state.root
        await _commit(state, {1: 70, 3: 1}, watermark=3)

        old = await state.prove(_k(1), 1)
        assert decode_value(old.value)[0] == 100
        assert old.verify(root_v1)
        assert old.verify(await state.root_at(1))

        new = await state.prove(_k(1))
        assert decode_value(new.value)[0] == 70
        assert new.verify(state.root)
        assert not old.verify(state.root)

    async def test_key_absent_in_old_version(self, tmp_dir):
        state = await _open(tmp_dir)
        await _commit(state, {1: 1}, watermark=1)
        await _commit(state, {2: 2}, watermark=2)
        with pytest.raises(KeyNotFound) as exc:
            await state.prove(_k(2), 1)
        assert exc.value.version == 1
        assert (await state.prove(_k(2), LATEST)).verify(state.root)

    async def test_unknown_version_and_root(self, tmp_dir):
        state = await _open(tmp_dir)
        await _commit(state, {1: 1}, watermark=1)
        with pytest.raises(VersionNotFound):
            await state.reconstruct(7)
        with pytest.raises(VersionNotFound):
            await state.version_for_root(b"\x42" * 32)

    async def test_snapshot_and_delta_replay_after_reopen(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=3)
        roots = {}
        for v in range(1, 8):
            await _commit(state, {v: v * 10, 1: v}, watermark=v)
            roots[v] = state.root

        kinds = {v: (await state.store.get_version(v)).kind for v in range(1, 8)}
        assert kinds == {
            1: "snapshot", 2: "delta", 3: "delta",
            4: "snapshot", 5: "delta", 6: "delta",
            7: "snapshot",
        }

        reopened = await _open(tmp_dir, snapshot_interval=3, cache_size=1)
        assert reopened.version == 7
        assert reopened.root == roots[7]
        assert reopened.watermark == 7
        for v in range(1, 8):
            trie = await reopened.reconstruct(v)
            assert trie.root == roots[v]
            assert await reopened.version_for_root(roots[v]) == v
            proof = await reopened.prove(_k(1), v)
            assert decode_value(proof.value)[0] == v
            assert proof.verify(roots[v])

    async def test_delta_reopen_resumes_commits(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=10)
        await _commit(state, {1: 1}, watermark=1)
        await _commit(state, {2: 2}, watermark=2)

        reopened = await _open(tmp_dir, snapshot_interval=10)
        assert reopened.n_keys == 2
        await _commit(reopened, {3: 3}, watermark=3)
        assert decode_value(reopened.get(_k(3))) == (3, 2)


@pytest.mark.asyncio
class TestCorruption:

    async def test_tampered_delta_halts_state(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=2)
        await _commit(state, {1: 1}, watermark=1)
        await _commit(state, {1: 2}, watermark=2)
        await _commit(state, {1: 3}, watermark=3)

        leaves_path = Path(tmp_dir) / "reputation" / "versions" / "v_000000000002" / "leaves.json.gz"
        with gzip.open(leaves_path, "rb") as f:
            leaves = json.loads(f.read())
        leaves[0]["value"] = encode_value(999, 0).hex()
        with gzip.open(leaves_path, "wb") as f:
            f.write(json.dumps(leaves).encode())

        # Version 3 is a snapshot, so reopening does not touch version 2
        reopened = await _open(tmp_dir, snapshot_interval=2)
        assert reopened.halted is None

        with pytest.raises(StateCorruption):
            await reopened.reconstruct(2)
        assert reopened.halted is not None

        # Nothing is served once halted
        with pytest.raises(StateCorruption):
            await reopened.root_at(3)
        with pytest.raises(StateCorruption):
            await _commit(reopened, {1: 4}, watermark=4)

    async def test_unreadable_leaves_file(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=1)
        await _commit(state, {1: 1}, watermark=1)
        await _commit(state, {1: 2}, watermark=2)

        leaves_path = Path(tmp_dir) / "reputation" / "versions" / "v_000000000001" / "leaves.json.gz"
        leaves_path.write_bytes(b"not gzip")

        reopened = await _open(tmp_dir, snapshot_interval=1, cache_size=1)
        with pytest.raises(StateCorruption):
            await reopened.reconstruct(1)
        assert reopened.halted is not None


async def _max_loop_gap(coro):
    """Await ``coro`` while a 1 ms ticker records the longest loop stall."""
    gaps = []
    finished = asyncio.Event()

    async def ticker():
        last = time.perf_counter()
        while not finished.is_set():
            await asyncio.sleep(0.001)
            now = time.perf_counter()
            gaps.append(now - last)
            last = now

    task = asyncio.ensure_future(ticker())
    await asyncio.sleep(0.01)
    try:
        result = await coro
    finally:
        finished.set()
        await task
    return result, max(gaps)


@pytest.mark.asyncio
class TestRebuild:

    async def test_large_rebuild_keeps_loop_responsive(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=10)
        trie = state.current
        for i in range(20_000):
            trie.put(_k(i), encode_value(i + 1, i))
        await state.commit(trie, 1, [])
        root_v1 = state.root
        await _commit(state, {0: 7}, watermark=2)

        reopened = await _open(tmp_dir, snapshot_interval=10)
        reopened._cache.clear()

        rebuilt, gap = await _max_loop_gap(reopened.reconstruct(1))
        assert rebuilt.root == root_v1
        assert len(rebuilt) == 20_000
        assert gap < 0.1

    async def test_concurrent_readers_share_one_rebuild(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=10)
        roots = {}
        for v in range(1, 4):
            await _commit(state, {v: v}, watermark=v)
            roots[v] = state.root

        reopened = await _open(tmp_dir, snapshot_interval=10)
        reopened._cache.clear()
        loads = []
        real_get = reopened.store.get_version

        async def counting_get(version):
            loads.append(version)
            return await real_get(version)

        reopened.store.get_version = counting_get
        tries = await asyncio.gather(*(reopened.reconstruct(2) for _ in range(8)))

        assert {t.root for t in tries} == {roots[2]}
        assert sorted(loads) == [1, 2]
        assert reopened._rebuilding == {}

    async def test_failed_rebuild_is_not_cached(self, tmp_dir):
        state = await _open(tmp_dir, snapshot_interval=10)
        await _commit(state, {1: 1}, watermark=1)
        await _commit(state, {2: 2}, watermark=2)

        reopened = await _open(tmp_dir, snapshot_interval=10)
        reopened._cache.clear()
        reopened.store.get_version = AsyncMock(side_effect=OSError("disk gone"))
        results = await asyncio.gather(
            reopened.reconstruct(1), reopened.reconstruct(1), return_exceptions=True,
        )
        assert all(isinstance(r, OSError) for r in results)
        assert reopened._rebuilding == {}
        assert 1 not in reopened._cache


@pytest.mark.asyncio
class TestFailedCommit:

    async def test_store_untouched_failure_can_retry(self, tmp_dir):
        state = await _open(tmp_dir)
        await _commit(state, {1: 1}, watermark=1)
        real_put = state.store.put_version
        state.store.put_version = AsyncMock(side_effect=OSError("disk full"))

        with pytest.raises(OSError):
            await _commit(state, {2: 2}, watermark=2)
        assert state.halted is None
        assert state.version == 1

        state.store.put_version = real_put
        assert await _commit(state, {2: 2}, watermark=2) == 2

    async def test_failure_after_rename_halts(self, tmp_dir, monkeypatch):
        state = await _open(tmp_dir)
        await _commit(state, {1: 1}, watermark=1)
        root_v1 = state.root
        versions_dir = state.store.versions_dir
        real_fsync = filesystem._fsync

        def fail_dir_fsync(path):
            if Path(path) == versions_dir:
                raise OSError("directory fsync failed")
            real_fsync(path)

        monkeypatch.setattr(filesystem, "_fsync", fail_dir_fsync)
        with pytest.raises(StateCorruption):
            await _commit(state, {2: 2}, watermark=2)

        assert await state.store.latest_version() == 2
        assert state.version == 1
        assert state.root == root_v1
        assert "store is at version 2" in state.halted
        with pytest.raises(StateCorruption):
            await _commit(state, {3: 3}, watermark=3)

        monkeypatch.setattr(filesystem, "_fsync", real_fsync)
        reopened = await _open(tmp_dir)
        assert reopened.version == 2
        assert reopened.watermark == 2
