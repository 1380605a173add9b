"""Filesystem-based VersionStore implementation.

Each committed version is a directory:
  {data_dir}/reputation/versions/v_{N:012d}/manifest.json
  {data_dir}/reputation/versions/v_{N:012d}/leaves.json.gz

A version is written into a hidden temp directory and renamed into place,
so a crash leaves either no directory or a complete one. The root -> version
index is rebuilt from the manifests on open. Nothing is ever pruned.
"""

from __future__ import annotations

import asyncio
import gzip
import json
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any

import bittensor as bt
from pydantic import ValidationError

from repminer.reputation.errors import StateCorruption
from repminer.reputation.models import LeafRecord, VersionRecord

_TMP_PREFIX = ".tmp-"


def _write_gzip_json(path: Path, data: Any) -> None:
    """Write data as gzipped JSON and fsync it."""
    raw = json.dumps(data, default=str, sort_keys=True).encode()
    with gzip.open(path, "wb") as f:
        f.write(raw)
    _fsync(path)


def _read_gzip_json(path: Path) -> Any:
    with gzip.open(path, "rb") as f:
        return json.loads(f.read())


def _write_json(path: Path, data: Any) -> None:
    with open(path, "w") as f:
        json.dump(data, f, default=str, sort_keys=True)
        f.flush()
        os.fsync(f.fileno())


def _read_json(path: Path) -> Any:
    with open(path) as f:
        return json.load(f)


def _fsync(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _version_dir_name(version: int) -> str:
    return f"v_{version:012d}"


class FilesystemVersionStore:
    """Local filesystem VersionStore implementation."""

    def __init__(self, data_dir: str):
        self.base = Path(data_dir) / "reputation"
        self.versions_dir = self.base / "versions"
        self.versions_dir.mkdir(parents=True, exist_ok=True)

        self._versions: list[int] = []
        self._root_index: dict[str, int] = {}
        self._write_lock = asyncio.Lock()
        self._load_index()

    def _load_index(self) -> None:
        """Scan version manifests, dropping half-written temp dirs."""
        for entry in sorted(self.versions_dir.iterdir()):
            if entry.name.startswith(_TMP_PREFIX):
                bt.logging.warning({"version_store": {"event": "removing_partial_write", "dir": entry.name}})
                shutil.rmtree(entry, ignore_errors=True)
                continue
            if not entry.is_dir() or not entry.name.startswith("v_"):
                continue

            try:
                manifest = _read_json(entry / "manifest.json")
                version = int(manifest["version"])
                root = str(manifest["root"])
            except (OSError, ValueError, KeyError, TypeError) as e:
                raise StateCorruption(f"unreadable manifest in {entry}: {e}") from e

            if entry.name != _version_dir_name(version):
                raise StateCorruption(f"manifest version {version} does not match {entry.name}")
            self._versions.append(version)
            self._root_index.setdefault(root, version)

        self._versions.sort()
        bt.logging.info({"version_store": {"backend": "filesystem", "versions": len(self._versions)}})

    async def put_version(self, record: VersionRecord) -> int:
        """Write a version directory atomically. Returns the version id."""
        async with self._write_lock:
            expected = (self._versions[-1] if self._versions else 0) + 1
            if record.version != expected:
                raise ValueError(f"expected version {expected}, got {record.version}")
            await asyncio.to_thread(self._write_version, record)
        return record.version

    def _write_version(self, record: VersionRecord) -> None:
        final_dir = self.versions_dir / _version_dir_name(record.version)
        tmp_dir = Path(tempfile.mkdtemp(prefix=_TMP_PREFIX, dir=str(self.versions_dir)))
        try:
            # Manifest as plain JSON (small, readable), leaves gzipped
            _write_json(tmp_dir / "manifest.json", record.model_dump(mode="json", exclude={"leaves"}))
            _write_gzip_json(
                tmp_dir / "leaves.json.gz",
                [leaf.model_dump(mode="json") for leaf in record.leaves],
            )
            os.rename(tmp_dir, final_dir)
        except Exception:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        # The directory is visible from here on; the index follows the disk
        self._versions.append(record.version)
        self._root_index.setdefault(record.root, record.version)
        _fsync(self.versions_dir)

    async def get_version(self, version: int) -> VersionRecord | None:
        """Load a version from disk."""
        if version not in self._versions:
            return None
        return await asyncio.to_thread(self._read_version, version)

    def _read_version(self, version: int) -> VersionRecord:
        version_dir = self.versions_dir / _version_dir_name(version)
        try:
            manifest = _read_json(version_dir / "manifest.json")
            leaves = [LeafRecord(**leaf) for leaf in _read_gzip_json(version_dir / "leaves.json.gz")]
            return VersionRecord(**manifest, leaves=leaves)
        except (OSError, EOFError, ValueError, TypeError, ValidationError) as e:
            raise StateCorruption(f"unreadable version {version}: {e}") from e

    async def latest_version(self) -> int:
        return self._versions[-1] if self._versions else 0

    async def version_for_root(self, root: str) -> int | None:
        return self._root_index.get(root)

    async def list_versions(self) -> list[int]:
        return list(self._versions)

    async def close(self) -> None:
        return None


__all__ = ["FilesystemVersionStore"]
