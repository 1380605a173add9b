"""SQLAlchemy-backed VersionStore.

Each version is one row written in its own transaction, so a crash never
leaves a torn version. Talks to the database through SQLAlchemy's asyncio
extension (``sqlite+aiosqlite``, ``postgresql+asyncpg``); plain ``sqlite://``
and ``postgresql://`` URLs are mapped onto those drivers. Tests use a
SQLite file.
"""

from __future__ import annotations

import asyncio
from typing import Any

import bittensor as bt
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.engine import URL, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from repminer.reputation.errors import StateCorruption
from repminer.reputation.models import LeafRecord, VersionRecord

from .schema import Base, ReputationVersion

_ASYNC_DRIVERS = {
    "sqlite": "sqlite+aiosqlite",
    "postgresql": "postgresql+asyncpg",
}


def async_url(url: str | URL) -> URL:
    """Swap a sync driver name for its asyncio counterpart."""
    parsed = make_url(url)
    driver = _ASYNC_DRIVERS.get(parsed.drivername)
    return parsed.set(drivername=driver) if driver else parsed


class SQLVersionStore:
    """Relational VersionStore implementation."""

    def __init__(self, url: str, **engine_kwargs: Any):
        self.engine: AsyncEngine = create_async_engine(async_url(url), **engine_kwargs)
        self._session = async_sessionmaker(self.engine, expire_on_commit=False)
        self._schema_ready = False
        self._schema_lock = asyncio.Lock()
        bt.logging.info({
            "version_store": {
                "backend": "sql",
                "dialect": self.engine.dialect.name,
                "driver": self.engine.dialect.driver,
            }
        })

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._schema_lock:
            if not self._schema_ready:
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
                self._schema_ready = True

    async def put_version(self, record: VersionRecord) -> int:
        """Insert the next version row. Returns the version id."""
        await self._ensure_schema()
        async with self._session.begin() as session:
            latest = await session.scalar(select(func.max(ReputationVersion.version))) or 0
            if record.version != latest + 1:
                raise ValueError(f"expected version {latest + 1}, got {record.version}")
            session.add(ReputationVersion(
                version=record.version,
                schema_version=record.schema_version,
                kind=record.kind,
                root=record.root,
                parent_root=record.parent_root,
                watermark=record.watermark,
                n_keys=record.n_keys,
                content_hash=record.content_hash,
                created_at=record.created_at,
                leaves=[leaf.model_dump(mode="json") for leaf in record.leaves],
            ))
        return record.version

    async def get_version(self, version: int) -> VersionRecord | None:
        await self._ensure_schema()
        async with self._session() as session:
            row = await session.get(ReputationVersion, version)
            if row is None:
                return None
            try:
                return VersionRecord(
                    schema_version=row.schema_version,
                    version=row.version,
                    kind=row.kind,
                    root=row.root,
                    parent_root=row.parent_root,
                    watermark=row.watermark,
                    n_keys=row.n_keys,
                    content_hash=row.content_hash,
                    created_at=row.created_at,
                    leaves=[LeafRecord(**leaf) for leaf in row.leaves],
                )
            except (SQLAlchemyError, ValidationError, TypeError) as e:
                raise StateCorruption(f"unreadable version {version}: {e}") from e

    async def latest_version(self) -> int:
        await self._ensure_schema()
        async with self._session() as session:
            return await session.scalar(select(func.max(ReputationVersion.version))) or 0

    async def version_for_root(self, root: str) -> int | None:
        await self._ensure_schema()
        async with self._session() as session:
            return await session.scalar(
                select(func.min(ReputationVersion.version)).where(ReputationVersion.root == root)
            )

    async def list_versions(self) -> list[int]:
        await self._ensure_schema()
        async with self._session() as session:
            result = await session.scalars(
                select(ReputationVersion.version).order_by(ReputationVersion.version)
            )
            return list(result)

    async def close(self) -> None:
        await self.engine.dispose()


__all__ = ["SQLVersionStore", "async_url"]
