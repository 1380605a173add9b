"""SQLAlchemy schema for the relational version store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, BigInteger, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class ReputationVersion(Base):
    """One committed version of the reputation state (append-only)."""

    __tablename__ = "reputation_version"

    version: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Strictly increasing version id",
    )
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    kind: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        comment="snapshot (all leaves) or delta (changed leaves)",
    )
    root: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
        comment="Root digest (hex) after this version",
    )
    parent_root: Mapped[str] = mapped_column(String(64), nullable=False)
    watermark: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Last applied change-log sequence number",
    )
    n_keys: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    leaves: Mapped[list] = mapped_column(JSON, nullable=False)


__all__ = ["Base", "ReputationVersion"]
