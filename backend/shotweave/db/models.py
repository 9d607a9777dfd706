"""SQLAlchemy 2.0 ORM models for shotweave session storage.

Two tables hold continuity sessions while the legacy store is being retired:

- ``sessions``: the unified generic-session table. Continuity-specific data
  lives in ``payload``. This table is authoritative for ``version``.
- ``continuity_sessions``: the legacy continuity-only table holding the full
  serialized session document.
"""

from typing import Optional

from sqlalchemy import JSON, BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class UnifiedSessionRecord(Base):
    """Generic session row carrying a continuity payload."""
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    session_type: Mapped[str] = mapped_column(String(32), default="continuity")
    name: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="active")
    version: Mapped[int] = mapped_column(Integer, default=1)
    payload: Mapped[dict] = mapped_column(JSON)
    created_at_ms: Mapped[int] = mapped_column(BigInteger)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger)

    __table_args__ = (
        Index("ix_sessions_user_type", "user_id", "session_type"),
    )


class LegacyContinuitySessionRecord(Base):
    """Continuity-only session document from before the unified table."""
    __tablename__ = "continuity_sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    version: Mapped[int] = mapped_column(Integer, default=1)
    document: Mapped[dict] = mapped_column(JSON)
    updated_at_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
