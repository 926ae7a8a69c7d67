"""
SQLAlchemy ORM models for persisted provider links.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ProviderLink(Base):
    """One row per (user_id, provider); revoked rows are kept as tombstones."""

    __tablename__ = "provider_links"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_links_user_provider"),
    )

    link_id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(128), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default="linked")
    scopes = Column(JSON, nullable=False, default=list)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    expires_at = Column(DateTime(timezone=True))
    revoked_at = Column(DateTime(timezone=True))
    linked_at = Column(DateTime(timezone=True))
    last_refreshed = Column(DateTime(timezone=True))
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
