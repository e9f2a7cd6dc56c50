"""Baseline schema created inside every tenant database.

Kept on its own ``MetaData`` so it never mixes with the provisioner's
record store tables.  ``create_all(checkfirst=True)`` makes application
idempotent.  The ``embedding`` column is added separately because it
depends on the ``vector`` extension, which may be unavailable.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

_JsonType = JSONB().with_variant(JSON(), "sqlite")

EMBEDDING_DIMENSIONS = 1536

tenant_metadata = MetaData()

memories = Table(
    "memories",
    tenant_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("agent_id", String(255), nullable=False),
    Column("content", Text, nullable=False),
    Column("metadata", _JsonType, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("idx_memories_agent", "agent_id"),
)

conversations = Table(
    "conversations",
    tenant_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("agent_id", String(255), nullable=False),
    Column("channel", String(100), nullable=False),
    Column("message", Text, nullable=False),
    Column("role", String(50), nullable=False),
    Column("metadata", _JsonType, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("idx_conversations_agent", "agent_id"),
)

skills = Table(
    "skills",
    tenant_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False, unique=True),
    Column("enabled", Boolean, nullable=False, server_default=text("true")),
    Column("config", _JsonType, nullable=True),
    Column("installed_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
)

usage_tracking = Table(
    "usage_tracking",
    tenant_metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("date", Date, nullable=False),
    Column("messages_sent", Integer, nullable=False, server_default="0"),
    Column("api_calls", Integer, nullable=False, server_default="0"),
    Column("tokens_used", BigInteger, nullable=False, server_default="0"),
    Column("created_at", DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index("idx_usage_date", "date"),
)

BASELINE_TABLES: tuple[str, ...] = tuple(tenant_metadata.tables)

# Executed only after the vector extension was enabled.
ADD_EMBEDDING_COLUMN = f"ALTER TABLE memories ADD COLUMN IF NOT EXISTS embedding vector({EMBEDDING_DIMENSIONS})"
