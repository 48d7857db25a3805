"""SQLModel tables for the relational backend.

Every row carries the owning tenant in `tenant_id`; the relational
repositories filter on it in every statement. Ownership between rows
(file -> node, connection -> nodes) is plain integer columns rather
than foreign keys, so cascades happen in repository code exactly as
they do in the memory backend.

Tables use SQLite AUTOINCREMENT (ignored elsewhere) so ids are never
reused after deletes, matching PostgreSQL sequences.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

_ID_TABLE_ARGS = {"sqlite_autoincrement": True}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoRow(SQLModel, table=True):
    """A memo attached to a catalog model by id (not validated here)."""
    __tablename__ = "memos"
    __table_args__ = _ID_TABLE_ARGS

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, nullable=False)
    model_id: int = Field(nullable=False)
    title: str
    content: str


class AiHistoryRow(SQLModel, table=True):
    """One assistant exchange; `created_at` becomes the item timestamp."""
    __tablename__ = "ai_histories"
    __table_args__ = _ID_TABLE_ARGS

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, nullable=False)
    model_id: int = Field(nullable=False)
    question: str
    answer: str
    created_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True), nullable=False)


class WorkflowNodeRow(SQLModel, table=True):
    __tablename__ = "workflow_nodes"
    __table_args__ = _ID_TABLE_ARGS

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, nullable=False)
    title: str
    content: str
    x: float
    y: float


class WorkflowConnectionRow(SQLModel, table=True):
    __tablename__ = "workflow_connections"
    __table_args__ = _ID_TABLE_ARGS

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, nullable=False)
    from_node_id: int = Field(nullable=False)
    to_node_id: int = Field(nullable=False)
    from_anchor: str
    to_anchor: str


class WorkflowFileRow(SQLModel, table=True):
    """Attachment bytes stored inline (BYTEA on PostgreSQL)."""
    __tablename__ = "workflow_files"
    __table_args__ = _ID_TABLE_ARGS

    id: Optional[int] = Field(default=None, primary_key=True)
    tenant_id: str = Field(index=True, nullable=False)
    node_id: int = Field(index=True, nullable=False)
    file_name: str
    content_type: str
    data: bytes


class SchemaMigration(SQLModel, table=True):
    """Ledger of applied migration scripts, keyed by file name."""
    __tablename__ = "schema_migrations"

    version: str = Field(primary_key=True)
    applied_at: datetime = Field(default_factory=_utcnow, sa_type=DateTime(timezone=True), nullable=False)
