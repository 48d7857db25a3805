"""Relational repository backend (PostgreSQL in production).

Each repository opens a short-lived `Session` per call and commits
before returning, so one call is one transaction. Tenant scoping is a
`tenant_id == ...` condition on every statement; a row owned by another
tenant simply never matches. Node existence and duplicate connections
are checked with explicit queries to keep the cascade and idempotency
rules identical to the memory backend.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from sqlalchemy import or_
from sqlmodel import Session, col, select

from .. import models
from ..database import create_db_and_tables, create_db_engine
from ..entities import (
    AiExchange,
    AiHistoryItem,
    ConnectionDraft,
    FileUpload,
    Memo,
    MemoDraft,
    NodeDraft,
    NodePatch,
    WorkflowConnection,
    WorkflowFile,
    WorkflowNode,
    WorkflowState,
    to_iso,
)
from ..repositories import (
    AiHistoryRepository,
    MemoRepository,
    Repositories,
    WorkflowRepository,
)

logger = logging.getLogger("simvex.repository.sql")


class RelationalStore:
    """Owns the engine and creates the schema on first use."""

    def __init__(self, database_url: str):
        self.engine = create_db_engine(database_url)
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                logger.info("ensuring relational schema")
                create_db_and_tables(self.engine)
                self._schema_ready = True

    @contextmanager
    def session(self) -> Iterator[Session]:
        self.ensure_schema()
        with Session(self.engine, expire_on_commit=False) as session:
            yield session

    def close(self) -> None:
        self.engine.dispose()


def _memo(row: models.MemoRow) -> Memo:
    return Memo(id=row.id, title=row.title, content=row.content)


def _file(row: models.WorkflowFileRow) -> WorkflowFile:
    return WorkflowFile(id=row.id, file_name=row.file_name, content_type=row.content_type, buffer=bytes(row.data))


def _connection(row: models.WorkflowConnectionRow) -> WorkflowConnection:
    return WorkflowConnection(
        id=row.id,
        from_node=row.from_node_id,
        to_node=row.to_node_id,
        from_anchor=row.from_anchor,
        to_anchor=row.to_anchor,
    )


def _node(row: models.WorkflowNodeRow, files: List[WorkflowFile]) -> WorkflowNode:
    return WorkflowNode(id=row.id, title=row.title, content=row.content, x=row.x, y=row.y, files=files)


class SqlMemoRepository(MemoRepository):
    def __init__(self, store: RelationalStore):
        self.store = store

    def _owned(self, session: Session, tenant_id: str, memo_id: int) -> Optional[models.MemoRow]:
        stmt = select(models.MemoRow).where(models.MemoRow.id == memo_id, models.MemoRow.tenant_id == tenant_id)
        return session.exec(stmt).first()

    def list_by_model(self, tenant_id: str, model_id: int) -> List[Memo]:
        with self.store.session() as session:
            stmt = (
                select(models.MemoRow)
                .where(models.MemoRow.tenant_id == tenant_id, models.MemoRow.model_id == model_id)
                .order_by(col(models.MemoRow.id))
            )
            return [_memo(row) for row in session.exec(stmt).all()]

    def create(self, tenant_id: str, model_id: int, payload: MemoDraft) -> Memo:
        with self.store.session() as session:
            row = models.MemoRow(tenant_id=tenant_id, model_id=model_id, title=payload.title, content=payload.content)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _memo(row)

    def update(self, tenant_id: str, memo_id: int, payload: MemoDraft) -> Optional[Memo]:
        with self.store.session() as session:
            row = self._owned(session, tenant_id, memo_id)
            if row is None:
                return None
            row.title = payload.title
            row.content = payload.content
            session.add(row)
            session.commit()
            return _memo(row)

    def delete(self, tenant_id: str, memo_id: int) -> bool:
        with self.store.session() as session:
            row = self._owned(session, tenant_id, memo_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


class SqlAiHistoryRepository(AiHistoryRepository):
    def __init__(self, store: RelationalStore):
        self.store = store

    def list_by_model(self, tenant_id: str, model_id: int) -> List[AiHistoryItem]:
        with self.store.session() as session:
            stmt = (
                select(models.AiHistoryRow)
                .where(models.AiHistoryRow.tenant_id == tenant_id, models.AiHistoryRow.model_id == model_id)
                .order_by(col(models.AiHistoryRow.id))
            )
            return [
                AiHistoryItem(question=row.question, answer=row.answer, timestamp=to_iso(row.created_at))
                for row in session.exec(stmt).all()
            ]

    def append(self, tenant_id: str, model_id: int, item: AiExchange) -> AiHistoryItem:
        with self.store.session() as session:
            row = models.AiHistoryRow(tenant_id=tenant_id, model_id=model_id, question=item.question, answer=item.answer)
            session.add(row)
            session.commit()
            session.refresh(row)
            return AiHistoryItem(question=row.question, answer=row.answer, timestamp=to_iso(row.created_at))


class SqlWorkflowRepository(WorkflowRepository):
    def __init__(self, store: RelationalStore):
        self.store = store

    def _node_row(self, session: Session, tenant_id: str, node_id: int) -> Optional[models.WorkflowNodeRow]:
        stmt = select(models.WorkflowNodeRow).where(
            models.WorkflowNodeRow.id == node_id,
            models.WorkflowNodeRow.tenant_id == tenant_id,
        )
        return session.exec(stmt).first()

    def _files_for(self, session: Session, tenant_id: str, node_id: int) -> List[WorkflowFile]:
        stmt = (
            select(models.WorkflowFileRow)
            .where(models.WorkflowFileRow.tenant_id == tenant_id, models.WorkflowFileRow.node_id == node_id)
            .order_by(col(models.WorkflowFileRow.id))
        )
        return [_file(row) for row in session.exec(stmt).all()]

    def _file_row(self, session: Session, tenant_id: str, file_id: int) -> Optional[models.WorkflowFileRow]:
        stmt = select(models.WorkflowFileRow).where(
            models.WorkflowFileRow.id == file_id,
            models.WorkflowFileRow.tenant_id == tenant_id,
        )
        return session.exec(stmt).first()

    def list(self, tenant_id: str) -> WorkflowState:
        with self.store.session() as session:
            nodes = session.exec(
                select(models.WorkflowNodeRow)
                .where(models.WorkflowNodeRow.tenant_id == tenant_id)
                .order_by(col(models.WorkflowNodeRow.id))
            ).all()
            connections = session.exec(
                select(models.WorkflowConnectionRow)
                .where(models.WorkflowConnectionRow.tenant_id == tenant_id)
                .order_by(col(models.WorkflowConnectionRow.id))
            ).all()
            files = session.exec(
                select(models.WorkflowFileRow)
                .where(models.WorkflowFileRow.tenant_id == tenant_id)
                .order_by(col(models.WorkflowFileRow.id))
            ).all()

            files_by_node: Dict[int, List[WorkflowFile]] = {}
            for row in files:
                files_by_node.setdefault(row.node_id, []).append(_file(row))

            return WorkflowState(
                nodes=[_node(row, files_by_node.get(row.id, [])) for row in nodes],
                connections=[_connection(row) for row in connections],
            )

    def create_node(self, tenant_id: str, payload: NodeDraft) -> WorkflowNode:
        with self.store.session() as session:
            row = models.WorkflowNodeRow(
                tenant_id=tenant_id,
                title=payload.title,
                content=payload.content,
                x=payload.x,
                y=payload.y,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _node(row, [])

    def update_node(self, tenant_id: str, node_id: int, payload: NodePatch) -> Optional[WorkflowNode]:
        with self.store.session() as session:
            row = self._node_row(session, tenant_id, node_id)
            if row is None:
                return None
            changes = payload.changes()
            if changes:
                for key, value in changes.items():
                    setattr(row, key, value)
                session.add(row)
                session.commit()
            return _node(row, self._files_for(session, tenant_id, node_id))

    def delete_node(self, tenant_id: str, node_id: int) -> bool:
        with self.store.session() as session:
            row = self._node_row(session, tenant_id, node_id)
            if row is None:
                return False
            for attached in session.exec(
                select(models.WorkflowFileRow).where(
                    models.WorkflowFileRow.tenant_id == tenant_id,
                    models.WorkflowFileRow.node_id == node_id,
                )
            ).all():
                session.delete(attached)
            for edge in session.exec(
                select(models.WorkflowConnectionRow).where(
                    models.WorkflowConnectionRow.tenant_id == tenant_id,
                    or_(
                        models.WorkflowConnectionRow.from_node_id == node_id,
                        models.WorkflowConnectionRow.to_node_id == node_id,
                    ),
                )
            ).all():
                session.delete(edge)
            session.delete(row)
            session.commit()
            return True

    def create_connection(self, tenant_id: str, payload: ConnectionDraft) -> Optional[WorkflowConnection]:
        if payload.from_node == payload.to_node:
            return None
        with self.store.session() as session:
            found = session.exec(
                select(models.WorkflowNodeRow.id).where(
                    models.WorkflowNodeRow.tenant_id == tenant_id,
                    col(models.WorkflowNodeRow.id).in_([payload.from_node, payload.to_node]),
                )
            ).all()
            if len(found) < 2:
                return None

            duplicate = session.exec(
                select(models.WorkflowConnectionRow)
                .where(
                    models.WorkflowConnectionRow.tenant_id == tenant_id,
                    models.WorkflowConnectionRow.from_node_id == payload.from_node,
                    models.WorkflowConnectionRow.to_node_id == payload.to_node,
                    models.WorkflowConnectionRow.from_anchor == payload.from_anchor,
                    models.WorkflowConnectionRow.to_anchor == payload.to_anchor,
                )
                .order_by(col(models.WorkflowConnectionRow.id))
            ).first()
            if duplicate is not None:
                return _connection(duplicate)

            row = models.WorkflowConnectionRow(
                tenant_id=tenant_id,
                from_node_id=payload.from_node,
                to_node_id=payload.to_node,
                from_anchor=payload.from_anchor,
                to_anchor=payload.to_anchor,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _connection(row)

    def delete_connection(self, tenant_id: str, connection_id: int) -> bool:
        with self.store.session() as session:
            row = session.exec(
                select(models.WorkflowConnectionRow).where(
                    models.WorkflowConnectionRow.id == connection_id,
                    models.WorkflowConnectionRow.tenant_id == tenant_id,
                )
            ).first()
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def find_connection_id_by_pair(self, tenant_id: str, from_node: int, to_node: int) -> Optional[int]:
        with self.store.session() as session:
            return session.exec(
                select(models.WorkflowConnectionRow.id)
                .where(
                    models.WorkflowConnectionRow.tenant_id == tenant_id,
                    models.WorkflowConnectionRow.from_node_id == from_node,
                    models.WorkflowConnectionRow.to_node_id == to_node,
                )
                .order_by(col(models.WorkflowConnectionRow.id))
                .limit(1)
            ).first()

    def add_file_to_node(self, tenant_id: str, node_id: int, payload: FileUpload) -> Optional[WorkflowFile]:
        with self.store.session() as session:
            if self._node_row(session, tenant_id, node_id) is None:
                return None
            row = models.WorkflowFileRow(
                tenant_id=tenant_id,
                node_id=node_id,
                file_name=payload.file_name,
                content_type=payload.content_type,
                data=bytes(payload.buffer),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _file(row)

    def find_file(self, tenant_id: str, file_id: int) -> Optional[WorkflowFile]:
        with self.store.session() as session:
            row = self._file_row(session, tenant_id, file_id)
            return _file(row) if row is not None else None

    def delete_file(self, tenant_id: str, file_id: int) -> bool:
        with self.store.session() as session:
            row = self._file_row(session, tenant_id, file_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True


def build_sql_repositories(store: RelationalStore) -> Repositories:
    """Wrap `store` in the three relational repositories."""
    return Repositories(
        memo=SqlMemoRepository(store),
        ai_history=SqlAiHistoryRepository(store),
        workflow=SqlWorkflowRepository(store),
        driver="postgres",
        _closer=store.close,
    )
