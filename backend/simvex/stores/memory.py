"""In-process repository backend.

All data lives in a `RepositoryState`: four id sequences plus nested
dicts keyed by tenant id and then by model id (as a string, so the same
shape can be written to JSON). `MemoryStore` guards that state with a
re-entrant lock because FastAPI runs synchronous handlers on a thread
pool; the lock only covers one process.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

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
    utc_now_iso,
)
from ..repositories import (
    AiHistoryRepository,
    MemoRepository,
    Repositories,
    WorkflowRepository,
)

SEQUENCES = ("memo", "node", "connection", "file")


@dataclass
class RepositoryState:
    """Everything the memory and file backends know.

    Sequences are store-wide, not per tenant, and only move forward:
    deleting a record never frees its id.
    """
    memo_id_seq: int = 1
    node_id_seq: int = 1
    connection_id_seq: int = 1
    file_id_seq: int = 1
    memo_store: Dict[str, Dict[str, List[Memo]]] = field(default_factory=dict)
    history_store: Dict[str, Dict[str, List[AiHistoryItem]]] = field(default_factory=dict)
    workflow_store: Dict[str, WorkflowState] = field(default_factory=dict)

    def next_id(self, kind: str) -> int:
        """Return the next id for `kind` and advance its sequence."""
        if kind not in SEQUENCES:
            raise ValueError(f"unknown id sequence: {kind!r}")
        attr = f"{kind}_id_seq"
        value = getattr(self, attr)
        setattr(self, attr, value + 1)
        return value


class MemoryStore:
    """Holds the state and the lock shared by the in-memory repositories.

    Repositories change state only inside `mutation()`, which persists
    the change and puts the previous state back if persisting fails.
    """

    def __init__(self, state: Optional[RepositoryState] = None):
        self.state = state or RepositoryState()
        self.lock = threading.RLock()

    def save(self) -> None:
        """Persist the state after a mutation. Nothing to do in memory."""

    def snapshot(self) -> Optional[RepositoryState]:
        """State to restore when `save()` fails; `None` when saving cannot fail."""
        return None

    def close(self) -> None:
        pass

    @contextmanager
    def mutation(self) -> Iterator[RepositoryState]:
        with self.lock:
            previous = self.snapshot()
            try:
                yield self.state
                self.save()
            except BaseException:
                if previous is not None:
                    self.state = previous
                raise

    def memo_bucket(self, tenant_id: str, model_id: int) -> List[Memo]:
        by_tenant = self.state.memo_store.setdefault(tenant_id, {})
        return by_tenant.setdefault(str(model_id), [])

    def history_bucket(self, tenant_id: str, model_id: int) -> List[AiHistoryItem]:
        by_tenant = self.state.history_store.setdefault(tenant_id, {})
        return by_tenant.setdefault(str(model_id), [])

    def workflow(self, tenant_id: str) -> WorkflowState:
        """Return the tenant's live workflow, creating an empty one lazily."""
        existing = self.state.workflow_store.get(tenant_id)
        if existing is None:
            existing = WorkflowState()
            self.state.workflow_store[tenant_id] = existing
        return existing

    def peek_workflow(self, tenant_id: str) -> WorkflowState:
        """Read-only lookup; unknown tenants get a detached empty workflow."""
        return self.state.workflow_store.get(tenant_id) or WorkflowState()


class InMemoryMemoRepository(MemoRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def list_by_model(self, tenant_id: str, model_id: int) -> List[Memo]:
        with self.store.lock:
            by_tenant = self.store.state.memo_store.get(tenant_id, {})
            return [m.model_copy() for m in by_tenant.get(str(model_id), [])]

    def create(self, tenant_id: str, model_id: int, payload: MemoDraft) -> Memo:
        with self.store.mutation() as state:
            memo = Memo(
                id=state.next_id("memo"),
                title=payload.title,
                content=payload.content,
            )
            self.store.memo_bucket(tenant_id, model_id).append(memo)
        return memo.model_copy()

    def _locate(self, tenant_id: str, memo_id: int):
        for model_key, memos in self.store.state.memo_store.get(tenant_id, {}).items():
            for index, current in enumerate(memos):
                if current.id == memo_id:
                    return model_key, index
        return None

    def update(self, tenant_id: str, memo_id: int, payload: MemoDraft) -> Optional[Memo]:
        with self.store.lock:
            found = self._locate(tenant_id, memo_id)
            if found is None:
                return None
            model_key, index = found
            with self.store.mutation() as state:
                memos = state.memo_store[tenant_id][model_key]
                updated = memos[index].model_copy(update={"title": payload.title, "content": payload.content})
                memos[index] = updated
            return updated.model_copy()

    def delete(self, tenant_id: str, memo_id: int) -> bool:
        with self.store.lock:
            found = self._locate(tenant_id, memo_id)
            if found is None:
                return False
            model_key, index = found
            with self.store.mutation() as state:
                del state.memo_store[tenant_id][model_key][index]
            return True


class InMemoryAiHistoryRepository(AiHistoryRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def list_by_model(self, tenant_id: str, model_id: int) -> List[AiHistoryItem]:
        with self.store.lock:
            by_tenant = self.store.state.history_store.get(tenant_id, {})
            return [h.model_copy() for h in by_tenant.get(str(model_id), [])]

    def append(self, tenant_id: str, model_id: int, item: AiExchange) -> AiHistoryItem:
        with self.store.mutation():
            created = AiHistoryItem(question=item.question, answer=item.answer, timestamp=utc_now_iso())
            self.store.history_bucket(tenant_id, model_id).append(created)
        return created.model_copy()


class InMemoryWorkflowRepository(WorkflowRepository):
    def __init__(self, store: MemoryStore):
        self.store = store

    def _find_node(self, state: WorkflowState, node_id: int) -> Optional[WorkflowNode]:
        for node in state.nodes:
            if node.id == node_id:
                return node
        return None

    def list(self, tenant_id: str) -> WorkflowState:
        with self.store.lock:
            return self.store.peek_workflow(tenant_id).model_copy(deep=True)

    def create_node(self, tenant_id: str, payload: NodeDraft) -> WorkflowNode:
        with self.store.mutation() as state:
            node = WorkflowNode(
                id=state.next_id("node"),
                title=payload.title,
                content=payload.content,
                x=payload.x,
                y=payload.y,
                files=[],
            )
            self.store.workflow(tenant_id).nodes.append(node)
        return node.model_copy(deep=True)

    def update_node(self, tenant_id: str, node_id: int, payload: NodePatch) -> Optional[WorkflowNode]:
        with self.store.lock:
            node = self._find_node(self.store.peek_workflow(tenant_id), node_id)
            if node is None:
                return None
            changes = payload.changes()
            if not changes:
                return node.model_copy(deep=True)
            with self.store.mutation():
                for key, value in changes.items():
                    setattr(node, key, value)
            return node.model_copy(deep=True)

    def delete_node(self, tenant_id: str, node_id: int) -> bool:
        with self.store.lock:
            workflow = self.store.peek_workflow(tenant_id)
            if self._find_node(workflow, node_id) is None:
                return False
            with self.store.mutation():
                workflow.nodes = [n for n in workflow.nodes if n.id != node_id]
                workflow.connections = [
                    c for c in workflow.connections
                    if c.from_node != node_id and c.to_node != node_id
                ]
            return True

    def create_connection(self, tenant_id: str, payload: ConnectionDraft) -> Optional[WorkflowConnection]:
        if payload.from_node == payload.to_node:
            return None
        with self.store.lock:
            workflow = self.store.peek_workflow(tenant_id)
            if self._find_node(workflow, payload.from_node) is None or self._find_node(workflow, payload.to_node) is None:
                return None
            for existing in workflow.connections:
                if existing.same_edge(payload):
                    return existing.model_copy()
            with self.store.mutation() as state:
                connection = WorkflowConnection(
                    id=state.next_id("connection"),
                    from_node=payload.from_node,
                    to_node=payload.to_node,
                    from_anchor=payload.from_anchor,
                    to_anchor=payload.to_anchor,
                )
                workflow.connections.append(connection)
            return connection.model_copy()

    def delete_connection(self, tenant_id: str, connection_id: int) -> bool:
        with self.store.lock:
            workflow = self.store.peek_workflow(tenant_id)
            if not any(c.id == connection_id for c in workflow.connections):
                return False
            with self.store.mutation():
                workflow.connections = [c for c in workflow.connections if c.id != connection_id]
            return True

    def find_connection_id_by_pair(self, tenant_id: str, from_node: int, to_node: int) -> Optional[int]:
        with self.store.lock:
            for connection in self.store.peek_workflow(tenant_id).connections:
                if connection.from_node == from_node and connection.to_node == to_node:
                    return connection.id
            return None

    def add_file_to_node(self, tenant_id: str, node_id: int, payload: FileUpload) -> Optional[WorkflowFile]:
        with self.store.lock:
            node = self._find_node(self.store.peek_workflow(tenant_id), node_id)
            if node is None:
                return None
            with self.store.mutation() as state:
                stored = WorkflowFile(
                    id=state.next_id("file"),
                    file_name=payload.file_name,
                    content_type=payload.content_type,
                    buffer=bytes(payload.buffer),
                )
                node.files.append(stored)
            return stored.model_copy()

    def find_file(self, tenant_id: str, file_id: int) -> Optional[WorkflowFile]:
        with self.store.lock:
            for node in self.store.peek_workflow(tenant_id).nodes:
                for stored in node.files:
                    if stored.id == file_id:
                        return stored.model_copy()
            return None

    def delete_file(self, tenant_id: str, file_id: int) -> bool:
        with self.store.lock:
            for node in self.store.peek_workflow(tenant_id).nodes:
                if not any(f.id == file_id for f in node.files):
                    continue
                with self.store.mutation():
                    node.files = [f for f in node.files if f.id != file_id]
                return True
            return False


def build_memory_repositories(store: MemoryStore, driver: str = "memory") -> Repositories:
    """Wrap `store` in the three in-memory repositories."""
    return Repositories(
        memo=InMemoryMemoRepository(store),
        ai_history=InMemoryAiHistoryRepository(store),
        workflow=InMemoryWorkflowRepository(store),
        driver=driver,
        _closer=store.close,
    )
