"""Repository contract shared by every storage driver.

Three backends implement the same multi-tenant semantics:

- memory: process-local state, lost on exit (`stores.memory`)
- file: the memory state persisted to one JSON document (`stores.file_store`)
- postgres: normalized tables behind SQLAlchemy (`stores.sql`)

Every operation takes the tenant id first. A record that belongs to a
different tenant is indistinguishable from one that does not exist:
lookups return `None`, deletes return `False`. Returned entities are
copies; mutating them never changes stored state.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .config import RepositoryConfig
from .entities import (
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
)
from .errors import ConfigurationError

logger = logging.getLogger("simvex.repository")


class MemoRepository(ABC):
    """Sticky memos keyed by (tenant, model)."""

    @abstractmethod
    def list_by_model(self, tenant_id: str, model_id: int) -> List[Memo]:
        """Return the tenant's memos for `model_id` in insertion order."""

    @abstractmethod
    def create(self, tenant_id: str, model_id: int, payload: MemoDraft) -> Memo:
        """Store a new memo with the next memo id."""

    @abstractmethod
    def update(self, tenant_id: str, memo_id: int, payload: MemoDraft) -> Optional[Memo]:
        """Replace title and content; `None` if the tenant has no such memo."""

    @abstractmethod
    def delete(self, tenant_id: str, memo_id: int) -> bool:
        """Remove a memo; `False` if the tenant has no such memo."""


class AiHistoryRepository(ABC):
    """Append-only log of assistant exchanges keyed by (tenant, model)."""

    @abstractmethod
    def list_by_model(self, tenant_id: str, model_id: int) -> List[AiHistoryItem]:
        """Return exchanges in chronological order."""

    @abstractmethod
    def append(self, tenant_id: str, model_id: int, item: AiExchange) -> AiHistoryItem:
        """Stamp the exchange with the current time and store it."""


class WorkflowRepository(ABC):
    """Per-tenant workflow graph: nodes, connections and node attachments."""

    @abstractmethod
    def list(self, tenant_id: str) -> WorkflowState:
        """Return every node (with files) and connection of the tenant."""

    @abstractmethod
    def create_node(self, tenant_id: str, payload: NodeDraft) -> WorkflowNode:
        """Create a node with no files."""

    @abstractmethod
    def update_node(self, tenant_id: str, node_id: int, payload: NodePatch) -> Optional[WorkflowNode]:
        """Apply the fields set on `payload`; others keep their value."""

    @abstractmethod
    def delete_node(self, tenant_id: str, node_id: int) -> bool:
        """Delete a node, its files and every connection touching it."""

    @abstractmethod
    def create_connection(self, tenant_id: str, payload: ConnectionDraft) -> Optional[WorkflowConnection]:
        """Connect two of the tenant's nodes.

        Returns `None` for a self-loop or when either endpoint is missing.
        An identical (from, to, from_anchor, to_anchor) connection is
        returned as-is instead of creating a duplicate.
        """

    @abstractmethod
    def delete_connection(self, tenant_id: str, connection_id: int) -> bool:
        """Delete one connection by id."""

    @abstractmethod
    def find_connection_id_by_pair(self, tenant_id: str, from_node: int, to_node: int) -> Optional[int]:
        """Id of the oldest connection from `from_node` to `to_node`.

        Direction matters: a connection stored as to->from does not match.
        """

    @abstractmethod
    def add_file_to_node(self, tenant_id: str, node_id: int, payload: FileUpload) -> Optional[WorkflowFile]:
        """Attach a file to a node; `None` if the tenant has no such node."""

    @abstractmethod
    def find_file(self, tenant_id: str, file_id: int) -> Optional[WorkflowFile]:
        """Find a file on any of the tenant's nodes."""

    @abstractmethod
    def delete_file(self, tenant_id: str, file_id: int) -> bool:
        """Remove a file from whichever node holds it."""


@dataclass
class Repositories:
    """The bundle handed to callers: one repository per entity family."""
    memo: MemoRepository
    ai_history: AiHistoryRepository
    workflow: WorkflowRepository
    driver: str = "memory"
    _closer: Optional[Callable[[], None]] = field(default=None, repr=False)

    def close(self) -> None:
        """Release backend resources (connection pools)."""
        if self._closer is not None:
            self._closer()
            self._closer = None


def create_repositories(config: Optional[RepositoryConfig] = None) -> Repositories:
    """Build the repository bundle for the configured driver.

    Raises `ConfigurationError` when the driver is unknown or is missing
    its file path / database URL.
    """
    if config is None:
        config = RepositoryConfig()

    if config.driver == "memory":
        from .stores.memory import MemoryStore, build_memory_repositories

        logger.info("repository driver: memory")
        return build_memory_repositories(MemoryStore(), driver="memory")

    elif config.driver == "file":
        from .stores.file_store import JsonFileStore
        from .stores.memory import build_memory_repositories

        if not config.file_path:
            raise ConfigurationError("repository driver 'file' requires a file path (SIMVEX_REPOSITORY_FILE)")
        logger.info("repository driver: file (%s)", config.file_path)
        return build_memory_repositories(JsonFileStore(config.file_path), driver="file")

    elif config.driver == "postgres":
        from .stores.sql import RelationalStore, build_sql_repositories

        if not config.database_url:
            raise ConfigurationError("repository driver 'postgres' requires DATABASE_URL or POSTGRES_URL")
        logger.info("repository driver: postgres")
        return build_sql_repositories(RelationalStore(config.database_url))

    else:
        raise ConfigurationError(f"Unknown repository driver: {config.driver!r}. Supported: 'memory', 'file', 'postgres'")
