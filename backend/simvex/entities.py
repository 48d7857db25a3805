"""Domain entities shared by every repository backend.

Entities are pydantic models. Python attribute names are snake_case while
the JSON shape (API responses and the durable file format) uses the
camelCase names, e.g. ``file_name`` <-> ``fileName``. A workflow
connection stores its endpoints as ``from_node``/``to_node`` because
``from`` is a Python keyword; they serialise as ``from``/``to``.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Entity(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True)


class Memo(Entity):
    """A sticky memo owned by one (tenant, model) pair."""
    id: int
    title: str
    content: str


class AiHistoryItem(Entity):
    """One question/answer exchange. `timestamp` is assigned by the store."""
    question: str
    answer: str
    timestamp: str


class WorkflowFile(Entity):
    """Binary attachment owned by exactly one workflow node."""
    id: int
    file_name: str
    content_type: str
    buffer: bytes


class WorkflowNode(Entity):
    id: int
    title: str
    content: str
    x: float
    y: float
    files: List[WorkflowFile] = Field(default_factory=list)


class WorkflowConnection(Entity):
    """Directed edge between two nodes of the same tenant."""
    id: int
    from_node: int = Field(alias="from")
    to_node: int = Field(alias="to")
    from_anchor: str
    to_anchor: str

    def same_edge(self, draft: "ConnectionDraft") -> bool:
        return (
            self.from_node == draft.from_node
            and self.to_node == draft.to_node
            and self.from_anchor == draft.from_anchor
            and self.to_anchor == draft.to_anchor
        )


class WorkflowState(Entity):
    """Per-tenant view of the workflow graph. Derived, never stored as-is."""
    nodes: List[WorkflowNode] = Field(default_factory=list)
    connections: List[WorkflowConnection] = Field(default_factory=list)


# Payloads accepted by the repository contract.

class MemoDraft(Entity):
    title: str
    content: str


class AiExchange(Entity):
    question: str
    answer: str


class NodeDraft(Entity):
    title: str
    content: str
    x: float
    y: float


class NodePatch(Entity):
    """Sparse node update.

    Only fields that are explicitly set are applied; use `changes()` to
    get them. A field explicitly set to None is ignored as well.
    """
    title: Optional[str] = None
    content: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None

    def changes(self) -> dict:
        return {
            key: value
            for key, value in self.model_dump(exclude_unset=True).items()
            if value is not None
        }


class ConnectionDraft(Entity):
    from_node: int = Field(alias="from")
    to_node: int = Field(alias="to")
    from_anchor: str
    to_anchor: str


class FileUpload(Entity):
    file_name: str
    content_type: str
    buffer: bytes


def utc_now_iso() -> str:
    """Return the current UTC instant as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def to_iso(value: datetime) -> str:
    """Render a stored datetime as ISO-8601, treating naive values as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()
