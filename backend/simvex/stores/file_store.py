"""JSON-file repository backend.

`JsonFileStore` is the memory backend plus a serialize/deserialize
boundary around one JSON document:

    {
      "memoIdSeq": 1, "nodeIdSeq": 1, "connectionIdSeq": 1, "fileIdSeq": 1,
      "memoStore":     {tenant: {modelId: [Memo, ...]}},
      "historyStore":  {tenant: {modelId: [AiHistoryItem, ...]}},
      "workflowStore": {tenant: {"nodes": [...], "connections": [...]}}
    }

File payloads are stored base64-encoded under `bufferBase64`. The state
is read once at construction and the whole document is rewritten after
every mutation, so each write costs O(total state). Two processes
pointed at the same file overwrite each other (last writer wins). A
save that fails leaves the in-memory state as it was before the change.
"""

from __future__ import annotations

import base64
import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict

from pydantic import ValidationError

from ..entities import (
    AiHistoryItem,
    Memo,
    WorkflowConnection,
    WorkflowFile,
    WorkflowNode,
    WorkflowState,
)
from .memory import MemoryStore, RepositoryState

logger = logging.getLogger("simvex.repository.file")


class JsonFileStore(MemoryStore):
    """Memory store that loads from and saves to `file_path`."""

    def __init__(self, file_path: str | os.PathLike):
        self.file_path = Path(file_path)
        super().__init__(self._load())

    def _load(self) -> RepositoryState:
        if not self.file_path.exists():
            return RepositoryState()
        try:
            raw = json.loads(self.file_path.read_text(encoding="utf-8"))
            return state_from_document(raw)
        except (OSError, ValueError, TypeError, KeyError, AttributeError, ValidationError) as exc:
            # corrupt cache: start over rather than refuse to boot
            logger.warning("repository state load failed, falling back to fresh state: %s (%s)", self.file_path, exc)
            return RepositoryState()

    def snapshot(self) -> RepositoryState:
        return copy.deepcopy(self.state)

    def save(self) -> None:
        """Rewrite the whole document. Called with the store lock held."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(state_to_document(self.state), indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.file_path.name}.", dir=self.file_path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self.file_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            logger.error("repository state save failed: %s", self.file_path)
            raise


def state_to_document(state: RepositoryState) -> Dict[str, Any]:
    """Serialize the in-memory state into the persisted JSON shape."""
    return {
        "memoIdSeq": state.memo_id_seq,
        "nodeIdSeq": state.node_id_seq,
        "connectionIdSeq": state.connection_id_seq,
        "fileIdSeq": state.file_id_seq,
        "memoStore": {
            tenant: {model_key: [m.to_json() for m in memos] for model_key, memos in by_model.items()}
            for tenant, by_model in state.memo_store.items()
        },
        "historyStore": {
            tenant: {model_key: [h.to_json() for h in items] for model_key, items in by_model.items()}
            for tenant, by_model in state.history_store.items()
        },
        "workflowStore": {
            tenant: _workflow_to_document(workflow)
            for tenant, workflow in state.workflow_store.items()
        },
    }


def state_from_document(raw: Dict[str, Any]) -> RepositoryState:
    """Rebuild the in-memory state; absent keys fall back to defaults.

    Raises TypeError/KeyError/ValueError/AttributeError (or pydantic's
    ValidationError) when the document has the wrong shape.
    """
    if not isinstance(raw, dict):
        raise TypeError(f"repository document must be an object, got {type(raw).__name__}")
    base = RepositoryState()
    return RepositoryState(
        memo_id_seq=int(raw.get("memoIdSeq", base.memo_id_seq)),
        node_id_seq=int(raw.get("nodeIdSeq", base.node_id_seq)),
        connection_id_seq=int(raw.get("connectionIdSeq", base.connection_id_seq)),
        file_id_seq=int(raw.get("fileIdSeq", base.file_id_seq)),
        memo_store={
            tenant: {model_key: [Memo.model_validate(m) for m in memos] for model_key, memos in by_model.items()}
            for tenant, by_model in (raw.get("memoStore") or {}).items()
        },
        history_store={
            tenant: {
                model_key: [AiHistoryItem.model_validate(h) for h in items]
                for model_key, items in by_model.items()
            }
            for tenant, by_model in (raw.get("historyStore") or {}).items()
        },
        workflow_store={
            tenant: _workflow_from_document(workflow)
            for tenant, workflow in (raw.get("workflowStore") or {}).items()
        },
    )


def _workflow_to_document(workflow: WorkflowState) -> Dict[str, Any]:
    return {
        "nodes": [
            {
                "id": node.id,
                "title": node.title,
                "content": node.content,
                "x": node.x,
                "y": node.y,
                "files": [
                    {
                        "id": f.id,
                        "fileName": f.file_name,
                        "contentType": f.content_type,
                        "bufferBase64": base64.b64encode(f.buffer).decode("ascii"),
                    }
                    for f in node.files
                ],
            }
            for node in workflow.nodes
        ],
        "connections": [c.to_json() for c in workflow.connections],
    }


def _workflow_from_document(raw: Dict[str, Any]) -> WorkflowState:
    nodes = []
    for node in raw.get("nodes", []):
        files = [
            WorkflowFile(
                id=f["id"],
                file_name=f["fileName"],
                content_type=f["contentType"],
                buffer=base64.b64decode(f["bufferBase64"], validate=True),
            )
            for f in node.get("files", [])
        ]
        nodes.append(
            WorkflowNode(
                id=node["id"],
                title=node["title"],
                content=node["content"],
                x=node["x"],
                y=node["y"],
                files=files,
            )
        )
    connections = [WorkflowConnection.model_validate(c) for c in raw.get("connections", [])]
    return WorkflowState(nodes=nodes, connections=connections)
