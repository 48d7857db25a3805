"""Business logic services used by HTTP controllers.

Services are thin: they coordinate the repository bundle and hold the
small amount of logic that does not belong to a single repository call.
"""

from typing import Optional

from .entities import AiExchange, WorkflowState
from .repositories import Repositories

PROVIDER = "mock"


class AssistantService:
    """Answers study questions with a canned reply and records the exchange."""
    def __init__(self, repos: Repositories):
        self.repos = repos

    def build_answer(self, question: str, model_id: int, mesh_name: Optional[str] = None) -> str:
        if mesh_name:
            return (
                f'Question received. Looking at the "{mesh_name}" part of model {model_id}, '
                f"read its structure together with how it moves in the assembly. ({question})"
            )
        return f"Question received. For model {model_id}, start from the core concepts first. ({question})"

    def ask(self, tenant_id: str, model_id: int, question: str, mesh_name: Optional[str] = None) -> dict:
        """Produce an answer, append it to the tenant's history and return the response body."""
        mode = "PART" if mesh_name else "GLOBAL"
        context = f"- model: {model_id}"
        if mesh_name:
            context += f"\n- part: {mesh_name}"
        answer = self.build_answer(question, model_id, mesh_name)
        self.repos.ai_history.append(tenant_id, model_id, AiExchange(question=question, answer=answer))
        return {
            "answer": answer,
            "context": context,
            "mode": mode,
            "meta": {"provider": PROVIDER, "partFound": bool(mesh_name)},
        }


class WorkflowService:
    """Workflow operations that combine more than one repository call."""
    def __init__(self, repos: Repositories):
        self.repos = repos

    def disconnect(
        self,
        tenant_id: str,
        connection_id: Optional[int] = None,
        from_node: Optional[int] = None,
        to_node: Optional[int] = None,
    ) -> bool:
        """Delete a connection by id, or by its (from, to) pair when no id is given."""
        if connection_id is None:
            if from_node is None or to_node is None:
                raise ValueError("connection id or from/to pair required")
            connection_id = self.repos.workflow.find_connection_id_by_pair(tenant_id, from_node, to_node)
            if connection_id is None:
                return False
        return self.repos.workflow.delete_connection(tenant_id, connection_id)

    @staticmethod
    def render(state: WorkflowState) -> dict:
        """API view of a workflow: files become download links instead of bytes."""
        return {
            "nodes": [
                {
                    "id": node.id,
                    "title": node.title,
                    "content": node.content,
                    "x": node.x,
                    "y": node.y,
                    "files": [
                        {"id": f.id, "fileName": f.file_name, "url": f"/api/workflow/files/download/{f.id}"}
                        for f in node.files
                    ],
                }
                for node in state.nodes
            ],
            "connections": [c.to_json() for c in state.connections],
        }
