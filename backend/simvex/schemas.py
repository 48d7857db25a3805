"""Pydantic request schemas used by the API.

Bodies are lenient the way the browser client sends them: missing
fields fall back to defaults in the controllers.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MemoIn(BaseModel):
    """Create/update payload for a memo; both fields replace stored values."""
    title: str = ""
    content: str = ""


class AiAskIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    question: Optional[str] = None
    model_id: Optional[int] = Field(default=None, alias="modelId")
    mesh_name: Optional[str] = Field(default=None, alias="meshName")


class NodeIn(BaseModel):
    title: Optional[str] = None
    content: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None


class ConnectionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_node: Optional[int] = Field(default=None, alias="from")
    to_node: Optional[int] = Field(default=None, alias="to")
    from_anchor: Optional[str] = Field(default=None, alias="fromAnchor")
    to_anchor: Optional[str] = Field(default=None, alias="toAnchor")
