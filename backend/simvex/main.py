"""FastAPI application entrypoint and HTTP controllers.

Controllers are intentionally thin: they read the tenant id, delegate to
the repository bundle (or a service) and map `None`/`False` results to
404/400 responses.

Endpoints implemented:
- GET /health
- GET|POST /api/models/{model_id}/memos
- PUT|DELETE /api/memos/{memo_id}
- GET /api/ai/history/{model_id}
- POST /api/ai/ask
- GET /api/workflow
- POST /api/workflow/nodes, PUT|DELETE /api/workflow/nodes/{node_id}
- POST|DELETE /api/workflow/connections
- POST /api/workflow/nodes/{node_id}/files
- GET /api/workflow/files/download/{file_id}, DELETE /api/workflow/files/{file_id}
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .config import RepositoryConfig, settings
from .entities import ConnectionDraft, FileUpload, MemoDraft, NodeDraft, NodePatch
from .repositories import Repositories, create_repositories
from .schemas import AiAskIn, ConnectionIn, MemoIn, NodeIn
from .services import AssistantService, WorkflowService
from .tenancy import get_repositories, get_tenant_id

logger = logging.getLogger("simvex.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

router = APIRouter()


@router.get("/health")
def health(repos: Repositories = Depends(get_repositories)):
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok", "driver": repos.driver}


# memos

@router.get("/api/models/{model_id}/memos")
def list_memos(model_id: int, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    return [m.to_json() for m in repos.memo.list_by_model(tenant_id, model_id)]


@router.post("/api/models/{model_id}/memos", status_code=201)
def create_memo(
    model_id: int,
    payload: MemoIn,
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    memo = repos.memo.create(tenant_id, model_id, MemoDraft(title=payload.title, content=payload.content))
    return memo.to_json()


@router.put("/api/memos/{memo_id}")
def update_memo(
    memo_id: int,
    payload: MemoIn,
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    updated = repos.memo.update(tenant_id, memo_id, MemoDraft(title=payload.title, content=payload.content))
    if updated is None:
        raise HTTPException(status_code=404, detail="memo not found")
    return updated.to_json()


@router.delete("/api/memos/{memo_id}", status_code=204)
def delete_memo(memo_id: int, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    if not repos.memo.delete(tenant_id, memo_id):
        raise HTTPException(status_code=404, detail="memo not found")
    return Response(status_code=204)


# ai

@router.get("/api/ai/history/{model_id}")
def ai_history(model_id: int, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    return [h.to_json() for h in repos.ai_history.list_by_model(tenant_id, model_id)]


def _ask_error(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"answer": "", "context": "", "mode": "PART", "meta": {"error": error}},
    )


@router.post("/api/ai/ask")
def ai_ask(payload: AiAskIn, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    question = (payload.question or "").strip()
    if not question:
        return _ask_error(400, "question is required")
    if not payload.model_id:
        return _ask_error(400, "modelId is required")
    try:
        return AssistantService(repos).ask(tenant_id, payload.model_id, question, payload.mesh_name)
    except Exception:
        logger.exception("ai ask failed")
        return _ask_error(502, "ai service unavailable")


# workflow

@router.get("/api/workflow")
def get_workflow(tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    return WorkflowService.render(repos.workflow.list(tenant_id))


@router.post("/api/workflow/nodes", status_code=201)
def create_node(
    payload: Optional[NodeIn] = None,
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    payload = payload or NodeIn()
    node = repos.workflow.create_node(
        tenant_id,
        NodeDraft(
            title=payload.title if payload.title is not None else "New node",
            content=payload.content or "",
            x=payload.x if payload.x is not None else 200,
            y=payload.y if payload.y is not None else 120,
        ),
    )
    return {"id": node.id}


@router.put("/api/workflow/nodes/{node_id}")
def update_node(
    node_id: int,
    payload: NodeIn,
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    patch = NodePatch(**payload.model_dump(exclude_none=True))
    if repos.workflow.update_node(tenant_id, node_id, patch) is None:
        raise HTTPException(status_code=404, detail="node not found")
    return {"message": "ok"}


@router.delete("/api/workflow/nodes/{node_id}", status_code=204)
def delete_node(node_id: int, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    if not repos.workflow.delete_node(tenant_id, node_id):
        raise HTTPException(status_code=404, detail="node not found")
    return Response(status_code=204)


@router.post("/api/workflow/connections", status_code=201)
def create_connection(
    payload: ConnectionIn,
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    if payload.from_node is None or payload.to_node is None:
        raise HTTPException(status_code=400, detail="invalid connection")
    connection = repos.workflow.create_connection(
        tenant_id,
        ConnectionDraft(
            from_node=payload.from_node,
            to_node=payload.to_node,
            from_anchor=payload.from_anchor or "right",
            to_anchor=payload.to_anchor or "left",
        ),
    )
    if connection is None:
        raise HTTPException(status_code=400, detail="connection could not be created")
    return connection.to_json()


@router.delete("/api/workflow/connections", status_code=204)
def delete_connection(
    connection_id: Optional[int] = Query(default=None, alias="id"),
    from_node: Optional[int] = Query(default=None, alias="from"),
    to_node: Optional[int] = Query(default=None, alias="to"),
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    try:
        deleted = WorkflowService(repos).disconnect(tenant_id, connection_id, from_node, to_node)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=404, detail="connection not found")
    return Response(status_code=204)


def _validate_upload_filename(filename: Optional[str]) -> None:
    if not filename or len(filename) > 255:
        raise HTTPException(status_code=400, detail="invalid filename")
    if "/" in filename or "\\" in filename:
        raise HTTPException(status_code=400, detail="invalid filename path")


@router.post("/api/workflow/nodes/{node_id}/files", status_code=201)
def upload_node_file(
    node_id: int,
    file: UploadFile = File(...),
    tenant_id: str = Depends(get_tenant_id),
    repos: Repositories = Depends(get_repositories),
):
    _validate_upload_filename(file.filename)
    payload = file.file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(payload) > settings.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=400, detail="file too large")
    stored = repos.workflow.add_file_to_node(
        tenant_id,
        node_id,
        FileUpload(
            file_name=file.filename,
            content_type=file.content_type or "application/octet-stream",
            buffer=payload,
        ),
    )
    if stored is None:
        raise HTTPException(status_code=404, detail="node not found")
    return {"id": stored.id, "fileName": stored.file_name, "url": f"/api/workflow/files/download/{stored.id}"}


@router.get("/api/workflow/files/download/{file_id}")
def download_file(file_id: int, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    stored = repos.workflow.find_file(tenant_id, file_id)
    if stored is None:
        raise HTTPException(status_code=404, detail="file not found")
    return Response(
        content=stored.buffer,
        media_type=stored.content_type or "application/octet-stream",
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(stored.file_name)}"},
    )


@router.delete("/api/workflow/files/{file_id}", status_code=204)
def delete_file(file_id: int, tenant_id: str = Depends(get_tenant_id), repos: Repositories = Depends(get_repositories)):
    if not repos.workflow.delete_file(tenant_id, file_id):
        raise HTTPException(status_code=404, detail="file not found")
    return Response(status_code=204)


async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
    return response


def create_app(repositories: Optional[Repositories] = None) -> FastAPI:
    """Build the application around one repository bundle.

    When no bundle is given, one is built from the environment settings.
    Tests pass their own bundle so no state leaks between them.
    """
    if repositories is None:
        repositories = create_repositories(RepositoryConfig.from_settings(settings))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        repositories.close()

    application = FastAPI(title="Simvex Study API", lifespan=lifespan)
    application.state.repositories = repositories
    application.middleware("http")(request_context_middleware)

    # Wide-open CORS keeps local frontends working without extra config in dev.
    if settings.ALLOW_DEV_CORS:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    application.include_router(router)
    return application


app = create_app()
