"""
Progressive Content Engine: HTTP API
====================================

Endpoints:
- POST /api/v1/projects                  -> create project
- POST /api/v1/stages/execute            -> execute one stage
- GET  /api/v1/projects/{id}             -> project status, stages, statistics
- GET  /api/v1/projects                  -> list projects
- GET  /api/v1/projects/{id}/notations   -> compact-context notations (?expand=true adds instructions)

Usage:
    uvicorn api.server:app --reload
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional, Literal

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import (
    ProgressiveEngineError, PreconditionError, ProjectNotFoundError, StageInProgressError,
    AIInvocationError, OutputValidationError
)
from services.workflow import build_orchestrator, run_step

logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateProjectRequest(BaseModel):
    project_name: str
    content_type: str
    topic: str
    target_audience: Optional[str] = None
    genre: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class AIConfigRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    provider: Optional[str] = None
    model: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, alias="maxTokens", gt=0)
    skip_validation: bool = False
    context_mode: Optional[Literal["full", "compact"]] = None
    ai_notation_parsing: bool = False


class ExecuteStageRequest(BaseModel):
    project_id: int
    stage_number: int
    ai_config: Optional[AIConfigRequest] = None


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _status_for(error: ProgressiveEngineError) -> int:
    if isinstance(error, ProjectNotFoundError):
        return 404
    if isinstance(error, StageInProgressError):
        return 409
    if isinstance(error, (PreconditionError, OutputValidationError)):
        return 400
    if isinstance(error, AIInvocationError):
        return 502
    return 500


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def create_app(orchestrator=None) -> FastAPI:
    """
    Args:
        orchestrator: 预先组装好的编排器；None 时在启动时按配置组装。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = build_orchestrator()
        yield

    app = FastAPI(
        title="Progressive Content Engine API",
        version="0.1.0",
        description="Multi-stage progressive content generation",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.exception_handler(ProgressiveEngineError)
    async def engine_error_handler(request: Request, exc: ProgressiveEngineError):
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} 失败: {exc}")
            message = str(exc) if status_code == 502 else "Internal server error"
            return _error(status_code, message)
        return _error(status_code, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = "; ".join(f"{'.'.join(str(p) for p in e['loc'][1:])}: {e['msg']}" for e in exc.errors())
        return _error(400, f"Invalid request: {details}")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(f"{request.method} {request.url.path} 未处理的异常: {exc}", exc_info=exc)
        return _error(500, "Internal server error")

    # =========================================================================
    # ENDPOINTS
    # =========================================================================

    @app.post("/api/v1/projects", status_code=201)
    def create_project(body: CreateProjectRequest):
        project = run_step("create_project", app.state.orchestrator, body.model_dump())
        return {"success": True, "project": project}

    @app.post("/api/v1/stages/execute")
    def execute_stage(body: ExecuteStageRequest):
        payload = body.model_dump()
        result = run_step("execute_stage", app.state.orchestrator, payload)
        return {"success": True, "stage": result.to_response()}

    @app.get("/api/v1/projects/{project_id}")
    def project_status(project_id: int):
        status = run_step("project_status", app.state.orchestrator, {"project_id": project_id})
        return {"success": True, **status}

    @app.get("/api/v1/projects")
    def list_projects(
        status: Optional[str] = None,
        content_type: Optional[str] = None,
        limit: int = Query(50, ge=1, le=200),
        offset: int = Query(0, ge=0),
    ):
        result = run_step("list_projects", app.state.orchestrator, {
            "status": status, "content_type": content_type, "limit": limit, "offset": offset,
        })
        return {"success": True, **result}

    @app.get("/api/v1/projects/{project_id}/notations")
    def project_notations(project_id: int, expand: bool = False):
        context = run_step("project_notations", app.state.orchestrator, {"project_id": project_id, "expand": expand})
        return {"success": True, **context}

    return app


app = create_app()
