from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from stepkit import __version__
from stepkit.config import AppConfig
from stepkit.dispatch import ActionRegistry
from stepkit.errors import ErrorKind, OperationError
from stepkit.logs import BackendLog, attach_backend_log
from stepkit.operation import CallContext

APP_VERSION = __version__
API_TOKEN = os.environ.get("STEPKIT_AUTH_TOKEN", uuid4().hex)
DATA_DIR = Path(os.environ.get("STEPKIT_DATA_DIR", str(Path.cwd() / ".stepkit-data")))

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.TYPE: 400,
    ErrorKind.RANGE: 400,
    ErrorKind.EMPTY: 400,
    ErrorKind.PARSE_ERROR: 400,
    ErrorKind.TEMPLATE_ERROR: 400,
    ErrorKind.FILE_NOT_FOUND: 404,
    ErrorKind.PERMISSION_DENIED: 403,
    ErrorKind.PATH_TRAVERSAL: 403,
    ErrorKind.SYMLINK_DENIED: 403,
    ErrorKind.SIZE_LIMIT: 413,
    ErrorKind.QUOTA_EXCEEDED: 413,
    ErrorKind.DISK_FULL: 507,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.INTERNAL: 500,
}

logger = logging.getLogger("stepkit.backend")


class ExecuteRequest(BaseModel):
    inputs: dict[str, Any] = Field(default_factory=dict)
    workflow_id: str = ""
    step_id: str = ""


class ExecuteResponse(BaseModel):
    response: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class LogsTailResponse(BaseModel):
    lines: list[str]


class LogsSearchResponse(BaseModel):
    matches: list[str]


config_lock = threading.Lock()
current_config = AppConfig()
current_registry: ActionRegistry | None = None
backend_log_lock = threading.Lock()
current_backend_log: BackendLog | None = None


@asynccontextmanager
async def lifespan(_: FastAPI):
    backend_log_path().parent.mkdir(parents=True, exist_ok=True)
    reload_config()
    yield


app = FastAPI(title="Stepkit Backend", version=APP_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def require_bearer(authorization: str | None = Header(default=None)) -> None:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or token != API_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid bearer token")


def config_path() -> Path:
    return DATA_DIR / "config.json"


def backend_log_path() -> Path:
    return DATA_DIR / "logs" / "backend.log"


def backend_log() -> BackendLog:
    global current_backend_log
    path = backend_log_path()
    with backend_log_lock:
        if current_backend_log is None or current_backend_log.path != path:
            current_backend_log = BackendLog(path)
        return current_backend_log


def append_backend_log(level: str, message: str) -> None:
    backend_log().append(level, message)


def write_default_config_if_missing() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    path = config_path()
    if path.exists():
        return
    default = AppConfig().model_dump()
    temp_path = path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(default, indent=2), encoding="utf-8")
    temp_path.replace(path)


def load_config_from_disk() -> AppConfig:
    write_default_config_if_missing()
    path = config_path()
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=500, detail=f"Invalid config JSON: {exc}"
        ) from exc
    try:
        return AppConfig(**raw)
    except ValidationError as exc:
        raise HTTPException(
            status_code=500, detail=f"Invalid config: {exc.errors()[0].get('msg', exc)}"
        ) from exc


def build_registry(config: AppConfig) -> ActionRegistry:
    try:
        return ActionRegistry.from_config(config)
    except OperationError as exc:
        raise HTTPException(status_code=500, detail=exc.to_dict()) from exc


def get_config_snapshot() -> AppConfig:
    with config_lock:
        return current_config.model_copy(deep=True)


def get_registry() -> ActionRegistry:
    with config_lock:
        registry = current_registry
    if registry is None:
        reload_config()
        with config_lock:
            registry = current_registry
    if registry is None:
        raise HTTPException(status_code=500, detail="Action registry is not available")
    return registry


def reload_config() -> AppConfig:
    config = load_config_from_disk()
    registry = build_registry(config)
    attach_backend_log(backend_log())
    with config_lock:
        global current_config, current_registry
        current_config = config
        current_registry = registry
    logger.info("config loaded from %s", config_path())
    return config


@app.get("/v1/health", dependencies=[Depends(require_bearer)])
def get_health() -> dict[str, Any]:
    return {"status": "ok"}


@app.get("/v1/version", dependencies=[Depends(require_bearer)])
def get_version() -> dict[str, str]:
    return {"version": APP_VERSION}


@app.get("/v1/config", dependencies=[Depends(require_bearer)], response_model=AppConfig)
def get_config() -> AppConfig:
    return get_config_snapshot()


@app.post(
    "/v1/config/reload",
    dependencies=[Depends(require_bearer)],
    response_model=AppConfig,
)
def post_config_reload() -> AppConfig:
    return reload_config()


@app.get("/v1/actions", dependencies=[Depends(require_bearer)])
def get_actions() -> dict[str, list[str]]:
    return get_registry().describe()


@app.post(
    "/v1/actions/{action}/{operation}",
    dependencies=[Depends(require_bearer)],
    response_model=ExecuteResponse,
)
def post_action(action: str, operation: str, request: ExecuteRequest) -> ExecuteResponse:
    context = CallContext(workflow_id=request.workflow_id, step_id=request.step_id)
    try:
        result = get_registry().execute(action, operation, request.inputs, context)
    except OperationError as exc:
        append_backend_log("error", f"{action}.{operation} failed: {exc}")
        raise HTTPException(
            status_code=STATUS_BY_KIND.get(exc.kind, 500), detail=exc.to_dict()
        ) from exc
    return ExecuteResponse(response=result.response, metadata=result.metadata)


@app.get("/v1/quota", dependencies=[Depends(require_bearer)])
def get_quota() -> dict[str, Any]:
    tracker = get_registry().quota
    return {"quotas": tracker.usage() if tracker is not None else []}


@app.post("/v1/quota/reset", dependencies=[Depends(require_bearer)])
def post_quota_reset() -> dict[str, Any]:
    tracker = get_registry().quota
    if tracker is not None:
        tracker.reset()
    append_backend_log("info", "quota usage reset")
    return {"quotas": tracker.usage() if tracker is not None else []}


@app.get(
    "/v1/metrics",
    dependencies=[Depends(require_bearer)],
    response_class=PlainTextResponse,
)
def get_metrics() -> str:
    return get_registry().render_metrics()


@app.get(
    "/v1/logs/tail",
    dependencies=[Depends(require_bearer)],
    response_model=LogsTailResponse,
)
def get_logs_tail(lines: int = 200) -> LogsTailResponse:
    return LogsTailResponse(lines=backend_log().tail(lines))


@app.get(
    "/v1/logs/search",
    dependencies=[Depends(require_bearer)],
    response_model=LogsSearchResponse,
)
def get_logs_search(q: str, limit: int = 200) -> LogsSearchResponse:
    return LogsSearchResponse(matches=backend_log().search(q, limit))


if __name__ == "__main__":
    import uvicorn

    reload_config()
    port = int(os.environ.get("STEPKIT_PORT", "8765"))
    uvicorn.run("main:app", host="127.0.0.1", port=port, reload=False)
