"""
FastAPI Backend with WebSocket change channels for the Task Board

Exposes the Backend query/command interface over REST under /api, streams
row changes on /ws/changes/{table}, stores attachment uploads and serves
them under /storage. Wraps a LocalBackend (TaskDatabase + ChangeFeed).
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse

from .backend import LocalBackend
from .changes import ChangeEvent, Subscription
from .config import Settings, load_settings
from .database import TaskDatabase
from .errors import NotFoundError, TaskBoardError, ValidationError
from .models import (
    Activity, Comment, CommentCreate, HealthResponse, MetricsResponse, Profile, Project,
    ProjectEdit, RoleUpdate, Task, TaskCreate, TaskUpdate, create_error_response, parse_input,
)
from .monitoring import performance_monitor
from .storage import LocalBlobStorage, check_attachment_size

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

CHANGE_TABLES = ("tasks", "comments", "projects")

# Set during lifespan startup
backend_instance: Optional[LocalBackend] = None
storage_instance: Optional[LocalBlobStorage] = None
settings: Settings = Settings()


class ChangeChannelManager:
    """
    Registry of open change channels.

    Each WebSocket owns one feed subscription and a queue; feed callbacks
    enqueue events and a per-connection sender drains the queue in order.
    """

    def __init__(self):
        self.active_connections: Dict[WebSocket, Subscription] = {}
        self._connection_lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, backend: LocalBackend, table: str,
                      column: str, value: str) -> "asyncio.Queue[ChangeEvent]":
        await websocket.accept()
        queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()
        subscription = backend.subscribe(table, column, value, queue.put_nowait)
        async with self._connection_lock:
            self.active_connections[websocket] = subscription
        logger.info(f"Change channel {table}:{value} opened. Total connections: "
                    f"{len(self.active_connections)}")
        return queue

    async def disconnect(self, websocket: WebSocket):
        async with self._connection_lock:
            subscription = self.active_connections.pop(websocket, None)
        if subscription is not None:
            subscription.close()
        logger.info(f"Change channel closed. Total connections: {len(self.active_connections)}")

    async def forward(self, websocket: WebSocket, queue: "asyncio.Queue[ChangeEvent]"):
        """Send queued events until the connection fails or is cancelled."""
        while True:
            event = await queue.get()
            start = time.perf_counter()
            try:
                await websocket.send_text(event.model_dump_json())
            except Exception as e:
                logger.warning(f"Failed to send change to WebSocket: {e}")
                return
            performance_monitor.record_broadcast_time(1, (time.perf_counter() - start) * 1000)

    def get_connection_count(self) -> int:
        return len(self.active_connections)


channel_manager = ChangeChannelManager()


def get_backend() -> LocalBackend:
    """
    FastAPI dependency to provide the backend instance.

    Raises:
        HTTPException: If the service has not started
    """
    if backend_instance is None:
        raise HTTPException(status_code=503, detail="Backend not available")
    return backend_instance


def get_storage() -> LocalBlobStorage:
    if storage_instance is None:
        raise HTTPException(status_code=503, detail="Storage not available")
    return storage_instance


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and blob storage from environment settings."""
    global backend_instance, storage_instance, settings

    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)
    try:
        database = TaskDatabase(settings.database_path)
        backend_instance = LocalBackend(database)
        storage_instance = LocalBlobStorage(settings.blob_storage_dir, settings.public_base_url)
        logger.info(f"Database initialized: {settings.database_path}")
        logger.info(f"Blob storage at: {storage_instance.root}")
    except Exception as e:
        logger.error(f"Failed to initialize task board service: {e}")
        raise

    yield

    if backend_instance is not None:
        backend_instance.db.close()
        logger.info("Database connection closed")
    backend_instance = None
    storage_instance = None


app = FastAPI(
    title="Task Board API",
    description="REST API with live change channels for the project task board",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_request_time(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    performance_monitor.record_request_time(f"{request.method} {request.url.path}", duration_ms)
    return response


@app.exception_handler(TaskBoardError)
async def task_board_error_handler(request: Request, exc: TaskBoardError):
    details = None
    if getattr(exc, "rule", None):
        details = {"rule": exc.rule}
    elif isinstance(exc, NotFoundError):
        details = {"redirect_to": exc.redirect_to}
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc.message, exc.status_code, details),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return JSONResponse(
        status_code=422,
        content=create_error_response(f"{field}: {first['msg']}", 422, {"rule": field or None}),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content=create_error_response("Internal server error", 500))


# Health and metrics

@app.get("/healthz", response_model=HealthResponse)
async def health_check(backend: LocalBackend = Depends(get_backend)):
    database_connected = True
    try:
        backend.db.get_task_counts()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=channel_manager.get_connection_count(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@app.get("/api/metrics", response_model=MetricsResponse)
async def get_performance_metrics(backend: LocalBackend = Depends(get_backend)):
    try:
        task_counts = backend.db.get_task_counts()
    except Exception as e:
        logger.error(f"Failed to get performance metrics: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve performance metrics")

    return MetricsResponse(
        connections={
            "active": channel_manager.get_connection_count(),
            "feed_subscribers": backend.feed.subscriber_count,
        },
        tasks=task_counts,
        performance=performance_monitor.get_performance_summary(),
        system=performance_monitor.get_system_metrics(),
    )


# Projects

@app.get("/api/projects", response_model=List[Project])
async def list_projects(backend: LocalBackend = Depends(get_backend)):
    return await backend.list_projects()


@app.post("/api/projects", response_model=Project, status_code=201)
async def create_project(
    body: Dict[str, Any],
    backend: LocalBackend = Depends(get_backend),
    x_actor_id: Optional[str] = Header(None),
):
    form = parse_input(ProjectEdit, body)
    return await backend.insert_project(form.model_dump(mode="json"), x_actor_id)


@app.get("/api/projects/{project_id}", response_model=Project)
async def get_project(project_id: str, backend: LocalBackend = Depends(get_backend)):
    project = await backend.fetch_project(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


@app.patch("/api/projects/{project_id}", response_model=Project)
async def update_project(project_id: str, body: Dict[str, Any],
                         backend: LocalBackend = Depends(get_backend)):
    form = parse_input(ProjectEdit, body)
    project = await backend.update_project(project_id, form.model_dump(mode="json"))
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str, backend: LocalBackend = Depends(get_backend)):
    """Delete a project; its tasks cascade and each emits a delete change."""
    if not await backend.delete_project(project_id):
        raise NotFoundError(f"Project {project_id} not found")
    return {"success": True, "project_id": project_id}


@app.get("/api/projects/{project_id}/tasks", response_model=List[Task])
async def list_project_tasks(project_id: str, backend: LocalBackend = Depends(get_backend)):
    return await backend.fetch_tasks(project_id)


@app.post("/api/projects/{project_id}/tasks", response_model=Task, status_code=201)
async def create_task(
    project_id: str,
    body: Dict[str, Any],
    backend: LocalBackend = Depends(get_backend),
    x_actor_id: Optional[str] = Header(None),
):
    form = parse_input(TaskCreate, body)
    if await backend.fetch_project(project_id) is None:
        raise NotFoundError(f"Project {project_id} not found")
    return await backend.insert_task(project_id, form.model_dump(mode="json", exclude_none=True),
                                     x_actor_id)


# Tasks

@app.get("/api/tasks", response_model=List[Task])
async def list_tasks(
    assigned_to: Optional[str] = Query(None),
    has_due_date: bool = Query(False),
    backend: LocalBackend = Depends(get_backend),
):
    """Tasks assigned to a user, or every task with a due date."""
    if assigned_to is not None:
        return await backend.fetch_assigned_tasks(assigned_to)
    if has_due_date:
        return await backend.fetch_tasks_with_due_date()
    raise HTTPException(status_code=400, detail="Filter by assigned_to or has_due_date")


@app.get("/api/tasks/{task_id}", response_model=Task)
async def get_task(task_id: str, backend: LocalBackend = Depends(get_backend)):
    task = await backend.fetch_task(task_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    return task


@app.patch("/api/tasks/{task_id}", response_model=Task)
async def update_task(
    task_id: str,
    body: Dict[str, Any],
    backend: LocalBackend = Depends(get_backend),
    x_actor_id: Optional[str] = Header(None),
):
    """Apply a partial update; fields are validated like the client's edit form."""
    changes = parse_input(TaskUpdate, body).changes()
    current = await backend.fetch_task(task_id)
    if current is None:
        raise NotFoundError(f"Task {task_id} not found")
    if current.is_completed and changes.get("status", current.status.value) != current.status.value:
        raise ValidationError("Completed tasks cannot change status", rule="status")
    if not changes:
        return current
    task = await backend.update_task(task_id, changes, x_actor_id)
    if task is None:
        raise NotFoundError(f"Task {task_id} not found")
    if "status" in changes:
        performance_monitor.increment_daily_stat("status_changes")
    return task


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: str, backend: LocalBackend = Depends(get_backend)):
    if not await backend.delete_task(task_id):
        raise NotFoundError(f"Task {task_id} not found")
    return {"success": True, "task_id": task_id}


@app.get("/api/tasks/{task_id}/subtasks", response_model=List[Task])
async def list_subtasks(task_id: str, backend: LocalBackend = Depends(get_backend)):
    return await backend.fetch_subtasks(task_id)


@app.get("/api/tasks/{task_id}/activities", response_model=List[Activity])
async def list_activities(task_id: str, limit: int = Query(10, ge=1, le=100),
                          backend: LocalBackend = Depends(get_backend)):
    return await backend.fetch_activities(task_id, limit)


# Comments

@app.get("/api/tasks/{task_id}/comments", response_model=List[Comment])
async def list_comments(task_id: str, backend: LocalBackend = Depends(get_backend)):
    return await backend.fetch_comments(task_id)


@app.post("/api/tasks/{task_id}/comments", response_model=Comment, status_code=201)
async def create_comment(
    task_id: str,
    body: Dict[str, Any],
    backend: LocalBackend = Depends(get_backend),
    x_actor_id: Optional[str] = Header(None),
):
    form = parse_input(CommentCreate, body)
    if await backend.fetch_task(task_id) is None:
        raise NotFoundError(f"Task {task_id} not found")
    comment = await backend.insert_comment(task_id, form.model_dump(mode="json"), x_actor_id)
    performance_monitor.increment_daily_stat("comments_added")
    return comment


@app.get("/api/comments/{comment_id}", response_model=Comment)
async def get_comment(comment_id: str, backend: LocalBackend = Depends(get_backend)):
    comment = await backend.fetch_comment(comment_id)
    if comment is None:
        raise NotFoundError(f"Comment {comment_id} not found")
    return comment


# Profiles and roles

@app.get("/api/profiles", response_model=List[Profile])
async def list_profiles(backend: LocalBackend = Depends(get_backend)):
    return await backend.list_profiles()


@app.get("/api/profiles/{profile_id}", response_model=Profile)
async def get_profile(profile_id: str, backend: LocalBackend = Depends(get_backend)):
    profile = await backend.fetch_profile(profile_id)
    if profile is None:
        raise NotFoundError(f"Profile {profile_id} not found")
    return profile


@app.get("/api/profiles/{profile_id}/role")
async def get_role(profile_id: str, backend: LocalBackend = Depends(get_backend)):
    """Explicit role row of a user; ``null`` when none was ever set."""
    role = await backend.fetch_role(profile_id)
    return {"user_id": profile_id, "role": role.value if role else None}


@app.put("/api/profiles/{profile_id}/role")
async def set_role(profile_id: str, body: Dict[str, Any],
                   backend: LocalBackend = Depends(get_backend)):
    update = parse_input(RoleUpdate, body)
    if not await backend.set_role(profile_id, update.role):
        raise NotFoundError(f"Profile {profile_id} not found")
    return {"user_id": profile_id, "role": update.role.value}


# Attachments

@app.post("/api/uploads/{path:path}", status_code=201)
async def upload_attachment(path: str, request: Request,
                            storage: LocalBlobStorage = Depends(get_storage)):
    """Store the raw request body at ``path`` and return its public URL."""
    data = await request.body()
    check_attachment_size(len(data), settings.attachment_max_mb)
    url = await storage.upload(path, data)
    return {"path": path, "url": url}


@app.get("/storage/{bucket}/{path:path}")
async def download_attachment(bucket: str, path: str,
                              storage: LocalBlobStorage = Depends(get_storage)):
    if bucket != storage.bucket:
        raise NotFoundError(f"Bucket {bucket} not found")
    target = storage.resolve(path)
    if not target.is_file():
        raise NotFoundError(f"Attachment {path} not found")
    return FileResponse(target)


# Change channels

@app.websocket("/ws/changes/{table}")
async def websocket_changes(websocket: WebSocket, table: str,
                            column: str = Query(...), value: str = Query(...)):
    """
    Stream changes to rows of ``table`` where ``column == value``.

    Each message is a JSON ChangeEvent. Client messages are ignored.
    """
    if table not in CHANGE_TABLES or backend_instance is None:
        await websocket.close(code=1008)
        return

    queue = await channel_manager.connect(websocket, backend_instance, table, column, value)
    sender = asyncio.create_task(channel_manager.forward(websocket, queue))
    try:
        while True:
            data = await websocket.receive_text()
            logger.debug(f"WebSocket received: {data}")
    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")
    finally:
        sender.cancel()
        await channel_manager.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("task_board.api:app", host="0.0.0.0", port=8080, log_level="info")
