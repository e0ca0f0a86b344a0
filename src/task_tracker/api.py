"""
FastAPI Backend for the Task Tracker

Provides REST endpoints for task management and time tracking, plus a
WebSocket stream that carries task notifications to connected clients.
Every response is a ``{success, message, data?, error?}`` envelope.

Identity: the caller is identified by the ``X-User-Id`` header, resolved
against the user store; missing, unknown or inactive users receive 401.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import Settings, get_settings
from .database import TaskDatabase
from .errors import ServerError, TaskTrackerError
from .models import (
    CommentRequest, Principal, StopTimerRequest, TaskCreateRequest, TaskListQuery,
    TaskUpdateRequest, WatcherRequest, create_error_response, create_success_response,
)
from .notifications import ConnectionManager, EmailSender, NotificationDispatcher
from .service import TaskService

logging.basicConfig(level=getattr(logging, get_settings().log_level, logging.INFO))
logger = logging.getLogger(__name__)

# Process-wide instances, created in the lifespan handler
db_instance: Optional[TaskDatabase] = None
service_instance: Optional[TaskService] = None

connection_manager = ConnectionManager()


def build_service(database: TaskDatabase, settings: Settings) -> TaskService:
    """Wire the service with WebSocket and (when configured) email notifications."""
    email_sender = EmailSender(settings) if settings.email_enabled else None
    dispatcher = NotificationDispatcher(connection_manager, email_sender, user_lookup=database)
    return TaskService(database, dispatcher, max_page_size=settings.max_page_size)


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    database_connected: bool
    active_websocket_connections: int
    timestamp: str


def get_database() -> TaskDatabase:
    """
    FastAPI dependency to provide database instance.

    Raises:
        HTTPException: If database is not available
    """
    if db_instance is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db_instance


def get_service() -> TaskService:
    if service_instance is None:
        raise HTTPException(status_code=503, detail="Service not available")
    return service_instance


def get_current_principal(
    x_user_id: Optional[str] = Header(default=None),
    service: TaskService = Depends(get_service),
) -> Principal:
    """Resolve the ``X-User-Id`` header into an active principal."""
    return service.authenticate(x_user_id)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    FastAPI lifespan context manager for startup/shutdown operations.

    Opens the database and wires the task service.
    """
    global db_instance, service_instance

    settings = get_settings()
    try:
        db_instance = TaskDatabase(settings.db_path)
        service_instance = build_service(db_instance, settings)
        logger.info("Task Tracker API starting up...")
        logger.info(f"Email notifications {'enabled' if settings.email_enabled else 'disabled'}")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    yield

    if db_instance:
        db_instance.close()
        logger.info("Database connection closed")
    db_instance = None
    service_instance = None


app = FastAPI(
    title="Task Tracker API",
    description="Task lifecycle and time tracking with role-based access",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _envelope(message: str, data: Optional[Dict[str, Any]] = None,
              status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(create_success_response(message, data)),
    )


def _format_validation_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Flatten pydantic error entries into {field, message, value}."""
    formatted = []
    for error in errors:
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path", "header")]
        value = error.get("input")
        if not isinstance(value, (str, int, float, bool, type(None))):
            value = None
        formatted.append({
            "field": ".".join(location),
            "message": error.get("msg", "Invalid value"),
            "value": value,
        })
    return formatted


# Health check endpoint for monitoring and load balancers
@app.get("/healthz", response_model=HealthResponse)
async def health_check(db: TaskDatabase = Depends(get_database)):
    """Report database connectivity and WebSocket client count."""
    database_connected = True
    try:
        database_connected = db.ping()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database_connected = False

    return HealthResponse(
        status="healthy" if database_connected else "degraded",
        database_connected=database_connected,
        active_websocket_connections=connection_manager.get_connection_count(),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


# WebSocket endpoint for real-time notifications
@app.websocket("/ws/updates")
async def websocket_updates(websocket: WebSocket):
    """Accept WebSocket connections and register with connection manager."""
    await connection_manager.connect(websocket)
    try:
        # Keep the connection open; client messages are ignored
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        await connection_manager.disconnect(websocket)
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
        await connection_manager.disconnect(websocket)


@app.get("/api/tasks")
async def list_tasks(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    """
    List tasks visible to the caller.

    Query parameters: page, limit, status, priority, assignedTo, assignedBy,
    search, sortBy, sortOrder, startDate, endDate.
    """
    params = dict(request.query_params)
    params.setdefault("limit", get_settings().default_page_size)
    criteria = TaskListQuery.model_validate(params)

    page = await service.list_tasks(principal, criteria)
    return _envelope("Tasks retrieved successfully", {
        "tasks": [service.present(task) for task in page.tasks],
        "pagination": page.pagination.model_dump(by_alias=True),
    })


@app.get("/api/tasks/stats")
async def get_task_stats(
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    stats = await service.get_stats(principal)
    return _envelope("Task statistics retrieved successfully", {
        "stats": stats.model_dump(by_alias=True),
    })


@app.get("/api/tasks/{task_id}")
async def get_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.get_task(principal, task_id)
    return _envelope("Task retrieved successfully", {"task": service.present(task)})


@app.post("/api/tasks")
async def create_task(
    body: TaskCreateRequest,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.create_task(principal, body)
    return _envelope("Task created successfully", {"task": service.present(task)}, status_code=201)


@app.put("/api/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.update_task(principal, task_id, body)
    return _envelope("Task updated successfully", {"task": service.present(task)})


@app.delete("/api/tasks/{task_id}")
async def delete_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    await service.delete_task(principal, task_id)
    return _envelope("Task deleted successfully")


@app.post("/api/tasks/{task_id}/start")
async def start_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.start_task(principal, task_id)
    return _envelope("Task timer started", {"task": service.present(task)})


@app.post("/api/tasks/{task_id}/stop")
async def stop_task(
    task_id: str,
    body: Optional[StopTimerRequest] = None,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    notes = body.notes if body else None
    task, session = await service.stop_task(principal, task_id, notes)
    return _envelope("Task timer stopped", {
        "task": service.present(task),
        "session": session.model_dump(by_alias=True, mode="json"),
    })


@app.post("/api/tasks/{task_id}/complete")
async def complete_task(
    task_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.complete_task(principal, task_id)
    return _envelope("Task completed successfully", {"task": service.present(task)})


@app.post("/api/tasks/{task_id}/comments")
async def add_comment(
    task_id: str,
    body: CommentRequest,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task = await service.add_comment(principal, task_id, body.message)
    return _envelope("Comment added successfully", {"task": service.present(task)})


@app.post("/api/tasks/{task_id}/watchers")
async def add_watcher(
    task_id: str,
    body: Optional[WatcherRequest] = None,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task, added = await service.add_watcher(principal, task_id, body.user_id if body else None)
    message = "Watcher added successfully" if added else "User is already watching this task"
    return _envelope(message, {"task": service.present(task)})


@app.delete("/api/tasks/{task_id}/watchers")
async def remove_watcher(
    task_id: str,
    body: Optional[WatcherRequest] = None,
    principal: Principal = Depends(get_current_principal),
    service: TaskService = Depends(get_service),
):
    task, removed = await service.remove_watcher(principal, task_id, body.user_id if body else None)
    message = "Watcher removed successfully" if removed else "User was not watching this task"
    return _envelope(message, {"task": service.present(task)})


# Error handlers map every failure onto the response envelope
@app.exception_handler(TaskTrackerError)
async def task_tracker_exception_handler(request: Request, exc: TaskTrackerError):
    if isinstance(exc, ServerError):
        logger.error(f"Server error on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(create_error_response(exc.message, exc.kind, exc.details or None)),
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content=create_error_response(
            "Validation failed", "validation_error", _format_validation_errors(exc.errors())
        ),
    )


@app.exception_handler(PydanticValidationError)
async def pydantic_validation_exception_handler(request: Request, exc: PydanticValidationError):
    return JSONResponse(
        status_code=400,
        content=create_error_response(
            "Validation failed", "validation_error", _format_validation_errors(exc.errors())
        ),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(str(exc.detail), "http_error"),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=exc)
    error = ServerError("Server error")
    return JSONResponse(
        status_code=error.status_code,
        content=create_error_response(error.message, error.kind),
    )


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "task_tracker.api:app",
        host=settings.host,
        port=settings.port,
        reload=True,
        log_level=settings.log_level.lower()
    )
