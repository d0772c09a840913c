from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse

from .assistant import AssistantBridge, GenerationClient
from .llm import WorkersAIClient
from .session import SessionCoordinator, SessionRegistry, TaskValidationError, session_db_path
from .settings import SettingsManager
from .storage import SessionStore, StoreError
from .templates import render_dashboard

DATA_DIR = Path(os.environ.get("TASK_AGENT_DATA_DIR", "data"))


def _configure_logging(data_dir: Path) -> logging.Logger:
    logger = logging.getLogger("task_agent")
    if logger.handlers:
        return logger
    data_dir.mkdir(parents=True, exist_ok=True)
    log_file = data_dir / "server.log"
    logger.setLevel(logging.DEBUG)
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.INFO)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.propagate = False
    logger.debug("Logging initialised, writing to %s", log_file)
    return logger


def _build_client(settings_manager: SettingsManager) -> WorkersAIClient:
    config = settings_manager.workers_ai
    return WorkersAIClient(
        base_url=config["base_url"],
        account_id=config.get("account_id", ""),
        api_token=config.get("api_token", ""),
        timeout=float(config.get("timeout_seconds", 60)),
    )


def create_app(
    data_dir: Path = DATA_DIR,
    client: Optional[GenerationClient] = None,
) -> FastAPI:
    """
    Wire settings, sessions and routes into a FastAPI application.

    ``client`` replaces the Workers AI client, which keeps tests offline.
    """
    logger = _configure_logging(data_dir)
    settings_manager = SettingsManager(data_dir / "settings.json")
    generation_client = client or _build_client(settings_manager)

    in_memory = settings_manager.settings["storage"].get("in_memory", False)

    def build_session(key: str) -> SessionCoordinator:
        config = settings_manager.workers_ai
        store = SessionStore(":memory:" if in_memory else session_db_path(data_dir, key))
        bridge = AssistantBridge(
            generation_client,
            model=config["model"],
            max_tokens=config.get("max_tokens"),
            temperature=config.get("temperature"),
        )
        return SessionCoordinator(
            key, store, bridge, history_limit=settings_manager.history_limit
        )

    # In-memory sessions are never evicted.
    sessions = SessionRegistry(
        build_session,
        max_sessions=None if in_memory else settings_manager.max_open_sessions,
    )

    app = FastAPI(title="task-agent")
    app.state.sessions = sessions
    app.state.settings = settings_manager
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def session_for(session: Optional[str]) -> SessionCoordinator:
        return sessions.get(session or settings_manager.default_session)

    async def read_object(request: Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except json.JSONDecodeError as exc:
            raise TaskValidationError("Request body must be valid JSON.") from exc
        if not isinstance(body, dict):
            raise TaskValidationError("Request body must be a JSON object.")
        return body

    @app.exception_handler(TaskValidationError)
    async def validation_failed(request: Request, exc: TaskValidationError) -> JSONResponse:
        logger.info("Rejected %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"success": False, "error": str(exc)},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(StoreError)
    async def store_failed(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            {"success": False, "error": str(exc)},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.on_event("startup")
    async def on_startup() -> None:
        # Initialise the default session before the first request arrives.
        session_for(None)
        logger.info("Application startup complete.")

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        sessions.close_all()
        logger.info("Application shutdown complete.")

    @app.get("/", response_class=HTMLResponse)
    async def dashboard(session: Optional[str] = None) -> HTMLResponse:
        coordinator = session_for(session)
        html = render_dashboard(session=coordinator.key, tasks=await coordinator.task_payloads())
        return HTMLResponse(html)

    @app.get("/health", response_class=JSONResponse)
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok", "sessions": len(sessions)})

    @app.get("/api/tasks", response_class=JSONResponse)
    async def list_tasks(session: Optional[str] = None) -> JSONResponse:
        coordinator = session_for(session)
        return JSONResponse({"tasks": await coordinator.task_payloads()})

    @app.post("/api/tasks", response_class=JSONResponse)
    async def create_task(request: Request, session: Optional[str] = None) -> JSONResponse:
        body = await read_object(request)
        coordinator = session_for(session)
        task_id = await coordinator.create_task(
            body.get("title"),
            description=body.get("description"),
            priority=body.get("priority"),
            due_date=body.get("dueDate"),
        )
        return JSONResponse({"success": True, "taskId": task_id})

    @app.put("/api/tasks/{task_id}", response_class=JSONResponse)
    async def update_task(
        task_id: str, request: Request, session: Optional[str] = None
    ) -> JSONResponse:
        body = await read_object(request)
        coordinator = session_for(session)
        success = await coordinator.update_task(task_id, body)
        return JSONResponse({"success": success})

    @app.delete("/api/tasks/{task_id}", response_class=JSONResponse)
    async def delete_task(task_id: str, session: Optional[str] = None) -> JSONResponse:
        coordinator = session_for(session)
        success = await coordinator.delete_task(task_id)
        return JSONResponse({"success": success})

    @app.post("/api/chat", response_class=JSONResponse)
    async def chat(request: Request, session: Optional[str] = None) -> JSONResponse:
        body = await read_object(request)
        message = body.get("message")
        if not isinstance(message, str) or not message.strip():
            raise TaskValidationError("Message must be a non-empty string.")
        coordinator = session_for(session)
        response = await coordinator.handle_chat_text(message)
        return JSONResponse({"response": response})

    @app.websocket("/api/chat")
    async def chat_socket(websocket: WebSocket, session: Optional[str] = None) -> None:
        await websocket.accept()
        coordinator = session_for(session)
        await coordinator.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    await coordinator.connections.send(
                        websocket,
                        {"type": "error", "message": "Failed to process message: invalid JSON."},
                    )
                    continue
                if not isinstance(data, dict) or data.get("type") != "chat":
                    continue
                content = data.get("content")
                if not isinstance(content, str) or not content.strip():
                    await coordinator.connections.send(
                        websocket,
                        {"type": "error", "message": "Failed to process message: empty content."},
                    )
                    continue
                try:
                    await coordinator.handle_socket_chat(websocket, content)
                except Exception as exc:
                    logger.exception("WebSocket message error in session %s", coordinator.key)
                    await coordinator.connections.send(
                        websocket,
                        {"type": "error", "message": f"Failed to process message: {exc}"},
                    )
        except WebSocketDisconnect:
            logger.debug("WebSocket closed by client in session %s", coordinator.key)
        finally:
            coordinator.disconnect(websocket)

    return app


app = create_app()

# Convenience include for uvicorn.
__all__ = ["app", "create_app"]
