import asyncio
import contextlib
import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response, StreamingResponse

from glitch.core.graph_model import GraphSnapshot
from glitch.core.layout import LayeredLayout, Vec2

from .config import get_layout_direction, get_layout_margin
from .event_bus import EventBus, EventType, set_event_bus
from .logs_config import get_logs_dir, get_most_recent_log_file
from .schema import (
    AcceptedResponse,
    HealthResponse,
    LayoutModel,
    RenderViewResponse,
    SizeHintsRequest,
    StatusResponse,
)
from .session import GraphSession
from .transport import handle_producer_socket

logger = logging.getLogger(__name__)

SessionFactory = Callable[[EventBus], GraphSession]

# Global graph session instance
graph_session: GraphSession | None = None
# Global event bus instance
event_bus: EventBus | None = None


def default_session_factory(bus: EventBus) -> GraphSession:
    margin = get_layout_margin()
    layout = LayeredLayout(margin=Vec2(margin, margin), direction=get_layout_direction())
    return GraphSession(layout=layout, event_bus=bus)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    global graph_session, event_bus

    logs_dir = get_logs_dir()
    logger.info(f"Logs directory: {logs_dir}")

    event_bus = EventBus()
    event_bus.set_loop(asyncio.get_running_loop())
    set_event_bus(event_bus)

    graph_session = app.state.session_factory(event_bus)
    model_task = asyncio.create_task(graph_session.run())
    logger.info("Graph session initialized")

    yield

    # Shutdown
    logger.info("Shutting down graph session...")
    model_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await model_task
    set_event_bus(None)
    logger.info("Graph session shutdown complete")


def get_graph_session() -> GraphSession:
    """Dependency to get the graph session instance."""
    if graph_session is None:
        raise HTTPException(status_code=503, detail="Graph session not initialized")
    return graph_session


def get_event_bus_dependency() -> EventBus:
    if event_bus is None:
        raise HTTPException(status_code=503, detail="Event bus not initialized")
    return event_bus


def create_api_app(session_factory: SessionFactory | None = None) -> FastAPI:
    """Create and configure the API FastAPI application."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        app_version = version("glitch-viewer")
    except PackageNotFoundError:
        app_version = "0.0.0"

    app = FastAPI(
        lifespan=lifespan,
        title="Glitch API",
        description="Live pipeline graph sync and layout",
        version=app_version,
    )
    app.state.session_factory = session_factory or default_session_factory

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint."""
        return HealthResponse(status="healthy", timestamp=datetime.now().isoformat())

    @app.get("/api/v1/graph", response_model=RenderViewResponse)
    async def get_graph(session: GraphSession = Depends(get_graph_session)):
        """Latest published render view: graph snapshot plus layout."""
        try:
            view = session.view()
            return RenderViewResponse(
                snapshot=view.snapshot,
                layout=LayoutModel.from_result(view.layout),
                published_at=view.published_at,
            )
        except Exception as e:
            logger.error(f"Error building render view: {e}")
            raise HTTPException(status_code=500, detail=str(e)) from e

    @app.get("/api/v1/graph/snapshot", response_model=GraphSnapshot)
    async def get_graph_snapshot(session: GraphSession = Depends(get_graph_session)):
        """Latest published graph snapshot without layout."""
        return session.view().snapshot

    @app.get("/api/v1/status", response_model=StatusResponse)
    async def get_status(session: GraphSession = Depends(get_graph_session)):
        try:
            return StatusResponse(**session.status())
        except Exception as e:
            logger.error(f"Error getting session status: {e}")
            raise HTTPException(status_code=500, detail=str(e)) from e

    @app.put("/api/v1/layout/size-hints", response_model=AcceptedResponse)
    async def put_size_hints(
        request: SizeHintsRequest, session: GraphSession = Depends(get_graph_session)
    ):
        """Supply measured node sizes; coordinates are recomputed on the next tick."""
        sizes = {hint.entity: Vec2(hint.width, hint.height) for hint in request.hints}
        session.update_size_hints(sizes)
        return AcceptedResponse(message=f"Queued {len(sizes)} size hint(s)")

    @app.post("/api/v1/graph/reset", response_model=AcceptedResponse)
    async def reset_graph(session: GraphSession = Depends(get_graph_session)):
        """Tear down all entities; a connected producer must resync."""
        session.request_reset()
        logger.info("Graph reset requested")
        return AcceptedResponse(message="Graph reset queued")

    @app.get("/api/v1/events/stream")
    async def stream_events(
        types: list[EventType] | None = Query(None),
        bus: EventBus = Depends(get_event_bus_dependency),
    ):
        """Server-sent events for graph updates and producer connectivity.

        Repeat ``types`` to receive only some event types.
        """
        return StreamingResponse(
            bus.subscribe_sse(types),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache, no-transform",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/v1/logs/current")
    async def get_current_logs():
        """Get the most recent application log file for bug reporting."""
        try:
            log_file_path = get_most_recent_log_file()

            if log_file_path is None or not log_file_path.exists():
                raise HTTPException(
                    status_code=404,
                    detail="Log file not found. The application may not have logged anything yet.",
                )

            # Read the whole file; it may still be growing.
            log_content = log_file_path.read_text(encoding="utf-8")

            return Response(
                content=log_content,
                media_type="text/plain",
                headers={
                    "Content-Disposition": f'attachment; filename="{log_file_path.name.replace(".log", ".txt")}"'
                },
            )
        except HTTPException:
            raise
        except Exception as e:
            logger.error(f"Error retrieving log file: {e}")
            raise HTTPException(status_code=500, detail=str(e)) from e

    @app.websocket("/ws/producer")
    async def producer_socket(websocket: WebSocket):
        """Ingest endpoint for instrumented producers."""
        if graph_session is None:
            await websocket.close(code=1013)
            return
        await handle_producer_socket(websocket, graph_session)

    return app


def run_api_server(
    port: int,
    host: str,
    session_factory: SessionFactory | None = None,
    reload: bool = False,
):
    """Run the API server on the specified port."""
    logger.info(f"Starting Glitch server on {host}:{port}")
    if reload:
        uvicorn.run(
            "glitch.server.api_server:create_api_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            log_config=None,  # Use our logging config
        )
        return
    uvicorn.run(
        create_api_app(session_factory),
        host=host,
        port=port,
        log_config=None,  # Use our logging config
    )
