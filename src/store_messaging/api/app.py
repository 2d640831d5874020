"""
FastAPI Application Module

HTTP and WebSocket surface for store-to-customer messaging. Customers talk
to a store, the store's owner answers each customer in a separate thread,
and open views receive fresh snapshots whenever a thread changes.

Key Features:
- Explicit viewer identity on every call (``X-User-Id`` header)
- Access policy violations reported as 403, never as empty results
- Live thread and inbox views over WebSockets (push, then refetch)
- Structured logging, Prometheus metrics and OpenTelemetry tracing
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, List, Optional
from uuid import UUID

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from pydantic import BaseModel
from starlette.websockets import WebSocketState
from structlog import get_logger

from ..config import Settings, configure_logging
from ..domain.errors import MessagingError
from ..domain.models import ConversationSummary, Message, SenderRole
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from ..repositories.base import MessageRepository, StoreDirectory
from ..repositories.memory import InMemoryMessageRepository, InMemoryStoreDirectory
from ..services.messaging import MessagingService
from ..services.notifier import RealtimeNotifier
from .rate_limiter import RateLimiter, RateLimitExceeded

logger = get_logger()

# Close code for policy violations on a live view
WS_POLICY_VIOLATION = 1008


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""

    body: str
    sender_role: SenderRole = SenderRole.CUSTOMER


class MarkReadRequest(BaseModel):
    message_ids: List[UUID]


class MarkReadResponse(BaseModel):
    marked: int
    messages: List[Message]


def get_service(request: Request) -> MessagingService:
    """Returns the messaging service instance"""
    return request.app.state.service


def get_rate_limiter(request: Request) -> RateLimiter:
    """Returns the send rate limiter"""
    return request.app.state.rate_limiter


async def get_viewer_id(x_user_id: Optional[str] = Header(None)) -> str:
    """The authenticated viewer, passed explicitly by the gateway"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


router = APIRouter()


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    viewer_id: str = Depends(get_viewer_id),
    service: MessagingService = Depends(get_service),
) -> List[ConversationSummary]:
    """One summary per thread the viewer takes part in, most recent first"""
    return await service.get_conversations(viewer_id)


@router.get("/stores/{store_id}/threads/{user_id}/messages", response_model=List[Message])
async def get_thread(
    store_id: str,
    user_id: str,
    viewer_id: str = Depends(get_viewer_id),
    service: MessagingService = Depends(get_service),
) -> List[Message]:
    return await service.get_thread(store_id, user_id, viewer_id)


@router.post("/stores/{store_id}/threads/{user_id}/messages", response_model=Message)
async def send_message(
    store_id: str,
    user_id: str,
    message: MessageCreate,
    response: Response,
    viewer_id: str = Depends(get_viewer_id),
    service: MessagingService = Depends(get_service),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
) -> Message:
    """Append a message to the (store, customer) thread"""
    rate_limiter.check(viewer_id)
    response.headers["X-RateLimit-Remaining"] = str(rate_limiter.remaining(viewer_id))
    return await service.send(store_id, user_id, message.sender_role, message.body, viewer_id)


@router.post("/stores/{store_id}/threads/{user_id}/read", response_model=MarkReadResponse)
async def mark_thread_read(
    store_id: str,
    user_id: str,
    viewer_id: str = Depends(get_viewer_id),
    service: MessagingService = Depends(get_service),
) -> MarkReadResponse:
    """Mark what the viewer has been shown of this thread as read"""
    marked = await service.mark_thread_read(store_id, user_id, viewer_id)
    return MarkReadResponse(marked=len(marked), messages=marked)


@router.post("/messages/read", response_model=MarkReadResponse)
async def mark_messages_read(
    request: MarkReadRequest,
    viewer_id: str = Depends(get_viewer_id),
    service: MessagingService = Depends(get_service),
) -> MarkReadResponse:
    marked = await service.mark_read(request.message_ids, viewer_id)
    return MarkReadResponse(marked=len(marked), messages=marked)


@router.get("/metrics")
async def metrics():
    """Provides Prometheus metrics for system monitoring"""
    return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        event = await websocket.receive()
        if event["type"] == "websocket.disconnect":
            return


async def _stream(
    websocket: WebSocket,
    updates: AsyncIterator[Any],
    render: Callable[[Any], dict],
) -> None:
    """Forward live view snapshots until either side goes away."""

    async def pump() -> None:
        async with contextlib.aclosing(updates):
            async for snapshot in updates:
                await websocket.send_json(render(snapshot))

    pump_task = asyncio.create_task(pump())
    disconnect_task = asyncio.create_task(_wait_for_disconnect(websocket))
    try:
        done, _ = await asyncio.wait(
            {pump_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if pump_task in done:
            pump_task.result()
    except MessagingError as exc:
        ERRORS.labels(kind=exc.kind.value).inc()
        logger.warning("live_view_rejected", path=websocket.url.path, error=exc.detail)
        await websocket.send_json({"type": "error", "error": exc.kind.value, "detail": exc.detail})
        await websocket.close(code=WS_POLICY_VIOLATION)
    finally:
        for task in (pump_task, disconnect_task):
            task.cancel()
        # A cancellation of this task must propagate as delivered, never as a child's.
        await asyncio.wait({pump_task, disconnect_task})
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            await websocket.close()


@router.websocket("/ws/conversations")
async def conversation_updates(websocket: WebSocket, viewer_id: str = Query(...)):
    service: MessagingService = websocket.app.state.service
    await websocket.accept()
    logger.info("live_view_opened", view="conversations", viewer_id=viewer_id)
    await _stream(
        websocket,
        service.watch_conversations(viewer_id),
        lambda summaries: {
            "type": "conversations",
            "conversations": [s.model_dump(mode="json") for s in summaries],
        },
    )
    logger.info("live_view_closed", view="conversations", viewer_id=viewer_id)


@router.websocket("/ws/stores/{store_id}/threads/{user_id}")
async def thread_updates(
    websocket: WebSocket, store_id: str, user_id: str, viewer_id: str = Query(...)
):
    service: MessagingService = websocket.app.state.service
    await websocket.accept()
    logger.info("live_view_opened", view="thread", store_id=store_id, viewer_id=viewer_id)
    await _stream(
        websocket,
        service.watch_thread(store_id, user_id, viewer_id),
        lambda messages: {
            "type": "thread",
            "store_id": store_id,
            "user_id": user_id,
            "messages": [m.model_dump(mode="json") for m in messages],
        },
    )
    logger.info("live_view_closed", view="thread", store_id=store_id, viewer_id=viewer_id)


async def _periodic_cleanup(rate_limiter: RateLimiter) -> None:
    """Periodically drop idle rate limiter windows."""
    while True:
        await asyncio.sleep(rate_limiter.time_window)
        dropped = rate_limiter.cleanup()
        logger.debug("rate_limiter_cleanup", dropped=dropped)


def create_app(
    settings: Optional[Settings] = None,
    *,
    messages: Optional[MessageRepository] = None,
    stores: Optional[StoreDirectory] = None,
    notifier: Optional[RealtimeNotifier] = None,
) -> FastAPI:
    """Build the application with its collaborators.

    Defaults to in-memory storage; a store directory file from the settings is
    loaded when the default directory is used.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings)

    notifier = notifier or RealtimeNotifier(queue_size=settings.subscriber_queue_size)
    if stores is None:
        stores = InMemoryStoreDirectory()
        if settings.store_directory_file:
            loaded = stores.load_json(settings.store_directory_file)
            logger.info("store_directory_loaded", stores=loaded)
    if messages is None:
        messages = InMemoryMessageRepository(notifier, max_body_length=settings.max_body_length)

    rate_limiter = RateLimiter(
        rate_limit=settings.send_rate_limit, time_window=settings.send_rate_window
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        cleanup_task = asyncio.create_task(_periodic_cleanup(rate_limiter))
        logger.info("application_startup_complete")

        yield

        cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cleanup_task
        notifier.close_all()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Store Messaging API",
        description="Per-store customer threads with unread accounting and live updates",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.notifier = notifier
    app.state.stores = stores
    app.state.messages = messages
    app.state.rate_limiter = rate_limiter
    app.state.service = MessagingService(messages, stores, notifier, settings)

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests by route"""
        logger.info("request_started", path=request.url.path, method=request.method)
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.labels(kind="internal").inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        route = request.scope.get("route")
        REQUESTS.labels(path=getattr(route, "path", request.url.path)).inc()
        return response

    @app.exception_handler(MessagingError)
    async def messaging_error_handler(request: Request, exc: MessagingError):
        ERRORS.labels(kind=exc.kind.value).inc()
        logger.warning(
            "request_rejected",
            path=request.url.path,
            kind=exc.kind.value,
            detail=exc.detail,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.kind.value, "detail": exc.detail},
        )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        ERRORS.labels(kind="rate_limited").inc()
        return JSONResponse(status_code=429, content={"error": "rate_limited", "detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()
