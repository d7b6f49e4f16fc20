import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated, NoReturn, Optional

import anyio
from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.encoders import jsonable_encoder

from chatcore.config import get_settings, settings
from chatcore.errors import (
    ChatCoreError,
    ConversationNotFound,
    EmptyBody,
    InvalidParticipant,
    PersistenceUnavailable,
    SubscriptionClosed,
    UserNotFound,
)
from chatcore.hub import Subscription
from chatcore.logging_utils import RequestLoggingMiddleware, log_request_data, setup_logging
from chatcore.metrics import get_metrics, get_metrics_content_type
from chatcore.schemas import (
    ArchiveRequest,
    Conversation,
    ConversationsListResponse,
    CreateGroupRequest,
    ErrorResponse,
    HealthResponse,
    Message,
    MessagesListResponse,
    OpenDirectRequest,
    Presence,
    RegisterUserRequest,
    RetryResponse,
    SendMessageRequest,
    User,
)
from chatcore.service import ChatCore
from chatcore.storage import check_db_health, create_db_engine, create_session_factory, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, rebuild the conversation index, start the
      presence sweeper
    - Shutdown: stop the sweeper, close live subscriptions, dispose the engine
    """
    current = get_settings()
    engine = create_db_engine(current.DATABASE_URL)
    init_db(engine)
    session_factory = create_session_factory(engine)

    core = ChatCore.from_settings(current, session_factory)
    await core.start()

    app.state.session_factory = session_factory
    app.state.core = core
    try:
        yield
    finally:
        await core.stop()
        engine.dispose()


app = FastAPI(
    title="Chat Core API",
    description="Presence-aware conversation delivery core",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


def get_core(request: Request) -> ChatCore:
    return request.app.state.core


CoreDep = Annotated[ChatCore, Depends(get_core)]

ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Not a participant"},
    404: {"model": ErrorResponse, "description": "Unknown user or conversation"},
}


def raise_http(exc: ChatCoreError) -> NoReturn:
    """Translate a core error into the matching HTTP error."""
    if isinstance(exc, (ConversationNotFound, UserNotFound)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidParticipant):
        status_code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, EmptyBody):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, PersistenceUnavailable):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    raise HTTPException(status_code=status_code, detail=str(exc)) from exc


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(request: Request, response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, otherwise 503.
    """
    if not check_db_health(request.app.state.session_factory):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )
    return HealthResponse(status="ready")


# =============================================================================
# User Routes
# =============================================================================

@app.post("/users", response_model=User, status_code=status.HTTP_201_CREATED)
async def register_user(data: RegisterUserRequest, core: CoreDep) -> User:
    """
    Register a user on first authentication. Registering a known user
    refreshes its profile.
    """
    return await core.register_user(data.id, data.display_name, data.avatar_url)


@app.get("/users/{user_id}", response_model=User, responses=ERROR_RESPONSES)
async def get_user(user_id: str, core: CoreDep) -> User:
    try:
        return await asyncio.to_thread(core.resolve_user, user_id)
    except ChatCoreError as e:
        raise_http(e)


@app.delete("/users/{user_id}", response_model=User, responses=ERROR_RESPONSES)
async def deactivate_user(user_id: str, core: CoreDep) -> User:
    """Deactivate a user. Users are never deleted."""
    try:
        return await core.deactivate_user(user_id)
    except ChatCoreError as e:
        raise_http(e)


@app.get(
    "/users/{user_id}/conversations",
    response_model=ConversationsListResponse,
)
async def list_conversations(
    user_id: str,
    core: CoreDep,
    q: Annotated[Optional[str], Query(description="Search titles, names and last messages")] = None,
    include_archived: Annotated[bool, Query(description="Include archived conversations")] = False,
) -> ConversationsListResponse:
    """
    Conversation list of a user, newest activity first (ties by id).
    """
    if q:
        data = core.search_conversations(user_id, q, include_archived=include_archived)
    else:
        data = core.list_conversations(user_id, include_archived=include_archived)
    logger.debug(f"Conversation list for {user_id}: {len(data)} conversations")
    return ConversationsListResponse(data=data, total=len(data))


# =============================================================================
# Presence Routes
# =============================================================================

@app.post("/users/{user_id}/connect", response_model=Presence, responses=ERROR_RESPONSES)
async def connect(user_id: str, core: CoreDep) -> Presence:
    try:
        return await core.connect(user_id)
    except ChatCoreError as e:
        raise_http(e)


@app.post("/users/{user_id}/heartbeat", response_model=Presence, responses=ERROR_RESPONSES)
async def heartbeat(user_id: str, core: CoreDep) -> Presence:
    try:
        return await core.heartbeat(user_id)
    except ChatCoreError as e:
        raise_http(e)


@app.post("/users/{user_id}/disconnect", response_model=Presence)
async def disconnect(user_id: str, core: CoreDep) -> Presence:
    return await core.disconnect(user_id)


@app.get("/users/{user_id}/presence", response_model=Presence)
async def get_presence(user_id: str, core: CoreDep) -> Presence:
    return core.presence_of(user_id)


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post("/conversations/direct", response_model=Conversation, responses=ERROR_RESPONSES)
async def open_direct(data: OpenDirectRequest, core: CoreDep, response: Response) -> Conversation:
    """
    Get or create the direct conversation between two users.
    Returns 201 when it was created, 200 when it already existed.
    """
    try:
        conversation, is_new = await core.open_direct(data.user_id, data.other_user_id)
    except ChatCoreError as e:
        raise_http(e)
    if is_new:
        response.status_code = status.HTTP_201_CREATED
    return conversation


@app.post(
    "/conversations/group",
    response_model=Conversation,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_group(data: CreateGroupRequest, core: CoreDep) -> Conversation:
    try:
        return await core.create_group(data.creator_id, data.participant_ids, data.title)
    except ChatCoreError as e:
        raise_http(e)


@app.post(
    "/conversations/{conversation_id}/archive",
    response_model=Conversation,
    responses=ERROR_RESPONSES,
)
async def archive_conversation(conversation_id: str, data: ArchiveRequest, core: CoreDep) -> Conversation:
    try:
        return await core.archive(conversation_id, data.user_id)
    except ChatCoreError as e:
        raise_http(e)


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses={
        **ERROR_RESPONSES,
        422: {"model": ErrorResponse, "description": "Empty message body"},
        503: {"model": ErrorResponse, "description": "Message left pending, store unavailable"},
    },
)
async def send_message(
    conversation_id: str,
    data: SendMessageRequest,
    request: Request,
    core: CoreDep,
) -> Message:
    """
    Send a message to a conversation.

    The message gets the conversation's next sequence id and is returned in
    `sent` state once stored. On 503 it stays pending; POST
    /conversations/{id}/retry stores it later.
    """
    try:
        message = await core.send(conversation_id, data.sender_id, data.body)
    except PersistenceUnavailable as e:
        log_request_data(
            request,
            conversation_id=conversation_id,
            message_id=e.message.id if e.message else None,
            result="pending",
        )
        raise_http(e)
    except ChatCoreError as e:
        log_request_data(request, conversation_id=conversation_id, result="rejected")
        raise_http(e)

    log_request_data(request, conversation_id=conversation_id, message_id=message.id, result="sent")
    return message


@app.post(
    "/conversations/{conversation_id}/retry",
    response_model=RetryResponse,
    responses={**ERROR_RESPONSES, 503: {"model": ErrorResponse}},
)
async def retry_pending(conversation_id: str, core: CoreDep) -> RetryResponse:
    """Store the conversation's pending messages, oldest first."""
    try:
        sent = await core.retry(conversation_id)
    except ChatCoreError as e:
        raise_http(e)
    return RetryResponse(data=sent, pending=len(core.pipeline.pending(conversation_id)))


@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses=ERROR_RESPONSES,
)
async def list_messages(
    conversation_id: str,
    core: CoreDep,
    after_id: Annotated[Optional[int], Query(ge=0, description="Only messages with a higher id")] = None,
) -> MessagesListResponse:
    """
    Stored messages of a conversation, ordered by id.
    """
    try:
        data = await core.history(conversation_id, after_id)
    except ChatCoreError as e:
        raise_http(e)
    return MessagesListResponse(data=data, total=len(data))


# =============================================================================
# Subscription Streams
# =============================================================================

async def stream_subscription(websocket: WebSocket, subscription: Subscription) -> None:
    """
    Forward subscription items to a WebSocket as JSON until either side
    ends. The subscription is always cancelled on the way out.
    """
    await websocket.accept()

    async def forward(scope: anyio.CancelScope):
        try:
            async for item in subscription:
                await websocket.send_json(jsonable_encoder(item))
        except SubscriptionClosed:
            await websocket.close(code=status.WS_1001_GOING_AWAY)
        except WebSocketDisconnect:
            logger.debug(f"Stream {subscription.topic}: client went away")
        finally:
            scope.cancel()

    async def watch(scope: anyio.CancelScope):
        try:
            while True:
                event = await websocket.receive()
                if event["type"] == "websocket.disconnect":
                    return
        finally:
            scope.cancel()

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(forward, tg.cancel_scope)
            tg.start_soon(watch, tg.cancel_scope)
    finally:
        subscription.cancel()


async def reject_stream(websocket: WebSocket, exc: ChatCoreError) -> None:
    logger.warning(f"Stream rejected: {exc}")
    await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))


@app.websocket("/ws/conversations/{conversation_id}")
async def conversation_stream(
    websocket: WebSocket,
    conversation_id: str,
    viewer_id: Optional[str] = None,
    after_id: Optional[int] = None,
):
    core: ChatCore = websocket.app.state.core
    try:
        subscription = await core.subscribe_conversation(conversation_id, viewer_id=viewer_id, after_id=after_id)
    except ChatCoreError as e:
        await reject_stream(websocket, e)
        return
    await stream_subscription(websocket, subscription)


@app.websocket("/ws/users/{user_id}/conversations")
async def conversation_list_stream(websocket: WebSocket, user_id: str):
    core: ChatCore = websocket.app.state.core
    try:
        subscription = core.subscribe_conversation_list(user_id)
    except ChatCoreError as e:
        await reject_stream(websocket, e)
        return
    await stream_subscription(websocket, subscription)


@app.websocket("/ws/users/{user_id}/presence")
async def presence_stream(websocket: WebSocket, user_id: str):
    core: ChatCore = websocket.app.state.core
    try:
        subscription = core.subscribe_presence(user_id)
    except ChatCoreError as e:
        await reject_stream(websocket, e)
        return
    await stream_subscription(websocket, subscription)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
