"""Main FastAPI application handler for Lambda deployment."""

import asyncio
import json
import logging
import os
import time
from datetime import UTC, datetime

import anthropic
import boto3
from botocore.exceptions import ClientError
from fastapi import Depends, FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from mangum import Mangum
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool

from models.chat import (
    AIStreamRequest,
    ChatMessage,
    ChatUser,
    MarkReceivedRequest,
    MissedMessagesResponse,
    RejoinRequest,
    SendMessageRequest,
    UnsendMessageRequest,
)
from services.ai_backends import AIBackends
from services.ai_config import resolve_ai_flags, search_cooldown
from services.ai_orchestrator import AIOrchestrator
from services.auth_service import AuthenticationError, AuthService
from services.broadcast_service import BroadcastChannel
from services.catchup_service import CatchupService
from services.delivery_tracker import DeliveryTracker
from services.errors import (
    ChatError,
    ConfigurationError,
    ForbiddenError,
    MessageNotFoundError,
    ValidationFailedError,
)
from services.kv_store import DynamoKeyValueStore, MemoryKeyValueStore
from services.message_store import MessageStore
from services.stream_sse import SSE_HEADERS, encode_event
from services.web_search import TavilySearchClient
from utils.constants import (
    AI_ASSISTANT_NAME,
    AI_ASSISTANT_USER_ID,
    DEFAULT_RECENT_WINDOW,
)

logger = logging.getLogger(__name__)

HEARTBEAT_SECS = 15.0

# Initialize FastAPI app
app = FastAPI(
    title="Room Chat API",
    description="API for room chat with catch-up and streaming AI replies",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)

CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request, call_next):
    """Log all API requests with timing for CloudWatch monitoring."""
    start = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - start) * 1000

    # Streaming responses are timed to their first byte only
    path = request.url.path
    if duration_ms > 1000:
        logger.warning(
            "[SLOW] %s %s %.0fms status=%d",
            request.method,
            path,
            duration_ms,
            response.status_code,
        )
    elif response.status_code >= 500:
        logger.error(
            "[ERROR] %s %s %.0fms status=%d",
            request.method,
            path,
            duration_ms,
            response.status_code,
        )
    elif response.status_code >= 400:
        logger.info(
            "[CLIENT_ERROR] %s %s %.0fms status=%d",
            request.method,
            path,
            duration_ms,
            response.status_code,
        )

    return response


# Lazy-initialized AWS clients and services
# Required for Lambda SnapStart - connections must be re-established after restore
_dynamodb = None
_message_store = None
_kv_store = None
_delivery_tracker = None
_catchup_service = None
_broadcast_channel = None
_auth_service = None
_ai_orchestrator = None

# Security scheme for bearer token authentication
security = HTTPBearer(auto_error=False)


def reset_services():
    """Reset all lazy-initialized services. Useful for testing.

    Also resets boto3's default session so that subsequent calls to
    boto3.resource() create fresh sessions within the current mock context
    (e.g., moto's mock_aws).
    """
    global _dynamodb, _message_store, _kv_store, _delivery_tracker
    global _catchup_service, _broadcast_channel, _auth_service, _ai_orchestrator
    _dynamodb = None
    _message_store = None
    _kv_store = None
    _delivery_tracker = None
    _catchup_service = None
    _broadcast_channel = None
    _auth_service = None
    _ai_orchestrator = None
    search_cooldown.reset()
    # Reset boto3's default session so new clients use the moto mock context
    boto3.DEFAULT_SESSION = None


def get_dynamodb():
    """Get or create DynamoDB resource (lazy init for SnapStart)."""
    global _dynamodb
    if _dynamodb is None:
        region = os.environ.get("AWS_DEFAULT_REGION", "us-west-2")
        _dynamodb = boto3.resource("dynamodb", region_name=region)
    return _dynamodb


def get_message_store():
    """Get or create MessageStore (lazy init for SnapStart)."""
    global _message_store
    if _message_store is None:
        table_name = os.environ.get("MESSAGES_TABLE", "chat-messages-dev")
        _message_store = MessageStore(get_dynamodb().Table(table_name))
    return _message_store


def get_kv_store():
    """Get or create the pointer store.

    Uses the DynamoDB delivery table when DELIVERY_TABLE is set, otherwise an
    in-process store (pointers then live only as long as the process).
    """
    global _kv_store
    if _kv_store is None:
        table_name = os.environ.get("DELIVERY_TABLE")
        if table_name:
            _kv_store = DynamoKeyValueStore(get_dynamodb().Table(table_name))
        else:
            logger.warning("DELIVERY_TABLE not set, using in-memory delivery pointers")
            _kv_store = MemoryKeyValueStore()
    return _kv_store


def get_delivery_tracker():
    """Get or create DeliveryTracker (lazy init for SnapStart)."""
    global _delivery_tracker
    if _delivery_tracker is None:
        _delivery_tracker = DeliveryTracker(
            get_kv_store(),
            timestamp_lookup=get_message_store().get_message_timestamp,
        )
    return _delivery_tracker


def get_catchup_service():
    """Get or create CatchupService (lazy init for SnapStart)."""
    global _catchup_service
    if _catchup_service is None:
        try:
            recent_window = int(
                os.environ.get("CATCHUP_RECENT_WINDOW", DEFAULT_RECENT_WINDOW)
            )
        except ValueError:
            recent_window = DEFAULT_RECENT_WINDOW
        _catchup_service = CatchupService(
            get_message_store(),
            get_delivery_tracker(),
            recent_window=recent_window if recent_window > 0 else DEFAULT_RECENT_WINDOW,
        )
    return _catchup_service


def get_broadcast_channel():
    """Get or create the in-process BroadcastChannel."""
    global _broadcast_channel
    if _broadcast_channel is None:
        _broadcast_channel = BroadcastChannel()
    return _broadcast_channel


def get_auth_service():
    """Get or create AuthService (lazy init for SnapStart)."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service


def get_ai_orchestrator():
    """Get or create AIOrchestrator (lazy init for SnapStart).

    Raises:
        ConfigurationError: If no Anthropic API key is configured
    """
    global _ai_orchestrator
    if _ai_orchestrator is None:
        api_key = os.environ.get("ANTHROPIC_API_KEY")
        if not api_key:
            logger.error("Anthropic API key not configured")
            raise ConfigurationError()
        region = os.environ.get("AWS_DEFAULT_REGION", "us-west-2")
        backends = AIBackends(
            anthropic_client=anthropic.Anthropic(api_key=api_key),
            bedrock_client=boto3.client("bedrock-runtime", region_name=region),
            search_client=TavilySearchClient(os.environ.get("TAVILY_API_KEY")),
        )
        _ai_orchestrator = AIOrchestrator(backends)
    return _ai_orchestrator


# MARK: - Authentication Dependency


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),  # noqa: B008
) -> str:
    """Extract user ID from JWT token.

    Args:
        credentials: Bearer token from Authorization header

    Returns:
        User ID from the token

    Raises:
        HTTPException: If token is missing or invalid
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = get_auth_service().verify_access_token(credentials.credentials)
        return user_id
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )


def _require_self(authenticated_user_id: str, requested_user_id: str, message: str) -> None:
    if authenticated_user_id != requested_user_id:
        raise ForbiddenError(message)


async def _publish(room_id: str, event: str, payload: dict) -> None:
    """Best-effort broadcast. Clients that miss it recover through catch-up."""
    try:
        await get_broadcast_channel().publish(room_id, event, payload)
    except Exception as e:
        logger.error("Error broadcasting %s to room %s: %s", event, room_id, e)


# MARK: - Health Check


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(UTC).isoformat(),
        "version": "1.0.0",
    }


# MARK: - Message Endpoints


@app.post("/api/v1/messages/send")
async def send_message(
    request: SendMessageRequest, user_id: str = Depends(get_current_user_id)
):
    """Persist a message, advance the room pointer and broadcast it."""
    _require_self(user_id, request.user_id, "You can only send messages as yourself")
    content = request.content.strip()
    if not content:
        raise ValidationFailedError("Message content cannot be empty")

    message: ChatMessage = await run_in_threadpool(
        get_message_store().insert_message,
        request.room_id,
        ChatUser(id=request.user_id, name=request.username),
        content,
        is_private=request.is_private,
        requester_id=request.user_id if request.is_private else None,
        client_msg_id=request.client_msg_id,
    )
    await run_in_threadpool(
        get_delivery_tracker().track_latest, request.room_id, message.id
    )
    # Private messages only reach their sender
    if not message.is_private:
        await _publish(request.room_id, "message", message.model_dump())

    return {"success": True, "message": message.model_dump()}


@app.post("/api/v1/messages/unsend")
async def unsend_message(
    request: UnsendMessageRequest, user_id: str = Depends(get_current_user_id)
):
    """Soft delete one of the caller's messages and tell the room."""
    _require_self(user_id, request.user_id, "You can only unsend your own messages")

    deleted_at = await run_in_threadpool(
        get_message_store().mark_deleted,
        request.room_id,
        request.message_id,
        request.user_id,
    )
    await _publish(
        request.room_id,
        "message_deleted",
        {
            "id": request.message_id,
            "room_id": request.room_id,
            "deleted_at": deleted_at,
        },
    )
    return {"success": True, "message_id": request.message_id, "deleted_at": deleted_at}


@app.post("/api/v1/messages/mark-received")
async def mark_received(
    request: MarkReceivedRequest, user_id: str = Depends(get_current_user_id)
):
    """Advance the caller's delivery pointer for a room."""
    _require_self(user_id, request.user_id, "You can only mark messages for yourself")
    # A pointer to an unknown id would hide the user's real missed set
    message = await run_in_threadpool(
        get_message_store().get_message, request.room_id, request.message_id
    )
    if message is None:
        raise MessageNotFoundError()
    updated = await run_in_threadpool(
        get_catchup_service().mark_received,
        request.user_id,
        request.room_id,
        request.message_id,
    )
    return {"success": True, "updated": updated}


# MARK: - Room Endpoints


@app.post("/api/v1/rooms/{room_id}/rejoin", response_model=MissedMessagesResponse)
async def rejoin_room(
    room_id: str, request: RejoinRequest, user_id: str = Depends(get_current_user_id)
):
    """Return the messages the caller missed since their last visit."""
    _require_self(user_id, request.user_id, "You can only rejoin rooms as yourself")
    return await run_in_threadpool(
        get_catchup_service().get_missed_messages, request.user_id, room_id
    )


@app.get("/api/v1/rooms/{room_id}/rejoin", response_model=MissedMessagesResponse)
async def rejoin_room_get(
    room_id: str,
    requested_user_id: str | None = Query(None, alias="user_id"),
    user_id: str = Depends(get_current_user_id),
):
    """Same as the POST variant; user_id defaults to the caller."""
    if requested_user_id:
        _require_self(user_id, requested_user_id, "You can only rejoin rooms as yourself")
    return await run_in_threadpool(
        get_catchup_service().get_missed_messages, user_id, room_id
    )


async def room_event_stream(room_id: str, heartbeat_secs: float = HEARTBEAT_SECS):
    """SSE frames for every event broadcast to a room, with heartbeats."""
    channel = get_broadcast_channel()
    queue = await channel.subscribe(room_id)
    try:
        yield ":ok\n\n"
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=heartbeat_secs)
            except asyncio.TimeoutError:
                heartbeat = {"ts": time.time(), "room_id": room_id}
                yield f"event: heartbeat\ndata: {json.dumps(heartbeat)}\n\n"
                continue
            name = event.get("type", "message")
            yield f"event: {name}\ndata: {json.dumps(event, ensure_ascii=False)}\n\n"
    finally:
        await channel.unsubscribe(room_id, queue)


@app.get("/api/v1/rooms/{room_id}/events")
async def room_events(room_id: str, user_id: str = Depends(get_current_user_id)):
    """Live room events as server-sent events."""
    logger.info("Room event stream opened room=%s user=%s", room_id, user_id)
    return StreamingResponse(
        room_event_stream(room_id), media_type="text/event-stream", headers=SSE_HEADERS
    )


# MARK: - AI Endpoints


async def _start_ai_reply(request: AIStreamRequest) -> ChatMessage:
    """Store an empty streaming reply so its id is minted at insert time.

    Messages sent while the reply streams get later ids, so the room's
    catch-up range keeps covering them.
    """
    placeholder = await run_in_threadpool(
        get_message_store().insert_message,
        request.room_id,
        ChatUser(id=AI_ASSISTANT_USER_ID, name=AI_ASSISTANT_NAME),
        "",
        is_private=request.is_private,
        is_ai=True,
        requester_id=request.user_id,
        is_streaming=True,
    )
    await run_in_threadpool(
        get_delivery_tracker().track_latest, request.room_id, placeholder.id
    )
    return placeholder


async def _finish_ai_reply(placeholder: ChatMessage, content: str) -> None:
    """Finalize the stored reply and broadcast it when public.

    A turn that produced nothing leaves no visible message behind.
    """
    store = get_message_store()
    try:
        if not content:
            await run_in_threadpool(
                store.mark_deleted, placeholder.room_id, placeholder.id, AI_ASSISTANT_USER_ID
            )
            return
        updated = await run_in_threadpool(
            store.update_content, placeholder.room_id, placeholder.id, content, False
        )
    except Exception as e:
        logger.error(
            "Error finalizing AI reply %s in room %s: %s", placeholder.id, placeholder.room_id, e
        )
        return

    if not updated:
        logger.warning("AI reply %s was already finalized", placeholder.id)
        return
    message = placeholder.model_copy(update={"content": content, "is_streaming": False})
    if not message.is_private:
        await _publish(message.room_id, "message", message.model_dump())


async def ai_event_stream(
    orchestrator: AIOrchestrator, request: AIStreamRequest, placeholder: ChatMessage
):
    """Encode an AI turn as SSE frames, persisting the reply as it grows."""
    store = get_message_store()

    def save_partial(full_content: str) -> None:
        store.update_content(placeholder.room_id, placeholder.id, full_content, True)

    completed: list[str] = []
    turn = orchestrator.stream_turn(
        request, placeholder.id, on_chunk=save_partial, on_complete=completed.append
    )
    try:
        async for event in iterate_in_threadpool(turn):
            yield encode_event(event)
    finally:
        # Client disconnect lands here too and stops the provider stream
        turn.close()

    await _finish_ai_reply(placeholder, completed[0].strip() if completed else "")


@app.post("/api/v1/ai/stream")
async def ai_stream(request: AIStreamRequest, user_id: str = Depends(get_current_user_id)):
    """Stream an AI reply as server-sent events."""
    _require_self(user_id, request.user_id, "You can only request AI responses for yourself")
    if not request.message.strip():
        raise ValidationFailedError("Missing required fields: room_id, user_id, message")

    # Fail-closed flag configurations surface as a 500 before the stream opens
    resolve_ai_flags()
    orchestrator = get_ai_orchestrator()
    placeholder = await _start_ai_reply(request)
    return StreamingResponse(
        ai_event_stream(orchestrator, request, placeholder),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


# MARK: - Error Handlers


@app.exception_handler(ChatError)
async def chat_error_handler(request, exc: ChatError):
    """Map domain errors to their status code."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "code": exc.code},
    )


@app.exception_handler(ClientError)
async def aws_client_error_handler(request, exc: ClientError):
    """Handle AWS client errors."""
    error_code = exc.response["Error"]["Code"]
    error_message = exc.response["Error"]["Message"]
    logger.error("AWS error %s: %s", error_code, error_message)

    if error_code == "ResourceNotFoundException":
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": f"Resource not found: {error_message}"},
        )
    else:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": f"AWS error: {error_message}"},
        )


# MARK: - Lambda Handler

# Create the Lambda handler
api_handler = Mangum(app, lifespan="off")


# For local development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
