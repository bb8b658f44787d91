"""Project, conversation and chat API routes."""

import asyncio
import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lmchat.api.deps import (
    get_broadcaster,
    get_completion_client,
    get_current_user,
    get_db,
    get_session_factory,
)
from lmchat.core.security import authenticate_token
from lmchat.models.user import User
from lmchat.schemas.chat import (
    ConversationCreate,
    ConversationDetailResponse,
    ConversationResponse,
    MessageResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectStatisticsResponse,
    SendMessageRequest,
)
from lmchat.services.broadcaster import ConversationBroadcaster
from lmchat.services.chat_stream_service import ChatStreamService
from lmchat.services.completion_client import CompletionClient, CompletionTransportError
from lmchat.services.project_service import ProjectService

logger = structlog.get_logger()
router = APIRouter()


def _encode_sse(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


@router.post("", response_model=ProjectResponse, status_code=201)
async def create_project(
    data: ProjectCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create a project owned by the current user."""
    service = ProjectService(db)
    return await service.create_project(data, current_user)


@router.get("/{project_id}/statistics", response_model=ProjectStatisticsResponse)
async def project_statistics(
    project_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Usage statistics across the project's conversations."""
    service = ProjectService(db)
    return await service.get_statistics(project_id, current_user)


@router.post(
    "/{project_id}/conversations",
    response_model=ConversationResponse,
    status_code=201,
)
async def create_conversation(
    project_id: int,
    data: ConversationCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Start a new conversation in a project."""
    service = ProjectService(db)
    return await service.create_conversation(project_id, data, current_user)


@router.get(
    "/{project_id}/conversations/{conversation_id}",
    response_model=ConversationDetailResponse,
)
async def get_conversation(
    project_id: int,
    conversation_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Get a conversation with its messages in chronological order."""
    service = ProjectService(db)
    return await service.get_conversation_detail(project_id, conversation_id, current_user)


@router.post(
    "/{project_id}/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
)
async def send_message(
    project_id: int,
    conversation_id: int,
    payload: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client: CompletionClient = Depends(get_completion_client),
):
    """Send a message and wait for the complete reply."""
    service = ChatStreamService(session_factory, client)
    return await service.get_response(
        current_user, project_id, conversation_id, payload.content, payload.model_id
    )


@router.post("/{project_id}/conversations/{conversation_id}/messages/stream")
async def stream_message(
    project_id: int,
    conversation_id: int,
    payload: SendMessageRequest,
    current_user: User = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    client: CompletionClient = Depends(get_completion_client),
    fanout: ConversationBroadcaster = Depends(get_broadcaster),
):
    """Send a message and stream the reply as server-sent events.

    The first fragment is awaited before the response starts, so access
    errors and a provider that fails up front come back as plain HTTP
    errors. Every fragment is mirrored to the conversation's subscribers.
    """
    service = ChatStreamService(session_factory, client)
    exchange = service.exchange(
        current_user, project_id, conversation_id, payload.content, payload.model_id
    )

    def mirror(event: dict) -> None:
        fanout.publish(conversation_id, {"conversation_id": conversation_id, **event})

    # Access is checked before the typing indicator goes out to the owner's viewers
    async with session_factory() as session:
        await ProjectService(session).get_conversation(project_id, conversation_id, current_user)

    mirror({"type": "typing", "active": True})
    fragments = exchange.stream()
    try:
        first = await anext(fragments)
    except StopAsyncIteration:
        first = None
    except BaseException:
        mirror({"type": "typing", "active": False})
        raise

    async def event_stream():
        try:
            if first is not None:
                mirror({"type": "chunk", "content": first})
                yield _encode_sse({"type": "chunk", "content": first})
                async for fragment in fragments:
                    mirror({"type": "chunk", "content": fragment})
                    yield _encode_sse({"type": "chunk", "content": fragment})
            message = exchange.assistant_message
            yield _encode_sse({
                "type": "done",
                "message_id": message.id if message else None,
                "token_count": exchange.fragment_count,
                "response_time_ms": exchange.response_time_ms,
            })
        except CompletionTransportError as e:
            # Partial text has been stored by the exchange; tell the client why it stopped
            yield _encode_sse({"type": "error", "message": str(e)})
        finally:
            await fragments.aclose()
            mirror({"type": "typing", "active": False})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


async def _forward_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        event = await queue.get()
        await websocket.send_json(event)


async def _read_until_disconnect(websocket: WebSocket) -> None:
    # Client messages carry no meaning; reading detects the disconnect
    while True:
        await websocket.receive_text()


async def relay_events(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Forward queued events to the socket until either direction stops."""
    tasks = (
        asyncio.create_task(_forward_events(websocket, queue)),
        asyncio.create_task(_read_until_disconnect(websocket)),
    )
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException) and not isinstance(
            result, (asyncio.CancelledError, WebSocketDisconnect)
        ):
            raise result


@router.websocket("/{project_id}/conversations/{conversation_id}/events")
async def conversation_events(
    websocket: WebSocket,
    project_id: int,
    conversation_id: int,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db),
    fanout: ConversationBroadcaster = Depends(get_broadcaster),
):
    """Mirror of the replies streamed into a conversation, for other viewers."""
    try:
        user = await authenticate_token(token, db)
        await ProjectService(db).get_conversation(project_id, conversation_id, user)
        await db.commit()
    except HTTPException as e:
        logger.info("conversation_events_rejected", conversation_id=conversation_id, reason=e.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(e.detail))
        return

    await websocket.accept()
    await websocket.send_json({"type": "joined", "conversation_id": conversation_id})

    async with fanout.subscribe(conversation_id) as queue:
        await relay_events(websocket, queue)
    logger.info("conversation_events_closed", conversation_id=conversation_id)
