"""Chat stream service: runs one user-to-model exchange end to end.

Lifecycle of an exchange::

    validating -> persisting_user_message -> building_context
      -> awaiting_provider -> streaming -> finalizing -> completed | failed

- The user message is committed before the provider is called, so a
  provider failure never loses the user's input.
- Fragments are yielded one by one, in provider order, as they arrive.
- The assistant message is written once the stream ends, whatever ended it:
  normal completion, a provider error, the caller closing the iterator or
  the task being cancelled. Only a stream that fails before producing any
  fragment leaves no assistant message behind.
- No database session is held while the provider streams; finalization
  opens its own.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from lmchat.config import settings
from lmchat.core.database import async_session_factory
from lmchat.core.exceptions import ConflictError
from lmchat.models.ai_model import AIModel
from lmchat.models.base import utcnow
from lmchat.models.conversation import Conversation, Message
from lmchat.models.user import User
from lmchat.services.completion_client import CompletionClient, CompletionRequest
from lmchat.services.context_builder import build_messages, estimate_tokens
from lmchat.services.model_selector import ModelSelector
from lmchat.services.project_service import ProjectService

logger = structlog.get_logger()

# Conversations with an exchange in flight in this process
_in_flight: set[int] = set()


class ExchangeState(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    PERSISTING_USER_MESSAGE = "persisting_user_message"
    BUILDING_CONTEXT = "building_context"
    AWAITING_PROVIDER = "awaiting_provider"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"


class ChatExchange:
    """One message sent to a conversation and the model's reply to it.

    ``stream()`` may be iterated once. After it ends the exchange exposes
    the persisted messages and usage figures.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: CompletionClient,
        user: User,
        project_id: int,
        conversation_id: int,
        content: str,
        model_id: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self.user = user
        self.project_id = project_id
        self.conversation_id = conversation_id
        self.content = content
        self.model_id = model_id

        self.state = ExchangeState.PENDING
        self.model: AIModel | None = None
        self.user_message: Message | None = None
        self.assistant_message: Message | None = None
        self.fragment_count = 0
        self.response_time_ms: int | None = None
        self.error: BaseException | None = None
        self._buffer: list[str] = []
        self._claimed = False
        self._started = False

    @property
    def text(self) -> str:
        return "".join(self._buffer)

    def _set_state(self, state: ExchangeState) -> None:
        self.state = state
        logger.debug("chat_exchange_state", conversation_id=self.conversation_id, state=state.value)

    # ---- in-flight guard ----

    def _claim(self) -> None:
        if self.conversation_id in _in_flight:
            raise ConflictError("A reply is already being generated for this conversation")
        _in_flight.add(self.conversation_id)
        self._claimed = True

    def _release(self) -> None:
        if self._claimed:
            _in_flight.discard(self.conversation_id)
            self._claimed = False

    # ---- preparation ----

    async def _prepare(self, session: AsyncSession, stream: bool) -> CompletionRequest:
        self._set_state(ExchangeState.VALIDATING)
        await ProjectService(session).get_conversation(self.project_id, self.conversation_id, self.user)
        self._claim()

        self._set_state(ExchangeState.PERSISTING_USER_MESSAGE)
        user_message = Message(
            conversation_id=self.conversation_id,
            role="user",
            content=self.content,
            token_count=estimate_tokens(self.content),
        )
        session.add(user_message)
        await session.commit()
        self.user_message = user_message

        self._set_state(ExchangeState.BUILDING_CONTEXT)
        result = await session.execute(
            select(Message)
            .where(
                Message.conversation_id == self.conversation_id,
                Message.id != user_message.id,
            )
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(settings.chat_context_messages)
        )
        history = list(result.scalars().all())
        history.reverse()
        messages = build_messages(history, self.content)

        self._set_state(ExchangeState.AWAITING_PROVIDER)
        self.model = await ModelSelector(session, self._client).resolve(self.model_id)
        logger.info(
            "chat_exchange_started",
            conversation_id=self.conversation_id,
            model=self.model.model_id,
            context_messages=len(messages),
            stream=stream,
        )
        return CompletionRequest(
            model=self.model.model_id,
            messages=messages,
            temperature=self.model.temperature,
            max_tokens=self.model.max_tokens,
        )

    # ---- streaming ----

    async def stream(self) -> AsyncIterator[str]:
        """Yield reply fragments as the provider produces them."""
        if self._started:
            raise RuntimeError("A chat exchange can only be streamed once")
        self._started = True

        try:
            try:
                async with self._session_factory() as session:
                    request = await self._prepare(session, stream=True)
            except BaseException as exc:
                self.error = exc
                self._set_state(ExchangeState.FAILED)
                raise

            self._set_state(ExchangeState.STREAMING)
            started = time.monotonic()
            completed = False
            try:
                async with aclosing(self._client.stream_complete(request)) as fragments:
                    async for fragment in fragments:
                        self._buffer.append(fragment)
                        self.fragment_count += 1
                        yield fragment
                completed = True
            except BaseException as exc:
                self.error = exc
                raise
            finally:
                self.response_time_ms = int((time.monotonic() - started) * 1000)
                if completed or self.fragment_count:
                    self._set_state(ExchangeState.FINALIZING)
                    await asyncio.shield(
                        self._finalize(
                            content=self.text,
                            token_count=self.fragment_count,
                            tokens_used=self.fragment_count,
                        )
                    )
                self._finish(completed)
        finally:
            self._release()

    # ---- non-streaming ----

    async def run(self) -> Message:
        """Run the exchange without streaming and return the assistant message."""
        if self._started:
            raise RuntimeError("A chat exchange can only be run once")
        self._started = True

        try:
            try:
                async with self._session_factory() as session:
                    request = await self._prepare(session, stream=False)
            except BaseException as exc:
                self.error = exc
                self._set_state(ExchangeState.FAILED)
                raise

            started = time.monotonic()
            try:
                result = await self._client.complete(request)
            except BaseException as exc:
                self.error = exc
                self._finish(False)
                raise
            self.response_time_ms = int((time.monotonic() - started) * 1000)
            self._buffer.append(result.content)

            if result.usage:
                token_count = result.usage.completion_tokens or estimate_tokens(result.content)
                tokens_used = result.usage.total_tokens
            else:
                token_count = estimate_tokens(result.content)
                tokens_used = token_count

            self._set_state(ExchangeState.FINALIZING)
            await asyncio.shield(
                self._finalize(content=result.content, token_count=token_count, tokens_used=tokens_used)
            )
            self._finish(True)
            return self.assistant_message
        finally:
            self._release()

    # ---- finalization ----

    async def _finalize(self, content: str, token_count: int, tokens_used: int) -> None:
        """Persist the assistant message and bump the conversation aggregates."""
        async with self._session_factory() as session:
            message = Message(
                conversation_id=self.conversation_id,
                role="assistant",
                content=content,
                token_count=token_count,
                model=self.model.model_id,
                response_time_ms=self.response_time_ms,
            )
            session.add(message)
            # Expressed as a delta so concurrent finalizations cannot lose an increment
            await session.execute(
                update(Conversation)
                .where(Conversation.id == self.conversation_id)
                .values(
                    total_tokens_used=Conversation.total_tokens_used + tokens_used,
                    last_message_at=utcnow(),
                )
            )
            await session.commit()
            self.assistant_message = message

    def _finish(self, completed: bool) -> None:
        self._set_state(ExchangeState.COMPLETED if completed else ExchangeState.FAILED)
        log = logger.info if completed else logger.warning
        log(
            "chat_exchange_completed" if completed else "chat_exchange_failed",
            conversation_id=self.conversation_id,
            model=self.model.model_id if self.model else None,
            fragments=self.fragment_count,
            response_time_ms=self.response_time_ms,
            persisted=self.assistant_message is not None,
            error=type(self.error).__name__ if self.error else None,
        )


class ChatStreamService:
    """Entry point for sending messages to a conversation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        client: CompletionClient | None = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.client = client or CompletionClient()

    def exchange(
        self,
        user: User,
        project_id: int,
        conversation_id: int,
        content: str,
        model_id: int | None = None,
    ) -> ChatExchange:
        return ChatExchange(
            self.session_factory,
            self.client,
            user=user,
            project_id=project_id,
            conversation_id=conversation_id,
            content=content,
            model_id=model_id,
        )

    def stream_reply(
        self,
        user: User,
        project_id: int,
        conversation_id: int,
        content: str,
        model_id: int | None = None,
    ) -> AsyncIterator[str]:
        """Send a message and return the lazy sequence of reply fragments."""
        return self.exchange(user, project_id, conversation_id, content, model_id).stream()

    async def get_response(
        self,
        user: User,
        project_id: int,
        conversation_id: int,
        content: str,
        model_id: int | None = None,
    ) -> Message:
        """Send a message and wait for the complete reply."""
        return await self.exchange(user, project_id, conversation_id, content, model_id).run()
