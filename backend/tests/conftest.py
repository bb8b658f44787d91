"""Shared test fixtures."""

import json
import os
from types import SimpleNamespace

# Settings are read at import time; point the app at SQLite before importing it.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from lmchat.api.deps import (  # noqa: E402
    get_completion_client,
    get_current_user,
    get_db,
    get_session_factory,
)
from lmchat.main import app  # noqa: E402
from lmchat.models import AIModel, Base, Conversation, Project, User  # noqa: E402
from lmchat.services import chat_stream_service  # noqa: E402
from lmchat.services.completion_client import CompletionClient  # noqa: E402

PROVIDER_URL = "http://lmstudio.test/v1"


# ── Completion server doubles ─────────────────────


def sse_body(*fragments: str, done: bool = True) -> bytes:
    """Encode fragments the way LM Studio streams them."""
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": f}, "finish_reason": None}]})
        for f in fragments
    ]
    if done:
        lines.append("data: [DONE]")
    return ("\n\n".join(lines) + "\n\n").encode()


def completion_body(content: str, usage: dict | None = None) -> dict:
    body = {
        "id": "chatcmpl-1",
        "model": "qwen2.5-7b-instruct",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": "stop"}],
    }
    if usage is not None:
        body["usage"] = usage
    return body


def make_client(handler) -> CompletionClient:
    """CompletionClient whose requests are answered by ``handler``."""
    return CompletionClient(base_url=PROVIDER_URL, api_key="", transport=httpx.MockTransport(handler))


def provider(stream=None, completion=None, models=(), loaded=()):
    """Build a MockTransport handler for the usual LM Studio endpoints.

    ``stream`` and ``completion`` may be a ready ``httpx.Response`` or a
    callable taking the request and returning one.
    """
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        path = request.url.path
        if path == "/v1/models":
            return httpx.Response(200, json={"object": "list", "data": [{"id": m, "object": "model"} for m in models]})
        if path == "/api/v0/models":
            return httpx.Response(
                200,
                json={"data": [{"id": m, "state": "loaded", "type": "llm"} for m in loaded]},
            )
        if path == "/v1/chat/completions":
            payload = json.loads(request.content)
            answer = stream if payload.get("stream") else completion
            if answer is None:
                return httpx.Response(404)
            return answer(request) if callable(answer) else answer
        return httpx.Response(404)

    handler.calls = calls
    return handler


# ── Database ──────────────────────────────────────


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def seed(session_factory):
    """Two users, a project with one conversation, and a default model."""
    async with session_factory() as session:
        owner = User(keycloak_id="kc-owner", email="owner@example.com", full_name="Owner", is_admin=True)
        stranger = User(keycloak_id="kc-stranger", email="stranger@example.com", full_name="Stranger")
        session.add_all([owner, stranger])
        await session.flush()

        project = Project(user_id=owner.id, name="Research")
        foreign_project = Project(user_id=stranger.id, name="Private")
        session.add_all([project, foreign_project])
        await session.flush()

        conversation = Conversation(project_id=project.id, title="First chat")
        foreign_conversation = Conversation(project_id=foreign_project.id, title="Not yours")
        model = AIModel(
            name="Qwen 2.5 7B",
            model_id="qwen2.5-7b-instruct",
            provider="LMStudio",
            endpoint=PROVIDER_URL,
            max_tokens=1024,
            temperature=0.7,
            is_default=True,
            is_active=True,
        )
        session.add_all([conversation, foreign_conversation, model])
        await session.commit()

    return SimpleNamespace(
        owner=owner,
        stranger=stranger,
        project=project,
        foreign_project=foreign_project,
        conversation=conversation,
        foreign_conversation=foreign_conversation,
        model=model,
    )


@pytest.fixture(autouse=True)
def _clear_in_flight():
    chat_stream_service._in_flight.clear()
    yield
    chat_stream_service._in_flight.clear()


# ── HTTP ──────────────────────────────────────────


@pytest.fixture
async def client():
    """Async test client for the FastAPI app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def api(session_factory, seed):
    """Wire the app to the test database and an authenticated owner.

    Tests swap ``handler`` (the completion server) and ``user`` on the
    yielded state.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    state = SimpleNamespace(handler=provider(), user=seed.owner)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_current_user] = lambda: state.user
    app.dependency_overrides[get_completion_client] = lambda: make_client(state.handler)
    yield state
    app.dependency_overrides.clear()
