"""HTTP client for the local completion server (LM Studio).

LM Studio exposes an OpenAI-compatible API:

- ``GET  /v1/models``            advertised model inventory
- ``POST /v1/chat/completions``  chat completion, optionally streamed
- ``GET  /api/v0/models``        richer model state (loaded / not-loaded)

Streamed completions arrive as ``data: <json>`` lines and end with
``data: [DONE]``. Each line is decoded on its own: a malformed line is logged
and skipped, it never aborts the stream.
"""

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import httpx
import structlog

from lmchat.config import settings

logger = structlog.get_logger()

_DATA_PREFIX = "data:"
_DONE_MARKER = "[DONE]"


class CompletionTransportError(Exception):
    """The provider could not be reached or answered with an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ChatMessage:
    role: str
    content: str


@dataclass
class CompletionRequest:
    model: str
    messages: list[ChatMessage]
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float = 0.95
    seed: int | None = None

    def to_payload(self, stream: bool) -> dict:
        payload = {
            "model": self.model,
            "messages": [{"role": m.role, "content": m.content} for m in self.messages],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            "stream": stream,
        }
        if self.seed is not None:
            payload["seed"] = self.seed
        return payload


@dataclass
class CompletionUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CompletionResult:
    id: str
    model: str
    content: str
    finish_reason: str | None = None
    usage: CompletionUsage | None = None


@dataclass
class StreamChunk:
    """One decoded ``data:`` line of a streamed completion."""

    content: str | None = None
    finish_reason: str | None = None
    done: bool = False


@dataclass
class ProviderModel:
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = "local"


@dataclass
class LoadedModel:
    id: str
    state: str = "not-loaded"
    type: str | None = None
    estimated_vram_gb: float | None = None
    extra: dict = field(default_factory=dict)

    @property
    def is_loaded(self) -> bool:
        return self.state == "loaded"


def parse_stream_line(line: str) -> StreamChunk | None:
    """Decode one line of a streamed completion body.

    Returns None for anything that carries no chunk: blank keep-alive lines,
    SSE comments or fields other than ``data``, and malformed payloads.
    """
    line = line.strip()
    if not line or not line.startswith(_DATA_PREFIX):
        return None

    data = line[len(_DATA_PREFIX):].strip()
    if data == _DONE_MARKER:
        return StreamChunk(done=True)

    try:
        payload = json.loads(data)
    except (json.JSONDecodeError, ValueError):
        logger.warning("completion_stream_bad_line", data=data[:200])
        return None
    if not isinstance(payload, dict):
        logger.warning("completion_stream_bad_line", data=data[:200])
        return None

    choices = payload.get("choices") or []
    if not isinstance(choices, list) or (choices and not isinstance(choices[0], dict)):
        logger.warning("completion_stream_bad_line", data=data[:200])
        return None
    if not choices:
        return StreamChunk()
    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return StreamChunk(
        content=content if isinstance(content, str) else None,
        finish_reason=choice.get("finish_reason"),
    )


class CompletionClient:
    """Talk to the completion server over HTTP.

    A fresh ``httpx.AsyncClient`` is opened per call. Pass ``transport`` to
    route requests somewhere other than the network (tests use
    ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.lmstudio_base_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.lmstudio_api_key
        self.timeout = timeout or settings.lmstudio_timeout
        self._transport = transport

    def _client(self, read_timeout: float = 5.0) -> httpx.AsyncClient:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            headers=headers,
            transport=self._transport,
            timeout=httpx.Timeout(connect=5.0, read=read_timeout, write=5.0, pool=5.0),
        )

    @property
    def _loaded_models_url(self) -> str:
        # /api/v0 lives beside /v1 at the server root
        url = httpx.URL(self.base_url)
        return str(url.copy_with(path="/api/v0/models"))

    # ---- inventory ----

    async def list_models(self) -> list[ProviderModel]:
        """Return the models the provider advertises, or [] if it is unreachable."""
        try:
            async with self._client() as client:
                resp = await client.get(f"{self.base_url}/models")
                if resp.status_code != 200:
                    logger.warning("completion_models_error", status=resp.status_code)
                    return []
                data = resp.json()
        except httpx.HTTPError as e:
            logger.warning("completion_models_unreachable", url=self.base_url, error=str(e))
            return []
        except ValueError:
            logger.warning("completion_models_bad_body", url=self.base_url)
            return []

        models = []
        for item in data.get("data", []) if isinstance(data, dict) else []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            models.append(
                ProviderModel(
                    id=item["id"],
                    object=item.get("object", "model"),
                    created=item.get("created") or 0,
                    owned_by=item.get("owned_by", "local"),
                )
            )
        return models

    async def list_loaded_models(self) -> list[LoadedModel]:
        """Return model residency state. Informational only; [] on any failure."""
        try:
            async with self._client() as client:
                resp = await client.get(self._loaded_models_url)
                if resp.status_code != 200:
                    logger.info("completion_loaded_models_unavailable", status=resp.status_code)
                    return []
                data = resp.json()
        except httpx.HTTPError as e:
            logger.info("completion_loaded_models_unreachable", error=str(e))
            return []
        except ValueError:
            return []

        loaded = []
        for item in data.get("data", []) if isinstance(data, dict) else []:
            if not isinstance(item, dict) or not item.get("id"):
                continue
            vram = item.get("estimatedVramGB", item.get("estimated_vram_gb"))
            loaded.append(
                LoadedModel(
                    id=item["id"],
                    state=item.get("state", "not-loaded"),
                    type=item.get("type"),
                    estimated_vram_gb=vram,
                    extra={k: v for k, v in item.items() if k not in ("id", "state", "type")},
                )
            )
        return loaded

    async def test_connection(self) -> bool:
        """Liveness probe. Never raises."""
        try:
            async with self._client() as client:
                resp = await client.get(f"{self.base_url}/models")
                return resp.is_success
        except httpx.HTTPError as e:
            logger.warning("completion_connection_failed", url=self.base_url, error=str(e))
            return False

    # ---- completions ----

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run a non-streamed completion and return the full text with usage."""
        try:
            async with self._client(read_timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=request.to_payload(stream=False),
                )
        except httpx.TimeoutException as e:
            logger.warning("completion_timeout", model=request.model)
            raise CompletionTransportError("Completion server timed out") from e
        except httpx.HTTPError as e:
            logger.warning("completion_unreachable", url=self.base_url, error=str(e))
            raise CompletionTransportError(f"Completion server unreachable: {e}") from e

        if not resp.is_success:
            logger.warning("completion_error", status=resp.status_code, body=resp.text[:200])
            raise CompletionTransportError(
                f"Completion server returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            choice = data["choices"][0]
            message = choice.get("message") or {}
            content = message.get("content") or ""
            if not isinstance(content, str):
                raise TypeError("message content is not text")
        except (ValueError, KeyError, IndexError, TypeError, AttributeError) as e:
            logger.warning("completion_bad_body", body=resp.text[:200])
            raise CompletionTransportError("Malformed completion response") from e

        usage = None
        if isinstance(data.get("usage"), dict):
            u = data["usage"]
            usage = CompletionUsage(
                prompt_tokens=u.get("prompt_tokens", 0),
                completion_tokens=u.get("completion_tokens", 0),
                total_tokens=u.get("total_tokens", 0),
            )

        return CompletionResult(
            id=data.get("id", ""),
            model=data.get("model", request.model),
            content=content,
            finish_reason=choice.get("finish_reason"),
            usage=usage,
        )

    async def stream_complete(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Stream a completion, yielding each non-empty text fragment in order.

        The iterator is single-use. Cancelling the consuming task, or closing
        the iterator, closes the HTTP response.
        """
        try:
            async with self._client(read_timeout=self.timeout) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=request.to_payload(stream=True),
                ) as resp:
                    if not resp.is_success:
                        body = await resp.aread()
                        logger.warning(
                            "completion_stream_error",
                            status=resp.status_code,
                            body=body[:200].decode("utf-8", "replace"),
                        )
                        raise CompletionTransportError(
                            f"Completion server returned HTTP {resp.status_code}",
                            status_code=resp.status_code,
                        )

                    async for line in resp.aiter_lines():
                        chunk = parse_stream_line(line)
                        if chunk is None:
                            continue
                        if chunk.done:
                            break
                        if chunk.content:
                            yield chunk.content
        except httpx.TimeoutException as e:
            logger.warning("completion_stream_timeout", model=request.model)
            raise CompletionTransportError("Completion server timed out") from e
        except httpx.HTTPError as e:
            logger.warning("completion_stream_failed", url=self.base_url, error=str(e))
            raise CompletionTransportError(f"Completion stream failed: {e}") from e


def get_completion_client() -> CompletionClient:
    """FastAPI dependency: client configured from settings."""
    return CompletionClient()
