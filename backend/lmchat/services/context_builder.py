"""Context assembly for chat completions."""

import math
from collections.abc import Iterable

from lmchat.config import settings
from lmchat.models.conversation import Message
from lmchat.services.completion_client import ChatMessage


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: about four characters per token."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def build_messages(
    history: Iterable[Message],
    new_text: str,
    system_prompt: str | None = None,
) -> list[ChatMessage]:
    """Build the ordered message list sent to the provider.

    System instruction first, then the prior messages as given (the caller
    passes them chronologically, already windowed), then the new user text.
    Messages without plain content are left out.
    """
    messages = [ChatMessage(role="system", content=system_prompt or settings.chat_system_prompt)]
    for msg in history:
        if msg.content is None:
            continue
        messages.append(ChatMessage(role=msg.role, content=msg.content))
    messages.append(ChatMessage(role="user", content=new_text))
    return messages
