"""SQLAlchemy models."""

from lmchat.models.ai_model import AIModel
from lmchat.models.base import Base
from lmchat.models.conversation import Conversation, Message
from lmchat.models.project import Project
from lmchat.models.user import User

__all__ = [
    "Base",
    "User",
    "Project",
    "Conversation",
    "Message",
    "AIModel",
]
