"""Project and conversation access, plus usage statistics."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from lmchat.core.exceptions import ForbiddenError, NotFoundError
from lmchat.models.conversation import Conversation, Message
from lmchat.models.project import Project
from lmchat.models.user import User
from lmchat.schemas.chat import ConversationCreate, ProjectCreate


class ProjectService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_project(self, data: ProjectCreate, user: User) -> Project:
        project = Project(user_id=user.id, name=data.name, description=data.description)
        self.db.add(project)
        await self.db.flush()
        await self.db.refresh(project)
        return project

    async def get_owned_project(self, project_id: int, user: User) -> Project:
        """Fetch project and verify ownership."""
        project = await self.db.get(Project, project_id)
        if not project:
            raise NotFoundError("Project")
        if project.user_id != user.id:
            raise ForbiddenError("Access denied to project")
        return project

    async def get_conversation(self, project_id: int, conversation_id: int, user: User) -> Conversation:
        """Fetch a conversation of an owned project.

        A conversation that exists under another project is reported as
        missing, never as forbidden.
        """
        await self.get_owned_project(project_id, user)
        conversation = await self.db.get(Conversation, conversation_id)
        if not conversation or conversation.project_id != project_id:
            raise NotFoundError("Conversation")
        return conversation

    async def create_conversation(
        self, project_id: int, data: ConversationCreate, user: User
    ) -> Conversation:
        await self.get_owned_project(project_id, user)
        conversation = Conversation(project_id=project_id, title=data.title)
        self.db.add(conversation)
        await self.db.flush()
        await self.db.refresh(conversation)
        return conversation

    async def get_conversation_detail(
        self, project_id: int, conversation_id: int, user: User
    ) -> Conversation:
        await self.get_conversation(project_id, conversation_id, user)
        result = await self.db.execute(
            select(Conversation)
            .options(selectinload(Conversation.messages))
            .where(Conversation.id == conversation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def get_statistics(self, project_id: int, user: User) -> dict:
        """Aggregate conversation and message usage for a project."""
        project = await self.get_owned_project(project_id, user)

        conv_row = (
            await self.db.execute(
                select(
                    func.count(Conversation.id),
                    func.coalesce(func.sum(Conversation.total_tokens_used), 0),
                    func.max(Conversation.last_message_at),
                ).where(Conversation.project_id == project_id)
            )
        ).one()

        in_project = Message.conversation_id.in_(
            select(Conversation.id).where(Conversation.project_id == project_id)
        )

        by_role = await self.db.execute(
            select(Message.role, func.count(Message.id)).where(in_project).group_by(Message.role)
        )
        messages_by_role = {role: count for role, count in by_role.all()}

        by_model = await self.db.execute(
            select(Message.model, func.coalesce(func.sum(Message.token_count), 0))
            .where(in_project, Message.model.is_not(None), Message.model != "")
            .group_by(Message.model)
        )
        tokens_by_model = {model: int(total) for model, total in by_model.all()}

        avg_response = (
            await self.db.execute(
                select(func.avg(Message.response_time_ms)).where(
                    in_project, Message.response_time_ms.is_not(None)
                )
            )
        ).scalar()

        return {
            "project_id": project.id,
            "project_name": project.name,
            "total_conversations": conv_row[0],
            "total_messages": sum(messages_by_role.values()),
            "total_tokens_used": int(conv_row[1]),
            "last_activity_at": conv_row[2],
            "created_at": project.created_at,
            "messages_by_role": messages_by_role,
            "tokens_by_model": tokens_by_model,
            "average_response_time_ms": round(float(avg_response or 0.0), 1),
        }
