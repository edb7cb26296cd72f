from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from livechat.crud.base import CRUDBase
from livechat.models.chat import (ChatMessage, ChatSession, SenderType,
                                  SessionStatus)
from livechat.schemas.chat import ChatMessageCreate, ChatSessionCreate


class CRUDChatSession(
    CRUDBase[ChatSession, ChatSessionCreate, ChatSessionCreate]
):
    async def get_open_by_visitor(
        self, session: AsyncSession, visitor_id: str
    ) -> Optional[ChatSession]:
        result = await session.execute(
            select(ChatSession)
            .where(
                ChatSession.visitor_id == visitor_id,
                ChatSession.status == SessionStatus.OPEN,
            )
            .order_by(ChatSession.created_at.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def list_recent(self, session: AsyncSession) -> list[ChatSession]:
        result = await session.execute(
            select(ChatSession).order_by(
                ChatSession.last_message_at.desc(),
                ChatSession.created_at.desc(),
            )
        )
        return list(result.scalars().all())

    async def list_inactive(
        self, session: AsyncSession, older_than: datetime
    ) -> list[ChatSession]:
        result = await session.execute(
            select(ChatSession).where(
                ChatSession.status == SessionStatus.OPEN,
                ChatSession.last_message_at < older_than,
            )
        )
        return list(result.scalars().all())


class CRUDChatMessage(
    CRUDBase[ChatMessage, ChatMessageCreate, ChatMessageCreate]
):
    async def create_message(
        self,
        session: AsyncSession,
        chat_session: ChatSession,
        obj_in: ChatMessageCreate,
    ) -> ChatMessage:
        msg = ChatMessage(**obj_in.model_dump())
        chat_session.last_message_at = obj_in.created_at
        session.add(msg)
        session.add(chat_session)
        await session.commit()
        await session.refresh(msg)
        return msg

    async def list_for_session(
        self,
        session: AsyncSession,
        session_id: str,
        limit: int | None = None,
    ) -> list[ChatMessage]:
        """Сообщения сессии, старые первыми (последние `limit`)."""
        stmt = (
            select(ChatMessage)
            .where(ChatMessage.session_id == session_id)
            .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(reversed(result.scalars().all()))

    async def count_for_session(
        self,
        session: AsyncSession,
        session_id: str,
        sender_type: SenderType | None = None,
    ) -> int:
        stmt = select(func.count(ChatMessage.id)).where(
            ChatMessage.session_id == session_id
        )
        if sender_type is not None:
            stmt = stmt.where(ChatMessage.sender_type == sender_type)
        result = await session.execute(stmt)
        return result.scalar_one()


crud_chat_session = CRUDChatSession(ChatSession)
crud_chat_message = CRUDChatMessage(ChatMessage)
