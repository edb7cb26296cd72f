import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from livechat.core.constants import CHAT_HISTORY_LIMIT
from livechat.core.exceptions import StoreError
from livechat.crud.chat import crud_chat_message, crud_chat_session
from livechat.models.chat import (ChatMessage, ChatSession, SenderType,
                                  SessionStatus, utcnow)
from livechat.schemas.chat import ChatMessageCreate, ChatSessionCreate

logger = logging.getLogger('livechat')

ONE_TICK = timedelta(microseconds=1)


class ChatSessionStore:
    """
    Source of truth for chat sessions and their messages.

    Every operation opens its own database session. Writes are serialized
    through one asyncio lock so message timestamps stay strictly
    increasing within a session and a close cannot interleave with a
    message insert. The lock covers one process only: run a single worker
    per database.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f'Ошибка хранилища чата: {e}')
                raise StoreError(str(e)) from e

    async def start_session(
        self,
        visitor_id: str,
        visitor_name: str | None = None,
        visitor_email: str | None = None,
        history_limit: int = CHAT_HISTORY_LIMIT,
    ) -> tuple[ChatSession, list[ChatMessage], bool]:
        """
        Resume the visitor's open session or create a new one.

        Returns the session, its last ``history_limit`` messages (newest
        last) and whether the session was created by this call.
        """
        async with self._write_lock:
            async with self._session() as session:
                chat = await crud_chat_session.get_open_by_visitor(
                    session, visitor_id
                )
                created = chat is None
                if created:
                    chat = await crud_chat_session.create(
                        ChatSessionCreate(
                            visitor_id=visitor_id,
                            visitor_name=visitor_name,
                            visitor_email=visitor_email,
                        ),
                        session,
                    )
                    logger.info(
                        f'Chat session {chat.id} created for {visitor_id}'
                    )
                messages = await crud_chat_message.list_for_session(
                    session, chat.id, limit=history_limit
                )
        return chat, messages, created

    async def get_session(self, session_id: str) -> ChatSession | None:
        async with self._session() as session:
            return await crud_chat_session.get(session, session_id)

    async def list_sessions(self) -> list[ChatSession]:
        async with self._session() as session:
            return await crud_chat_session.list_recent(session)

    async def get_messages(
        self, session_id: str, limit: int | None = None
    ) -> list[ChatMessage]:
        async with self._session() as session:
            return await crud_chat_message.list_for_session(
                session, session_id, limit=limit
            )

    async def count_messages(
        self, session_id: str, sender_type: SenderType | None = None
    ) -> int:
        async with self._session() as session:
            return await crud_chat_message.count_for_session(
                session, session_id, sender_type=sender_type
            )

    async def add_message(
        self,
        session_id: str,
        sender_type: SenderType,
        sender_name: str | None,
        message: str,
    ) -> ChatMessage | None:
        """
        Persist a message and bump ``last_message_at``.

        Returns ``None`` when the session does not exist or is closed.
        Visitor messages without a sender name take the session's visitor
        name.
        """
        async with self._write_lock:
            async with self._session() as session:
                chat = await crud_chat_session.get(session, session_id)
                if chat is None or not chat.is_open:
                    return None
                created_at = utcnow()
                if (
                    chat.last_message_at is not None
                    and created_at <= chat.last_message_at
                ):
                    created_at = chat.last_message_at + ONE_TICK
                if sender_name is None and sender_type == SenderType.VISITOR:
                    sender_name = chat.visitor_name
                return await crud_chat_message.create_message(
                    session,
                    chat_session=chat,
                    obj_in=ChatMessageCreate(
                        session_id=chat.id,
                        sender_type=sender_type,
                        sender_name=sender_name,
                        message=message,
                        created_at=created_at,
                    ),
                )

    async def close_session(
        self, session_id: str
    ) -> tuple[ChatSession | None, bool]:
        """
        Close a session. Returns the session (``None`` if missing) and
        whether this call moved it from open to closed.
        """
        async with self._write_lock:
            async with self._session() as session:
                chat = await crud_chat_session.get(session, session_id)
                if chat is None:
                    return None, False
                if not chat.is_open:
                    return chat, False
                chat = await crud_chat_session.update(
                    chat, {'status': SessionStatus.CLOSED}, session
                )
                logger.info(f'Chat session {session_id} closed')
                return chat, True

    async def close_inactive_sessions(
        self, older_than: datetime
    ) -> list[ChatSession]:
        async with self._write_lock:
            async with self._session() as session:
                stale = await crud_chat_session.list_inactive(
                    session, older_than
                )
                for chat in stale:
                    await crud_chat_session.update(
                        chat,
                        {'status': SessionStatus.CLOSED},
                        session,
                        commit=False,
                    )
                await session.commit()
                return stale
