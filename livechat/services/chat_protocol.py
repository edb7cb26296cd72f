"""Live chat protocol handler.

Turns inbound socket frames into store operations and fan-out. Invalid
frames and references to missing or closed sessions are dropped without
an in-band reply; only a persistence failure is reported back, as an
``error`` event to the connection that caused it.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

from livechat.core.constants import (CHAT_HISTORY_LIMIT, STORE_FAILURE_CODE,
                                     STORE_FAILURE_DETAIL)
from livechat.core.exceptions import StoreError
from livechat.models.chat import ChatMessage, ChatSession, SenderType
from livechat.schemas.chat import ChatMessageOut, ChatSessionOut
from livechat.schemas.chat_events import (INBOUND_EVENT_TYPES, AdminJoin,
                                          AdminMessage, CloseSession,
                                          ErrorEvent, LoadMessages,
                                          MessagesLoaded, MessageSent,
                                          NewMessage, NewSession,
                                          SessionClosed, SessionStarted,
                                          VisitorMessage, VisitorStart,
                                          parse_inbound_event)
from livechat.services.chat_dispatcher import ChatDispatcher
from livechat.services.chat_registry import (ChatConnection, ConnectionRole,
                                             ConnectionRegistry)
from livechat.services.session_store import ChatSessionStore

logger = logging.getLogger('livechat')

Notifier = Callable[[ChatSession, ChatMessage], Awaitable[None]]

# event type -> (role allowed to send it, handler method name)
EVENT_ROUTES = {
    VisitorStart: (ConnectionRole.VISITOR, '_on_visitor_start'),
    VisitorMessage: (ConnectionRole.VISITOR, '_on_visitor_message'),
    AdminJoin: (ConnectionRole.ADMIN, '_on_admin_join'),
    AdminMessage: (ConnectionRole.ADMIN, '_on_admin_message'),
    CloseSession: (ConnectionRole.ADMIN, '_on_close_session'),
    LoadMessages: (ConnectionRole.ADMIN, '_on_load_messages'),
}

if set(EVENT_ROUTES) != set(INBOUND_EVENT_TYPES):
    raise RuntimeError(
        'Chat event routes out of sync with inbound events: '
        f'{set(INBOUND_EVENT_TYPES) ^ set(EVENT_ROUTES)}'
    )


@dataclass(frozen=True)
class AutoReply:
    text: str
    delay: float = 1.5
    sender_name: str = 'Support'


def session_out(chat: ChatSession) -> ChatSessionOut:
    return ChatSessionOut.model_validate(chat)


def message_out(message: ChatMessage) -> ChatMessageOut:
    return ChatMessageOut.model_validate(message)


class ChatProtocolHandler:
    def __init__(
        self,
        store: ChatSessionStore,
        registry: ConnectionRegistry,
        dispatcher: ChatDispatcher,
        history_limit: int = CHAT_HISTORY_LIMIT,
        auto_reply: Optional[AutoReply] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.history_limit = history_limit
        self.auto_reply = auto_reply
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()
        # persist + fan-out of one session runs under its lock, so every
        # recipient sees the session's messages in stored order
        self._session_locks: defaultdict[str, asyncio.Lock] = (
            defaultdict(asyncio.Lock)
        )

    # --- connection lifecycle ---

    def connect(self, connection: ChatConnection) -> None:
        # Admins authenticated at the handshake join the pool right away;
        # admin_join only re-asserts membership.
        if connection.is_admin:
            self.registry.register(connection)
        logger.info(f'Chat connection opened: {connection!r}')

    def disconnect(self, connection: ChatConnection) -> None:
        self.registry.unregister(connection)
        logger.info(f'Chat connection closed: {connection!r}')

    async def handle_frame(
        self, connection: ChatConnection, raw: str | bytes
    ) -> None:
        event = parse_inbound_event(raw)
        if event is None:
            return
        role, method_name = EVENT_ROUTES[type(event)]
        if connection.role != role:
            logger.debug(
                f'Dropped {event.type} from {connection!r}: wrong role'
            )
            return
        try:
            await getattr(self, method_name)(connection, event)
        except StoreError as e:
            logger.error(f'{event.type} from {connection!r} not stored: {e}')
            await self.dispatcher.send(
                connection,
                ErrorEvent(
                    code=STORE_FAILURE_CODE, detail=STORE_FAILURE_DETAIL
                ),
            )

    # --- visitor events ---

    async def _on_visitor_start(
        self, connection: ChatConnection, event: VisitorStart
    ) -> None:
        visitor_id = event.visitor_id or connection.visitor_id
        if not visitor_id:
            logger.debug('Dropped visitor_start without visitor id')
            return
        chat, messages, created = await self.store.start_session(
            visitor_id,
            visitor_name=event.visitor_name,
            visitor_email=event.visitor_email,
            history_limit=self.history_limit,
        )
        connection.visitor_id = visitor_id
        self.registry.register(connection, chat.id)

        session_payload = session_out(chat)
        await self.dispatcher.send(
            connection,
            SessionStarted(
                session=session_payload,
                messages=[message_out(m) for m in messages],
            ),
        )
        await self.dispatcher.to_admins(NewSession(session=session_payload))
        logger.info(
            f'Visitor {visitor_id} '
            f'{"started" if created else "resumed"} session {chat.id}'
        )

    async def _on_visitor_message(
        self, connection: ChatConnection, event: VisitorMessage
    ) -> None:
        session_id = connection.session_id
        if not session_id:
            logger.debug(f'visitor_message before start: {connection!r}')
            return
        async with self._session_locks[session_id]:
            message = await self.store.add_message(
                session_id, SenderType.VISITOR, None, event.message
            )
            if message is None:
                logger.info(f'Dropped visitor_message for stale {session_id}')
                return
            first = await self._is_first_visitor_message(session_id)

            payload = message_out(message)
            await self.dispatcher.send(
                connection,
                MessageSent(session_id=session_id, message=payload),
            )
            await self.dispatcher.to_admins(
                NewMessage(session_id=session_id, message=payload)
            )

        if first:
            self._on_first_visitor_message(session_id, message)

    async def _is_first_visitor_message(self, session_id: str) -> bool:
        if self.auto_reply is None and self.notifier is None:
            return False
        try:
            visitor_messages = await self.store.count_messages(
                session_id, SenderType.VISITOR
            )
        except StoreError as e:
            # сообщение уже сохранено, пропускаем автоответ и уведомление
            logger.error(f'First message check for {session_id} failed: {e}')
            return False
        return visitor_messages == 1

    def _on_first_visitor_message(
        self, session_id: str, message: ChatMessage
    ) -> None:
        if self.auto_reply is not None:
            self._spawn(self._send_auto_reply(session_id))
        if self.notifier is not None:
            self._spawn(self._notify(session_id, message))

    # --- admin events ---

    async def _on_admin_join(
        self, connection: ChatConnection, event: AdminJoin
    ) -> None:
        self.registry.register(connection)

    async def _on_admin_message(
        self, connection: ChatConnection, event: AdminMessage
    ) -> None:
        session_id = event.session_id
        async with self._session_locks[session_id]:
            message = await self.store.add_message(
                session_id,
                SenderType.ADMIN,
                connection.admin_name,
                event.message,
            )
            if message is None:
                logger.info(
                    f'Dropped admin_message for stale session {session_id}'
                )
                return

            payload = message_out(message)
            await self.dispatcher.send(
                connection,
                MessageSent(session_id=session_id, message=payload),
            )
            await self.dispatcher.to_session_and_admins(
                session_id,
                NewMessage(session_id=session_id, message=payload),
                exclude=connection,
            )

    async def _on_close_session(
        self, connection: ChatConnection, event: CloseSession
    ) -> None:
        _, closed = await self.close_session(event.session_id)
        if not closed:
            logger.info(
                f'Dropped close_session for stale session {event.session_id}'
            )

    async def _on_load_messages(
        self, connection: ChatConnection, event: LoadMessages
    ) -> None:
        chat = await self.store.get_session(event.session_id)
        if chat is None:
            logger.debug(f'load_messages for unknown {event.session_id}')
            return
        messages = await self.store.get_messages(chat.id)
        await self.dispatcher.send(
            connection,
            MessagesLoaded(
                session_id=chat.id,
                messages=[message_out(m) for m in messages],
            ),
        )

    # --- operations shared with REST and the scheduler ---

    async def close_session(
        self, session_id: str
    ) -> tuple[ChatSession | None, bool]:
        """
        Close a session and tell its visitor and all admins. Returns the
        session and whether it was open before this call.
        """
        async with self._session_locks[session_id]:
            chat, closed = await self.store.close_session(session_id)
            if closed:
                await self._announce_closed(chat)
        if closed or chat is None:
            self._session_locks.pop(session_id, None)
        return chat, closed

    async def close_inactive_sessions(
        self, older_than: datetime
    ) -> list[ChatSession]:
        closed = await self.store.close_inactive_sessions(older_than)
        for chat in closed:
            async with self._session_locks[chat.id]:
                await self._announce_closed(chat)
            self._session_locks.pop(chat.id, None)
        return closed

    async def _announce_closed(self, chat: ChatSession) -> None:
        await self.dispatcher.to_session_and_admins(
            chat.id,
            SessionClosed(session_id=chat.id, session=session_out(chat)),
        )

    # --- background work ---

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending_tasks(self) -> list[asyncio.Task]:
        return list(self._tasks)

    async def _send_auto_reply(self, session_id: str) -> None:
        await asyncio.sleep(self.auto_reply.delay)
        async with self._session_locks[session_id]:
            try:
                reply = await self.store.add_message(
                    session_id,
                    SenderType.ADMIN,
                    self.auto_reply.sender_name,
                    self.auto_reply.text,
                )
            except StoreError as e:
                logger.error(f'Auto-reply for {session_id} not stored: {e}')
                return
            if reply is None:
                return
            await self.dispatcher.to_session_and_admins(
                session_id,
                NewMessage(
                    session_id=session_id, message=message_out(reply)
                ),
            )

    async def _notify(self, session_id: str, message: ChatMessage) -> None:
        try:
            chat = await self.store.get_session(session_id)
        except StoreError as e:
            logger.error(f'Notification for {session_id} skipped: {e}')
            return
        if chat is not None:
            await self.notifier(chat, message)

    async def aclose(self) -> None:
        tasks = self.pending_tasks
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
