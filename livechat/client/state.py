"""Client-side chat state, free of any I/O.

Mirrors what the visitor widget and the admin console keep in the
browser: the connection status, the rendered message list with optimistic
echo, the unread badge and the admin session list.
"""
import itertools
import random
from enum import Enum
from typing import Callable, Iterable, Optional

from livechat.core.constants import (RECONNECT_DELAY, RECONNECT_FACTOR,
                                     RECONNECT_JITTER, RECONNECT_MAX_DELAY,
                                     TEMP_MESSAGE_PREFIX)
from livechat.models.chat import SenderType, SessionStatus, utcnow
from livechat.schemas.chat import ChatMessageOut, ChatSessionOut
from livechat.schemas.chat_events import (ErrorEvent, MessagesLoaded,
                                          MessageSent, NewMessage, NewSession,
                                          SessionClosed, SessionStarted)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def reconnect_delay(
    attempt: int,
    base: float = RECONNECT_DELAY,
    factor: float = RECONNECT_FACTOR,
    max_delay: float = RECONNECT_MAX_DELAY,
    jitter: float = RECONNECT_JITTER,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Seconds to wait before reconnect attempt number ``attempt`` (0-based).

    Exponential growth capped at ``max_delay``, then spread by up to
    ``jitter`` of itself in either direction. ``factor=1, jitter=0`` gives
    a fixed delay of ``base``.
    """
    delay = min(max_delay, base * factor ** max(attempt, 0))
    if jitter:
        delay *= 1 + jitter * (2 * rand() - 1)
    return max(0.0, delay)


def is_temp(message: ChatMessageOut) -> bool:
    return message.id.startswith(TEMP_MESSAGE_PREFIX)


class MessageList:
    """
    Messages ordered by ``created_at``, ties in arrival order.

    Temp entries are the optimistic echoes still waiting for the server;
    they always stay at the tail, in the order they were typed.
    """

    def __init__(self, messages: Iterable[ChatMessageOut] = ()):
        self._items: list[ChatMessageOut] = []
        self._temp_ids = itertools.count(1)
        self.replace_all(messages)

    def __iter__(self):
        return iter(self._items)

    def __len__(self):
        return len(self._items)

    @property
    def items(self) -> list[ChatMessageOut]:
        return list(self._items)

    def has(self, message_id: str) -> bool:
        return any(m.id == message_id for m in self._items)

    def _insert(self, message: ChatMessageOut) -> None:
        index = len(self._items)
        while index > 0:
            previous = self._items[index - 1]
            if not is_temp(previous) and (
                previous.created_at <= message.created_at
            ):
                break
            index -= 1
        self._items.insert(index, message)

    def add_optimistic(
        self,
        session_id: str,
        sender_type: SenderType,
        text: str,
        sender_name: Optional[str] = None,
    ) -> str:
        temp_id = f'{TEMP_MESSAGE_PREFIX}{next(self._temp_ids)}'
        self._items.append(
            ChatMessageOut(
                id=temp_id,
                session_id=session_id,
                sender_type=sender_type,
                sender_name=sender_name,
                message=text,
                created_at=utcnow(),
            )
        )
        return temp_id

    def confirm(self, message: ChatMessageOut) -> None:
        """
        Drop the first temp entry with the same sender type and body and
        put the confirmed message in its ``created_at`` place. A message
        already known by id is ignored.
        """
        if self.has(message.id):
            return
        for index, item in enumerate(self._items):
            if (
                is_temp(item)
                and item.sender_type == message.sender_type
                and item.message == message.message
            ):
                del self._items[index]
                break
        self._insert(message)

    def add(self, message: ChatMessageOut) -> bool:
        if self.has(message.id):
            return False
        self._insert(message)
        return True

    def replace_all(
        self,
        messages: Iterable[ChatMessageOut],
        keep_pending: bool = False,
    ) -> None:
        pending = self.pending() if keep_pending else []
        self._items = sorted(
            (m for m in messages if not is_temp(m)),
            key=lambda m: m.created_at,
        )
        self._items.extend(pending)

    def clear(self) -> None:
        self._items = []

    def pending(self) -> list[ChatMessageOut]:
        return [m for m in self._items if is_temp(m)]


class VisitorWidgetState:
    def __init__(self):
        self.connection = ConnectionState.DISCONNECTED
        self.session: Optional[ChatSessionOut] = None
        self.messages = MessageList()
        self.is_open = False
        self.has_unread = False
        self.last_error: Optional[ErrorEvent] = None

    @property
    def session_id(self) -> Optional[str]:
        return self.session.id if self.session else None

    @property
    def status_label(self) -> str:
        if self.connection == ConnectionState.CONNECTED:
            return 'Online'
        return 'Connecting'

    def open_panel(self) -> None:
        self.is_open = True
        self.has_unread = False

    def close_panel(self) -> None:
        self.is_open = False

    def add_optimistic(self, text: str, sender_name: str | None = None) -> str:
        return self.messages.add_optimistic(
            self.session_id or '', SenderType.VISITOR, text, sender_name
        )

    def apply(self, event) -> None:
        if isinstance(event, SessionStarted):
            # messages typed while no session was open are about to be
            # confirmed into the new one
            keep_pending = self.session is None
            self.session = event.session
            self.messages.replace_all(
                event.messages, keep_pending=keep_pending
            )
        elif isinstance(event, MessageSent):
            self.messages.confirm(event.message)
        elif isinstance(event, NewMessage):
            if self.session_id and event.session_id != self.session_id:
                return
            if self.messages.add(event.message) and not self.is_open:
                self.has_unread = True
        elif isinstance(event, SessionClosed):
            if event.session_id == self.session_id:
                self.session = None
                self.messages.clear()
        elif isinstance(event, ErrorEvent):
            self.last_error = event


class AdminConsoleState:
    def __init__(self):
        self.connection = ConnectionState.DISCONNECTED
        self.sessions: list[ChatSessionOut] = []
        self.selected_session_id: Optional[str] = None
        self.thread = MessageList()
        self.last_error: Optional[ErrorEvent] = None

    def get_session(self, session_id: str) -> Optional[ChatSessionOut]:
        for chat in self.sessions:
            if chat.id == session_id:
                return chat
        return None

    def load_sessions(self, sessions: Iterable[ChatSessionOut]) -> None:
        self.sessions = list(sessions)
        self._sort_sessions()

    def select(self, session_id: str) -> None:
        self.selected_session_id = session_id
        self.thread.clear()

    def _sort_sessions(self) -> None:
        self.sessions.sort(key=lambda s: s.last_message_at, reverse=True)

    def _upsert_session(self, chat: ChatSessionOut) -> None:
        for index, existing in enumerate(self.sessions):
            if existing.id == chat.id:
                self.sessions[index] = chat
                break
        else:
            self.sessions.append(chat)
        self._sort_sessions()

    def _touch_session(self, message: ChatMessageOut) -> None:
        chat = self.get_session(message.session_id)
        if chat is not None and message.created_at > chat.last_message_at:
            self._upsert_session(
                chat.model_copy(update={'last_message_at': message.created_at})
            )

    def add_optimistic(self, session_id: str, text: str) -> Optional[str]:
        if session_id != self.selected_session_id:
            return None
        return self.thread.add_optimistic(session_id, SenderType.ADMIN, text)

    def apply(self, event) -> None:
        if isinstance(event, NewSession):
            self._upsert_session(event.session)
        elif isinstance(event, NewMessage):
            self._touch_session(event.message)
            if event.session_id == self.selected_session_id:
                self.thread.add(event.message)
        elif isinstance(event, MessageSent):
            self._touch_session(event.message)
            if event.session_id == self.selected_session_id:
                self.thread.confirm(event.message)
        elif isinstance(event, SessionClosed):
            if event.session is not None:
                self._upsert_session(event.session)
            else:
                chat = self.get_session(event.session_id)
                if chat is not None:
                    self._upsert_session(
                        chat.model_copy(
                            update={'status': SessionStatus.CLOSED}
                        )
                    )
        elif isinstance(event, MessagesLoaded):
            if event.session_id == self.selected_session_id:
                self.thread.replace_all(event.messages)
        elif isinstance(event, ErrorEvent):
            self.last_error = event
