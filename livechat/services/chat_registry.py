import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger('livechat')


class ConnectionRole(str, Enum):
    VISITOR = "visitor"
    ADMIN = "admin"


@runtime_checkable
class ChatTransport(Protocol):
    """Anything that can push a JSON frame to one browser."""

    async def send_json(self, data: Dict[str, Any]) -> None:
        ...


@dataclass(eq=False)
class ChatConnection:
    """One live socket and the identity it was opened with."""

    transport: ChatTransport
    role: ConnectionRole
    visitor_id: Optional[str] = None
    session_id: Optional[str] = None
    admin_id: Optional[str] = None
    admin_name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ConnectionRole.ADMIN

    async def send_json(self, data: Dict[str, Any]) -> None:
        await self.transport.send_json(data)

    def __repr__(self):
        if self.is_admin:
            return f'<ChatConnection admin={self.admin_id}>'
        return (
            f'<ChatConnection visitor={self.visitor_id} '
            f'session={self.session_id}>'
        )


class ConnectionRegistry:
    """
    Maps live connections to the admin pool or to a visitor session.

    Mutations never await, so on the event loop each call is atomic with
    respect to other coroutines and needs no lock.
    """

    def __init__(self):
        # dict keeps join order for deterministic fan-out
        self._admins: dict[ChatConnection, None] = {}
        self._by_session: dict[str, ChatConnection] = {}

    def register(
        self,
        connection: ChatConnection,
        session_id: str | None = None,
    ) -> None:
        """
        Admin connections join the admin pool; visitor connections are
        bound to ``session_id``. A newer visitor connection for the same
        session replaces the older binding, the old socket is left open
        and just stops receiving fan-out.
        """
        if connection.is_admin:
            self._admins[connection] = None
            return
        if not session_id:
            raise ValueError('Visitor connection requires a session id')

        previous_session = connection.session_id
        if (
            previous_session
            and previous_session != session_id
            and self._by_session.get(previous_session) is connection
        ):
            del self._by_session[previous_session]

        evicted = self._by_session.get(session_id)
        if evicted is not None and evicted is not connection:
            logger.info(
                f'Session {session_id}: newer visitor connection '
                f'replaces {evicted!r}'
            )
        self._by_session[session_id] = connection
        connection.session_id = session_id

    def unregister(self, connection: ChatConnection) -> None:
        self._admins.pop(connection, None)
        session_id = connection.session_id
        if session_id and self._by_session.get(session_id) is connection:
            del self._by_session[session_id]

    def lookup_by_session(self, session_id: str) -> ChatConnection | None:
        return self._by_session.get(session_id)

    def all_admins(self) -> list[ChatConnection]:
        return list(self._admins)

    def is_registered(self, connection: ChatConnection) -> bool:
        if connection in self._admins:
            return True
        session_id = connection.session_id
        return bool(
            session_id and self._by_session.get(session_id) is connection
        )

    def __len__(self) -> int:
        return len(self._admins) + len(self._by_session)
