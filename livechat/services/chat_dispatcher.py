import asyncio
import logging
from typing import Iterable

from livechat.schemas.chat import CamelModel
from livechat.schemas.chat_events import serialize_event
from livechat.services.chat_registry import ChatConnection, ConnectionRegistry

logger = logging.getLogger('livechat')


class ChatDispatcher:
    """
    Best-effort fan-out of chat events.

    The event is serialized once and pushed to every recipient
    concurrently. A failed or timed out send drops that connection from
    the registry and never reaches the caller.
    """

    def __init__(
        self, registry: ConnectionRegistry, send_timeout: float = 5.0
    ):
        self.registry = registry
        self.send_timeout = send_timeout

    async def _deliver(
        self, connection: ChatConnection, payload: dict
    ) -> bool:
        try:
            await asyncio.wait_for(
                connection.send_json(payload), timeout=self.send_timeout
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(
                f'Send to {connection!r} timed out, dropping connection'
            )
        except Exception as e:
            logger.warning(
                f'Send to {connection!r} failed ({e!r}), dropping connection'
            )
        self.registry.unregister(connection)
        return False

    async def send_many(
        self,
        connections: Iterable[ChatConnection],
        event: CamelModel,
    ) -> int:
        recipients = list(dict.fromkeys(connections))
        if not recipients:
            return 0
        payload = serialize_event(event)
        results = await asyncio.gather(
            *(self._deliver(c, payload) for c in recipients)
        )
        delivered = sum(results)
        logger.debug(
            f'{payload["type"]} delivered to {delivered}/{len(recipients)}'
        )
        return delivered

    async def send(
        self, connection: ChatConnection, event: CamelModel
    ) -> bool:
        return await self.send_many([connection], event) == 1

    async def to_admins(
        self,
        event: CamelModel,
        exclude: ChatConnection | None = None,
    ) -> int:
        return await self.send_many(
            (c for c in self.registry.all_admins() if c is not exclude),
            event,
        )

    async def to_session(self, session_id: str, event: CamelModel) -> int:
        visitor = self.registry.lookup_by_session(session_id)
        if visitor is None:
            return 0
        return await self.send_many([visitor], event)

    async def to_session_and_admins(
        self,
        session_id: str,
        event: CamelModel,
        exclude: ChatConnection | None = None,
    ) -> int:
        recipients = self.registry.all_admins()
        visitor = self.registry.lookup_by_session(session_id)
        if visitor is not None:
            recipients.append(visitor)
        return await self.send_many(
            (c for c in recipients if c is not exclude), event
        )
