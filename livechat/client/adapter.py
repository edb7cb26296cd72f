import asyncio
import logging
from typing import Callable, Optional
from uuid import uuid4

import aiohttp
from aiohttp import ClientSession, ClientTimeout, TCPConnector, WSMsgType

from livechat.client.state import (AdminConsoleState, ConnectionState,
                                   VisitorWidgetState, reconnect_delay)
from livechat.core.constants import (RECONNECT_DELAY, RECONNECT_FACTOR,
                                     RECONNECT_JITTER, RECONNECT_MAX_DELAY,
                                     VISITOR_ID_PREFIX, WS_CHAT_PATH)
from livechat.schemas.chat import CamelModel
from livechat.schemas.chat_events import (AdminJoin, AdminMessage,
                                          CloseSession, LoadMessages,
                                          VisitorMessage, VisitorStart,
                                          parse_outbound_event)

logger = logging.getLogger('livechat')

EventCallback = Callable[[object], None]


def generate_visitor_id() -> str:
    return f'{VISITOR_ID_PREFIX}{uuid4().hex[:16]}'


class ChatSocketClient:
    """
    Reconnecting chat socket.

    ``run()`` loops disconnected -> connecting -> connected ->
    disconnected until ``stop()``; each drop waits ``reconnect_delay`` of
    the number of failed attempts in a row before dialing again.
    """

    def __init__(
        self,
        base_url: str,
        state,
        verify_ssl: bool = True,
        on_event: Optional[EventCallback] = None,
        reconnect_base: float = RECONNECT_DELAY,
        reconnect_factor: float = RECONNECT_FACTOR,
        reconnect_max: float = RECONNECT_MAX_DELAY,
        reconnect_jitter: float = RECONNECT_JITTER,
    ):
        self.base_url = base_url.rstrip('/')
        self.state = state
        self.verify_ssl = verify_ssl
        self.on_event = on_event
        self.reconnect_base = reconnect_base
        self.reconnect_factor = reconnect_factor
        self.reconnect_max = reconnect_max
        self.reconnect_jitter = reconnect_jitter
        self.attempt = 0
        self._running = False
        self._session: ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None

    def _make_connector(self):
        return TCPConnector(ssl=(False if not self.verify_ssl else None))

    def _ensure_session(self):
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                connector=self._make_connector(),
                timeout=ClientTimeout(total=None, connect=10),
            )

    async def __aenter__(self):
        self._ensure_session()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.stop()
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session and not self._session.closed:
            await self._session.close()

    @property
    def url(self) -> str:
        return f'{self.base_url}{WS_CHAT_PATH}'

    @property
    def is_connected(self) -> bool:
        return (
            self.state.connection == ConnectionState.CONNECTED
            and self._ws is not None
            and not self._ws.closed
        )

    def query_params(self) -> dict:
        raise NotImplementedError

    def hello(self) -> CamelModel:
        """First frame sent on every (re)connect."""
        raise NotImplementedError

    async def send_hello(self) -> bool:
        return await self.send(self.hello())

    def next_delay(self) -> float:
        return reconnect_delay(
            self.attempt,
            base=self.reconnect_base,
            factor=self.reconnect_factor,
            max_delay=self.reconnect_max,
            jitter=self.reconnect_jitter,
        )

    def stop(self) -> None:
        self._running = False

    async def run(self) -> None:
        self._ensure_session()
        self._running = True
        while self._running:
            self.state.connection = ConnectionState.CONNECTING
            try:
                async with self._session.ws_connect(
                    self.url, params=self.query_params()
                ) as ws:
                    self._ws = ws
                    self.state.connection = ConnectionState.CONNECTED
                    self.attempt = 0
                    logger.info(f'Chat socket connected: {self.url}')
                    await self.send_hello()
                    async for msg in ws:
                        if msg.type == WSMsgType.TEXT:
                            self.handle_raw(msg.data)
                        elif msg.type in (WSMsgType.CLOSE, WSMsgType.ERROR):
                            break
            except aiohttp.ClientError as e:
                logger.warning(f'Chat socket error {self.url}: {e}')
            finally:
                self._ws = None
                self.state.connection = ConnectionState.DISCONNECTED
            if not self._running:
                break
            delay = self.next_delay()
            self.attempt += 1
            logger.info(f'Chat socket reconnect in {delay:.1f}s')
            await asyncio.sleep(delay)

    def handle_raw(self, raw: str | bytes) -> None:
        event = parse_outbound_event(raw)
        if event is None:
            return
        self.state.apply(event)
        if self.on_event is not None:
            self.on_event(event)

    async def send(self, event: CamelModel) -> bool:
        if self._ws is None or self._ws.closed:
            return False
        await self._ws.send_json(
            event.model_dump(mode='json', by_alias=True, exclude_none=True)
        )
        return True


class VisitorChatClient(ChatSocketClient):
    def __init__(
        self,
        base_url: str,
        visitor_id: str | None = None,
        visitor_name: str | None = None,
        visitor_email: str | None = None,
        **kwargs,
    ):
        super().__init__(base_url, VisitorWidgetState(), **kwargs)
        self.visitor_id = visitor_id or generate_visitor_id()
        self.visitor_name = visitor_name
        self.visitor_email = visitor_email
        # visitor_start sent, session_started not back yet
        self._starting = False

    def query_params(self) -> dict:
        return {
            'type': 'visitor',
            'visitorId': self.visitor_id,
            'sessionId': self.state.session_id or '',
        }

    def hello(self) -> CamelModel:
        return VisitorStart(
            visitor_id=self.visitor_id,
            visitor_name=self.visitor_name,
            visitor_email=self.visitor_email,
        )

    async def send_hello(self) -> bool:
        self._starting = await super().send_hello()
        return self._starting

    def handle_raw(self, raw: str | bytes) -> None:
        super().handle_raw(raw)
        if self.state.session is not None:
            self._starting = False

    def open_panel(self) -> None:
        self.state.open_panel()

    def close_panel(self) -> None:
        self.state.close_panel()

    async def send_message(self, text: str) -> bool:
        text = text.strip()
        if not text or not self.is_connected:
            return False
        if self.state.session is None and not self._starting:
            # the last session was closed, open a new one first
            await self.send_hello()
        self.state.add_optimistic(text, self.visitor_name)
        return await self.send(VisitorMessage(message=text))


class AdminChatClient(ChatSocketClient):
    def __init__(self, base_url: str, token: str, **kwargs):
        super().__init__(base_url, AdminConsoleState(), **kwargs)
        self.token = token

    def query_params(self) -> dict:
        return {'type': 'admin', 'token': self.token}

    def hello(self) -> CamelModel:
        return AdminJoin()

    async def reply(self, session_id: str, text: str) -> bool:
        text = text.strip()
        if not text or not self.is_connected:
            return False
        self.state.add_optimistic(session_id, text)
        return await self.send(
            AdminMessage(session_id=session_id, message=text)
        )

    async def close_session(self, session_id: str) -> bool:
        return await self.send(CloseSession(session_id=session_id))

    async def load_messages(self, session_id: str) -> bool:
        self.state.select(session_id)
        return await self.send(LoadMessages(session_id=session_id))
