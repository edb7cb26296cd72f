import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from livechat.core.config import settings
from livechat.services.chat_dispatcher import ChatDispatcher
from livechat.services.chat_protocol import AutoReply, ChatProtocolHandler
from livechat.services.chat_registry import ConnectionRegistry
from livechat.services.notifications import (notify_new_chat,
                                             telegram_configured)
from livechat.services.session_store import ChatSessionStore

logger = logging.getLogger('livechat')


class ChatHub:
    """Store, registry, dispatcher and protocol handler of one process."""

    def __init__(
        self,
        store: ChatSessionStore,
        send_timeout: float = 5.0,
        history_limit: int = 50,
        auto_reply: AutoReply | None = None,
        notifier=None,
    ):
        self.store = store
        self.registry = ConnectionRegistry()
        self.dispatcher = ChatDispatcher(self.registry, send_timeout)
        self.protocol = ChatProtocolHandler(
            store,
            self.registry,
            self.dispatcher,
            history_limit=history_limit,
            auto_reply=auto_reply,
            notifier=notifier,
        )

    async def aclose(self) -> None:
        await self.protocol.aclose()


def create_chat_hub(
    session_factory: async_sessionmaker[AsyncSession],
) -> ChatHub:
    auto_reply = None
    if settings.chat_auto_reply_text:
        auto_reply = AutoReply(
            text=settings.chat_auto_reply_text,
            delay=settings.chat_auto_reply_delay,
            sender_name=settings.chat_support_name,
        )
    notifier = notify_new_chat if telegram_configured() else None
    if notifier is None:
        logger.info('Telegram not configured, operator notifications off')
    return ChatHub(
        ChatSessionStore(session_factory),
        send_timeout=settings.chat_send_timeout,
        history_limit=settings.chat_history_limit,
        auto_reply=auto_reply,
        notifier=notifier,
    )
