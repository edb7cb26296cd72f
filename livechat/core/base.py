from livechat.core.db import Base  # noqa
from livechat.models.chat import ChatMessage, ChatSession  # noqa

__all__ = [
    'Base',
    'ChatSession',
    'ChatMessage',
]
