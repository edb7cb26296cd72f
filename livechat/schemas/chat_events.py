"""Wire events of the live chat WebSocket protocol.

Every frame is a JSON object with a ``type`` field. Inbound events
(browser -> server) and outbound events (server -> browser) are closed
unions discriminated on that field; anything outside them is dropped by
the parsers below.
"""
import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import Field, StringConstraints, TypeAdapter, ValidationError

from livechat.core.constants import (MAX_EMAIL_LENGTH, MAX_MESSAGE_LENGTH,
                                     MAX_SESSION_ID_LENGTH,
                                     MAX_VISITOR_ID_LENGTH,
                                     MAX_VISITOR_NAME_LENGTH)
from livechat.schemas.chat import CamelModel, ChatMessageOut, ChatSessionOut

logger = logging.getLogger('livechat')

MessageText = Annotated[
    str,
    StringConstraints(
        strip_whitespace=True, min_length=1, max_length=MAX_MESSAGE_LENGTH
    ),
]
SessionId = Annotated[
    str,
    StringConstraints(
        strip_whitespace=True, min_length=1, max_length=MAX_SESSION_ID_LENGTH
    ),
]


# --- browser -> server ---

class VisitorStart(CamelModel):
    type: Literal['visitor_start'] = 'visitor_start'
    visitor_id: Optional[str] = Field(
        default=None, max_length=MAX_VISITOR_ID_LENGTH
    )
    visitor_name: Optional[str] = Field(
        default=None, max_length=MAX_VISITOR_NAME_LENGTH
    )
    visitor_email: Optional[str] = Field(
        default=None, max_length=MAX_EMAIL_LENGTH
    )


class VisitorMessage(CamelModel):
    type: Literal['visitor_message'] = 'visitor_message'
    message: MessageText


class AdminJoin(CamelModel):
    type: Literal['admin_join'] = 'admin_join'


class AdminMessage(CamelModel):
    type: Literal['admin_message'] = 'admin_message'
    session_id: SessionId
    message: MessageText


class CloseSession(CamelModel):
    type: Literal['close_session'] = 'close_session'
    session_id: SessionId


class LoadMessages(CamelModel):
    type: Literal['load_messages'] = 'load_messages'
    session_id: SessionId


INBOUND_EVENT_TYPES = (
    VisitorStart,
    VisitorMessage,
    AdminJoin,
    AdminMessage,
    CloseSession,
    LoadMessages,
)

InboundEvent = Annotated[
    Union[
        VisitorStart,
        VisitorMessage,
        AdminJoin,
        AdminMessage,
        CloseSession,
        LoadMessages,
    ],
    Field(discriminator='type'),
]


# --- server -> browser ---

class SessionStarted(CamelModel):
    type: Literal['session_started'] = 'session_started'
    session: ChatSessionOut
    messages: list[ChatMessageOut] = Field(default_factory=list)


class NewSession(CamelModel):
    type: Literal['new_session'] = 'new_session'
    session: ChatSessionOut


class MessageSent(CamelModel):
    type: Literal['message_sent'] = 'message_sent'
    session_id: str
    message: ChatMessageOut


class NewMessage(CamelModel):
    type: Literal['new_message'] = 'new_message'
    session_id: str
    message: ChatMessageOut


class SessionClosed(CamelModel):
    type: Literal['session_closed'] = 'session_closed'
    session_id: str
    session: Optional[ChatSessionOut] = None


class MessagesLoaded(CamelModel):
    type: Literal['messages_loaded'] = 'messages_loaded'
    session_id: str
    messages: list[ChatMessageOut] = Field(default_factory=list)


class ErrorEvent(CamelModel):
    type: Literal['error'] = 'error'
    code: str
    detail: Optional[str] = None


OutboundEvent = Annotated[
    Union[
        SessionStarted,
        NewSession,
        MessageSent,
        NewMessage,
        SessionClosed,
        MessagesLoaded,
        ErrorEvent,
    ],
    Field(discriminator='type'),
]

inbound_adapter = TypeAdapter(InboundEvent)
outbound_adapter = TypeAdapter(OutboundEvent)


def parse_inbound_event(raw: str | bytes):
    """Parse a browser frame, ``None`` for anything malformed."""
    try:
        return inbound_adapter.validate_json(raw)
    except ValidationError as e:
        logger.debug(f'Dropped malformed chat frame: {e.error_count()} errors')
        return None


def parse_outbound_event(raw: str | bytes):
    try:
        return outbound_adapter.validate_json(raw)
    except ValidationError as e:
        logger.debug(f'Dropped bad server frame: {e.error_count()} errors')
        return None


def serialize_event(event: CamelModel) -> dict:
    return event.model_dump(mode='json', by_alias=True)
