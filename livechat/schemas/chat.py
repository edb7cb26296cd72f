from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from livechat.core.constants import (MAX_EMAIL_LENGTH, MAX_VISITOR_ID_LENGTH,
                                     MAX_VISITOR_NAME_LENGTH)
from livechat.models.chat import SenderType, SessionStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ChatSessionCreate(BaseModel):
    visitor_id: str = Field(
        ..., min_length=1, max_length=MAX_VISITOR_ID_LENGTH
    )
    visitor_name: Optional[str] = Field(
        default=None, max_length=MAX_VISITOR_NAME_LENGTH
    )
    visitor_email: Optional[str] = Field(
        default=None, max_length=MAX_EMAIL_LENGTH
    )


class ChatMessageCreate(BaseModel):
    session_id: str
    sender_type: SenderType
    sender_name: Optional[str] = None
    message: str
    created_at: datetime


class ChatSessionOut(CamelModel):
    id: str
    visitor_id: str
    visitor_name: Optional[str] = None
    visitor_email: Optional[str] = None
    status: SessionStatus
    last_message_at: datetime
    created_at: datetime


class ChatMessageOut(CamelModel):
    id: str
    session_id: str
    sender_type: SenderType
    sender_name: Optional[str] = None
    message: str
    created_at: datetime


class VisitorSessionLookup(CamelModel):
    session: Optional[ChatSessionOut] = None
    messages: list[ChatMessageOut] = Field(default_factory=list)
