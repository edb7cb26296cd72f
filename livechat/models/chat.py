from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import DateTime
from sqlalchemy import Enum as SqlEnum
from sqlalchemy import ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from livechat.core.db import Base


def utcnow() -> datetime:
    # Naive UTC: one representation for sqlite and postgres columns
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class SenderType(str, Enum):
    VISITOR = "visitor"
    ADMIN = "admin"


class ChatSession(Base):
    visitor_id: Mapped[str] = mapped_column(String(255), index=True)

    # Данные посетителя, задаются один раз при создании
    visitor_name: Mapped[str | None] = mapped_column(Text)
    visitor_email: Mapped[str | None] = mapped_column(String(255))

    status: Mapped[SessionStatus] = mapped_column(
        SqlEnum(
            SessionStatus,
            name="chatsessionstatus",
            values_callable=lambda enum: [e.value for e in enum],
        ),
        default=SessionStatus.OPEN,
        index=True,
    )
    last_message_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN

    def __repr__(self):
        return (
            f'<ChatSession {self.id} visitor={self.visitor_id} '
            f'status={self.status}>'
        )


class ChatMessage(Base):
    session_id: Mapped[str] = mapped_column(
        ForeignKey("chatsession.id", ondelete="CASCADE"), index=True
    )
    sender_type: Mapped[SenderType] = mapped_column(
        SqlEnum(
            SenderType,
            name="chatsendertype",
            values_callable=lambda enum: [e.value for e in enum],
        )
    )
    sender_name: Mapped[str | None] = mapped_column(Text)
    message: Mapped[str] = mapped_column(Text)
    # Assigned by the store, strictly increasing within a session
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, index=True
    )

    def __repr__(self):
        return (
            f'<ChatMessage {self.id} session={self.session_id} '
            f'sender={self.sender_type}>'
        )
