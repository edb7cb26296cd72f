import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from livechat.api.deps import get_chat_hub, require_admin
from livechat.core.config import settings
from livechat.core.db import get_session
from livechat.core.exceptions import StoreError
from livechat.crud.chat import crud_chat_message, crud_chat_session
from livechat.schemas.auth import AdminPrincipal
from livechat.schemas.chat import (ChatMessageOut, ChatSessionOut,
                                   VisitorSessionLookup)
from livechat.services.chat_hub import ChatHub

logger = logging.getLogger('livechat')

router = APIRouter(prefix='/api')


@router.get(
    '/admin/chat/sessions',
    tags=['chat-admin'],
    status_code=status.HTTP_200_OK,
    response_model=list[ChatSessionOut],
)
async def list_chat_sessions(
    admin: AdminPrincipal = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    sessions = await crud_chat_session.list_recent(session)
    return [ChatSessionOut.model_validate(s) for s in sessions]


@router.get(
    '/admin/chat/sessions/{session_id}/messages',
    tags=['chat-admin'],
    status_code=status.HTTP_200_OK,
    response_model=list[ChatMessageOut],
)
async def list_chat_messages(
    session_id: str,
    admin: AdminPrincipal = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    chat = await crud_chat_session.get_or_404(session, session_id)
    messages = await crud_chat_message.list_for_session(session, chat.id)
    return [ChatMessageOut.model_validate(m) for m in messages]


@router.patch(
    '/admin/chat/sessions/{session_id}/close',
    tags=['chat-admin'],
    status_code=status.HTTP_200_OK,
    response_model=ChatSessionOut,
)
async def close_chat_session(
    session_id: str,
    admin: AdminPrincipal = Depends(require_admin),
    hub: ChatHub = Depends(get_chat_hub),
):
    """Закрыть сессию без сокета; повторный вызов ничего не меняет."""
    try:
        chat, _ = await hub.protocol.close_session(session_id)
    except StoreError:
        raise HTTPException(
            status_code=500, detail='Failed to close chat session'
        )
    if chat is None:
        raise HTTPException(status_code=404, detail='Session not found')
    logger.info(f'Session {session_id} closed by admin {admin.id}')
    return ChatSessionOut.model_validate(chat)


@router.get(
    '/chat/session/{visitor_id}',
    tags=['chat'],
    status_code=status.HTTP_200_OK,
    response_model=VisitorSessionLookup,
)
async def get_visitor_session(
    visitor_id: str,
    session: AsyncSession = Depends(get_session),
):
    chat = await crud_chat_session.get_open_by_visitor(session, visitor_id)
    if chat is None:
        return VisitorSessionLookup()
    messages = await crud_chat_message.list_for_session(
        session, chat.id, limit=settings.chat_history_limit
    )
    return VisitorSessionLookup(
        session=ChatSessionOut.model_validate(chat),
        messages=[ChatMessageOut.model_validate(m) for m in messages],
    )
