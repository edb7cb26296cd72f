import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from livechat.core.constants import (WS_CHAT_PATH, WS_CLOSE_INVALID_TOKEN,
                                     WS_CLOSE_POLICY_VIOLATION)
from livechat.services.auth import admin_from_token
from livechat.services.chat_hub import ChatHub
from livechat.services.chat_registry import ChatConnection, ConnectionRole

logger = logging.getLogger('livechat')

router = APIRouter()


def _build_connection(websocket: WebSocket) -> ChatConnection | None:
    """
    Identity of the socket from its query string, ``None`` when an admin
    token does not validate.

    ``?type=visitor&visitorId=...&sessionId=...`` or
    ``?type=admin&token=<JWT>``.
    """
    params = websocket.query_params
    role = ConnectionRole(params.get('type') or ConnectionRole.VISITOR)
    if role == ConnectionRole.ADMIN:
        admin = admin_from_token(params.get('token'))
        if admin is None:
            return None
        return ChatConnection(
            transport=websocket,
            role=role,
            admin_id=admin.id,
            admin_name=admin.name,
        )
    return ChatConnection(
        transport=websocket,
        role=role,
        visitor_id=params.get('visitorId') or None,
    )


@router.websocket(WS_CHAT_PATH)
async def chat_websocket(websocket: WebSocket):
    """
    Live chat socket for visitors and admins.

    Frames are handled one at a time per connection, so the order a
    client sends messages in is the order they are stored in.
    """
    await websocket.accept()
    try:
        connection = _build_connection(websocket)
    except ValueError:
        logger.info(f'Chat socket with unknown role from {websocket.client}')
        await websocket.close(
            code=WS_CLOSE_POLICY_VIOLATION, reason='Unknown connection type'
        )
        return
    if connection is None:
        await websocket.close(
            code=WS_CLOSE_INVALID_TOKEN, reason='Invalid admin token'
        )
        return

    hub: ChatHub = websocket.app.state.chat
    hub.protocol.connect(connection)
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                break
            raw = message.get('text')
            if raw is None:
                raw = message.get('bytes')
            if raw is None:
                continue
            await hub.protocol.handle_frame(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.protocol.disconnect(connection)
