from fastapi import Header, HTTPException, Request

from livechat.schemas.auth import AdminPrincipal
from livechat.services.auth import admin_from_token
from livechat.services.chat_hub import ChatHub


def get_chat_hub(request: Request) -> ChatHub:
    return request.app.state.chat


async def require_admin(
    authorization: str | None = Header(default=None),
) -> AdminPrincipal:
    if not authorization:
        raise HTTPException(status_code=401, detail="Not authenticated")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid token")
    admin = admin_from_token(token.strip())
    if admin is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return admin
