from typing import Optional

from pydantic import BaseModel


class AdminPrincipal(BaseModel):
    id: str
    name: str
    email: Optional[str] = None
