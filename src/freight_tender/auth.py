"""
Caller identity checks
"""
from typing import Literal, Optional

from pydantic import BaseModel

from .errors import AuthError


class AuthContext(BaseModel):
    user_id: str
    email: str = ""
    role: Literal["user", "admin"] = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def require_auth(actor: Optional[AuthContext]) -> AuthContext:
    if actor is None or not actor.user_id:
        raise AuthError("Authentication required", 401)
    return actor


def require_admin(actor: Optional[AuthContext]) -> AuthContext:
    actor = require_auth(actor)
    if not actor.is_admin:
        raise AuthError("Admin access required", 403)
    return actor
