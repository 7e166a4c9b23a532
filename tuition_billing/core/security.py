import uuid
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from tuition_billing.core.config import JWT_SECRET, JWT_ALGO
from tuition_billing.core.exceptions import UnauthorizedError, ForbiddenError
from tuition_billing.models.user_model import User, UserRole
from tuition_billing.utils.database import get_db

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    user_id: uuid.UUID
    roles: frozenset

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def create_access_token(user_id: uuid.UUID, **claims) -> str:
    payload = {"sub": str(user_id), **claims}
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGO)


def decode_token(token: str) -> uuid.UUID:
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGO])
        return uuid.UUID(str(payload["sub"]))
    except (jwt.PyJWTError, KeyError, ValueError):
        raise UnauthorizedError("Invalid token")


def get_current_user(
        authorization: Optional[str] = Header(None),
        db: Session = Depends(get_db),
) -> Principal:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise UnauthorizedError("Missing authorization header")

    user_id = decode_token(authorization.split(" ", 1)[1].strip())

    user = db.query(User).filter(User.id == user_id).first()
    if not user or user.deleted_at is not None:
        raise UnauthorizedError("Unknown user")

    roles = db.query(UserRole.role).filter(UserRole.user_id == user_id).all()
    return Principal(user_id=user_id, roles=frozenset(r[0] for r in roles))


def ensure_admin(principal: Optional[Principal]):
    if principal is None or not principal.is_admin:
        raise ForbiddenError("Admin access required")


def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    ensure_admin(principal)
    return principal
