from __future__ import annotations
import uuid
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
from sqlalchemy.ext.asyncio import AsyncSession
from app.db import get_session
from app.errors import Unauthorized, Forbidden
from app.security import decode_token
from app.models.user import User
from app.permissions import is_allowed

security = HTTPBearer()

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    session: AsyncSession = Depends(get_session)
) -> User:
    token = credentials.credentials
    try:
        data = decode_token(token)
    except jwt.PyJWTError:
        raise Unauthorized("Invalid token")
    if data.get("type") != "access":
        raise Unauthorized("Wrong token type")
    try:
        user_id = uuid.UUID(str(data.get("sub")))
    except ValueError:
        raise Unauthorized("Invalid subject")
    user = await session.get(User, user_id)
    if not user:
        raise Unauthorized("User not found")
    return user

def require(action: str):
    """Dependency factory: current user, provided their role permits `action`."""
    async def _dep(user: User = Depends(get_current_user)) -> User:
        if not is_allowed(user.role, action):
            raise Forbidden(f"Role '{user.role}' may not perform {action}")
        return user
    return _dep
