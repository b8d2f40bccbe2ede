from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_session
from app.core.security import ADMIN_ROLE, decode_access_token
from app.services.topics import SqlTopicStore, TopicService
from app.services.topics.locks import WriteSerializer, build_write_serializer

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


@dataclass(frozen=True)
class Principal:
    subject: str
    role: str | None


async def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    unauthorized = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid authentication credentials",
    )
    try:
        payload = decode_access_token(token)
    except ValueError:
        raise unauthorized
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise unauthorized
    role = payload.get("role")
    return Principal(subject=subject, role=str(role) if role else None)


async def get_current_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.role != ADMIN_ROLE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can manage topics",
        )
    return principal


def get_write_serializer(request: Request) -> WriteSerializer:
    serializer = getattr(request.app.state, "write_serializer", None)
    if serializer is None:
        # Lifespan not running (bare ASGI transport): serialize within this request only.
        return build_write_serializer()
    return serializer


async def get_topic_service(
    session: AsyncSession = Depends(get_session),
    serializer: WriteSerializer = Depends(get_write_serializer),
) -> TopicService:
    return TopicService(SqlTopicStore(session), serializer=serializer)
