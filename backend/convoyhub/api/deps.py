from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from convoyhub.core.database import get_session
from convoyhub.core.security import decode_access_token
from convoyhub.repositories.convoys import ConvoyRepository
from convoyhub.repositories.users import UserRepository
from convoyhub.services.convoys import ConvoyService

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> int:
    user_id = decode_access_token(credentials.credentials) if credentials else None
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id


async def get_optional_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[int]:
    if credentials is None:
        return None
    return decode_access_token(credentials.credentials)


async def get_convoy_service(session: AsyncSession = Depends(get_session)) -> ConvoyService:
    return ConvoyService(ConvoyRepository(session), UserRepository(session))
