import enum
from dataclasses import dataclass
from typing import Dict

from fastapi.security import APIKeyHeader
from fastapi import Depends, HTTPException, Security, status

from library_lending.config import settings


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class Role(str, enum.Enum):
    ADMIN = "admin"
    USER = "user"


@dataclass(frozen=True)
class Principal:
    username: str
    role: Role


def _known_principals() -> Dict[str, Principal]:
    return {
        settings.ADMIN_API_KEY: Principal(username="admin", role=Role.ADMIN),
        settings.USER_API_KEY: Principal(username="user", role=Role.USER),
    }


async def get_principal(api_key: str = Security(api_key_header)) -> Principal:
    """
    Dependency resolving the X-API-Key header to a principal.

    The credential is opaque: it is only looked up, never parsed.

    Raises:
        HTTPException: 401 if the key is missing or unknown
    """
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API Key is missing. Include it in the 'X-API-Key' header.",
        )

    principal = _known_principals().get(api_key)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API Key.",
        )
    return principal


async def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """
    Usage in endpoints:
    @app.post("/books", dependencies=[Depends(require_admin)])

    Raises:
        HTTPException: 403 if the principal is not an admin
    """
    if principal.role != Role.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required. Access denied.",
        )
    return principal
