"""
Clinic Onboarding - Authentication Utilities
JWT bearer tokens and role dependencies
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from .config import Settings

ACCESS_TOKEN_EXPIRE_HOURS = 24

ROLE_DOCTOR = "doctor"
ROLE_CUSTOMER = "customer"
ROLE_ADMIN = "admin"
ISSUER_ROLES = frozenset({ROLE_DOCTOR, ROLE_ADMIN})

# Bearer token security
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller as carried in the token."""
    user_id: str
    role: str

    @property
    def is_issuer(self) -> bool:
        return self.role in ISSUER_ROLES


def create_access_token(
    user_id: str,
    role: str,
    secret_key: str,
    algorithm: str = "HS256",
    expires_hours: int = ACCESS_TOKEN_EXPIRE_HOURS,
) -> str:
    """Create a JWT access token with role claim."""
    expire = datetime.now(timezone.utc) + timedelta(hours=expires_hours)
    to_encode = {
        "sub": user_id,
        "role": role,
        "exp": expire,
    }
    return jwt.encode(to_encode, secret_key, algorithm=algorithm)


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _credentials_exception(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_principal(token: str, settings: Settings) -> Principal:
    """Decode and validate a JWT token. Raises 401 on any defect."""
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except ExpiredSignatureError:
        raise _credentials_exception("Token has expired")
    except JWTError:
        raise _credentials_exception()

    user_id = payload.get("sub")
    if not user_id:
        raise _credentials_exception()
    return Principal(user_id=str(user_id), role=payload.get("role") or ROLE_CUSTOMER)


async def get_current_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """Dependency to get the current authenticated caller."""
    return decode_principal(credentials.credentials, _settings(request))


async def get_optional_principal(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
) -> Optional[Principal]:
    """Like get_current_principal, but anonymous callers get None."""
    if credentials is None:
        return None
    return decode_principal(credentials.credentials, _settings(request))


async def require_issuer(principal: Principal = Depends(get_current_principal)) -> Principal:
    """
    Dependency to require an issuer (doctor or admin) role.
    Use this on code issuance and management routes.
    """
    if not principal.is_issuer:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Issuer access required",
        )
    return principal


async def require_admin(principal: Principal = Depends(get_current_principal)) -> Principal:
    """
    Dependency to require admin role.
    Use this on security alert review routes.
    """
    if principal.role != ROLE_ADMIN:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return principal
