"""Authorization for privileged calls.

One capability, two roles:
- ``admin``: the single shared back-office credential, exchanged for a JWT at /admin/login
- ``service``: static bearer tokens held by trusted internal callers (STOCK_MODIFICATION_TOKEN, ADMIN_STOCK_TOKEN)
"""
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

security = HTTPBearer(auto_error=False)


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def authenticate_admin(username: str, password: str) -> bool:
    if not hmac.compare_digest(username or "", config.ADMIN_USERNAME):
        return False
    if config.ADMIN_PASSWORD_HASH:
        return verify_password(password, config.ADMIN_PASSWORD_HASH)
    if config.ADMIN_PASSWORD:
        return hmac.compare_digest(password or "", config.ADMIN_PASSWORD)
    logger.error("Admin login attempted but no ADMIN_PASSWORD or ADMIN_PASSWORD_HASH is configured")
    return False


def create_access_token(data: dict) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def _service_tokens():
    return [t for t in (config.STOCK_MODIFICATION_TOKEN, config.ADMIN_STOCK_TOKEN) if t]


def resolve_principal(token: Optional[str]) -> Optional[Dict]:
    if not token:
        return None
    for candidate in _service_tokens():
        if hmac.compare_digest(token, candidate):
            return {"role": "service", "username": None}
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError:
        return None
    if payload.get("role") != "admin" or payload.get("sub") != config.ADMIN_USERNAME:
        return None
    return {"role": "admin", "username": payload["sub"]}


def _log_attempt(request: Request, principal: Optional[Dict], action: str, has_token: bool) -> None:
    entry = {
        "action": action,
        "authorized": principal is not None,
        "role": principal["role"] if principal else None,
        "ip": request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or "unknown",
        "user_agent": request.headers.get("user-agent") or "unknown",
        "has_auth_header": has_token,
    }
    if principal:
        logger.info("Authorization succeeded: %s", entry)
    else:
        logger.warning("Authorization failed: %s", entry)


def get_optional_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Dict]:
    return resolve_principal(credentials.credentials if credentials else None)


def get_stock_authority(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    """Admin or service token."""
    principal = resolve_principal(credentials.credentials if credentials else None)
    _log_attempt(request, principal, request.url.path, credentials is not None)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized stock modification",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def get_current_admin(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Dict:
    principal = resolve_principal(credentials.credentials if credentials else None)
    _log_attempt(request, principal, request.url.path, credentials is not None)
    if principal is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if principal["role"] != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required.",
        )
    return principal
