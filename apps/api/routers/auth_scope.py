"""Authentication dependencies resolving the calling account."""

import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from services.credits import ensure_account
from services.messages import normalize_locale
from services.session_token import decode_session_token


logger = logging.getLogger(__name__)
auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve authenticated user from Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = decode_session_token(credentials.credentials)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(user_id=claims.user_id, email=claims.email, name=claims.name)


def request_locale(request: Request) -> str:
    """Locale from ?lang=, then Accept-Language."""
    return normalize_locale(request.query_params.get("lang") or request.headers.get("accept-language"))


async def get_account(
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
) -> User:
    """The caller's credit account, created with the welcome grant on first sight."""
    if getattr(request.state, "account", None) is not None:
        return request.state.account
    account = await ensure_account(
        auth.user_id,
        db,
        email=auth.email,
        name=auth.name,
        locale=request_locale(request),
    )
    if account.account_status != "active":
        raise HTTPException(status_code=403, detail="Account is not active.")
    request.state.account = account
    return account


async def require_admin(account: User = Depends(get_account)) -> User:
    if not account.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return account


async def get_locale(request: Request, account: User = Depends(get_account)) -> str:
    """Explicit request language first, then the account's preference."""
    explicit = request.query_params.get("lang") or request.headers.get("accept-language")
    return normalize_locale(explicit or account.preferred_language)


async def require_internal_service(
    x_service_token: Optional[str] = Header(default=None),
) -> bool:
    """Gate for calls made by the reading generator, never by end users."""
    expected = (settings.INTERNAL_SERVICE_TOKEN or "").strip()
    if not expected:
        logger.error("INTERNAL_SERVICE_TOKEN is not configured; internal endpoint refused")
        raise HTTPException(status_code=503, detail="Internal service token not configured.")
    if not x_service_token:
        raise HTTPException(status_code=401, detail="Missing service token.")
    if not secrets.compare_digest(x_service_token, expected):
        logger.warning("Rejected internal call with an invalid service token")
        raise HTTPException(status_code=403, detail="Invalid service token.")
    return True
