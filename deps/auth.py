# deps/auth.py
import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from security import subject_from_token
from settings import settings

bearer = HTTPBearer(auto_error=False)


class CurrentUser:
    """Authenticated caller; external_id is the marketplace identity from the token."""

    def __init__(self, external_id: str):
        self.external_id = external_id


def get_current_user(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> CurrentUser:
    if creds is None or (creds.scheme or "").lower() != "bearer":
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")

    external_id = subject_from_token(creds.credentials)
    if external_id is None:
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
    return CurrentUser(external_id=external_id)


def require_internal_token(x_internal_token: Optional[str] = Header(default=None)) -> None:
    """Service-to-service guard for reconciliation and lookup endpoints."""
    expected = (settings.INTERNAL_API_TOKEN or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="INTERNAL_API_DISABLED")
    if not x_internal_token or not hmac.compare_digest(x_internal_token.strip(), expected):
        raise HTTPException(status_code=401, detail="UNAUTHORIZED")
