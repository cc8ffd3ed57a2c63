from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import ExpiredSignatureError, JWTError, jwt

from settings import settings

logger = logging.getLogger("payouts.http")


# -----------------------
# Seller access tokens
# -----------------------
# Issued by the marketplace session layer; `sub` is the external identity
# that orders reference as seller_id / buyer_id.

def create_access_token(external_id: str, minutes: Optional[int] = None) -> str:
    issued_at = datetime.now(timezone.utc)
    ttl = timedelta(minutes=minutes or settings.JWT_ACCESS_MINUTES)
    claims = {"sub": external_id, "iat": issued_at, "exp": issued_at + ttl}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def subject_from_token(token: str) -> Optional[str]:
    """External identity of a valid token; None when invalid or expired."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except ExpiredSignatureError:
        logger.info("access_token_rejected reason=expired")
        return None
    except JWTError:
        logger.info("access_token_rejected reason=invalid")
        return None

    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        return None
    return sub
