from typing import Optional
from fastapi import Depends, Header, HTTPException, status
from sqlmodel import Session

from .config import CRON_SECRET
from .db import get_session
from .models import User
from .workflow import get_or_create_user


def require_owner(
    x_user_email: Optional[str] = Header(default=None, alias="X-User-Email"),
    x_user_name: Optional[str] = Header(default=None, alias="X-User-Name"),
    session: Session = Depends(get_session),
) -> User:
    # Identity is resolved upstream; the proxy forwards the authenticated email.
    if not x_user_email or "@" not in x_user_email:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user identity")
    return get_or_create_user(session, x_user_email, x_user_name)


def require_cron(authorization: Optional[str] = Header(default=None)):
    if CRON_SECRET and authorization != f"Bearer {CRON_SECRET}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
