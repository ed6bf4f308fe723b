from __future__ import annotations

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from src.app.db import db_session
from src.core.credentials import generate_access_token, hash_access_token
from src.db.models import AccessToken


security = HTTPBearer(auto_error=False)


def resolve_user_id(session: Session, token: Optional[str]) -> Optional[str]:
    t = (token or "").strip()
    if not t:
        return None
    row = (
        session.query(AccessToken)
        .filter(AccessToken.token_hash == hash_access_token(t), AccessToken.revoked.is_(False))
        .one_or_none()
    )
    return row.user_id if row is not None else None


def issue_access_token(session: Session, *, user_id: str, label: Optional[str] = None) -> str:
    """Mint a bearer token for a user. Only the sha256 is stored; the plaintext is returned once."""
    token = generate_access_token()
    session.add(AccessToken(token_hash=hash_access_token(token), user_id=user_id, label=label))
    session.commit()
    return token


def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(db_session),
) -> str:
    user_id = resolve_user_id(session, credentials.credentials if credentials is not None else None)
    if user_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user_id
