import secrets
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from db.database import get_db
from db.models import AuthSession, User
from db.schemas import InsertAuthSession
from services.storage import HealthStorage
from utils.datetime_utils import to_naive_utc, utcnow_naive

security = HTTPBearer(auto_error=False)


def create_identity_token(
    sub: str,
    email: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
    profile_image_url: str | None = None,
    expires_in_seconds: int = 300,
) -> str:
    """Sign an identity token the way the identity provider does. Used by tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(sub),
        "email": email,
        "first_name": first_name,
        "last_name": last_name,
        "profile_image_url": profile_image_url,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in_seconds),
    }
    if settings.IDENTITY_TOKEN_AUDIENCE:
        payload["aud"] = settings.IDENTITY_TOKEN_AUDIENCE
    return jwt.encode(payload, settings.IDENTITY_TOKEN_SECRET, algorithm=settings.IDENTITY_TOKEN_ALGORITHM)


def decode_identity_token(token: str) -> dict:
    options = {"require": ["sub", "exp"]}
    try:
        claims = jwt.decode(
            token,
            settings.IDENTITY_TOKEN_SECRET,
            algorithms=[settings.IDENTITY_TOKEN_ALGORITHM],
            audience=settings.IDENTITY_TOKEN_AUDIENCE,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Identity token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid identity token")
    if not str(claims.get("sub") or "").strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid identity token")
    return claims


def start_session(storage: HealthStorage, user: User, claims: dict) -> AuthSession:
    expire = utcnow_naive() + timedelta(seconds=max(int(settings.SESSION_MAX_AGE_SECONDS), 1))
    return storage.create_session(
        InsertAuthSession(
            sid=secrets.token_urlsafe(32),
            sess={"claims": {"sub": user.id, "email": claims.get("email")}, "created_at": utcnow_naive().isoformat()},
            expire=expire,
        )
    )


def session_id_from_request(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None,
) -> str | None:
    if credentials and credentials.credentials:
        return credentials.credentials
    cookie_name = (settings.AUTH_COOKIE_NAME or "").strip() or "healthtracker_session"
    return request.cookies.get(cookie_name) or None


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    sid = session_id_from_request(request, credentials)
    if not sid:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    storage = HealthStorage(db)
    session_row = storage.get_session(sid)
    if session_row is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session not found")
    if to_naive_utc(session_row.expire) <= utcnow_naive():
        storage.delete_session(sid)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired. Please sign in again.")
    user_id = ((session_row.sess or {}).get("claims") or {}).get("sub")
    user = storage.get_user(user_id) if user_id else None
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    request.state.user_id = user.id
    return user
