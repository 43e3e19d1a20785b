import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth.models import LoginRequest, SessionResponse, UserResponse
from auth.utils import (
    decode_identity_token,
    get_current_user,
    security,
    session_id_from_request,
    start_session,
)
from config import settings
from db.database import get_db
from db.errors import InvalidPayloadError
from db.models import User
from db.schemas import UserRead
from services.rate_limit_service import RateLimitRule, enforce_rate_limit
from services.storage import HealthStorage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _cookie_name() -> str:
    return (settings.AUTH_COOKIE_NAME or "healthtracker_session").strip() or "healthtracker_session"


def _set_session_cookie(response: Response, sid: str, *, max_age_seconds: int) -> None:
    samesite = (settings.AUTH_COOKIE_SAMESITE or "lax").strip().lower()
    if samesite not in {"strict", "lax", "none"}:
        samesite = "lax"
    response.set_cookie(
        key=_cookie_name(),
        value=sid,
        httponly=bool(settings.AUTH_COOKIE_HTTPONLY),
        secure=bool(settings.AUTH_COOKIE_SECURE),
        samesite=samesite,  # type: ignore[arg-type]
        domain=settings.AUTH_COOKIE_DOMAIN,
        path=settings.AUTH_COOKIE_PATH or "/",
        max_age=max(int(max_age_seconds), 1),
    )


def _clear_session_cookie(response: Response) -> None:
    response.delete_cookie(
        key=_cookie_name(),
        domain=settings.AUTH_COOKIE_DOMAIN,
        path=settings.AUTH_COOKIE_PATH or "/",
    )


@router.post("/login", response_model=SessionResponse)
def login(req: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    allowed, retry_after = enforce_rate_limit(
        rule=RateLimitRule(
            endpoint="/api/auth/login",
            limit=settings.RATE_LIMIT_AUTH_LOGIN_ATTEMPTS,
            window_seconds=settings.RATE_LIMIT_AUTH_LOGIN_WINDOW_SECONDS,
        ),
        scope_key=_client_ip(request),
        ip_address=_client_ip(request),
    )
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many login attempts. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )

    claims = decode_identity_token(req.identity_token)
    storage = HealthStorage(db)
    try:
        user = storage.upsert_user(
            {
                "id": str(claims["sub"]),
                "email": claims.get("email"),
                "first_name": claims.get("first_name"),
                "last_name": claims.get("last_name"),
                "profile_image_url": claims.get("profile_image_url"),
            }
        )
    except InvalidPayloadError as exc:
        logger.warning(f"Rejected identity claims for {claims.get('sub')}: {exc.errors}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid identity token")
    session_row = start_session(storage, user, claims)
    _set_session_cookie(response, session_row.sid, max_age_seconds=settings.SESSION_MAX_AGE_SECONDS)
    logger.info(f"User {user.id} signed in")
    return SessionResponse(expires_at=session_row.expire.isoformat(), user=UserRead.model_validate(user))


@router.post("/logout")
def logout(
    request: Request,
    response: Response,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
):
    sid = session_id_from_request(request, credentials)
    if sid:
        HealthStorage(db).delete_session(sid)
    _clear_session_cookie(response)
    return {"status": "ok"}


@router.get("/user", response_model=UserResponse)
def current_user(user: User = Depends(get_current_user)):
    return user


@router.delete("/user")
def delete_account(
    response: Response,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = user.id
    storage = HealthStorage(db)
    storage.delete_user(user_id)
    storage.delete_sessions_for_user(user_id)
    _clear_session_cookie(response)
    logger.info(f"User {user_id} deleted their account")
    return {"status": "deleted"}
