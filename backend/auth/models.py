from pydantic import BaseModel, Field

from db.schemas import UserRead


class LoginRequest(BaseModel):
    identity_token: str = Field(min_length=1)


class SessionResponse(BaseModel):
    status: str = "ok"
    expires_at: str | None = None
    user: UserRead


UserResponse = UserRead
