from datetime import datetime

from pydantic import BaseModel, Field


class SignIn(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    password: str = Field(..., min_length=1, max_length=256)


class SignUp(BaseModel):
    # Presence and length rules are checked in session_service so they answer 400
    username: str | None = None
    password: str | None = None
    token: str | None = None


class SetActiveRun(BaseModel):
    runId: str | int


class SignInResponse(BaseModel):
    userId: int
    username: str
    sessionToken: str
    sessionId: str


class SessionDetails(BaseModel):
    username: str
    tokenExpiresAt: datetime | None = None
