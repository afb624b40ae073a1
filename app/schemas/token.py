from datetime import datetime

from pydantic import BaseModel

from app.models.token import TokenDuration


class TokenCreate(BaseModel):
    duration: TokenDuration


class TokenRenew(BaseModel):
    userId: int
    duration: TokenDuration


class TokenResponse(BaseModel):
    id: int
    token: str
    duration: str
    status: str
    createdat: datetime
    expiresat: datetime
    userid: int | None = None

    class Config:
        from_attributes = True


class AdminSignIn(BaseModel):
    username: str
    password: str
