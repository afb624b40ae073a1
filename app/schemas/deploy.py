from typing import Any, Dict, Literal

from pydantic import BaseModel, Field


class ModalRequest(BaseModel):
    modal_name: str = Field(..., min_length=1, max_length=100)


class ModalAction(BaseModel):
    data: Dict[str, Any] = Field(default_factory=dict)
    username: str = Field(..., min_length=1, max_length=100)


class TunnelAction(BaseModel):
    action: Literal["start", "stop", "update"]
    formNumber: int = Field(..., ge=1, le=5)
    formData: Dict[str, Any]
    logicalUsername: str | None = Field(None, max_length=100)
