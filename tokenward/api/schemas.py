from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _CamelModel(BaseModel):
    # Clients consume camelCase; Python callers may use either spelling
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


class TokenResponse(_CamelModel):
    access_token: str
    refresh_token: str
    token_type: Literal["Bearer"] = "Bearer"
    expires_in_seconds: int = Field(gt=0)
    remember_me: bool = False


class LogoutResponse(_CamelModel):
    success: bool = True
    message: str = "Logged out successfully"
    timestamp: datetime = Field(default_factory=_utcnow)


class LockoutStatusResponse(_CamelModel):
    identifier: str
    locked: bool
    retry_after_seconds: Optional[int] = None
    message: str


class ActionResponse(_CamelModel):
    success: bool
    message: str
    timestamp: datetime = Field(default_factory=_utcnow)


__all__ = [
    "ActionResponse",
    "LockoutStatusResponse",
    "LogoutResponse",
    "TokenResponse",
]
