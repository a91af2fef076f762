"""Pydantic schemas for credentials and the authenticated identity."""
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Credential(BaseModel):
    """Opaque bearer credential issued by the authentication endpoint.

    The core only ever reads it; refreshing is the authenticator's job.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    token: str = Field(..., description="Bearer token")
    refresh_token: Optional[str] = Field(
        default=None, alias="refreshToken", description="Refresh token"
    )


class SessionIdentity(BaseModel):
    """The authenticated user; persisted as the last-known identity."""
    model_config = ConfigDict(populate_by_name=True)

    id: Union[int, str] = Field(..., alias="userId", description="Server user id")
    username: str = Field(..., description="Login name")


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
