"""Data models for the delivery gateway."""

import json
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerateAirPlayUrlRequest(BaseModel):
    """Request body for minting an AirPlay playback URL."""

    model_config = ConfigDict(populate_by_name=True)

    video_id: str = Field(..., alias="videoId", description="Key of the video to cast")

    @field_validator("video_id", mode="before")
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        """Ensure the video id is a non-empty string."""
        if not isinstance(v, str) or not v.strip():
            raise ValueError("videoId cannot be empty")
        return v.strip()


class AirPlayUrlResponse(BaseModel):
    """Response carrying the token-scoped master playlist URL."""

    model_config = ConfigDict(populate_by_name=True)

    airplay_url: str = Field(..., alias="airplayUrl", description="Absolute master playlist URL")
    expires_at: datetime = Field(..., alias="expiresAt", description="Token expiration timestamp")


class PlaybackToken(BaseModel):
    """Stored record of an issued playback token."""

    token: str = Field(..., exclude=True)
    video_id: str
    created_at: datetime
    authenticated: bool

    def to_record(self) -> str:
        """Serialize the stored part of the token (the id is the storage key)."""
        return self.model_dump_json()

    @classmethod
    def from_record(cls, token: str, record: str) -> "PlaybackToken":
        return cls.model_validate({**json.loads(record), "token": token})


class AuthVersionResponse(BaseModel):
    """Response for an auth version bump."""

    auth_version: str = Field(..., description="Version every new session credential must carry")


class LoginResponse(BaseModel):
    """Response for a successful login."""

    success: bool = True
    return_to: str = Field("/", alias="returnTo")

    model_config = ConfigDict(populate_by_name=True)
