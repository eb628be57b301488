"""Short URL Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base schema serialized with camelCase keys."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ShortenRequest(CamelModel):
    """Schema for creating a new short URL.

    ``url`` is validated by the service so that a missing or malformed value
    produces a 400 with a specific message.
    """

    url: str | None = Field(default=None, description="The URL to shorten")


class ShortenResponse(CamelModel):
    """Schema for a newly created short URL."""

    short_url: str
    original_url: str
    short_code: str
    created_at: datetime


class RedirectTarget(CamelModel):
    """Schema for a resolved redirect."""

    redirect_url: str


class MappingResponse(CamelModel):
    """Schema for a stored mapping."""

    short_code: str
    original_url: str
    created_at: datetime
    clicks: int
    is_active: bool
    expires_at: datetime | None
    last_click_at: datetime | None = None
