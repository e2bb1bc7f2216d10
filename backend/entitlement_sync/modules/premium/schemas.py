"""Schemas for premium endpoints."""

from pydantic import BaseModel, Field, field_validator

MAX_SAVED_CHANNELS = 500


class SavedChannelsResponse(BaseModel):
    """The account's saved channel ids, in display order."""
    channels: list[str] = Field(default_factory=list)


class SavedChannelsUpdate(BaseModel):
    """Replacement saved channel list."""
    channels: list[str] = Field(..., max_length=MAX_SAVED_CHANNELS)

    @field_validator("channels")
    @classmethod
    def normalize_channels(cls, v: list[str]) -> list[str]:
        """Strip, drop blanks and de-duplicate while keeping order."""
        seen: dict[str, None] = {}
        for channel in v:
            channel = channel.strip()
            if channel:
                seen.setdefault(channel, None)
        return list(seen)
