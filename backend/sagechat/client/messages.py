"""Client-side message model."""

from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field


class ClientMessage(BaseModel):
    """A question as shown to the user, with each sage's answer so far."""
    id: int
    content: str
    sages: list[str]
    responses: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="createdAt")

    model_config = ConfigDict(populate_by_name=True)
