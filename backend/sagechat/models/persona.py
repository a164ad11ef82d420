"""Persona (sage) configuration models."""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

# Shown in place of an answer a sage could not give; shared by server and client
UNAVAILABLE_PLACEHOLDER = "{name} is currently in deep meditation and unable to respond."


class Persona(BaseModel):
    """One of the named voices a user may consult with each question."""

    id: str = Field(..., min_length=1, description="Stable unique identifier, e.g. 'buddha'")
    display_name: str = Field(..., alias="name", description="Human-readable name, e.g. 'Buddha'")
    display_title: str = Field(..., alias="title", description="Short epithet shown under the name")
    generation_instructions: str = Field(
        ...,
        alias="prompt",
        description="Opaque voice instructions passed to the generation backend",
    )
    image: Optional[str] = Field(default=None, description="Portrait URL for the UI")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class PersonaSummary(BaseModel):
    """Public view of a persona (instructions are not exposed)."""
    id: str
    name: str
    title: str
    image: Optional[str] = None
