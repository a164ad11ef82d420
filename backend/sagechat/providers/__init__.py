"""Generation backend integrations."""

from .base import (
    ContentRejected,
    EmptyResponse,
    GenerationClient,
    GenerationError,
    Malformed,
    Transient,
)
from .google_provider import GoogleProvider, classify_error

__all__ = [
    "ContentRejected",
    "EmptyResponse",
    "GenerationClient",
    "GenerationError",
    "Malformed",
    "Transient",
    "GoogleProvider",
    "classify_error",
]
