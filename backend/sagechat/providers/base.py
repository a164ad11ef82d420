"""Base generation client interface and error taxonomy."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional


class GenerationError(Exception):
    """Raised when the generation backend cannot produce an answer."""

    kind = "generation_error"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ContentRejected(GenerationError):
    """The backend's safety policy blocked the prompt or the answer."""
    kind = "content_rejected"


class EmptyResponse(GenerationError):
    """The backend answered without any usable text."""
    kind = "empty_response"


class Transient(GenerationError):
    """Network or backend-side failure; safe for a caller to retry."""
    kind = "transient"


class Malformed(GenerationError):
    """The backend response did not have the expected shape."""
    kind = "malformed"


class GenerationClient(ABC):
    """Abstract base class for text generation backends."""

    # Backends that can only answer in one piece set this to False;
    # callers then use generate() instead of generate_stream().
    supports_streaming: bool = True

    @abstractmethod
    async def generate(self, prompt: str) -> str:
        """
        Generate a complete answer.

        Args:
            prompt: Full generation prompt

        Returns:
            The generated text

        Raises:
            GenerationError: On any backend failure
        """
        pass

    @abstractmethod
    def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        """
        Stream an answer as text deltas.

        The iterator is finite and cannot be restarted. Chunk boundaries are
        backend-defined and carry no meaning; only their order does.

        Raises:
            GenerationError: On any backend failure, possibly mid-stream
        """
        pass
