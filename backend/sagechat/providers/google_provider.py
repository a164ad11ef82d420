"""Google Gemini generation client."""

import asyncio
import logging
from typing import AsyncIterator, Optional
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import BlockedPromptException, StopCandidateException

from .base import (
    ContentRejected,
    EmptyResponse,
    GenerationClient,
    GenerationError,
    Malformed,
    Transient,
)

logger = logging.getLogger(__name__)

# Finish reasons that mean the answer was withheld by policy
BLOCKING_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "RECITATION"}

DEFAULT_TIMEOUT = 60  # seconds


def classify_error(error: Exception) -> GenerationError:
    """Map a Gemini SDK (or transport) exception onto the generation error taxonomy."""
    if isinstance(error, GenerationError):
        return error

    if isinstance(error, (BlockedPromptException, StopCandidateException)):
        return ContentRejected(f"Blocked by safety policy: {error}", cause=error)

    if "SAFETY" in str(error):
        return ContentRejected(f"Blocked by safety policy: {error}", cause=error)

    if isinstance(error, google_exceptions.InvalidArgument):
        return Malformed(f"Backend rejected the request shape: {error}", cause=error)

    if isinstance(error, (
        google_exceptions.GoogleAPICallError,
        google_exceptions.RetryError,
        asyncio.TimeoutError,
        ConnectionError,
        OSError,
    )):
        return Transient(f"Backend unavailable: {error}", cause=error)

    if isinstance(error, (AttributeError, KeyError, IndexError, TypeError, ValueError)):
        return Malformed(f"Unexpected response shape: {error}", cause=error)

    return Transient(f"Backend call failed: {error}", cause=error)


def _is_blocked(response) -> bool:
    """Whether a Gemini response (or stream chunk) was withheld by policy."""
    feedback = getattr(response, "prompt_feedback", None)
    if feedback is not None and getattr(feedback, "block_reason", None):
        return True

    for candidate in getattr(response, "candidates", None) or []:
        reason = getattr(candidate, "finish_reason", None)
        if getattr(reason, "name", str(reason)) in BLOCKING_FINISH_REASONS:
            return True
    return False


def _response_text(response) -> str:
    """Extract text from a response or chunk, raising ContentRejected when blocked."""
    try:
        return response.text or ""
    except ValueError:
        # .text raises when the candidate has no parts
        if _is_blocked(response):
            raise ContentRejected("Answer withheld by safety policy")
        return ""


class GoogleProvider(GenerationClient):
    """Google Gemini API client."""

    supports_streaming = True

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.0-flash-001",
        max_output_tokens: Optional[int] = None,
        temperature: float = 0.7,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        genai.configure(api_key=api_key)
        self.model = model
        self.timeout = timeout

        generation_config = {
            "temperature": temperature,
        }
        if max_output_tokens:
            generation_config["max_output_tokens"] = max_output_tokens
        self._generation_config = generation_config

    def _model(self):
        return genai.GenerativeModel(
            model_name=self.model,
            generation_config=self._generation_config,
        )

    async def generate(self, prompt: str) -> str:
        """Generate a complete answer from Gemini."""
        try:
            response = await self._model().generate_content_async(
                prompt,
                request_options={"timeout": self.timeout},
            )
            text = _response_text(response)
        except GenerationError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        if not text.strip():
            raise EmptyResponse(f"Gemini ({self.model}) returned no text")
        return text

    async def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        """Stream an answer from Gemini chunk by chunk."""
        received_text = False

        try:
            response = await self._model().generate_content_async(
                prompt,
                stream=True,
                request_options={"timeout": self.timeout},
            )

            async for chunk in response:
                text = _response_text(chunk)
                if text:
                    received_text = True
                    yield text
        except GenerationError:
            raise
        except Exception as e:
            raise classify_error(e) from e

        if not received_text:
            raise EmptyResponse(f"Gemini stream ({self.model}) returned no text")
