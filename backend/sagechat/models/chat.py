"""Chat request and per-agent task models."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .protocol import StartChatFrame


class ChatRequest(BaseModel):
    """One submission of a question to a set of sages."""

    request_id: int = Field(..., description="Client-generated, time-based message id")
    session_id: str = Field(..., description="Opaque session identifier")
    user_text: str = Field(..., description="The seeker's question")
    persona_ids: list[str] = Field(default_factory=list, description="Selected sages, in order")

    model_config = ConfigDict(frozen=True)

    @field_validator("persona_ids")
    @classmethod
    def collapse_duplicates(cls, value: list[str]) -> list[str]:
        """Drop repeated ids, keeping the first occurrence."""
        return list(dict.fromkeys(value))

    @classmethod
    def from_frame(cls, frame: StartChatFrame) -> "ChatRequest":
        return cls(
            request_id=frame.message_id,
            session_id=frame.session_id,
            user_text=frame.content,
            persona_ids=frame.selected_sages,
        )


class AgentState(str, Enum):
    """Lifecycle of one sage's generation within a request."""
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AgentTask:
    """
    Generation state for one (request, persona) pair.

    Text only grows while the task is live; completed and failed are final.
    """
    request_id: int
    persona_id: str
    state: AgentState = AgentState.PENDING
    accumulated_text: str = ""
    error_kind: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (AgentState.COMPLETED, AgentState.FAILED)

    def append(self, chunk: str) -> None:
        if self.is_terminal:
            raise ValueError(f"Task {self.persona_id} is already {self.state.value}")
        self.state = AgentState.STREAMING
        self.accumulated_text += chunk

    def complete(self, full_text: str) -> None:
        if self.is_terminal:
            raise ValueError(f"Task {self.persona_id} is already {self.state.value}")
        self.state = AgentState.COMPLETED
        self.accumulated_text = full_text

    def fail(self, error_kind: str) -> None:
        if self.is_terminal:
            raise ValueError(f"Task {self.persona_id} is already {self.state.value}")
        self.state = AgentState.FAILED
        self.error_kind = error_kind


class ChatHTTPRequest(BaseModel):
    """Body of the synchronous fallback endpoint."""
    content: Optional[str] = None
    selected_sages: Optional[list[str]] = Field(default=None, alias="selectedSages")
    message_id: Optional[int] = Field(default=None, alias="messageId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")

    model_config = ConfigDict(populate_by_name=True)


class MessageRecord(BaseModel):
    """A persisted question with every sage's final answer."""
    id: str
    message_id: int = Field(..., alias="messageId")
    content: str
    sages: list[str]
    responses: dict[str, str]
    created_at: datetime = Field(..., alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)
