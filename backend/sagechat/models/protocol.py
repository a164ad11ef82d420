"""Wire frames exchanged over the chat channel.

Every frame is a JSON object with a ``type`` discriminator. Field names on the
wire are camelCase (``sageId``, ``messageId``); Python code uses snake_case.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class FrameType(str, Enum):
    """Types of channel frames."""
    START_CHAT = "start_chat"
    STREAM = "stream"
    COMPLETE = "complete"
    FAILED = "failed"
    ERROR = "error"
    DONE = "done"


class FailureReason(str, Enum):
    """Reasons carried by a per-agent ``failed`` frame."""
    UNKNOWN_PERSONA = "UnknownPersona"


class Frame(BaseModel):
    """Base class for all frames."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> str:
        """Serialize with wire (camelCase) field names."""
        return self.model_dump_json(by_alias=True)


class StartChatFrame(Frame):
    """Inbound: a user question addressed to several sages."""
    type: Literal["start_chat"] = "start_chat"
    content: str
    selected_sages: list[str] = Field(..., alias="selectedSages")
    message_id: int = Field(..., alias="messageId")
    session_id: str = Field(..., alias="sessionId")


class StreamFrame(Frame):
    """Outbound: an incremental chunk of one sage's answer."""
    type: Literal["stream"] = "stream"
    sage_id: str = Field(..., alias="sageId")
    chunk: str
    message_id: int = Field(..., alias="messageId")


class CompleteFrame(Frame):
    """Outbound: authoritative full text of one sage's answer."""
    type: Literal["complete"] = "complete"
    sage_id: str = Field(..., alias="sageId")
    response: str
    message_id: int = Field(..., alias="messageId")


class FailedFrame(Frame):
    """Outbound: a sage that will never answer this request."""
    type: Literal["failed"] = "failed"
    sage_id: str = Field(..., alias="sageId")
    reason: FailureReason
    message_id: int = Field(..., alias="messageId")


class ErrorFrame(Frame):
    """Outbound: request-level failure; no further frames follow for the request."""
    type: Literal["error"] = "error"
    message: str
    message_id: Optional[int] = Field(default=None, alias="messageId")


class DoneFrame(Frame):
    """Outbound: every sage of the request has reached a terminal state."""
    type: Literal["done"] = "done"
    message_id: int = Field(..., alias="messageId")
    served: list[str] = Field(default_factory=list)
    refunded: bool = False
    balance: Optional[int] = None


OutboundFrame = Union[StreamFrame, CompleteFrame, FailedFrame, ErrorFrame, DoneFrame]

_outbound_adapter: TypeAdapter[OutboundFrame] = TypeAdapter(
    Annotated[OutboundFrame, Field(discriminator="type")]
)


def parse_outbound(data: Any) -> OutboundFrame:
    """
    Parse a decoded server frame into its typed model.

    Raises:
        pydantic.ValidationError: Unknown ``type`` or missing fields
    """
    return _outbound_adapter.validate_python(data)
