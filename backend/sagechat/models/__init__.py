"""Data models for the Sage Chat multi-persona service."""

from .persona import UNAVAILABLE_PLACEHOLDER, Persona, PersonaSummary
from .chat import AgentState, AgentTask, ChatRequest, ChatHTTPRequest, MessageRecord
from .credits import (
    CREDIT_PRODUCTS,
    CreditProduct,
    PurchaseConfirmation,
    SessionBalance,
    SessionRequest,
    TransactionType,
)
from .protocol import (
    CompleteFrame,
    DoneFrame,
    ErrorFrame,
    FailedFrame,
    FailureReason,
    FrameType,
    OutboundFrame,
    StartChatFrame,
    StreamFrame,
    parse_outbound,
)

__all__ = [
    "UNAVAILABLE_PLACEHOLDER",
    "Persona",
    "PersonaSummary",
    "AgentState",
    "AgentTask",
    "ChatRequest",
    "ChatHTTPRequest",
    "MessageRecord",
    "CREDIT_PRODUCTS",
    "CreditProduct",
    "PurchaseConfirmation",
    "SessionBalance",
    "SessionRequest",
    "TransactionType",
    "CompleteFrame",
    "DoneFrame",
    "ErrorFrame",
    "FailedFrame",
    "FailureReason",
    "FrameType",
    "OutboundFrame",
    "StartChatFrame",
    "StreamFrame",
    "parse_outbound",
]
