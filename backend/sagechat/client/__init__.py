"""Chat client: local state reducer, persistence and transport."""

from .config import ClientSettings, get_client_settings
from .messages import ClientMessage
from .reducer import ClientStreamReducer, NoCreditsError, RequestPhase, SagePhase
from .storage import SessionStore, load_or_create_session_id
from .transport import ChatClient, RequestFailedError, TransportError

__all__ = [
    "ClientSettings",
    "get_client_settings",
    "ClientMessage",
    "ClientStreamReducer",
    "NoCreditsError",
    "RequestPhase",
    "SagePhase",
    "SessionStore",
    "load_or_create_session_id",
    "ChatClient",
    "RequestFailedError",
    "TransportError",
]
