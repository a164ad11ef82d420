"""Core orchestration logic."""

from .config import get_settings
from .errors import RequestError
from .ledger import SessionLedger
from .orchestrator import FanoutOrchestrator
from .personas import PersonaRegistry

__all__ = [
    "get_settings",
    "RequestError",
    "SessionLedger",
    "FanoutOrchestrator",
    "PersonaRegistry",
]
