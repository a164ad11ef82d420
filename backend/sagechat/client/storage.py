"""Per-session local persistence of messages and credits."""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Optional

from pydantic import TypeAdapter, ValidationError

from .messages import ClientMessage

logger = logging.getLogger(__name__)

_messages_adapter = TypeAdapter(list[ClientMessage])
_pending_adapter = TypeAdapter(dict[int, list[str]])

SESSION_ID_FILE = "session_id"


def _write_atomic(path: Path, payload: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(payload, encoding="utf-8")
    os.replace(tmp, path)


def load_or_create_session_id(storage_dir: str) -> str:
    """
    Return this installation's session id, creating it on first use.

    The id is an opaque uuid4 kept in ``<storage_dir>/session_id``; it is what
    ties local history and the server-side credit balance together.
    """
    path = Path(storage_dir).expanduser() / SESSION_ID_FILE
    if path.exists():
        session_id = path.read_text(encoding="utf-8").strip()
        if session_id:
            return session_id
        logger.warning(f"Empty session id file at {path}, creating a new session")

    session_id = str(uuid.uuid4())
    _write_atomic(path, session_id)
    logger.info(f"Created session {session_id}")
    return session_id


class SessionStore:
    """
    Keeps one session's history and credit display in a directory.

    Files are ``messages_<session>.json``, ``credits_<session>.json`` and
    ``pending_<session>.json``; the last one lists requests that had not
    settled yet, with the sages that had already completed. Writes go
    through a temporary file so a crash never leaves half a file.
    """

    def __init__(self, storage_dir: str, session_id: str):
        self.root = Path(storage_dir).expanduser()
        self.session_id = session_id

    @classmethod
    def open(cls, storage_dir: str, session_id: Optional[str] = None) -> "SessionStore":
        """Store for ``session_id``, or for the saved (or newly created) session."""
        return cls(storage_dir, session_id or load_or_create_session_id(storage_dir))

    @property
    def messages_path(self) -> Path:
        return self.root / f"messages_{self.session_id}.json"

    @property
    def credits_path(self) -> Path:
        return self.root / f"credits_{self.session_id}.json"

    @property
    def pending_path(self) -> Path:
        return self.root / f"pending_{self.session_id}.json"

    def load_messages(self) -> list[ClientMessage]:
        if not self.messages_path.exists():
            return []
        try:
            return _messages_adapter.validate_json(self.messages_path.read_bytes())
        except ValidationError as e:
            logger.warning(f"Discarding unreadable history for session {self.session_id}: {e}")
            return []

    def save_messages(self, messages: list[ClientMessage]) -> None:
        payload = _messages_adapter.dump_json(messages, by_alias=True)
        _write_atomic(self.messages_path, payload.decode("utf-8"))

    def load_credits(self, default: int) -> int:
        if not self.credits_path.exists():
            return default
        try:
            return int(json.loads(self.credits_path.read_text(encoding="utf-8")))
        except (ValueError, TypeError) as e:
            logger.warning(f"Discarding unreadable credits for session {self.session_id}: {e}")
            return default

    def save_credits(self, credits: int) -> None:
        _write_atomic(self.credits_path, json.dumps(credits))

    def load_pending(self) -> dict[int, list[str]]:
        """Open request ids mapped to the sages that had completed."""
        if not self.pending_path.exists():
            return {}
        try:
            return _pending_adapter.validate_json(self.pending_path.read_bytes())
        except ValidationError as e:
            logger.warning(f"Discarding unreadable pending requests for session {self.session_id}: {e}")
            return {}

    def save_pending(self, pending: dict[int, list[str]]) -> None:
        _write_atomic(self.pending_path, _pending_adapter.dump_json(pending).decode("utf-8"))

    def clear_messages(self) -> None:
        self.messages_path.unlink(missing_ok=True)
        self.pending_path.unlink(missing_ok=True)
