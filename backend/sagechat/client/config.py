"""Client configuration."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Chat client settings, read from SAGECHAT_* environment variables."""

    # Base HTTP URL of the server; the channel lives at <server_url>/ws
    server_url: str = "http://localhost:8000"

    # Seconds to wait for the channel to open
    open_timeout: float = 5.0

    # Seconds a request may go without any frame before it is given up
    idle_timeout: float = 60.0

    # Use POST /api/chat when the channel cannot be opened
    http_fallback: bool = True

    # Where per-session history and credits are kept between runs
    storage_dir: str = "~/.sagechat"

    # Local credit display for a session with nothing stored yet
    default_credits: int = 10

    # Credits restored by a chat reset
    reset_credits: int = 25

    @property
    def ws_url(self) -> str:
        base = self.server_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}/ws"

    model_config = SettingsConfigDict(
        env_prefix="SAGECHAT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_client_settings() -> ClientSettings:
    """Get cached client settings."""
    return ClientSettings()
