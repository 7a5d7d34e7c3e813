from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    # Base URL of the authoritative game server, e.g. "https://avalon.example.com/"
    server_path: str = "http://localhost:8080/"
    # Anti-CSRF token issued with the session cookie; sent as x-csrf-token
    csrf_token: str = ""
    session_cookie: Optional[str] = None
    request_timeout: Optional[float] = None  # None = httpx default
    poll_interval_seconds: float = 5.0
    # Minimum player count used when asking the server for a card setup
    min_setup_players: int = 5

    # Shared-state mirror (one Firestore document per table)
    google_cloud_project: str = ""
    firestore_emulator_host: Optional[str] = None
    mirror_collection: str = "tables"
    table_id: str = "local"
    use_firestore_mirror: bool = False

    # Browser front end that reads /api/view
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    log_level: str = "INFO"
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )


settings = Settings()
