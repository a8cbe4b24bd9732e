from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    google_cloud_project: str = ""
    google_application_credentials: str = ""
    firestore_emulator_host: Optional[str] = None
    # Demo-mode (LocalStore) subscriptions re-read the whole snapshot this often
    poll_interval_seconds: float = 2.0
    # Room codes are random; regenerate this many times on a collision
    room_code_attempts: int = 5
    # CORS origins: set ALLOWED_ORIGINS env var for production (comma-separated)
    allowed_origins: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ]
    # Extra production origin (e.g. Cloud Run URL); appended to allowed_origins
    extra_origin: str = ""
    debug: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
    )

    @property
    def store_configured(self) -> bool:
        """True when a real Firestore backend (project or emulator) is reachable."""
        return bool(self.google_cloud_project.strip() or self.firestore_emulator_host)

    @property
    def cors_origins(self) -> List[str]:
        origins = list(self.allowed_origins)
        if self.extra_origin:
            origins.append(self.extra_origin)
        return origins


settings = Settings()
