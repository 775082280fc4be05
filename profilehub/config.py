"""
Application Configuration.

Pydantic Settings model for the ProfileHub account/profile core.
All configuration is loaded from environment variables and .env files.
Inject an AppConfig instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Supabase ---
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: SecretStr = SecretStr("")
    SUPABASE_SERVICE_ROLE_KEY: SecretStr = SecretStr("")  # Migration runs with elevated rights

    # --- Local store ---
    SQLITE_PATH: Path = Path("profilehub_local.db")

    # --- Profile limits & defaults ---
    MAX_ACTIVE_PROFILES: int = Field(default=10, ge=1)
    PROFILE_NAME_MAX_LENGTH: int = Field(default=50, ge=1)
    DEFAULT_PROFILE_NAME: str = "Student 1"
    FALLBACK_PROFILE_NAME: str = "Student"
    DEFAULT_PROFILE_COLOR: str = "#3b82f6"
    PROFILE_COLORS: list[str] = Field(default_factory=lambda: [
        "#3b82f6",  # blue
        "#ef4444",  # red
        "#10b981",  # green
        "#f59e0b",  # amber
        "#8b5cf6",  # violet
        "#ec4899",  # pink
        "#06b6d4",  # cyan
        "#84cc16",  # lime
    ])

    # --- Data tables carrying a profile reference ---
    SCOPED_RESOURCE_TABLES: list[str] = Field(default_factory=lambda: [
        "documents",
        "document_regions",
        "document_texts",
        "text_assignments",
        "tts_requests",
        "notifications",
        "folders",
    ])

    # --- Session synchronizer ---
    STORE_TIMEOUT_S: float = Field(default=30.0, gt=0)
    STORE_MAX_ATTEMPTS: int = Field(default=2, ge=1)
    RECOVERY_INTERVAL_S: float = Field(default=15.0, gt=0)
    RECOVERY_MAX_INTERVAL_S: float = Field(default=300.0, gt=0)

    # --- Outbound sync queue ---
    SYNC_INTERVAL_S: float = Field(default=30.0, gt=0)
    SYNC_MAX_INTERVAL_S: float = Field(default=300.0, gt=0)
    SYNC_BATCH_SIZE: int = Field(default=50, ge=1)
    SYNC_MAX_ATTEMPTS: int = Field(default=5, ge=1)

    # --- Logging ---
    LOG_FILE: str = "profilehub.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _warn_missing_env(self) -> "AppConfig":
        """Emit a startup warning when Supabase is not configured."""
        _log = logging.getLogger("profilehub.config")

        if not self.SUPABASE_URL:
            _log.warning(
                "SUPABASE_URL is empty. Supabase connectivity is disabled and "
                "all reads and writes go to the local store."
            )

        if self.DEFAULT_PROFILE_COLOR not in self.PROFILE_COLORS:
            _log.warning(
                "DEFAULT_PROFILE_COLOR %s is not part of PROFILE_COLORS.",
                self.DEFAULT_PROFILE_COLOR,
            )

        return self

    def validate_service_role(self) -> None:
        """Validate that elevated credentials are available.

        Raises:
            ValueError: If the service role key is missing while Supabase
                is configured.
        """
        if self.SUPABASE_URL and not self.SUPABASE_SERVICE_ROLE_KEY.get_secret_value():
            raise ValueError(
                "SUPABASE_SERVICE_ROLE_KEY must be set to run the profile migration"
            )


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    Uses a check-lock-check pattern so the fast path takes no lock while
    first initialisation stays thread-safe.  Prefer constructor injection
    of ``AppConfig`` in services.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
