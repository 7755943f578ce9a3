import os
import sys
from functools import lru_cache
from typing import Any

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine configuration loaded from environment variables and .env files."""

    app_name: str = "efinance Signals API"
    environment: str = "dev"
    debug: bool = True
    version: str = "0.1.0"
    log_level: str = "INFO"

    # Distinct script texts kept in the global compile cache.
    compile_cache_size: int = 512
    # Worker threads used for batch evaluation; None lets the executor decide.
    batch_max_workers: int | None = None
    # Tolerance applied by `==` / `!=` between numbers in scripts.
    equality_epsilon: float = 1e-4

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ES_",
        extra="ignore",
    )

    def dict_for_logging(self) -> dict[str, Any]:
        return {
            "app_name": self.app_name,
            "environment": self.environment,
            "debug": self.debug,
            "version": self.version,
            "compile_cache_size": self.compile_cache_size,
        }


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings instance."""

    settings = Settings()

    # Under pytest keep the environment label stable regardless of any local
    # .env overrides.
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        settings.environment = "test"

    return settings


__all__ = ["Settings", "get_settings"]
