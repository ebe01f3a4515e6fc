"""Environment settings for the command engine.

Values come from ``MDMCORE_*`` environment variables or a ``.env`` file in
the working directory.
"""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MDMCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # memory keeps everything in process; sqlite persists to database_path
    store_backend: Literal["memory", "sqlite"] = "memory"
    database_path: str = "mdmcore.db"

    log_level: str = "INFO"

    # How long metadata of a removed command stays resolvable by uuid.
    metadata_retention_seconds: int = 86400


settings = Settings()
