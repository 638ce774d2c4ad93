from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ClamAV daemon (clamd) configuration
    CLAMAV_ENABLED: bool = True
    CLAMAV_HOST: str = "localhost"
    CLAMAV_PORT: int = 3310
    CLAMAV_CONNECT_TIMEOUT: float = 5.0
    CLAMAV_READ_TIMEOUT: float = 30.0
    CLAMAV_CHUNK_SIZE: int = 8192
    # Reject uploads when the daemon cannot be reached (default: accept)
    CLAMAV_FAIL_CLOSED: bool = False

    # Upload policy overrides (JSON file, see config/policies.py)
    UPLOAD_POLICY_FILE: Optional[str] = None

    # User-facing rejection messages
    DEFAULT_LOCALE: str = "en"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
