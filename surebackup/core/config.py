"""
Application configuration management using Pydantic Settings.
"""
from typing import Annotated, Optional, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "SureBackup for AHV"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Management API (Prism Central)
    API_BASE_URL: str = "https://prism-central.local:9440"
    API_USERNAME: Optional[str] = None
    API_PASSWORD: Optional[str] = None
    API_TOKEN: Optional[str] = None
    API_GENERATION: str = "auto"  # v4, v3 or auto
    VERIFY_TLS: bool = True
    REQUEST_TIMEOUT: float = Field(default=30.0, gt=0)
    RETRY_COUNT: int = Field(default=3, ge=0, le=10)
    RETRY_BACKOFF_CAP: float = Field(default=30.0, gt=0)
    PAGE_SIZE: int = Field(default=100, ge=1, le=500)

    # Isolated network
    ISOLATED_NETWORK_ID: Optional[str] = None
    ISOLATED_NETWORK_NAME: Optional[str] = None
    ISOLATED_NETWORK_PATTERNS: Annotated[List[str], NoDecode] = ["isolated", "surebackup", "sandbox", "lab"]

    # Orchestration
    MAX_CONCURRENT_RECOVERIES: int = Field(default=3, ge=1, le=50)
    CONTINUE_ON_FAILURE: bool = True
    DRY_RUN: bool = False
    RECOVERY_NAME_SUFFIX: str = "SureBackup"
    RESTORE_METHOD: str = "FullRestore"

    # Timeouts (seconds)
    POLL_INTERVAL: float = Field(default=5.0, gt=0)
    TASK_TIMEOUT: float = Field(default=1800.0, gt=0)
    POWER_ON_TIMEOUT: float = Field(default=600.0, gt=0)
    IP_WAIT_TIMEOUT: float = Field(default=300.0, gt=0)

    # Verification
    PING_ATTEMPTS: int = Field(default=4, ge=1, le=50)
    PING_TIMEOUT: float = Field(default=2.0, gt=0)
    PORT_TIMEOUT: float = Field(default=5.0, gt=0)
    HTTP_TIMEOUT: float = Field(default=10.0, gt=0)
    SCRIPT_TIMEOUT: float = Field(default=300.0, gt=0)
    TEST_PORTS: Annotated[List[int], NoDecode] = []
    TEST_HTTP_ENDPOINTS: Annotated[List[str], NoDecode] = []
    TEST_HTTP_VERIFY_TLS: bool = False  # recovered VMs serve certificates for production names
    TEST_DNS: bool = True
    TEST_SCRIPT_PATH: Optional[str] = None

    # Session journal
    JOURNAL_URL: Optional[str] = "sqlite:///surebackup-sessions.db"
    JOURNAL_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE_DIR: Optional[str] = None
    LOG_FILE_MAX_BYTES: int = 20 * 1024 * 1024
    LOG_FILE_BACKUP_COUNT: int = 5

    @field_validator("ISOLATED_NETWORK_PATTERNS", "TEST_HTTP_ENDPOINTS", mode="before")
    @classmethod
    def parse_string_list(cls, v):
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("TEST_PORTS", mode="before")
    @classmethod
    def parse_ports(cls, v):
        if isinstance(v, str):
            return [int(port.strip()) for port in v.split(",") if port.strip()]
        return v

    @field_validator("API_GENERATION")
    @classmethod
    def validate_generation(cls, v: str) -> str:
        value = v.strip().lower()
        if value not in ("v4", "v3", "auto"):
            raise ValueError("API_GENERATION must be one of: v4, v3, auto")
        return value


# Global settings instance
settings = Settings()
