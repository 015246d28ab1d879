"""
Configuration utilities and settings management.

Handles environment variables, data directory layout, and agent settings.
User-editable deployment configuration (certificates, bind rules, API
endpoint) lives in config.json and is handled by core.config_store.
"""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Agent settings loaded from environment variables."""

    # Interactive API
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=8470, alias="API_PORT")

    # Storage
    data_dir: str = Field(
        default="./data", alias="AGENT_DATA_DIR", description="Root directory for config.json, orders and logs"
    )
    private_key_encryption_key: str | None = Field(
        default=None,
        alias="PRIVATE_KEY_ENCRYPTION_KEY",
        description="Passphrase for private key encryption. A random key file is generated when unset",
    )

    # Renewal
    remote_auto_renew_days: int = Field(
        default=14,
        alias="REMOTE_AUTO_RENEW_DAYS",
        description="Days before expiry at which the issuing service renews on its own",
    )

    # Remote deployment API
    api_query_timeout: float = Field(default=30.0, alias="API_QUERY_TIMEOUT")
    api_submit_timeout: float = Field(default=60.0, alias="API_SUBMIT_TIMEOUT")
    api_max_retries: int = Field(
        default=3, alias="API_MAX_RETRIES", description="Retries for idempotent API queries on transport errors or 5xx"
    )
    server_type: str = Field(default="IIS", alias="SERVER_TYPE", description="Server type reported in callbacks")

    # Callbacks
    callback_max_attempts: int = Field(default=3, alias="CALLBACK_MAX_ATTEMPTS")
    callback_backoff_seconds: float = Field(
        default=10.0, alias="CALLBACK_BACKOFF_SECONDS", description="Base delay, multiplied by the attempt number"
    )

    # Host tooling
    command_timeout: float = Field(
        default=60.0, alias="COMMAND_TIMEOUT", description="Timeout in seconds for netsh/appcmd/PowerShell calls"
    )
    appcmd_path: str = Field(
        default=r"C:\Windows\System32\inetsrv\appcmd.exe", alias="APPCMD_PATH"
    )
    legacy_binding_mode: bool | None = Field(
        default=None,
        alias="LEGACY_BINDING_MODE",
        description="Force IP-based bindings (IIS 7, no SNI). Detected from the IIS version when unset",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()


def get_data_dir() -> Path:
    """Get the agent data directory path."""
    return Path(settings.data_dir)


def get_config_path() -> Path:
    return get_data_dir() / "config.json"


def get_orders_dir() -> Path:
    return get_data_dir() / "orders"


def get_log_dir() -> Path:
    return get_data_dir() / "logs"


def ensure_directories():
    """Ensure required directories exist with owner-only permissions."""
    for dir_path in (get_data_dir(), get_orders_dir(), get_log_dir()):
        dir_path.mkdir(parents=True, exist_ok=True)
        dir_path.chmod(0o700)
