"""
Persistence for the deployment configuration (config.json).
"""

import json
import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from core.encryption_service import EncryptionService
from core.file_utils import atomic_write, ensure_private_dir
from models.config import AgentConfig

logger = logging.getLogger(__name__)


class ConfigStoreError(Exception):
    """config.json could not be read, validated or written."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ConfigStore:
    """
    Loads and saves AgentConfig atomically.

    Shares its lock with the order store; callers that mutate the loaded
    config and save it back should hold ``lock`` across both steps.
    """

    def __init__(
        self,
        path: Path,
        encryption: EncryptionService,
        lock: Optional[threading.RLock] = None,
        remote_auto_renew_days: int = 14,
    ):
        self.path = Path(path)
        self.encryption = encryption
        self.lock = lock or threading.RLock()
        self.remote_auto_renew_days = remote_auto_renew_days

    def load(self) -> AgentConfig:
        """
        Read config.json, returning defaults when it does not exist yet.

        Raises:
            ConfigStoreError: on unreadable JSON or invalid values
        """
        with self.lock:
            if not self.path.exists():
                logger.info(f"No configuration at {self.path}, using defaults")
                return AgentConfig()
            try:
                raw = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigStoreError(f"Failed to read {self.path}: {e}")

        # Zero values written by older versions mean "use the default"
        for key in ("renew_days_local", "renew_days_fetch", "check_interval"):
            if raw.get(key) in (0, None):
                raw.pop(key, None)

        try:
            config = AgentConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigStoreError(
                f"Invalid configuration in {self.path}: {e}",
                suggestion="renew_days_local must be greater than renew_days_fetch",
            )

        self.check_thresholds(config)
        return config

    def check_thresholds(self, config: AgentConfig) -> None:
        """Local-key renewal must start before the issuer renews on its own."""
        if config.renew_days_local <= self.remote_auto_renew_days:
            raise ConfigStoreError(
                f"Invalid configuration in {self.path}: renew_days_local ({config.renew_days_local}) must be "
                f"greater than the issuer's auto-renew threshold ({self.remote_auto_renew_days})",
                suggestion="Raise renew_days_local or lower REMOTE_AUTO_RENEW_DAYS",
            )

    def save(self, config: AgentConfig) -> None:
        """
        Raises:
            ConfigStoreError: if the thresholds are inconsistent or the file cannot be written
        """
        self.check_thresholds(config)
        data = config.model_dump_json(indent=2, exclude_none=True).encode("utf-8")
        try:
            with self.lock:
                ensure_private_dir(self.path.parent)
                atomic_write(self.path, data)
        except OSError as e:
            raise ConfigStoreError(f"Failed to write {self.path}: {e}")
        logger.debug(f"Saved configuration to {self.path}")

    def get_token(self, config: AgentConfig) -> str:
        """Decrypt the API token stored in the configuration."""
        try:
            return self.encryption.decrypt_string(config.encrypted_token)
        except ValueError as e:
            raise ConfigStoreError(f"Failed to decrypt API token: {e}", suggestion="Re-enter the API token")

    def set_token(self, config: AgentConfig, token: str) -> None:
        config.encrypted_token = self.encryption.encrypt_string(token) if token else ""
