"""
Vault Configuration — validated settings for sessions and storage.

Reads optional overrides from environment variables:
    VAULT_ITERATIONS      PBKDF2 work factor for newly created vaults
    VAULT_IDLE_MINUTES    idle auto-lock timeout (minimum 1)
    VAULT_TICK_INTERVAL   seconds between idle checks
    VAULT_STORAGE_PATH    JSON file holding all records (in-memory if unset)
    VAULT_HOST / VAULT_PORT   HTTP service bind address

Security Note:
    Secrets are never part of configuration. Only work factors and paths.
"""
import os
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..storage import AbstractStorage, FileStorage, MemoryStorage
from .crypto import DEFAULT_ITERATIONS
from .autolock import DEFAULT_IDLE_MINUTES, DEFAULT_TICK

logger = logging.getLogger("dualkey.vault")


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    iterations: int = Field(default=DEFAULT_ITERATIONS, ge=1)
    idle_minutes: int = Field(default=DEFAULT_IDLE_MINUTES, ge=1)
    tick_interval: float = Field(default=DEFAULT_TICK, gt=0)
    storage_path: Optional[str] = None
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8720, ge=1, le=65535)

    @field_validator("storage_path")
    @classmethod
    def validate_storage_path(cls, v: Optional[str]) -> Optional[str]:
        """Treat blank paths as unset."""
        if v is not None and not v.strip():
            return None
        return v

    def create_storage(self) -> AbstractStorage:
        if self.storage_path:
            logger.debug("Using file storage at %s", self.storage_path)
            return FileStorage(self.storage_path)
        logger.debug("Using in-memory storage")
        return MemoryStorage()

    @classmethod
    def from_env(cls) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        values = {}
        env_map = {
            "iterations": "VAULT_ITERATIONS",
            "idle_minutes": "VAULT_IDLE_MINUTES",
            "tick_interval": "VAULT_TICK_INTERVAL",
            "storage_path": "VAULT_STORAGE_PATH",
            "host": "VAULT_HOST",
            "port": "VAULT_PORT",
        }
        for field, var in env_map.items():
            raw = os.environ.get(var)
            if raw is not None:
                values[field] = raw
        return cls(**values)
