"""
Application configuration management using Pydantic Settings.
"""
import getpass
import os
import pwd
import shlex
from typing import Optional, List
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def resolve_effective_user() -> str:
    """
    Resolve the unprivileged user the tool is acting for.

    When invoked through sudo, SUDO_USER names the real user; otherwise USER
    or the login name is used.
    """
    return os.environ.get("SUDO_USER") or os.environ.get("USER") or getpass.getuser()


def resolve_user_home(username: str) -> str:
    """Look up a user's home directory from the password database."""
    try:
        return pwd.getpwnam(username).pw_dir
    except KeyError:
        return os.path.expanduser("~")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "KVM/QEMU VM Backup & Restore Manager"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # libvirt
    LIBVIRT_DEFAULT_URI: str = "qemu:///system"

    # Acting user and default locations (derived from the user's home when unset)
    EFFECTIVE_USER: Optional[str] = None
    BACKUP_BASE_PATH: Optional[str] = None
    DISK_STORAGE_PATH: Optional[str] = None

    # Where the rewritten descriptor is staged before registration (system temp when unset)
    TEMP_DIR: Optional[str] = None

    # Shutdown polling: 30 attempts x 2 seconds
    SHUTDOWN_POLL_ATTEMPTS: int = 30
    SHUTDOWN_POLL_INTERVAL: float = 2.0

    # Privilege escalation prefix for copy/chown retries, e.g. "sudo -n"
    ESCALATION_COMMAND: str = "sudo"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None
    LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10 MB
    LOG_BACKUP_COUNT: int = 5

    @field_validator("SHUTDOWN_POLL_ATTEMPTS")
    @classmethod
    def check_poll_attempts(cls, v):
        if v < 1:
            raise ValueError("SHUTDOWN_POLL_ATTEMPTS must be at least 1")
        return v

    @model_validator(mode="after")
    def fill_user_defaults(self):
        if not self.EFFECTIVE_USER:
            self.EFFECTIVE_USER = resolve_effective_user()

        home = resolve_user_home(self.EFFECTIVE_USER)
        if not self.BACKUP_BASE_PATH:
            self.BACKUP_BASE_PATH = os.path.join(home, "Desktop")
        if not self.DISK_STORAGE_PATH:
            self.DISK_STORAGE_PATH = os.path.join(home, ".local", "share", "libvirt", "images")
        return self

    @property
    def escalation_prefix(self) -> List[str]:
        """Escalation command split into argv form."""
        return shlex.split(self.ESCALATION_COMMAND)


# Global settings instance
settings = Settings()
