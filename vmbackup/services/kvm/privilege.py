"""
Privileged command execution for disk copies and ownership fixes.
"""
import logging
import os
import subprocess
from typing import List, Optional

logger = logging.getLogger(__name__)


class PrivilegedRunner:
    """Runs file operations through an escalation command such as sudo."""

    def __init__(self, prefix: Optional[List[str]] = None):
        """
        Args:
            prefix: Escalation command in argv form, e.g. ["sudo"] or ["sudo", "-n"]
        """
        self.prefix = list(prefix) if prefix is not None else ["sudo"]

    @property
    def is_privileged(self) -> bool:
        """True when the current process already runs as root."""
        return os.geteuid() == 0

    def run(self, args: List[str]) -> subprocess.CompletedProcess:
        """
        Run a command with elevated privilege.

        Raises:
            subprocess.CalledProcessError: If the command exits non-zero
            OSError: If the escalation command cannot be executed
        """
        cmd = args if self.is_privileged else [*self.prefix, *args]
        logger.debug(f"Executing privileged command: {' '.join(cmd)}")
        return subprocess.run(cmd, check=True, capture_output=True, text=True)

    def copy(self, source: str, destination: str):
        """Copy a file preserving mode, ownership and timestamps."""
        self.run(["cp", "-a", "--", source, destination])

    def chown_recursive(self, path: str, user: str):
        """Recursively hand a directory tree to a user and their login group."""
        self.run(["chown", "-R", f"{user}:", "--", path])
