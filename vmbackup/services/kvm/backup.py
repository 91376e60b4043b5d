"""
KVM/libvirt backup service.
"""
import logging
import os
import pwd
import subprocess
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from vmbackup.core.config import Settings
from vmbackup.services.kvm.descriptor import DescriptorStore
from vmbackup.services.kvm.disks import DiskCopier, list_disk_paths
from vmbackup.services.kvm.errors import (
    InvalidInputError,
    MachineNotFoundError,
    StorageIOError,
    VMBackupError
)
from vmbackup.services.kvm.hypervisor import Hypervisor, MachineState
from vmbackup.services.kvm.privilege import PrivilegedRunner
from vmbackup.services.kvm.results import BackupResult

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class KVMBackupService:
    """Service for backing up KVM virtual machines to a local directory."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        settings: Settings,
        runner: Optional[PrivilegedRunner] = None,
        log_callback=None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the KVM backup service.

        Args:
            hypervisor: Hypervisor backend used to query and control the VM
            settings: Application settings (acting user, poll policy, escalation)
            runner: Privileged command runner; built from settings when omitted
            log_callback: Optional callback function for verbose logging.
                          Signature: callback(level: str, message: str, details: dict = None)
            sleep: Sleep function used between shutdown polls
            clock: Source of the backup directory timestamp
        """
        self.hypervisor = hypervisor
        self.settings = settings
        self.runner = runner or PrivilegedRunner(settings.escalation_prefix)
        self.store = DescriptorStore(hypervisor)
        self.copier = DiskCopier(self.runner)
        self.log_callback = log_callback
        self.sleep = sleep
        self.clock = clock

    def _log(self, level: str, message: str, details: dict = None):
        """
        Log a message to both the Python logger and the callback (if set).

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Human-readable log message
            details: Optional structured metadata
        """
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    def _warn(self, result: BackupResult, message: str, details: dict = None):
        self._log("WARNING", message, details)
        result.warnings.append(message)

    def _create_backup_dir(self, backup_root: Path, vm_name: str) -> Path:
        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)
        backup_dir = backup_root / f"{vm_name}_{timestamp}"
        try:
            backup_root.mkdir(parents=True, exist_ok=True)
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create backup folder {backup_dir}: {e}") from e
        self._log("DEBUG", f"Created backup directory: {backup_dir}", {"path": str(backup_dir)})
        return backup_dir

    def _wait_for_shutdown(self, vm_name: str) -> bool:
        """
        Poll until the VM leaves the running state.

        Returns:
            True if the VM stopped within the poll bound
        """
        attempts = self.settings.SHUTDOWN_POLL_ATTEMPTS
        interval = self.settings.SHUTDOWN_POLL_INTERVAL
        for attempt in range(1, attempts + 1):
            if self.hypervisor.get_state(vm_name) != MachineState.RUNNING:
                self._log("DEBUG", f"VM stopped after {attempt} poll(s)", {"attempt": attempt})
                return True
            self.sleep(interval)
        return self.hypervisor.get_state(vm_name) != MachineState.RUNNING

    def _needs_ownership_fix(self, backup_dir: Path, uid: int) -> bool:
        for dirpath, dirnames, filenames in os.walk(backup_dir):
            for entry in [dirpath, *(os.path.join(dirpath, f) for f in filenames)]:
                if os.lstat(entry).st_uid != uid:
                    return True
        return False

    def _fix_ownership(self, backup_dir: Path, result: BackupResult):
        """Hand the backup directory to the acting user. Failures only warn."""
        user = self.settings.EFFECTIVE_USER
        try:
            uid = pwd.getpwnam(user).pw_uid
            if not self._needs_ownership_fix(backup_dir, uid):
                self._log("DEBUG", f"Backup already owned by {user}", {"user": user})
                return
            self.runner.chown_recursive(str(backup_dir), user)
            self._log("DEBUG", f"Changed ownership of {backup_dir} to {user}", {"user": user})
        except (KeyError, OSError, subprocess.CalledProcessError) as e:
            self._warn(result, f"Could not change ownership of {backup_dir} to {user}: {e}")

    def _restart(self, vm_name: str, result: BackupResult):
        try:
            if self.hypervisor.get_state(vm_name) == MachineState.RUNNING:
                self._log("INFO", f"VM {vm_name} is still running, no restart needed")
                return
            self._log("INFO", "Restarting VM...", {"vm_name": vm_name})
            self.hypervisor.start(vm_name)
            result.restarted = True
        except VMBackupError as e:
            self._warn(result, f"Failed to restart VM {vm_name}: {e}", {"error": str(e)})

    def create_backup(self, vm_name: str, backup_root: Optional[str] = None) -> BackupResult:
        """
        Create a backup of a VM.

        The VM is shut down first if it is running and restarted afterwards.
        If it does not stop within the poll bound, the disks are copied live
        and the result is flagged with ``shutdown_timed_out``.

        Args:
            vm_name: Name of the VM to back up
            backup_root: Directory under which the timestamped backup is created;
                         defaults to BACKUP_BASE_PATH

        Returns:
            BackupResult describing the backup directory

        Raises:
            InvalidInputError: If no VM name was given
            MachineNotFoundError: If the VM is not registered
            StorageIOError: If the backup directory or a disk copy fails
            HypervisorQueryError: If the configuration cannot be exported
        """
        vm_name = (vm_name or "").strip()
        if not vm_name:
            raise InvalidInputError("No VM name provided")
        if not self.hypervisor.exists(vm_name):
            raise MachineNotFoundError(vm_name)

        backup_root = Path(backup_root or self.settings.BACKUP_BASE_PATH).expanduser().resolve()
        backup_dir = self._create_backup_dir(backup_root, vm_name)

        self._log("INFO", f"Starting backup of VM: {vm_name}", {
            "vm_name": vm_name,
            "backup_dir": str(backup_dir),
            "operation": "backup_start"
        })

        result = BackupResult(
            machine_name=vm_name,
            backup_dir=str(backup_dir),
            config_file=str(backup_dir / f"{vm_name}.xml")
        )

        # Handle VM state
        state = self.hypervisor.get_state(vm_name)
        self._log("INFO", f"VM state: {state.value}", {"state": state.value})
        if state == MachineState.RUNNING:
            self._log("WARNING", "Shutting down VM...", {"vm_name": vm_name})
            self.hypervisor.shutdown(vm_name)
            result.was_running = True
            if not self._wait_for_shutdown(vm_name):
                result.shutdown_timed_out = True
                self._warn(result, f"VM {vm_name} did not shut down in time, copying disks while it is running "
                                   "(the copy may be inconsistent)")

        # Backup disks
        self._log("INFO", "Locating disks...")
        disk_paths = list_disk_paths(self.store.dump_current(vm_name))
        if not disk_paths:
            self._warn(result, "No disks found in VM config")
        else:
            report = self.copier.copy_for_backup(disk_paths, backup_dir)
            result.disks = sorted(os.path.basename(p) for p in report.copied.values())
            result.skipped_disks = report.skipped
            result.warnings.extend(report.warnings)

        # Backup XML
        self._log("INFO", "Saving VM config...")
        self.store.export_current(vm_name, result.config_file)

        self._fix_ownership(backup_dir, result)

        if result.was_running:
            self._restart(vm_name, result)

        result.contents = sorted(entry.name for entry in backup_dir.iterdir())
        self._log("INFO", f"Backup complete: {backup_dir}", {
            "backup_dir": str(backup_dir),
            "disks": result.disks,
            "operation": "backup_complete"
        })
        return result
