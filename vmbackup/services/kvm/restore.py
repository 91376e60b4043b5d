"""
KVM/libvirt restore service.
"""
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Union

from vmbackup.core.config import Settings
from vmbackup.services.kvm import identity
from vmbackup.services.kvm.descriptor import DescriptorStore
from vmbackup.services.kvm.disks import DiskCopier, list_disk_paths, remap_disk_sources
from vmbackup.services.kvm.errors import (
    BackupNotFoundError,
    HypervisorError,
    InvalidInputError,
    NameConflictError,
    NoConfigFoundError,
    RegistrationFailedError,
    StorageIOError
)
from vmbackup.services.kvm.hypervisor import Hypervisor
from vmbackup.services.kvm.privilege import PrivilegedRunner
from vmbackup.services.kvm.results import RestoreResult

logger = logging.getLogger(__name__)


def list_backups(backup_root: Union[str, Path]) -> List[Path]:
    """Directories up to two levels below backup_root that contain a VM config."""
    backup_root = Path(backup_root).expanduser()
    if not backup_root.is_dir():
        return []
    found = {p.parent for p in backup_root.glob("*.xml")}
    found.update(p.parent for p in backup_root.glob("*/*.xml"))
    return sorted(found)


def find_config(backup_dir: Path) -> Path:
    """
    Locate the configuration document of a backup.

    Raises:
        NoConfigFoundError: If the directory has no *.xml file
    """
    candidates = sorted(p for p in backup_dir.glob("*.xml") if p.is_file())
    if not candidates:
        raise NoConfigFoundError(f"No VM config found in {backup_dir}")
    if len(candidates) > 1:
        logger.warning(f"Several VM configs in {backup_dir}, using {candidates[0].name}")
    return candidates[0]


class KVMRestoreService:
    """Service for restoring KVM virtual machines under a new identity."""

    def __init__(
        self,
        hypervisor: Hypervisor,
        settings: Settings,
        runner: Optional[PrivilegedRunner] = None,
        log_callback=None
    ):
        self.hypervisor = hypervisor
        self.settings = settings
        self.runner = runner or PrivilegedRunner(settings.escalation_prefix)
        self.store = DescriptorStore(hypervisor)
        self.copier = DiskCopier(self.runner)
        self.log_callback = log_callback

    def _log(self, level: str, message: str, details: dict = None):
        """Log to the Python logger and forward to the callback (if set)."""
        log_method = getattr(logger, level.lower(), logger.info)
        log_method(message)

        if self.log_callback:
            try:
                self.log_callback(level, message, details)
            except Exception as e:
                logger.warning(f"Log callback failed: {e}")

    def validate_name(self, new_name: str) -> str:
        """
        Check that a new VM name is usable.

        Raises:
            InvalidInputError: If the name is empty
            NameConflictError: If a VM with that name is registered
        """
        new_name = (new_name or "").strip()
        if not new_name:
            raise InvalidInputError("Invalid name: VM name must not be empty")
        if self.hypervisor.exists(new_name):
            raise NameConflictError(new_name)
        return new_name

    def _prepare_storage(self, storage_dir: Path):
        try:
            storage_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create storage {storage_dir}: {e}") from e

    def _register(self, xml_text: str, new_name: str):
        """
        Stage the descriptor in a temporary file and define it.

        The temporary file is removed whether or not registration succeeds.
        """
        fd, tmp_path = tempfile.mkstemp(prefix=f"{new_name}-", suffix=".xml", dir=self.settings.TEMP_DIR)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(xml_text)
            staged = Path(tmp_path).read_text(encoding="utf-8")

            self._log("INFO", "Registering VM...", {"vm_name": new_name})
            try:
                self.hypervisor.define(staged)
            except HypervisorError as e:
                self._log("ERROR", f"Failed to register VM: {e}", {"error": str(e)})
                raise RegistrationFailedError(f"Failed to register VM '{new_name}': {e}") from e
        finally:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass

    def start_vm(self, result: RestoreResult) -> bool:
        """Start a restored VM. A failure is recorded as a warning, not raised."""
        try:
            self._log("INFO", f"Starting VM {result.machine_name}...")
            self.hypervisor.start(result.machine_name)
            result.started = True
        except HypervisorError as e:
            message = f"Failed to start VM {result.machine_name}: {e}"
            self._log("WARNING", message, {"error": str(e)})
            result.warnings.append(message)
        return result.started

    def restore_vm(
        self,
        backup_dir: Union[str, Path],
        new_name: str,
        storage_dir: Optional[Union[str, Path]] = None,
        start: bool = False
    ) -> RestoreResult:
        """
        Restore a VM from a backup directory as a new machine.

        The backup's own files are never modified: the descriptor is rewritten
        in memory (new name, new UUID, no MAC addresses), disks are copied to
        ``<storage_dir>/<new_name>_<basename>`` and the descriptor is pointed
        at them before registration.

        Args:
            backup_dir: Directory produced by a backup run
            new_name: Name for the restored VM (must not be registered)
            storage_dir: Where restored disks go; defaults to DISK_STORAGE_PATH
            start: Start the VM after registration

        Returns:
            RestoreResult describing the new VM

        Raises:
            BackupNotFoundError: If backup_dir does not exist
            NoConfigFoundError: If backup_dir has no VM config
            DescriptorParseError: If the VM config is malformed
            InvalidInputError: If new_name is empty
            NameConflictError: If new_name is already registered
            StorageIOError: If storage cannot be prepared or a disk copy fails
            RegistrationFailedError: If the hypervisor rejects the definition
        """
        backup_dir = Path(backup_dir).expanduser().resolve()
        if not backup_dir.is_dir():
            raise BackupNotFoundError(f"Directory not found: {backup_dir}")

        xml_file = find_config(backup_dir)
        original = self.store.load(xml_file)
        self._log("INFO", f"Loaded VM config {xml_file.name} (VM: {original.name})", {
            "config": str(xml_file),
            "original_name": original.name
        })

        new_name = self.validate_name(new_name)

        storage_dir = Path(storage_dir or self.settings.DISK_STORAGE_PATH).expanduser().resolve()
        self._prepare_storage(storage_dir)

        # Update identifiers
        descriptor = identity.rewrite(original, new_name)
        result = RestoreResult(
            machine_name=new_name,
            machine_uuid=descriptor.uuid,
            source_backup=str(backup_dir),
            storage_dir=str(storage_dir)
        )

        # Process disks
        report = self.copier.copy_for_restore(list_disk_paths(descriptor), backup_dir, storage_dir, new_name)
        result.warnings.extend(report.warnings)
        result.skipped_disks = report.skipped
        missing = [new for new in report.copied.values() if not os.path.isfile(new)]
        if missing:
            raise StorageIOError(f"Restored disk(s) missing after copy: {', '.join(missing)}")
        remap_disk_sources(descriptor, report.copied)
        result.disk_map = dict(report.copied)

        self._register(descriptor.to_string(), new_name)
        self._log("INFO", f"VM {new_name} registered (UUID {result.machine_uuid})", {
            "vm_name": new_name,
            "vm_uuid": result.machine_uuid,
            "operation": "restore_registered"
        })

        if start:
            self.start_vm(result)

        self._log("INFO", f"Restore complete: {new_name}", {
            "vm_name": new_name,
            "storage_dir": str(storage_dir),
            "operation": "restore_complete"
        })
        return result
