"""
KVM backup and restore services and exports.
"""
from vmbackup.services.kvm.backup import KVMBackupService
from vmbackup.services.kvm.errors import VMBackupError
from vmbackup.services.kvm.hypervisor import Hypervisor, MachineState
from vmbackup.services.kvm.restore import KVMRestoreService, list_backups
from vmbackup.services.kvm.results import BackupResult, RestoreResult


__all__ = [
    "KVMBackupService",
    "KVMRestoreService",
    "Hypervisor",
    "MachineState",
    "VMBackupError",
    "BackupResult",
    "RestoreResult",
    "list_backups"
]
