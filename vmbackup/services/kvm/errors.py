"""
Exceptions raised by the backup and restore services.
"""


class VMBackupError(Exception):
    """Base exception for backup and restore operations."""
    pass


class NotFoundError(VMBackupError):
    """Exception raised when a machine, file or backup is missing."""
    pass


class MachineNotFoundError(NotFoundError):
    """Exception raised when a machine is not registered with the hypervisor."""

    def __init__(self, name: str):
        super().__init__(f"VM '{name}' not found")
        self.name = name


class BackupNotFoundError(NotFoundError):
    """Exception raised when a backup directory does not exist."""
    pass


class DescriptorNotFoundError(NotFoundError):
    """Exception raised when a descriptor file does not exist."""
    pass


class NoConfigFoundError(NotFoundError):
    """Exception raised when a backup directory holds no configuration document."""
    pass


class NameConflictError(VMBackupError):
    """Exception raised when the requested machine name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"VM '{name}' already exists")
        self.name = name


class InvalidInputError(VMBackupError):
    """Exception raised for empty or otherwise unusable user input."""
    pass


class DescriptorParseError(VMBackupError):
    """Exception raised when a descriptor document is malformed."""
    pass


class HypervisorError(VMBackupError):
    """Exception raised when a hypervisor operation fails."""
    pass


class HypervisorQueryError(HypervisorError):
    """Exception raised when machine state or configuration cannot be read."""
    pass


class StorageIOError(VMBackupError):
    """Exception raised when a directory or file cannot be created or written."""
    pass


class DiskCopyError(StorageIOError):
    """Exception raised when a disk image cannot be copied, even after escalation."""

    def __init__(self, source: str, destination: str, reason: str):
        super().__init__(f"Failed to copy disk {source} -> {destination}: {reason}")
        self.source = source
        self.destination = destination
        self.reason = reason


class RegistrationFailedError(VMBackupError):
    """Exception raised when the hypervisor rejects a machine definition."""
    pass
