"""
Hypervisor interface used by the backup and restore services.
"""
import enum
from abc import ABC, abstractmethod
from typing import List


class MachineState(str, enum.Enum):
    """Coarse machine state as seen by the backup orchestrator."""
    RUNNING = "running"
    SHUT_OFF = "shut off"
    OTHER = "other"


class Hypervisor(ABC):
    """Abstract base class for hypervisor management backends."""

    @abstractmethod
    def list_machines(self) -> List[str]:
        """
        List all registered machines, active and inactive.

        Returns:
            Sorted list of machine names
        """
        pass

    @abstractmethod
    def get_state(self, name: str) -> MachineState:
        """
        Query the current state of a machine.

        Raises:
            MachineNotFoundError: If the machine is not registered
        """
        pass

    @abstractmethod
    def shutdown(self, name: str):
        """Request a graceful shutdown. Returns without waiting."""
        pass

    @abstractmethod
    def start(self, name: str):
        """Start a defined machine."""
        pass

    @abstractmethod
    def dump_xml(self, name: str) -> str:
        """Export the current configuration document of a machine."""
        pass

    @abstractmethod
    def define(self, xml_text: str) -> str:
        """
        Register a new machine from a configuration document.

        Either the machine is fully registered or nothing changes.

        Returns:
            Name of the defined machine
        """
        pass

    def exists(self, name: str) -> bool:
        """Check whether a machine with this name is registered."""
        return name in self.list_machines()

    def close(self):
        """Release any connection held by the backend."""
        pass
