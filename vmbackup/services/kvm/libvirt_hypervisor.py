"""
libvirt implementation of the hypervisor interface.
"""
import logging
from typing import List, Optional

import libvirt

from vmbackup.services.kvm.errors import (
    HypervisorError,
    HypervisorQueryError,
    MachineNotFoundError
)
from vmbackup.services.kvm.hypervisor import Hypervisor, MachineState

logger = logging.getLogger(__name__)


class LibvirtHypervisor(Hypervisor):
    """Hypervisor backend talking to a local libvirt daemon."""

    def __init__(self, uri: str = "qemu:///system"):
        """
        Initialize the libvirt backend.

        Args:
            uri: libvirt connection URI (e.g. qemu:///system)
        """
        self.uri = uri
        self._connection: Optional[libvirt.virConnect] = None

    def _get_connection(self) -> libvirt.virConnect:
        """Get or create the libvirt connection."""
        if self._connection is None:
            try:
                logger.info(f"Connecting to libvirt host: {self.uri}")
                conn = libvirt.open(self.uri)
            except libvirt.libvirtError as e:
                logger.error(f"Failed to connect to libvirt: {e}")
                raise HypervisorError(f"Failed to connect to libvirt URI {self.uri}: {e}") from e

            if conn is None:
                raise HypervisorError(f"Failed to connect to libvirt URI: {self.uri}")

            self._connection = conn
        return self._connection

    def _lookup(self, name: str) -> libvirt.virDomain:
        """Look up a domain by name, mapping 'no domain' to MachineNotFoundError."""
        conn = self._get_connection()
        try:
            return conn.lookupByName(name)
        except libvirt.libvirtError as e:
            if e.get_error_code() == libvirt.VIR_ERR_NO_DOMAIN:
                raise MachineNotFoundError(name) from e
            raise HypervisorQueryError(f"Failed to look up VM '{name}': {e}") from e

    def list_machines(self) -> List[str]:
        conn = self._get_connection()
        try:
            return sorted(domain.name() for domain in conn.listAllDomains())
        except libvirt.libvirtError as e:
            logger.error(f"Failed to list VMs: {e}")
            raise HypervisorQueryError(f"Failed to list VMs: {e}") from e

    def exists(self, name: str) -> bool:
        try:
            self._lookup(name)
            return True
        except MachineNotFoundError:
            return False

    def get_state(self, name: str) -> MachineState:
        domain = self._lookup(name)
        try:
            state, _reason = domain.state()
        except libvirt.libvirtError as e:
            raise HypervisorQueryError(f"Failed to query state of VM '{name}': {e}") from e

        if state == libvirt.VIR_DOMAIN_RUNNING:
            return MachineState.RUNNING
        if state == libvirt.VIR_DOMAIN_SHUTOFF:
            return MachineState.SHUT_OFF
        return MachineState.OTHER

    def shutdown(self, name: str):
        domain = self._lookup(name)
        try:
            domain.shutdown()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to shut down VM '{name}': {e}") from e

    def start(self, name: str):
        domain = self._lookup(name)
        try:
            domain.create()
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to start VM '{name}': {e}") from e

    def dump_xml(self, name: str) -> str:
        domain = self._lookup(name)
        try:
            return domain.XMLDesc(0)
        except libvirt.libvirtError as e:
            raise HypervisorQueryError(f"Failed to export configuration of VM '{name}': {e}") from e

    def define(self, xml_text: str) -> str:
        conn = self._get_connection()
        try:
            domain = conn.defineXML(xml_text)
        except libvirt.libvirtError as e:
            raise HypervisorError(f"Failed to define VM: {e}") from e
        if domain is None:
            raise HypervisorError("libvirt returned no domain for definition")
        return domain.name()

    def close(self):
        if self._connection is not None:
            try:
                self._connection.close()
            except libvirt.libvirtError as e:
                logger.warning(f"Error closing libvirt connection: {e}")
            self._connection = None
