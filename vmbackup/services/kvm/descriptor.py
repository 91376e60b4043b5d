"""
Machine descriptor (libvirt domain XML) loading, querying and saving.
"""
import copy
import logging
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import List, Optional, Tuple, Union

from vmbackup.services.kvm.errors import (
    DescriptorNotFoundError,
    DescriptorParseError,
    HypervisorError,
    HypervisorQueryError,
    StorageIOError
)
from vmbackup.services.kvm.hypervisor import Hypervisor

logger = logging.getLogger(__name__)

NAME_SELECTOR = "/domain/name"
UUID_SELECTOR = "/domain/uuid"
DISK_SOURCE_SELECTOR = "//disk[@device='disk']/source/@file"
MAC_ADDRESS_SELECTOR = "//interface/mac/@address"


def _split_selector(selector: str) -> Tuple[str, Optional[str]]:
    """Split 'path/@attr' into ('path', 'attr'); plain element paths have no attribute."""
    path, sep, attr = selector.rpartition("/@")
    if not sep:
        return selector, None
    return path, attr


def _register_namespaces(xml_text: str):
    """Keep the document's namespace prefixes (qemu:, libosinfo:) when serializing."""
    parser = ET.XMLPullParser(events=("start-ns",))
    parser.feed(xml_text)
    parser.close()
    for _, (prefix, uri) in parser.read_events():
        # ElementTree reserves ns<N> for its own generated prefixes
        if prefix and not re.match(r"ns\d+$", prefix):
            ET.register_namespace(prefix, uri)


class Descriptor:
    """
    Mutable in-memory machine descriptor.

    Selectors are a small XPath subset understood by ElementTree, optionally
    ending in ``/@attribute``:

    - ``/domain/name``: absolute path from the document root
    - ``//disk[@device='disk']/source/@file``: any depth
    - ``name``: relative to the root element
    """

    def __init__(self, root: ET.Element):
        self.root = root

    def _elements(self, path: str) -> List[ET.Element]:
        if path.startswith("//"):
            return self.root.findall("." + path)
        if path.startswith("/"):
            head, _, rest = path[1:].partition("/")
            if head != self.root.tag:
                return []
            return [self.root] if not rest else self.root.findall(rest)
        return self.root.findall(path)

    def get_field(self, selector: str) -> Optional[str]:
        """Return the first matching value, or None."""
        values = self.find_all(selector)
        return values[0] if values else None

    def set_field(self, selector: str, value: str) -> int:
        """
        Set the value of every match of the selector.

        Returns:
            Number of elements updated
        """
        path, attr = _split_selector(selector)
        elements = self._elements(path)
        for element in elements:
            if attr:
                element.set(attr, value)
            else:
                element.text = value
        return len(elements)

    def delete_attribute(self, selector: str) -> int:
        """
        Remove an attribute from every matching element.

        Returns:
            Number of attributes removed
        """
        path, attr = _split_selector(selector)
        if not attr:
            raise ValueError(f"Selector does not name an attribute: {selector}")

        removed = 0
        for element in self._elements(path):
            if attr in element.attrib:
                del element.attrib[attr]
                removed += 1
        return removed

    def find_all(self, selector: str) -> List[str]:
        """Return all matching values in document order."""
        path, attr = _split_selector(selector)
        values = []
        for element in self._elements(path):
            value = element.get(attr) if attr else element.text
            if value is not None:
                values.append(value)
        return values

    @property
    def name(self) -> Optional[str]:
        return self.get_field(NAME_SELECTOR)

    @property
    def uuid(self) -> Optional[str]:
        return self.get_field(UUID_SELECTOR)

    def copy(self) -> "Descriptor":
        return Descriptor(copy.deepcopy(self.root))

    def to_string(self) -> str:
        return ET.tostring(self.root, encoding="unicode")


class DescriptorStore:
    """Reads and writes descriptors on disk and from the hypervisor."""

    def __init__(self, hypervisor: Optional[Hypervisor] = None):
        self.hypervisor = hypervisor

    @staticmethod
    def from_string(xml_text: str, source: str = "<string>") -> Descriptor:
        """
        Parse and validate a descriptor document.

        Raises:
            DescriptorParseError: If the XML is malformed or lacks name/uuid
        """
        try:
            root = ET.fromstring(xml_text)
        except ET.ParseError as e:
            raise DescriptorParseError(f"Malformed VM config {source}: {e}") from e

        _register_namespaces(xml_text)

        if root.tag != "domain":
            raise DescriptorParseError(f"{source} is not a domain definition (root <{root.tag}>)")
        for field in ("name", "uuid"):
            element = root.find(field)
            if element is None or not (element.text or "").strip():
                raise DescriptorParseError(f"{source} has no <{field}> element")

        return Descriptor(root)

    def load(self, path: Union[str, Path]) -> Descriptor:
        """
        Load a descriptor from a file.

        Raises:
            DescriptorNotFoundError: If the file does not exist
            DescriptorParseError: If the document is malformed
        """
        path = Path(path)
        try:
            xml_text = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise DescriptorNotFoundError(f"VM config not found: {path}") from e
        except UnicodeDecodeError as e:
            raise DescriptorParseError(f"VM config {path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise StorageIOError(f"Cannot read VM config {path}: {e}") from e

        logger.debug(f"Loaded VM config from {path}")
        return self.from_string(xml_text, source=str(path))

    def _require_hypervisor(self) -> Hypervisor:
        if self.hypervisor is None:
            raise HypervisorQueryError("No hypervisor configured for live descriptor access")
        return self.hypervisor

    def dump_current(self, machine_name: str) -> Descriptor:
        """
        Obtain the live descriptor of a registered machine.

        Raises:
            HypervisorQueryError: If the hypervisor cannot export the configuration
        """
        hypervisor = self._require_hypervisor()
        try:
            xml_text = hypervisor.dump_xml(machine_name)
        except HypervisorError as e:
            raise HypervisorQueryError(f"Failed to export configuration of VM '{machine_name}': {e}") from e
        return self.from_string(xml_text, source=f"live config of '{machine_name}'")

    def export_current(self, machine_name: str, path: Union[str, Path]) -> Path:
        """Write the live descriptor text of a machine verbatim to a file."""
        hypervisor = self._require_hypervisor()
        try:
            xml_text = hypervisor.dump_xml(machine_name)
        except HypervisorError as e:
            raise HypervisorQueryError(f"Failed to export configuration of VM '{machine_name}': {e}") from e
        return self._write(xml_text, Path(path))

    def save(self, descriptor: Descriptor, path: Union[str, Path]) -> Path:
        """
        Write a descriptor to a file.

        Raises:
            StorageIOError: If the file cannot be written
        """
        return self._write(descriptor.to_string(), Path(path))

    @staticmethod
    def _write(xml_text: str, path: Path) -> Path:
        try:
            with open(path, "w", encoding="utf-8") as f:
                f.write(xml_text)
        except OSError as e:
            raise StorageIOError(f"Failed to save VM config to {path}: {e}") from e
        logger.debug(f"Saved VM config to {path}")
        return path
