"""
Identity rewrite for restored machines.
"""
import logging
import uuid

from vmbackup.services.kvm.descriptor import (
    Descriptor,
    MAC_ADDRESS_SELECTOR,
    NAME_SELECTOR,
    UUID_SELECTOR
)

logger = logging.getLogger(__name__)


def generate_uuid() -> str:
    """Generate a random (version 4) machine UUID."""
    return str(uuid.uuid4())


def rewrite(descriptor: Descriptor, new_name: str) -> Descriptor:
    """
    Produce a copy of a descriptor under a new identity.

    The copy gets the new name, a freshly generated UUID (always, even if the
    source UUID was never registered here) and no interface MAC addresses, so
    libvirt assigns new ones. The input descriptor is left untouched.

    The caller is responsible for checking that new_name is not registered.

    Args:
        descriptor: Source descriptor, typically loaded from a backup
        new_name: Name for the new machine

    Returns:
        The rewritten descriptor
    """
    rewritten = descriptor.copy()

    rewritten.set_field(NAME_SELECTOR, new_name)
    new_uuid = generate_uuid()
    rewritten.set_field(UUID_SELECTOR, new_uuid)
    removed = rewritten.delete_attribute(MAC_ADDRESS_SELECTOR)

    logger.debug(f"Rewrote identity: name={new_name} uuid={new_uuid}, removed {removed} MAC address(es)")
    return rewritten
