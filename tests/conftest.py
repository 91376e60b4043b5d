import os
import pwd
import shutil
import subprocess
import xml.etree.ElementTree as ET

import pytest

from vmbackup.core.config import Settings
from vmbackup.services.kvm.errors import HypervisorError, MachineNotFoundError
from vmbackup.services.kvm.hypervisor import Hypervisor, MachineState
from vmbackup.services.kvm.privilege import PrivilegedRunner

_real_copy2 = shutil.copy2

ORIGINAL_UUID = "6f1c2a9e-8d1b-4c3e-9a7f-2b5d8e0c1f34"

DOMAIN_TEMPLATE = """<domain type='kvm'>
  <name>{name}</name>
  <uuid>{uuid}</uuid>
  <memory unit='KiB'>2097152</memory>
  <vcpu placement='static'>2</vcpu>
  <devices>
{disks}
    <disk type='file' device='cdrom'>
      <driver name='qemu' type='raw'/>
      <source file='/isos/install.iso'/>
      <target dev='sda' bus='sata'/>
    </disk>
    <interface type='network'>
      <mac address='52:54:00:12:34:56'/>
      <source network='default'/>
      <model type='virtio'/>
    </interface>
    <interface type='bridge'>
      <mac address='52:54:00:ab:cd:ef'/>
      <source bridge='br0'/>
    </interface>
  </devices>
</domain>
"""

DISK_TEMPLATE = """    <disk type='file' device='disk'>
      <driver name='qemu' type='qcow2'/>
      <source file='{path}'/>
      <target dev='{dev}' bus='virtio'/>
    </disk>"""


def make_domain_xml(name="web01", disk_paths=(), uuid=ORIGINAL_UUID):
    disks = "\n".join(
        DISK_TEMPLATE.format(path=path, dev=f"vd{chr(ord('a') + i)}")
        for i, path in enumerate(disk_paths)
    )
    return DOMAIN_TEMPLATE.format(name=name, uuid=uuid, disks=disks)


class FakeHypervisor(Hypervisor):
    """In-memory machine registry."""

    def __init__(self):
        self.machines = {}
        self.calls = []
        self.stop_on_shutdown = True
        self.fail_define = False
        self.fail_start = False
        self.fail_dump = False
        self.closed = False

    def add(self, name, xml, state=MachineState.SHUT_OFF):
        self.machines[name] = {"xml": xml, "state": state}

    def _get(self, name):
        if name not in self.machines:
            raise MachineNotFoundError(name)
        return self.machines[name]

    def list_machines(self):
        self.calls.append(("list",))
        return sorted(self.machines)

    def get_state(self, name):
        return self._get(name)["state"]

    def shutdown(self, name):
        self.calls.append(("shutdown", name))
        machine = self._get(name)
        if self.stop_on_shutdown:
            machine["state"] = MachineState.SHUT_OFF

    def start(self, name):
        self.calls.append(("start", name))
        machine = self._get(name)
        if self.fail_start:
            raise HypervisorError(f"cannot start {name}")
        machine["state"] = MachineState.RUNNING

    def dump_xml(self, name):
        self.calls.append(("dump_xml", name))
        machine = self._get(name)
        if self.fail_dump:
            raise HypervisorError("export failed")
        return machine["xml"]

    def define(self, xml_text):
        self.calls.append(("define", xml_text))
        if self.fail_define:
            raise HypervisorError("XML error: invalid definition")
        name = ET.fromstring(xml_text).findtext("name")
        if name in self.machines:
            raise HypervisorError(f"domain '{name}' already exists")
        self.add(name, xml_text)
        return name

    def close(self):
        self.closed = True

    def called(self, operation):
        return [call for call in self.calls if call[0] == operation]


class FakeRunner(PrivilegedRunner):
    """Privileged runner that executes copies unprivileged and records commands."""

    def __init__(self, fail=False):
        super().__init__(["sudo", "-n"])
        self.fail = fail
        self.commands = []

    @property
    def is_privileged(self):
        return False

    def run(self, args):
        self.commands.append(list(args))
        if self.fail:
            raise subprocess.CalledProcessError(1, args, output="", stderr="sudo: a password is required")
        if args[0] == "cp":
            _real_copy2(args[-2], args[-1])
        return subprocess.CompletedProcess(args, 0, "", "")


@pytest.fixture
def current_user():
    return pwd.getpwuid(os.geteuid()).pw_name


@pytest.fixture
def settings(tmp_path, current_user):
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    return Settings(
        EFFECTIVE_USER=current_user,
        BACKUP_BASE_PATH=str(tmp_path / "backups"),
        DISK_STORAGE_PATH=str(tmp_path / "storage"),
        TEMP_DIR=str(temp_dir),
        SHUTDOWN_POLL_ATTEMPTS=3,
        SHUTDOWN_POLL_INTERVAL=0,
        ESCALATION_COMMAND="sudo -n",
        LOG_DIR=None
    )


@pytest.fixture
def hypervisor():
    return FakeHypervisor()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def images_dir(tmp_path):
    path = tmp_path / "images"
    path.mkdir()
    return path


@pytest.fixture
def web01(hypervisor, images_dir):
    """A running VM with one qcow2 disk."""
    disk = images_dir / "web01.qcow2"
    disk.write_bytes(b"QFI\xfb" + b"\x00" * 1020)
    hypervisor.add("web01", make_domain_xml("web01", [str(disk)]), MachineState.RUNNING)
    return disk
