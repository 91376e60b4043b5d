import pytest

libvirt = pytest.importorskip("libvirt")

from vmbackup.services.kvm.errors import (  # noqa: E402
    HypervisorError,
    HypervisorQueryError,
    MachineNotFoundError
)
from vmbackup.services.kvm.hypervisor import MachineState  # noqa: E402
from vmbackup.services.kvm.libvirt_hypervisor import LibvirtHypervisor  # noqa: E402


def _libvirt_error(code):
    error = libvirt.libvirtError("simulated failure")
    error.get_error_code = lambda: code
    return error


class StubDomain:
    def __init__(self, name, state=libvirt.VIR_DOMAIN_SHUTOFF, xml="<domain/>"):
        self._name = name
        self._state = state
        self._xml = xml
        self.created = False
        self.shutdown_requested = False

    def name(self):
        return self._name

    def state(self):
        return [self._state, 0]

    def shutdown(self):
        self.shutdown_requested = True

    def create(self):
        if self._state == libvirt.VIR_DOMAIN_RUNNING:
            raise _libvirt_error(libvirt.VIR_ERR_OPERATION_INVALID)
        self.created = True

    def XMLDesc(self, flags):
        return self._xml


class StubConnection:
    def __init__(self, domains):
        self.domains = {d.name(): d for d in domains}
        self.defined = []
        self.reject_define = False
        self.closed = False

    def listAllDomains(self):
        return list(self.domains.values())

    def lookupByName(self, name):
        if name not in self.domains:
            raise _libvirt_error(libvirt.VIR_ERR_NO_DOMAIN)
        return self.domains[name]

    def defineXML(self, xml):
        if self.reject_define:
            raise _libvirt_error(libvirt.VIR_ERR_XML_ERROR)
        self.defined.append(xml)
        domain = StubDomain("restored")
        self.domains["restored"] = domain
        return domain

    def close(self):
        self.closed = True
        return 0


@pytest.fixture
def connection(monkeypatch):
    conn = StubConnection([
        StubDomain("web01", libvirt.VIR_DOMAIN_RUNNING, "<domain><name>web01</name></domain>"),
        StubDomain("db01", libvirt.VIR_DOMAIN_SHUTOFF),
        StubDomain("paused", libvirt.VIR_DOMAIN_PAUSED),
    ])
    monkeypatch.setattr(libvirt, "open", lambda uri: conn)
    return conn


def test_list_machines_sorted(connection):
    assert LibvirtHypervisor().list_machines() == ["db01", "paused", "web01"]


def test_state_mapping(connection):
    hypervisor = LibvirtHypervisor()

    assert hypervisor.get_state("web01") == MachineState.RUNNING
    assert hypervisor.get_state("db01") == MachineState.SHUT_OFF
    assert hypervisor.get_state("paused") == MachineState.OTHER


def test_unknown_domain(connection):
    hypervisor = LibvirtHypervisor()

    assert not hypervisor.exists("ghost")
    with pytest.raises(MachineNotFoundError):
        hypervisor.get_state("ghost")


def test_start_and_shutdown(connection):
    hypervisor = LibvirtHypervisor()

    hypervisor.shutdown("web01")
    hypervisor.start("db01")

    assert connection.domains["web01"].shutdown_requested
    assert connection.domains["db01"].created
    with pytest.raises(HypervisorError):
        hypervisor.start("web01")


def test_dump_xml(connection):
    assert LibvirtHypervisor().dump_xml("web01") == "<domain><name>web01</name></domain>"


def test_define(connection):
    hypervisor = LibvirtHypervisor()

    assert hypervisor.define("<domain><name>restored</name></domain>") == "restored"
    assert connection.defined == ["<domain><name>restored</name></domain>"]

    connection.reject_define = True
    with pytest.raises(HypervisorError):
        hypervisor.define("<domain/>")


def test_connection_failure(monkeypatch):
    def fail(uri):
        raise _libvirt_error(libvirt.VIR_ERR_SYSTEM_ERROR)
    monkeypatch.setattr(libvirt, "open", fail)

    with pytest.raises(HypervisorError):
        LibvirtHypervisor("qemu:///nowhere").list_machines()


def test_lookup_failure_other_than_missing(connection, monkeypatch):
    def lookup(name):
        raise _libvirt_error(libvirt.VIR_ERR_SYSTEM_ERROR)
    monkeypatch.setattr(connection, "lookupByName", lookup)

    with pytest.raises(HypervisorQueryError):
        LibvirtHypervisor().dump_xml("web01")


def test_close_releases_connection(connection):
    hypervisor = LibvirtHypervisor()
    hypervisor.list_machines()

    hypervisor.close()

    assert connection.closed
