from __future__ import annotations

import pytest
import libvirt

from virthost.core.config import VirtSettings
from virthost.libvirt.host import LibvirtHost

RUNNING = 1
SHUTOFF = 5


def domain_xml(name: str, *, disks=(), spice_port=None, ip=None) -> str:
    devices = []
    for path in disks:
        devices.append(
            f"<disk type='file' device='disk'><driver name='qemu' type='qcow2'/>"
            f"<source file='{path}'/><target dev='vda' bus='virtio'/></disk>"
        )
    devices.append(
        "<disk type='file' device='cdrom'><source file='/isos/install.iso'/>"
        "<target dev='sda' bus='sata'/></disk>"
    )
    devices.append(
        "<interface type='network'><mac address='52:54:00:aa:bb:cc'/>"
        "<source network='default'/><model type='virtio'/>"
        + (f"<ip address='{ip}' prefix='24'/>" if ip else "")
        + "</interface>"
    )
    if spice_port is None:
        devices.append("<graphics type='spice' autoport='yes'/>")
    else:
        devices.append(f"<graphics type='spice' port='{spice_port}' autoport='yes' listen='127.0.0.1'/>")
    return f"<domain type='kvm'><name>{name}</name><devices>{''.join(devices)}</devices></domain>"


class FakeSnapshot:
    def __init__(self, xml: str) -> None:
        self._xml = xml

    def getXMLDesc(self, _flags=0):  # noqa: N802
        return self._xml


class FakeDomain:
    def __init__(self, name, *, state=RUNNING, memory=1048576, max_memory=2097152, vcpus=2,
                 cpu_time=1000, xml=None, stats=None, snapshots=None):
        self._name = name
        self.state = state
        self.memory = memory
        self.max_memory = max_memory
        self.vcpus = vcpus
        self.cpu_time = cpu_time
        self.xml = xml if xml is not None else domain_xml(name)
        self.stats = stats if stats is not None else {}
        self.snapshots = dict(snapshots or {})
        self.calls = []
        self.failures = {}

    def _call(self, method, *args):
        self.calls.append((method, args))
        if method in self.failures:
            raise libvirt.libvirtError(self.failures[method])

    def name(self):
        return self._name

    def info(self):
        self._call("info")
        return [self.state, self.max_memory, self.memory, self.vcpus, self.cpu_time]

    def XMLDesc(self, flags=0):  # noqa: N802
        self._call("XMLDesc", flags)
        return self.xml

    def memoryStats(self):  # noqa: N802
        self._call("memoryStats")
        return self.stats

    def create(self):
        self._call("create")
        self.state = RUNNING

    def shutdown(self):
        self._call("shutdown")

    def destroy(self):
        self._call("destroy")
        self.state = SHUTOFF

    def reboot(self, flags=0):
        self._call("reboot", flags)

    def undefineFlags(self, flags):  # noqa: N802
        self._call("undefineFlags", flags)

    def snapshotListNames(self, flags=0):  # noqa: N802
        self._call("snapshotListNames", flags)
        return list(self.snapshots)

    def snapshotLookupByName(self, name, flags=0):  # noqa: N802
        self._call("snapshotLookupByName", name)
        if name not in self.snapshots:
            raise libvirt.libvirtError(f"snapshot '{name}' not found")
        return FakeSnapshot(self.snapshots[name])

    def snapshotCreateXML(self, xml, flags=0):  # noqa: N802
        self._call("snapshotCreateXML", xml, flags)


class FakePool:
    def __init__(self, path="/var/lib/libvirt/images", *, xml=None):
        self.xml = xml if xml is not None else (
            f"<pool type='dir'><name>default</name><target><path>{path}</path></target></pool>"
        )
        self.refreshed = 0
        self.fail_refresh = None

    def refresh(self, _flags=0):
        if self.fail_refresh:
            raise libvirt.libvirtError(self.fail_refresh)
        self.refreshed += 1

    def XMLDesc(self, _flags=0):  # noqa: N802
        return self.xml


class FakeVolume:
    def __init__(self, path):
        self.path = path
        self.deleted = False

    def delete(self, _flags=0):
        self.deleted = True


class FakeConn:
    def __init__(self):
        self.domains = {}
        self.pools = {}
        self.volumes = {}
        self.closed = False

    def add_domain(self, domain, dom_id=None):
        domain.dom_id = dom_id
        self.domains[domain.name()] = domain
        return domain

    def isAlive(self):  # noqa: N802
        return 0 if self.closed else 1

    def close(self):
        self.closed = True

    def listDomainsID(self):  # noqa: N802
        return [d.dom_id for d in self.domains.values() if d.dom_id is not None]

    def lookupByID(self, dom_id):  # noqa: N802
        for domain in self.domains.values():
            if domain.dom_id == dom_id:
                return domain
        raise libvirt.libvirtError(f"no domain with matching id {dom_id}")

    def listDefinedDomains(self):  # noqa: N802
        return [name for name, d in self.domains.items() if d.dom_id is None]

    def lookupByName(self, name):  # noqa: N802
        if name not in self.domains:
            raise libvirt.libvirtError(f"Domain not found: no domain with matching name '{name}'")
        return self.domains[name]

    def listStoragePools(self):  # noqa: N802
        return list(self.pools)

    def storagePoolLookupByName(self, name):  # noqa: N802
        if name not in self.pools:
            raise libvirt.libvirtError(f"Storage pool not found: no storage pool with matching name '{name}'")
        return self.pools[name]

    def storageVolLookupByPath(self, path):  # noqa: N802
        if path not in self.volumes:
            raise libvirt.libvirtError(f"Storage volume not found: no storage vol with matching path '{path}'")
        return self.volumes[path]


@pytest.fixture
def conn():
    return FakeConn()


@pytest.fixture
def host(conn):
    return LibvirtHost("test:///fake", opener=lambda _uri: conn)


@pytest.fixture
def settings():
    return VirtSettings(
        libvirt_uri="test:///fake",
        default_pool="default",
        tool_timeout=5.0,
        registration_attempts=3,
        registration_interval=0.0,
        relay_spawn_grace=0.0,
    )
