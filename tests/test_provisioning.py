"""Tests for domain provisioning and its rollback behaviour."""
from __future__ import annotations

import os

import pytest

from virthost.libvirt.domain.provisioning import (
    CleanupStack,
    LibvirtDomainProvisioner,
    parse_provisioning_request,
)
from virthost.libvirt.errors import (
    DiskCreationFailedError,
    DomainCreationFailedError,
    DomainExistsError,
    InvalidRequestError,
    StoragePoolNotFoundError,
    StoragePoolPathMissingError,
    StoragePoolXmlInvalidError,
)
from virthost.libvirt.tools import ToolResult

from conftest import FakeDomain, FakePool


def _payload(**overrides) -> dict:
    payload = {
        "name": "vm-new",
        "memory": 2048,
        "vcpus": 2,
        "disk_size": 20,
        "iso_image": "/isos/debian.iso",
    }
    payload.update(overrides)
    return payload


class FakeRunner:
    """Stands in for qemu-img and virt-install."""

    def __init__(self, conn, *, qemu_rc=0, virt_rc=0, register=True, leave_partial=False):
        self.conn = conn
        self.qemu_rc = qemu_rc
        self.virt_rc = virt_rc
        self.register = register
        self.leave_partial = leave_partial
        self.commands = []

    def __call__(self, command, *, timeout=None):
        self.commands.append((list(command), timeout))
        if command[0] == "qemu-img":
            if self.qemu_rc == 0 or self.leave_partial:
                with open(command[4], "w") as handle:
                    handle.write("qcow2")
            return ToolResult(list(command), self.qemu_rc, "" if self.qemu_rc == 0 else "qemu-img: error")
        if self.virt_rc == 0 and self.register:
            name = command[command.index("--name") + 1]
            self.conn.add_domain(FakeDomain(name, state=1))
        return ToolResult(list(command), self.virt_rc, "" if self.virt_rc == 0 else "ERROR    Host does not support kvm")


@pytest.fixture
def pool_dir(conn, tmp_path):
    conn.pools["default"] = FakePool(str(tmp_path))
    return tmp_path


def _provisioner(host, settings, runner):
    return LibvirtDomainProvisioner(host, settings, runner=runner, sleep=lambda _s: None)


def test_create_domain_success(conn, host, settings, pool_dir):
    runner = FakeRunner(conn)

    result = _provisioner(host, settings, runner).create_domain(_payload())

    assert result.to_dict() == {"success": True, "domain": "vm-new", "action": "create", "error": None}
    disk_path = os.path.join(str(pool_dir), "vm-new.qcow2")
    assert os.path.exists(disk_path)

    qemu_cmd, qemu_timeout = runner.commands[0]
    assert qemu_cmd == ["qemu-img", "create", "-f", "qcow2", disk_path, "20G"]
    assert qemu_timeout == settings.tool_timeout

    virt_cmd, _ = runner.commands[1]
    assert virt_cmd[0] == "virt-install"
    assert virt_cmd[virt_cmd.index("--disk") + 1] == f"path={disk_path},format=qcow2"
    assert virt_cmd[virt_cmd.index("--network") + 1] == "network=default"
    assert virt_cmd[virt_cmd.index("--graphics") + 1] == "spice"
    assert virt_cmd[virt_cmd.index("--memory") + 1] == "2048"
    assert "--noautoconsole" in virt_cmd


def test_create_domain_with_bridge(conn, host, settings, pool_dir):
    runner = FakeRunner(conn)

    _provisioner(host, settings, runner).create_domain(_payload(network_bridge="br0"))

    virt_cmd, _ = runner.commands[1]
    assert virt_cmd[virt_cmd.index("--network") + 1] == "bridge=br0"


@pytest.mark.parametrize("disk_size", ["abc", "inf", "Infinity", float("inf"), float("nan")])
def test_non_numeric_disk_size_rejected_before_any_side_effect(conn, host, settings, pool_dir, disk_size):
    runner = FakeRunner(conn)

    with pytest.raises(InvalidRequestError) as excinfo:
        _provisioner(host, settings, runner).create_domain(_payload(disk_size=disk_size))

    assert excinfo.value.key == "invalid_disk_size"
    assert excinfo.value.status_code == 400
    assert runner.commands == []
    assert list(pool_dir.iterdir()) == []


@pytest.mark.parametrize(
    "overrides, key",
    [
        ({"name": ""}, "invalid_vm_name"),
        ({"name": "../etc"}, "invalid_vm_name"),
        ({"memory": 0}, "invalid_memory"),
        ({"vcpus": -1}, "invalid_vcpus"),
        ({"iso_image": None}, "invalid_iso_image"),
    ],
)
def test_invalid_fields_map_to_error_keys(overrides, key):
    request, error = parse_provisioning_request(_payload(**overrides))
    assert request is None
    assert error.key == key


def test_non_object_body_is_rejected():
    request, error = parse_provisioning_request(["vm-new"])
    assert request is None
    assert error.key == "invalid_json"


def test_existing_domain_conflict(conn, host, settings, pool_dir):
    conn.add_domain(FakeDomain("vm-new"))
    runner = FakeRunner(conn)

    with pytest.raises(DomainExistsError) as excinfo:
        _provisioner(host, settings, runner).create_domain(_payload())

    assert excinfo.value.status_code == 409
    assert runner.commands == []


def test_qemu_img_failure_leaves_no_disk(conn, host, settings, pool_dir):
    runner = FakeRunner(conn, qemu_rc=1, leave_partial=True)

    with pytest.raises(DiskCreationFailedError) as excinfo:
        _provisioner(host, settings, runner).create_domain(_payload())

    assert excinfo.value.key == "create_disk_failed"
    assert "qemu-img: error" in excinfo.value.detail
    assert list(pool_dir.iterdir()) == []
    assert len(runner.commands) == 1


def test_virt_install_failure_removes_disk(conn, host, settings, pool_dir):
    runner = FakeRunner(conn, virt_rc=1)

    with pytest.raises(DomainCreationFailedError) as excinfo:
        _provisioner(host, settings, runner).create_domain(_payload())

    assert excinfo.value.key == "create_vm_failed"
    assert "does not support kvm" in excinfo.value.detail
    assert list(pool_dir.iterdir()) == []


def test_pre_existing_disk_is_never_removed(conn, host, settings, pool_dir):
    existing = pool_dir / "vm-new.qcow2"
    existing.write_text("someone else's data")
    runner = FakeRunner(conn)

    with pytest.raises(DiskCreationFailedError):
        _provisioner(host, settings, runner).create_domain(_payload())

    assert existing.read_text() == "someone else's data"
    assert runner.commands == []


def test_registration_never_observed(conn, host, settings, pool_dir):
    runner = FakeRunner(conn, register=False)
    sleeps = []
    provisioner = LibvirtDomainProvisioner(host, settings, runner=runner, sleep=sleeps.append)

    result = provisioner.create_domain(_payload())

    assert result.success is False
    assert result.action == "create"
    assert "vm-new" in result.error
    assert len(sleeps) == settings.registration_attempts
    # The definition step succeeded, so the disk stays with it.
    assert (pool_dir / "vm-new.qcow2").exists()


def test_missing_pool(conn, host, settings):
    with pytest.raises(StoragePoolNotFoundError):
        _provisioner(host, settings, FakeRunner(conn)).create_domain(_payload())


def test_pool_descriptor_unparseable(conn, host, settings):
    conn.pools["default"] = FakePool(xml="<pool><target>")
    with pytest.raises(StoragePoolXmlInvalidError):
        _provisioner(host, settings, FakeRunner(conn)).create_domain(_payload())


def test_pool_without_target_path(conn, host, settings):
    conn.pools["default"] = FakePool(xml="<pool type='dir'><name>default</name><target/></pool>")
    with pytest.raises(StoragePoolPathMissingError):
        _provisioner(host, settings, FakeRunner(conn)).create_domain(_payload())


class TestCleanupStack:
    def test_unwinds_in_reverse_order(self):
        stack = CleanupStack()
        order = []
        stack.push("first", lambda: order.append("first"))
        stack.push("second", lambda: order.append("second"))

        assert stack.unwind() == []
        assert order == ["second", "first"]
        assert len(stack) == 0

    def test_commit_discards_actions(self):
        stack = CleanupStack()
        order = []
        stack.push("first", lambda: order.append("first"))
        stack.commit()

        stack.unwind()
        assert order == []

    def test_failed_step_is_reported_and_others_run(self):
        stack = CleanupStack()
        order = []

        def _boom():
            raise PermissionError("read-only file system")

        stack.push("ok", lambda: order.append("ok"))
        stack.push("boom", _boom)

        assert stack.unwind() == ["boom"]
        assert order == ["ok"]
