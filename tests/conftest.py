#tests\conftest.py

"""Pytest configuration and fixtures."""

import os
import shutil
import threading
from pathlib import Path
from typing import Dict

import pytest

from fleet_engine.core.errors import HypervisorError, RemoteCommandFailure, TransportFailure
from fleet_engine.core.models import ContainerState, ContainerStatus, Node, worker_name
from fleet_engine.infrastructure.config import FleetSettings, WorkerCredentials
from fleet_engine.infrastructure.history.database import create_db_engine, drop_db, get_session_factory, init_db
from fleet_engine.infrastructure.history.repository import RunHistoryRepository
from fleet_engine.inventory.store import InventoryStore

MASTER_IP = "192.168.1.10"


# ============================================
# FAKES
# ============================================

class FakeHypervisor:
    """In-memory libvirt: disks are real files under images_dir, domains are a dict."""

    def __init__(self, images_dir: Path):
        self.images_dir = images_dir
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.domains: Dict[str, str] = {}
        self.leases: Dict[str, str] = {}
        self.fail_install = set()
        self.calls = []

    def disk_path(self, name):
        return self.images_dir / f"{name}.qcow2"

    def seed_path(self, name):
        return self.images_dir / f"{name}-cloud-init.iso"

    def disk_exists(self, name):
        return self.disk_path(name).exists()

    def create_disk(self, name, base_image, disk_gb):
        self.calls.append(("create_disk", name))
        self.disk_path(name).write_text(f"overlay of {base_image}")
        return self.disk_path(name)

    def resize_disk(self, name, disk_gb):
        self.calls.append(("resize_disk", name))

    def build_seed_iso(self, name, user_data, meta_data):
        self.calls.append(("build_seed_iso", name))
        self.seed_path(name).write_text(meta_data.read_text())
        return self.seed_path(name)

    def import_image(self, src, dest):
        self.calls.append(("import_image", dest.name))
        shutil.move(str(src), str(dest))

    def delete_disks(self, name):
        self.calls.append(("delete_disks", name))
        self.disk_path(name).unlink(missing_ok=True)
        self.seed_path(name).unlink(missing_ok=True)

    def domain_state(self, name):
        return self.domains.get(name)

    def install(self, name, cpus, memory_mb, disk, seed_iso):
        self.calls.append(("install", name))
        if name in self.fail_install:
            raise HypervisorError(f"virt-install --name {name} exited 1: ERROR", returncode=1)
        self.domains[name] = "running"

    def start(self, name):
        self.calls.append(("start", name))
        self.domains[name] = "running"

    def destroy(self, name):
        self.calls.append(("destroy", name))
        self.domains[name] = "shut off"

    def undefine(self, name):
        self.calls.append(("undefine", name))
        self.domains.pop(name, None)

    def lease_address(self, name):
        if self.domains.get(name) != "running":
            return None
        return self.leases.get(name)

    def count(self, call, name=None):
        return sum(1 for c, n in self.calls if c == call and (name is None or n == name))


class FakeTransport:
    """Records remote operations; unreachable addresses raise TransportFailure."""

    def __init__(self):
        self.unreachable = set()
        self.failing_commands: Dict[str, str] = {}
        self.slow: Dict[str, threading.Event] = {}
        self.files: Dict[tuple, bytes] = {}
        self.commands = []
        self.synced = []
        self._lock = threading.Lock()

    def _check(self, address):
        if address in self.unreachable:
            raise TransportFailure(f"ssh worker@{address}: No route to host")

    def run(self, address, command, *, timeout=None, stdin=None, check=True):
        self._check(address)
        with self._lock:
            self.commands.append((address, command))
        for needle, error in self.failing_commands.items():
            if needle in command and check:
                raise RemoteCommandFailure(f"{command!r} exited 1: {error}", returncode=1, output=error)

    def probe(self, address, timeout=2):
        gate = self.slow.get(address)
        if gate is not None:
            gate.wait()
        return address not in self.unreachable

    def write_file(self, address, remote_path, data, *, mode=None):
        self._check(address)
        with self._lock:
            self.files[(address, remote_path)] = data

    def sync_tree(self, local_dir, address, remote_dir, excludes=()):
        self._check(address)
        with self._lock:
            self.synced.append((address, str(local_dir), remote_dir, tuple(excludes)))


class FakeProbe:
    """Container status per address; defaults to Up."""

    def __init__(self):
        self.statuses: Dict[str, ContainerStatus] = {}
        self.errors: Dict[str, Exception] = {}

    def status(self, address, timeout=None):
        if address in self.errors:
            raise self.errors[address]
        return self.statuses.get(address, ContainerStatus(ContainerState.UP, "Up 2 minutes"))


# ============================================
# FIXTURES
# ============================================

@pytest.fixture
def settings(tmp_path) -> FleetSettings:
    """Settings rooted in tmp_path; no sudo, no waits."""
    return FleetSettings(
        _env_file=None,
        num_workers=3,
        images_dir=tmp_path / "images",
        config_dir=tmp_path / "vm-configs",
        inventory_path=tmp_path / "vm-configs" / "inventory.txt",
        ssh_key_path=tmp_path / "ssh" / "id_rsa",
        project_dir=tmp_path / "project",
        use_sudo=False,
        address_timeout=0,
        address_poll_interval=0.01,
        deploy_settle_seconds=0,
        master_address=MASTER_IP,
        max_parallel=3,
    )


@pytest.fixture
def ssh_key(settings) -> str:
    """Pre-existing operator key so ssh-keygen never runs."""
    public = settings.ssh_key_path.with_name("id_rsa.pub")
    public.parent.mkdir(parents=True, exist_ok=True)
    public.write_text("ssh-rsa AAAAB3NzaC1yc2E test@fleet\n")
    return public.read_text().strip()


@pytest.fixture
def base_image(settings) -> Path:
    settings.images_dir.mkdir(parents=True, exist_ok=True)
    settings.base_image_path.write_bytes(b"QFI\xfb")
    return settings.base_image_path


@pytest.fixture
def hypervisor(settings) -> FakeHypervisor:
    hv = FakeHypervisor(settings.images_dir)
    hv.leases.update({worker_name(i): f"192.168.122.{100 + i}" for i in range(1, 4)})
    return hv


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def store(settings) -> InventoryStore:
    return InventoryStore(settings.resolved_inventory_path, settings.resources)


@pytest.fixture
def running_inventory(store) -> InventoryStore:
    """Three RUNNING workers."""
    store.set_master_address(MASTER_IP)
    for i in range(1, 4):
        node = Node(name=worker_name(i))
        node.mark_running(f"192.168.122.{100 + i}")
        store.upsert(node)
    return store


@pytest.fixture
def bundle_source(settings) -> Path:
    """Minimal cdmap tree with models and two service-account keys."""
    source = settings.bundle_source_dir
    (source / "models").mkdir(parents=True)
    (source / "main.py").write_text("print('worker')\n")
    (source / "requirements.txt").write_text("pika\n")
    (source / "models" / "model.pt").write_bytes(b"\x00\x01")
    (source / "service-account-key-a.json").write_text('{"key": "a"}')
    (source / "service-account-key-b.json").write_text('{"key": "b"}')
    return source


@pytest.fixture
def credentials() -> WorkerCredentials:
    return WorkerCredentials(
        _env_file=None,
        rabbitmq_user="cdmap",
        rabbitmq_password="secret",
        redis_password="redis-secret",
        aws_access_key_id="minio",
        aws_secret_access_key="minio-secret",
    )


@pytest.fixture
def history(tmp_path):
    """Run history repository backed by a throwaway SQLite file."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'history' / 'fleet_history.db'}")
    init_db(engine)

    yield RunHistoryRepository(get_session_factory(engine))

    drop_db(engine)
    engine.dispose()


@pytest.fixture
def fake_ssh(tmp_path, monkeypatch):
    """
    Put a scripted `ssh` first on PATH.

    Returns a function taking the shell body; each invocation's argv is
    written to ssh-argv.txt, one argument per line.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    argv_file = tmp_path / "ssh-argv.txt"
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def install(body: str) -> Path:
        script = bin_dir / "ssh"
        script.write_text(f"#!/bin/sh\nprintf '%s\\n' \"$@\" > '{argv_file}'\n{body}\n")
        script.chmod(0o755)
        return argv_file

    return install
