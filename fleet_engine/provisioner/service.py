# fleet_engine/provisioner/service.py
"""Provisioner - brings declared worker VMs to RUNNING, idempotently."""

import logging
import time
from pathlib import Path
from typing import Callable, List, Optional

from fleet_engine.core.errors import AddressTimeout, FleetError, FleetValidationError
from fleet_engine.core.models import Node, NodeState, Resources, RunReport, worker_name
from fleet_engine.executor.pool import CancelledTask, NodeTaskPool, TaskResult, to_outcome
from fleet_engine.hypervisor.libvirt import LibvirtHypervisor
from fleet_engine.infrastructure.config import FleetSettings
from fleet_engine.infrastructure.history.repository import RunHistoryRepository
from fleet_engine.inventory.store import InventoryStore
from fleet_engine.provisioner.images import download_image
from fleet_engine.remote.keys import ensure_ssh_key
from fleet_engine.remote.transport import SSHTransport, detect_master_address
from fleet_engine.templates import render_meta_data, render_user_data

logger = logging.getLogger(__name__)

# Domain states from which `virsh start` brings the VM back.
_STARTABLE_STATES = ("shut off", "crashed")


class Provisioner:
    """
    Provisions worker VMs on the local libvirt host.

    Flow per node:
    1. create_node  - qcow2 overlay + cloud-init seed (skipped if disk exists)
    2. boot_node    - virt-install --import (no-op if already running)
    3. await_address - poll the DHCP lease with a deadline
    4. upsert the node into the inventory

    Image download and SSH key generation happen once, up front, and are
    fatal on failure. Per-node failures are isolated unless
    continue_on_failure is disabled.
    """

    def __init__(
        self,
        settings: FleetSettings,
        hypervisor: LibvirtHypervisor,
        store: InventoryStore,
        transport: SSHTransport,
        history: Optional[RunHistoryRepository] = None,
        pool: Optional[NodeTaskPool] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._hypervisor = hypervisor
        self._store = store
        self._transport = transport
        self._history = history
        self._pool = pool or NodeTaskPool(settings.max_parallel, name="provision")
        self._clock = clock
        self._sleep = sleep

    # ============================================
    # PREREQUISITES
    # ============================================

    def ensure_base_image(self, source_url: str, dest_path: Path) -> Path:
        """Download the base image once; an existing file is accepted as is."""
        if dest_path.exists():
            logger.info(f"ℹ️  Cloud image already exists: {dest_path}")
            return dest_path

        staging = self._settings.resolved_config_dir / f".{dest_path.name}.download"
        download_image(
            source_url,
            staging,
            timeout=self._settings.download_timeout,
            sha256=self._settings.base_image_sha256,
        )
        self._hypervisor.import_image(staging, dest_path)
        logger.info(f"✅ Cloud image ready: {dest_path}")
        return dest_path

    def _write_user_data(self, public_key: str) -> Path:
        path = self._settings.resolved_config_dir / "user-data"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_user_data(self._settings.worker_user, public_key), encoding="utf-8")
        return path

    def _write_meta_data(self, name: str) -> Path:
        path = self._settings.resolved_config_dir / f"meta-data-{name}"
        path.write_text(render_meta_data(name), encoding="utf-8")
        return path

    # ============================================
    # NODE OPERATIONS
    # ============================================

    def create_node(self, name: str, cpu: int, mem: int, disk: int, base_image: Path) -> Node:
        """Allocate the node's disk and seed ISO; an existing disk is reused."""
        node = Node(name=name, resources=Resources(cpus=cpu, memory_mb=mem, disk_gb=disk))
        node.mark_provisioning()

        if self._hypervisor.disk_exists(name):
            logger.info(f"[{name}] ℹ️  disk {self._hypervisor.disk_path(name)} already exists, skipping creation")
        else:
            self._hypervisor.create_disk(name, base_image, disk)
            self._hypervisor.resize_disk(name, disk)
            logger.info(f"[{name}] ✅ disk created ({disk}G)")

        if not self._hypervisor.seed_path(name).exists():
            user_data = self._settings.resolved_config_dir / "user-data"
            self._hypervisor.build_seed_iso(name, user_data, self._write_meta_data(name))

        return node

    def boot_node(self, node: Node) -> None:
        """Start the VM with its declared cpu/mem; running domains are left alone."""
        state = self._hypervisor.domain_state(node.name)

        if state is None:
            self._hypervisor.install(
                node.name,
                cpus=node.resources.cpus,
                memory_mb=node.resources.memory_mb,
                disk=self._hypervisor.disk_path(node.name),
                seed_iso=self._hypervisor.seed_path(node.name),
            )
            logger.info(f"[{node.name}] ✅ VM created")
        elif state in _STARTABLE_STATES:
            self._hypervisor.start(node.name)
            logger.info(f"[{node.name}] VM was {state}, started")
        else:
            logger.info(f"[{node.name}] ℹ️  VM already exists ({state}), skipping")

    def await_address(self, node: Node, timeout: Optional[float] = None) -> str:
        """
        Poll the hypervisor for the node's leased address.

        Checks immediately, then every address_poll_interval seconds until
        the deadline.

        Raises:
            AddressTimeout: no lease within timeout
        """
        timeout = self._settings.address_timeout if timeout is None else timeout
        interval = self._settings.address_poll_interval
        deadline = self._clock() + timeout

        while True:
            address = self._hypervisor.lease_address(node.name)
            if address:
                node.mark_running(address)
                logger.info(f"[{node.name}] address {address}")
                return address

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise AddressTimeout(f"{node.name} got no address within {timeout:g}s")

            logger.info(f"[{node.name}] ⏳ waiting for address ({remaining:.0f}s left)")
            self._sleep(min(interval, remaining))

    def provision_node(self, name: str) -> Node:
        s = self._settings
        node = self.create_node(name, s.vm_cpus, s.vm_memory_mb, s.vm_disk_gb, s.base_image_path)
        self.boot_node(node)
        self.await_address(node)
        return node

    # ============================================
    # FLEET
    # ============================================

    def provision(self, count: Optional[int] = None) -> RunReport:
        """
        Provision worker1..workerN.

        Raises:
            MissingPrerequisite: base image or SSH key unavailable (whole run aborts)
        """
        count = self._settings.num_workers if count is None else count
        if count < 1:
            raise FleetValidationError("Fleet size must be at least 1")

        s = self._settings
        report = RunReport(operation="provision")
        logger.info(f"Provisioning {count} worker VM(s) ({s.vm_cpus} CPUs, {s.vm_memory_mb}MB RAM, {s.vm_disk_gb}G disk)")

        self.ensure_base_image(s.base_image_url, s.base_image_path)
        self._write_user_data(ensure_ssh_key(s.ssh_key_path))
        self._store.set_master_address(s.master_address or detect_master_address())

        names = [worker_name(i) for i in range(1, count + 1)]
        fail_fast = not s.continue_on_failure

        results = self._pool.run(
            names,
            self.provision_node,
            fail_fast=fail_fast,
            on_result=self._record_node,
        )

        for name, result in zip(names, results):
            detail = result.value.address if result.ok else None
            report.outcomes.append(to_outcome(result, name, detail))

        report.aborted = fail_fast and any(not r.ok for r in results)
        self.check_connectivity([r.value for r in results if r.ok])

        report.finish()
        self._save_report(report)
        return report

    def _record_node(self, result: TaskResult) -> None:
        """Persist each node as soon as its pipeline finishes (coordinator thread only)."""
        if result.ok:
            self._store.upsert(result.value)
            return

        name = result.item
        if isinstance(result.error, CancelledTask) and name in self._store.load_or_empty():
            # Never attempted in this run; the VM was not touched.
            return

        # Not RUNNING since this (re)provision: recorded without an address.
        self._store.upsert(Node(name=name, state=NodeState.UNDEFINED))

    def check_connectivity(self, nodes: List[Node]) -> None:
        """Post-provision SSH check; failures are warnings only."""
        for node in nodes:
            if self._transport.probe(node.address, timeout=self._settings.ssh_connect_timeout):
                logger.info(f"[{node.name}] ✅ SSH connected ({node.address})")
            else:
                logger.warning(f"[{node.name}] ⚠️  SSH connection failed (VM may still be initializing)")

    # ============================================
    # TEARDOWN
    # ============================================

    def remove_node(self, name: str, destroy: bool = False) -> Node:
        """Explicitly drop a node from the inventory, optionally deleting its VM."""
        node = self._store.remove(name)
        if destroy:
            if self._hypervisor.domain_state(name) is not None:
                self._hypervisor.destroy(name)
                self._hypervisor.undefine(name)
            self._hypervisor.delete_disks(name)
            logger.info(f"[{name}] VM destroyed and disks deleted")
        return node

    def _save_report(self, report: RunReport) -> None:
        if self._history is None:
            return
        try:
            self._history.record(report)
        except FleetError as e:
            logger.error(f"Failed to record {report.operation} run {report.run_id}: {e}")
