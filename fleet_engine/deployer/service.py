# fleet_engine/deployer/service.py
"""Deployer - pushes the worker bundle to every running node and starts it."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from fleet_engine.core.errors import FleetError, MissingPrerequisite, RemoteCommandFailure
from fleet_engine.core.models import ContainerStatus, Node, NodeOutcome, RunReport
from fleet_engine.deployer.bundle import DeploymentBundle, assemble_bundle, select_credential
from fleet_engine.executor.pool import NodeTaskPool, to_outcome
from fleet_engine.infrastructure.config import FleetSettings, WorkerCredentials
from fleet_engine.infrastructure.history.repository import RunHistoryRepository
from fleet_engine.inventory.store import InventoryStore
from fleet_engine.monitor.probes import ContainerProbe
from fleet_engine.remote.transport import SSHTransport, detect_master_address

logger = logging.getLogger(__name__)


@dataclass
class TransferResult:
    """What sync_code pushed to one node."""
    node_name: str
    trees: List[str] = field(default_factory=list)
    duration: float = 0.0


class Deployer:
    """
    Deploys the containerised worker to RUNNING inventory nodes.

    Flow per node:
    1. sync_code       - rsync code tree and models
    2. write_config    - worker .env (control node as broker/cache/s3 host)
    3. push Dockerfile, compose file and the node's credential
    4. build_and_start - docker-compose build && up -d
    5. verify          - container status after a settle delay

    Nodes never share mutable state; one node failing does not stop the
    others unless continue_on_failure is disabled.
    """

    def __init__(
        self,
        settings: FleetSettings,
        store: InventoryStore,
        transport: SSHTransport,
        probe: ContainerProbe,
        credentials: Optional[WorkerCredentials] = None,
        history: Optional[RunHistoryRepository] = None,
        pool: Optional[NodeTaskPool] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._store = store
        self._transport = transport
        self._probe = probe
        self._credentials = credentials
        self._history = history
        self._pool = pool or NodeTaskPool(settings.max_parallel, name="deploy")
        self._sleep = sleep

    def _remote(self, bundle: DeploymentBundle, name: str = "") -> str:
        base = f"~/{bundle.remote_dir.strip('/')}"
        return f"{base}/{name}" if name else base

    # ============================================
    # PIPELINE STEPS
    # ============================================

    def sync_code(self, node: Node, bundle: DeploymentBundle) -> TransferResult:
        """
        Mirror the code tree and the model tree onto the node.

        Raises:
            TransferError: rsync failed
        """
        started = time.monotonic()
        result = TransferResult(node.name)

        self._transport.run(node.address, f"mkdir -p {self._remote(bundle)}")
        self._transport.sync_tree(bundle.source_dir, node.address, self._remote(bundle), bundle.excludes)
        result.trees.append(str(bundle.source_dir))

        if bundle.models_dir is not None:
            self._transport.sync_tree(bundle.models_dir, node.address, self._remote(bundle, "models"))
            result.trees.append(str(bundle.models_dir))

        result.duration = time.monotonic() - started
        logger.info(f"[{node.name}] ✅ code synced ({result.duration:.1f}s)")
        return result

    def write_config(self, node: Node, env: str, bundle: DeploymentBundle) -> None:
        """Full atomic overwrite of the worker .env on the node."""
        self._transport.write_file(node.address, self._remote(bundle, ".env"), env.encode(), mode="600")
        logger.info(f"[{node.name}] ✅ .env written")

    def push_container_files(self, node: Node, bundle: DeploymentBundle) -> None:
        self._transport.write_file(node.address, self._remote(bundle, "Dockerfile"), bundle.dockerfile.encode())
        self._transport.write_file(node.address, self._remote(bundle, "docker-compose.yaml"), bundle.compose.encode())

    def push_credential(self, node: Node, bundle: DeploymentBundle, position: int) -> None:
        """Copy the credential for the node at this position among the running nodes."""
        key_file = select_credential(position, bundle.credential_pool, bundle.default_credential)
        if not key_file.is_file():
            raise MissingPrerequisite(f"Credential file not found: {key_file}")
        self._transport.write_file(
            node.address,
            self._remote(bundle, bundle.credential_target),
            key_file.read_bytes(),
            mode="600",
        )
        logger.info(f"[{node.name}] using {key_file.name}")

    def build_and_start(self, node: Node, bundle: DeploymentBundle) -> None:
        """
        Raises:
            RemoteCommandFailure: build or start failed
            TransportFailure: node unreachable or build_timeout exceeded
        """
        logger.info(f"[{node.name}] building and starting worker...")
        self._transport.run(
            node.address,
            f"cd {self._remote(bundle)} && sudo docker-compose build && sudo docker-compose up -d",
            timeout=self._settings.build_timeout,
        )
        logger.info(f"[{node.name}] ✅ worker started")

    def verify(self, node: Node) -> ContainerStatus:
        """
        Check the container after deploy_settle_seconds.

        Raises:
            RemoteCommandFailure: container restarting, exited or missing
        """
        self._sleep(self._settings.deploy_settle_seconds)

        try:
            status = self._probe.status(node.address, timeout=self._settings.container_probe_timeout)
        except FleetError as e:
            status = ContainerStatus.unknown(str(e))

        if status.is_failed:
            raise RemoteCommandFailure(f"container {status}")
        if not status.is_up:
            logger.warning(f"[{node.name}] ⚠️  container status unknown ({status.detail}), assuming started")
        else:
            logger.info(f"[{node.name}] ✅ Running ({status})")
        return status

    def deploy_node(self, node: Node, bundle: DeploymentBundle, position: int = 0) -> ContainerStatus:
        self.sync_code(node, bundle)
        self.write_config(node, bundle.render_env(node.name), bundle)
        self.push_container_files(node, bundle)
        self.push_credential(node, bundle, position)
        self.build_and_start(node, bundle)
        return self.verify(node)

    # ============================================
    # FLEET
    # ============================================

    def deploy(self, version: Optional[str] = None) -> RunReport:
        """
        Deploy to every RUNNING node in the inventory.

        Raises:
            InventoryNotFound: no inventory (run provision first)
            MissingPrerequisite: no running nodes or no bundle source
        """
        inventory = self._store.load()
        nodes = inventory.running()
        if not nodes:
            raise MissingPrerequisite("No running workers in inventory - run provision first")

        s = self._settings
        master_address = inventory.master_address or s.master_address or detect_master_address()
        credentials = self._credentials or WorkerCredentials.from_env_file(s.resolved_worker_env_file)
        bundle = assemble_bundle(s, credentials, master_address, version=version)

        report = RunReport(operation="deploy")
        logger.info(f"Deploying bundle {bundle.version} to {len(nodes)} worker(s), master {master_address}")

        positions = {node.name: i for i, node in enumerate(nodes)}
        fail_fast = not s.continue_on_failure
        results = self._pool.run(
            nodes,
            lambda node: self.deploy_node(node, bundle, positions[node.name]),
            key=lambda node: node.name,
            fail_fast=fail_fast,
        )
        by_name = {node.name: result for node, result in zip(nodes, results)}

        for node in inventory.all():
            result = by_name.get(node.name)
            if result is None:
                report.outcomes.append(NodeOutcome.skipped(node.name, "not running"))
                continue
            detail = str(result.value) if result.ok else None
            report.outcomes.append(to_outcome(result, node.name, detail))

        report.aborted = fail_fast and any(not r.ok for r in results)
        report.finish()
        self._save_report(report)
        self._log_hints([n for n in nodes if report.outcome_for(n.name).succeeded], bundle)
        return report

    def _log_hints(self, nodes: List[Node], bundle: DeploymentBundle) -> None:
        if not nodes:
            return
        user = self._settings.worker_user
        container = f"{bundle.remote_dir}-{bundle.compose_service}-1"
        logger.info("View worker logs:")
        for node in nodes:
            logger.info(f"  ssh {user}@{node.address} 'sudo docker logs -f {container}'")
        logger.info("Stop workers:")
        for node in nodes:
            logger.info(f"  ssh {user}@{node.address} 'cd {self._remote(bundle)} && sudo docker-compose down'")
        logger.info(f"🚀 Workers listening on queue: {self._settings.broker_queue}")

    def _save_report(self, report: RunReport) -> None:
        if self._history is None:
            return
        try:
            self._history.record(report)
        except FleetError as e:
            logger.error(f"Failed to record {report.operation} run {report.run_id}: {e}")
