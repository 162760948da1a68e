#fleet_engine\container.py

"""Dependency injection container - wires all services together."""

from dataclasses import dataclass
from typing import Optional

from fleet_engine.deployer.service import Deployer
from fleet_engine.hypervisor.libvirt import LibvirtHypervisor
from fleet_engine.infrastructure.config import FleetSettings, WorkerCredentials
from fleet_engine.infrastructure.history.database import create_db_engine, get_session_factory, init_db
from fleet_engine.infrastructure.history.repository import RunHistoryRepository
from fleet_engine.inventory.store import InventoryStore
from fleet_engine.monitor.broker_client import BrokerClient
from fleet_engine.monitor.checker import FleetMonitor
from fleet_engine.monitor.probes import ContainerProbe
from fleet_engine.provisioner.service import Provisioner
from fleet_engine.remote.transport import SSHTransport


@dataclass
class FleetContainer:
    settings: FleetSettings
    store: InventoryStore
    transport: SSHTransport
    hypervisor: LibvirtHypervisor
    probe: ContainerProbe
    credentials: WorkerCredentials
    history: Optional[RunHistoryRepository] = None

    # ============================================
    # SERVICES
    # ============================================

    def provisioner(self) -> Provisioner:
        return Provisioner(
            settings=self.settings,
            hypervisor=self.hypervisor,
            store=self.store,
            transport=self.transport,
            history=self.history,
        )

    def deployer(self) -> Deployer:
        return Deployer(
            settings=self.settings,
            store=self.store,
            transport=self.transport,
            probe=self.probe,
            credentials=self.credentials,
            history=self.history,
        )

    def broker(self) -> BrokerClient:
        return BrokerClient(
            base_url=self.settings.broker_api_url,
            username=self.credentials.rabbitmq_user,
            password=self.credentials.rabbitmq_password,
            vhost=self.settings.broker_vhost,
            timeout=self.settings.broker_timeout,
        )

    def monitor(self, interval: Optional[float] = None) -> FleetMonitor:
        s = self.settings
        return FleetMonitor(
            store=self.store,
            transport=self.transport,
            probe=self.probe,
            broker=self.broker(),
            queue_name=s.broker_queue,
            interval=s.monitor_interval if interval is None else interval,
            reachability_timeout=s.reachability_timeout,
            probe_timeout=s.container_probe_timeout,
            max_workers=max(s.max_parallel, s.num_workers) + 1,
        )


def build_history(settings: FleetSettings) -> RunHistoryRepository:
    engine = create_db_engine(settings.database_url)
    init_db(engine)
    return RunHistoryRepository(get_session_factory(engine))


def build_container(settings: FleetSettings, with_history: bool = True) -> FleetContainer:
    """Build the object graph for one CLI invocation or API process."""
    transport = SSHTransport(
        user=settings.worker_user,
        connect_timeout=settings.ssh_connect_timeout,
        command_timeout=settings.ssh_command_timeout,
        transfer_timeout=settings.transfer_timeout,
        options=settings.ssh_options,
    )

    return FleetContainer(
        settings=settings,
        store=InventoryStore(settings.resolved_inventory_path, settings.resources),
        transport=transport,
        hypervisor=LibvirtHypervisor(
            settings.images_dir,
            network=settings.network,
            os_variant=settings.os_variant,
            use_sudo=settings.use_sudo,
            timeout=settings.hypervisor_timeout,
        ),
        probe=ContainerProbe(
            transport=transport,
            name_filter=settings.container_name_filter,
            timeout=settings.container_probe_timeout,
        ),
        credentials=WorkerCredentials.from_env_file(settings.resolved_worker_env_file),
        history=build_history(settings) if with_history else None,
    )
