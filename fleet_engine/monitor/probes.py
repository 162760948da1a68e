# fleet_engine/monitor/probes.py
"""Container status probe - Docker Engine API through a forwarded socket."""

import logging
from contextlib import closing, contextmanager
from typing import Callable, Iterator, Optional

import docker
import requests
from docker.errors import DockerException

from fleet_engine.core.errors import TransportFailure
from fleet_engine.core.models import ContainerStatus
from fleet_engine.remote.transport import SSHTransport

logger = logging.getLogger(__name__)

DOCKER_SOCKET = "/var/run/docker.sock"

ClientFactory = Callable[[str, float], "docker.DockerClient"]


class ContainerProbe:
    """
    Queries the workload container on a node.

    The node's Docker socket is forwarded over the transport's ssh
    (BatchMode, connect timeout) to a private local socket, and the
    docker client talks to that with its own read timeout. The worker
    user must be in the remote docker group (cloud-init does this). The
    raw Docker state is classified once, here.
    """

    def __init__(
        self,
        transport: SSHTransport,
        name_filter: str,
        timeout: float = 5,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.transport = transport
        self.name_filter = name_filter
        self.timeout = timeout
        self._client_factory = client_factory

    @contextmanager
    def _forwarded_client(self, address: str, timeout: float) -> Iterator[docker.DockerClient]:
        with self.transport.forward_socket(address, DOCKER_SOCKET, timeout=timeout) as local_socket:
            with closing(docker.DockerClient(base_url=f"unix://{local_socket}", timeout=timeout)) as client:
                yield client

    def _connect(self, address: str, timeout: float):
        if self._client_factory is not None:
            return closing(self._client_factory(address, timeout))
        return self._forwarded_client(address, timeout)

    def status(self, address: str, timeout: Optional[float] = None) -> ContainerStatus:
        """
        Classify the first container whose name matches name_filter.

        Returns NOT_RUNNING when no container matches.

        Raises:
            TransportFailure: node or its Docker API unreachable within timeout
        """
        timeout = self.timeout if timeout is None else timeout

        try:
            with self._connect(address, timeout) as client:
                containers = client.containers.list(all=True, filters={"name": self.name_filter})
        except (DockerException, requests.exceptions.RequestException, OSError) as e:
            raise TransportFailure(f"docker@{address}: {e}") from e

        if not containers:
            logger.debug(f"No container matching '{self.name_filter}' on {address}")
            return ContainerStatus.not_running()

        # Prefer a running replica if several match.
        containers.sort(key=lambda c: c.status != "running")
        return ContainerStatus.from_docker_state(containers[0].attrs.get("State", {}))
