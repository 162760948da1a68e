# fleet_engine/monitor/checker.py
"""
Fleet Monitor - polls every inventory node and the broker queue.

One cycle fans all probes out at once and joins them against a deadline;
a slow node shows as Unknown for that cycle instead of holding up the rest.
"""

import logging
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from fleet_engine.core.errors import FleetError
from fleet_engine.core.models import (
    ContainerStatus, FleetView, HealthSample, Node, QueueSnapshot, Reachability
)
from fleet_engine.inventory.store import InventoryStore
from fleet_engine.monitor.broker_client import BrokerClient
from fleet_engine.monitor.probes import ContainerProbe
from fleet_engine.monitor.render import CLEAR_SCREEN, render_view
from fleet_engine.remote.transport import SSHTransport

logger = logging.getLogger(__name__)


class FleetMonitor:
    """
    Read-only fleet health loop.

    Architecture:
    - Stateless across cycles (no hysteresis)
    - Reachability probe first; container probe only when online
    - Broker query runs concurrently with the node probes
    """

    def __init__(
        self,
        store: InventoryStore,
        transport: SSHTransport,
        probe: ContainerProbe,
        broker: Optional[BrokerClient] = None,
        queue_name: str = "cdmap_national",
        interval: float = 5.0,
        reachability_timeout: float = 2,
        probe_timeout: float = 5,
        cycle_timeout: Optional[float] = None,
        max_workers: int = 16,
        output: Callable[[str], None] = print,
    ):
        """
        Args:
            interval: Seconds between cycles
            reachability_timeout: SSH reachability probe timeout
            probe_timeout: Container status probe timeout
            cycle_timeout: Join deadline for one cycle (default: both probe timeouts + 1s)
            output: Where rendered frames go
        """
        self.store = store
        self.transport = transport
        self.probe = probe
        self.broker = broker
        self.queue_name = queue_name
        self.interval = interval
        self.reachability_timeout = reachability_timeout
        self.probe_timeout = probe_timeout
        self.cycle_timeout = cycle_timeout or (reachability_timeout + probe_timeout + 1)
        self.max_workers = max_workers
        self.output = output
        self._stop = threading.Event()

    # ============================================
    # ONE CYCLE
    # ============================================

    def probe_node(self, node: Node) -> HealthSample:
        if not node.address:
            return HealthSample.offline(node)

        if not self.transport.probe(node.address, timeout=self.reachability_timeout):
            return HealthSample.offline(node)

        try:
            container = self.probe.status(node.address, timeout=self.probe_timeout)
        except FleetError as e:
            logger.debug(f"[{node.name}] container probe failed: {e}")
            container = ContainerStatus.error(str(e).splitlines()[0] if str(e) else "probe failed")

        return HealthSample(node.name, node.address, Reachability.ONLINE, container)

    def _queue(self) -> Optional[QueueSnapshot]:
        if self.broker is None:
            return None
        return self.broker.safe_snapshot(self.queue_name)

    def run_cycle(self, nodes: Optional[List[Node]] = None) -> FleetView:
        """
        Probe every node and the queue concurrently.

        Raises:
            InventoryNotFound: no inventory (when nodes is not given)
        """
        if nodes is None:
            nodes = self.store.load().all()

        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_workers, len(nodes) + 1)),
            thread_name_prefix="monitor",
        )
        try:
            node_futures: Dict[str, Future] = {
                node.name: executor.submit(self.probe_node, node) for node in nodes
            }
            queue_future = executor.submit(self._queue)

            wait([*node_futures.values(), queue_future], timeout=self.cycle_timeout)
        finally:
            # In-flight probes are abandoned; they carry their own timeouts.
            executor.shutdown(wait=False, cancel_futures=True)

        samples = [self._collect(node, node_futures[node.name]) for node in nodes]

        if queue_future.done() and not queue_future.cancelled() and queue_future.exception() is None:
            queue = queue_future.result()
        elif self.broker is None:
            queue = None
        else:
            queue = QueueSnapshot.unavailable(self.queue_name, "broker query timed out")

        return FleetView(samples=samples, queue=queue)

    def _collect(self, node: Node, future: Future) -> HealthSample:
        if not future.done() or future.cancelled():
            logger.debug(f"[{node.name}] probe did not finish within {self.cycle_timeout:g}s")
            return HealthSample.timed_out(node)

        error = future.exception()
        if error is not None:
            logger.warning(f"[{node.name}] ⚠️  probe error: {error}")
            return HealthSample(node.name, node.address, Reachability.UNKNOWN, ContainerStatus.error(str(error)))
        return future.result()

    # ============================================
    # LOOP
    # ============================================

    def start(self, once: bool = False) -> None:
        """
        Run cycles every interval until stopped.

        Ctrl+C (KeyboardInterrupt) propagates immediately and abandons the
        cycle in progress; SIGTERM finishes the current cycle and exits.
        """
        # Fail early if there is nothing to monitor.
        self.store.load()

        previous_handler = None
        if threading.current_thread() is threading.main_thread():
            previous_handler = signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"Fleet monitor started (interval {self.interval:g}s)")

        try:
            while not self._stop.is_set():
                try:
                    view = self.run_cycle()
                    frame = render_view(view)
                    self.output(frame if once else CLEAR_SCREEN + frame + "\n\nPress Ctrl+C to exit")
                except FleetError as e:
                    logger.error(f"Error in monitor cycle: {e}")

                if once:
                    break
                self._stop.wait(self.interval)
        finally:
            if previous_handler is not None:
                signal.signal(signal.SIGTERM, previous_handler)
            self.close()

        logger.info("Fleet monitor stopped")

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        """Release the broker HTTP session."""
        if self.broker is not None:
            self.broker.close()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, stopping...")
        self._stop.set()
