"""Core domain models (fleet, health, run reports)."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional
from uuid import UUID, uuid4

from fleet_engine.core.errors import FleetError, FleetValidationError


_NAME_SUFFIX = re.compile(r"(\d+)$")


class NodeRole(Enum):
    """Node role tag."""
    WORKER = "worker"


class NodeState(Enum):
    """Node lifecycle state."""
    UNDEFINED = "UNDEFINED"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    UNREACHABLE = "UNREACHABLE"
    STOPPED = "STOPPED"


@dataclass(frozen=True)
class Resources:
    """Declared provisioning targets (not runtime measurements)."""
    cpus: int = 8
    memory_mb: int = 16384
    disk_gb: int = 50


@dataclass
class Node:
    """One worker machine in the fleet."""
    name: str
    address: Optional[str] = None
    role: NodeRole = NodeRole.WORKER
    resources: Resources = field(default_factory=Resources)
    state: NodeState = NodeState.UNDEFINED

    def __post_init__(self):
        if not self.name or "=" in self.name or self.name.strip() != self.name:
            raise FleetValidationError(f"Invalid node name: {self.name!r}")

    def mark_provisioning(self) -> None:
        """(Re)provision: the previous address is no longer valid."""
        self.state = NodeState.PROVISIONING
        self.address = None

    def mark_running(self, address: str) -> None:
        """Node acquired an address and is up."""
        if not address:
            raise FleetValidationError(f"{self.name}: running node needs an address")
        self.address = address
        self.state = NodeState.RUNNING

    def is_running(self) -> bool:
        return self.state == NodeState.RUNNING and self.address is not None


def node_sort_key(name: str):
    match = _NAME_SUFFIX.search(name)
    return (0, int(match.group(1)), name) if match else (1, 0, name)


def worker_name(ordinal: int) -> str:
    """worker_name(1) == 'worker1'."""
    return f"{NodeRole.WORKER.value}{ordinal}"


@dataclass
class Inventory:
    """
    Ordered name -> Node registry plus the control node address.

    Nodes are kept in ordinal order (worker1, worker2, ...) regardless of
    the order in which they were provisioned.
    """
    nodes: Dict[str, Node] = field(default_factory=dict)
    master_address: Optional[str] = None
    generated_at: Optional[str] = None

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.all())

    def get(self, name: str) -> Optional[Node]:
        return self.nodes.get(name)

    def all(self) -> List[Node]:
        return list(self.nodes.values())

    def running(self) -> List[Node]:
        return [node for node in self.nodes.values() if node.is_running()]

    def upsert(self, node: Node) -> None:
        """Insert or replace a node, keeping ordinal order."""
        self.nodes[node.name] = node
        self.nodes = {
            name: self.nodes[name]
            for name in sorted(self.nodes, key=node_sort_key)
        }
        self.touch()

    def remove(self, name: str) -> Node:
        if name not in self.nodes:
            raise FleetValidationError(f"Node {name} is not in the inventory")
        node = self.nodes.pop(name)
        self.touch()
        return node

    def touch(self) -> None:
        self.generated_at = datetime.now(timezone.utc).isoformat(timespec="seconds")


# ============================================
# CONTAINER STATUS
# ============================================

class ContainerState(Enum):
    """Workload container classification."""
    UP = "Up"
    RESTARTING = "Restarting"
    EXITED = "Exited"
    NOT_RUNNING = "Not Running"
    ERROR = "Error"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class ContainerStatus:
    """Parsed container status; built once at the Docker boundary."""
    state: ContainerState
    detail: str = ""

    @classmethod
    def not_running(cls) -> "ContainerStatus":
        return cls(ContainerState.NOT_RUNNING)

    @classmethod
    def unknown(cls, detail: str = "no response") -> "ContainerStatus":
        return cls(ContainerState.UNKNOWN, detail)

    @classmethod
    def error(cls, detail: str) -> "ContainerStatus":
        return cls(ContainerState.ERROR, detail)

    @classmethod
    def from_docker_state(
        cls,
        state: Mapping[str, Any],
        now: Optional[datetime] = None,
    ) -> "ContainerStatus":
        """
        Classify a Docker ``State`` object (``container.attrs["State"]``).

        Args:
            state: Docker state mapping (Status, Running, Restarting, ExitCode, ...)
            now: Reference time for uptime (defaults to now, UTC)
        """
        status = (state.get("Status") or "").lower()
        exit_code = state.get("ExitCode")

        if status == "restarting" or state.get("Restarting"):
            return cls(ContainerState.RESTARTING, f"Restarting ({exit_code})")

        if status == "running" or state.get("Running"):
            health = (state.get("Health") or {}).get("Status")
            if health == "unhealthy":
                return cls(ContainerState.ERROR, "Up (unhealthy)")
            detail = "Up"
            uptime = _uptime(state.get("StartedAt"), now)
            if uptime:
                detail = f"Up {uptime}"
            if health:
                detail = f"{detail} ({health})"
            return cls(ContainerState.UP, detail)

        if status in ("exited", "dead"):
            return cls(ContainerState.EXITED, f"Exited ({exit_code})")

        return cls(ContainerState.ERROR, status or "unknown state")

    @property
    def is_up(self) -> bool:
        return self.state == ContainerState.UP

    @property
    def is_failed(self) -> bool:
        return self.state in (
            ContainerState.RESTARTING,
            ContainerState.EXITED,
            ContainerState.NOT_RUNNING,
            ContainerState.ERROR,
        )

    def __str__(self) -> str:
        return self.detail or self.state.value


def _uptime(started_at: Optional[str], now: Optional[datetime]) -> Optional[str]:
    if not started_at or started_at.startswith("0001-"):
        return None
    # Docker reports nanoseconds; fromisoformat only takes microseconds.
    trimmed = re.sub(r"(\.\d{6})\d+", r"\1", started_at).replace("Z", "+00:00")
    try:
        started = datetime.fromisoformat(trimmed)
    except ValueError:
        return None
    now = now or datetime.now(timezone.utc)
    seconds = int((now - started).total_seconds())
    if seconds < 0:
        return None
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{seconds // 60} minutes"
    if seconds < 86400:
        return f"{seconds // 3600} hours"
    return f"{seconds // 86400} days"


# ============================================
# HEALTH
# ============================================

class Reachability(Enum):
    ONLINE = "Online"
    OFFLINE = "Offline"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class HealthSample:
    """One node, one poll cycle. Never persisted."""
    node_name: str
    address: Optional[str]
    reachability: Reachability
    container: ContainerStatus
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def offline(cls, node: Node) -> "HealthSample":
        return cls(node.name, node.address, Reachability.OFFLINE, ContainerStatus.unknown("N/A"))

    @classmethod
    def timed_out(cls, node: Node) -> "HealthSample":
        return cls(node.name, node.address, Reachability.UNKNOWN, ContainerStatus.unknown("probe timeout"))

    @property
    def online(self) -> bool:
        return self.reachability == Reachability.ONLINE


@dataclass(frozen=True)
class QueueSnapshot:
    """Broker queue depth and consumer count for one cycle."""
    queue_name: str
    message_count: Optional[int] = None
    consumer_count: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def unavailable(cls, queue_name: str, error: str) -> "QueueSnapshot":
        return cls(queue_name=queue_name, error=error)

    @property
    def available(self) -> bool:
        return self.error is None

    def describe(self) -> str:
        messages = "?" if self.message_count is None else self.message_count
        consumers = "?" if self.consumer_count is None else self.consumer_count
        return f"Queue: {self.queue_name} | messages={messages} | consumers={consumers}"


@dataclass(frozen=True)
class FleetView:
    """Consolidated result of one monitor cycle."""
    samples: List[HealthSample]
    queue: Optional[QueueSnapshot]
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def online_count(self) -> int:
        return sum(1 for s in self.samples if s.online)


# ============================================
# RUN REPORTS
# ============================================

class OutcomeStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class NodeOutcome:
    """Per-node result of a provision or deploy run."""
    node_name: str
    status: OutcomeStatus
    category: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def success(cls, node_name: str, detail: Optional[str] = None) -> "NodeOutcome":
        return cls(node_name, OutcomeStatus.SUCCEEDED, detail=detail)

    @classmethod
    def failure(cls, node_name: str, error: BaseException) -> "NodeOutcome":
        if isinstance(error, FleetError):
            category = error.category
        elif isinstance(error, TimeoutError):
            category = "Timeout"
        else:
            category = type(error).__name__
        reason = str(error).strip().splitlines()[0] if str(error).strip() else category
        return cls(node_name, OutcomeStatus.FAILED, category=category, reason=reason)

    @classmethod
    def skipped(cls, node_name: str, reason: str) -> "NodeOutcome":
        return cls(node_name, OutcomeStatus.SKIPPED, reason=reason)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    def describe(self) -> str:
        if self.status == OutcomeStatus.SUCCEEDED:
            return f"succeeded ({self.detail})" if self.detail else "succeeded"
        if self.status == OutcomeStatus.SKIPPED:
            return f"skipped: {self.reason}"
        return f"failed: {self.category} ({self.reason})"


@dataclass
class RunReport:
    """Ordered per-node outcomes of one provision/deploy run."""
    operation: str
    outcomes: List[NodeOutcome] = field(default_factory=list)
    run_id: UUID = field(default_factory=uuid4)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None
    aborted: bool = False

    def finish(self) -> None:
        self.finished_at = datetime.now(timezone.utc)

    def succeeded(self) -> List[NodeOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.SUCCEEDED]

    def failed(self) -> List[NodeOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    def outcome_for(self, node_name: str) -> Optional[NodeOutcome]:
        for outcome in self.outcomes:
            if outcome.node_name == node_name:
                return outcome
        return None

    @property
    def is_total_failure(self) -> bool:
        """Nothing succeeded (or the run was aborted)."""
        return self.aborted or (bool(self.outcomes) and not self.succeeded())

    @property
    def is_partial_failure(self) -> bool:
        return bool(self.failed()) and bool(self.succeeded()) and not self.aborted

    def summary_lines(self) -> List[str]:
        lines = [f"  - {o.node_name}: {o.describe()}" for o in self.outcomes]
        lines.append(
            f"{self.operation}: {len(self.succeeded())} succeeded, "
            f"{len(self.failed())} failed"
            + (" (aborted)" if self.aborted else "")
        )
        return lines
