# fleet_engine/inventory/store.py
"""
Inventory store - the persisted name=address registry.

On-disk format (stable, greppable, append-friendly)::

    # Fleet Worker Inventory
    # Generated: 2026-01-01T00:00:00+00:00

    # Master Node (this machine)
    MASTER_IP=10.0.0.5

    # Worker VMs
    worker1=192.168.122.11
    worker2=

A worker with an empty address has been declared but never reached
RUNNING. Resources are not stored here; the fleet is homogeneous and its
sizing comes from settings.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from fleet_engine.core.errors import FleetValidationError, InventoryNotFound
from fleet_engine.core.models import Inventory, Node, NodeState, Resources

logger = logging.getLogger(__name__)

MASTER_KEY = "MASTER_IP"
_GENERATED_PREFIX = "# Generated:"


class InventoryStore:
    """Loads and atomically saves the fleet inventory file."""

    def __init__(self, path: Path, resources: Optional[Resources] = None):
        self._path = Path(path).expanduser()
        self._resources = resources or Resources()

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    # ============================================
    # READ
    # ============================================

    def load(self) -> Inventory:
        """
        Load inventory from disk.

        Raises:
            InventoryNotFound: if provisioning has not produced an inventory yet
            FleetValidationError: on malformed or duplicate entries
        """
        if not self.exists():
            raise InventoryNotFound(
                f"No inventory at {self._path} - run provision first"
            )
        return self.parse(self._path.read_text(encoding="utf-8"))

    def parse(self, text: str) -> Inventory:
        inventory = Inventory()

        for lineno, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()

            if line.startswith(_GENERATED_PREFIX):
                inventory.generated_at = line[len(_GENERATED_PREFIX):].strip() or None
                continue
            if not line or line.startswith("#"):
                continue

            key, sep, value = line.partition("=")
            key, value = key.strip(), value.strip()
            if not sep or not key:
                raise FleetValidationError(f"{self._path}:{lineno}: expected name=address, got {raw!r}")

            if key == MASTER_KEY:
                inventory.master_address = value or None
                continue

            if key in inventory.nodes:
                raise FleetValidationError(f"{self._path}:{lineno}: duplicate node {key}")

            node = Node(
                name=key,
                address=value or None,
                resources=self._resources,
                state=NodeState.RUNNING if value else NodeState.UNDEFINED,
            )
            # Bypass upsert: keep file order and the stored timestamp.
            inventory.nodes[key] = node

        return inventory

    def all(self) -> List[Node]:
        return self.load().all()

    # ============================================
    # WRITE
    # ============================================

    def save(self, inventory: Inventory) -> None:
        """Atomically overwrite the inventory (write temp, fsync, rename)."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = self.render(inventory)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(data)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(f"[inventory] saved {len(inventory)} node(s) to {self._path}")

    def render(self, inventory: Inventory) -> str:
        lines = [
            "# Fleet Worker Inventory",
            f"{_GENERATED_PREFIX} {inventory.generated_at or ''}".rstrip(),
            "",
            "# Master Node (this machine)",
            f"{MASTER_KEY}={inventory.master_address or ''}",
            "",
            "# Worker VMs",
        ]
        for node in inventory.all():
            lines.append(f"{node.name}={node.address or ''}")
        return "\n".join(lines) + "\n"

    def load_or_empty(self) -> Inventory:
        if not self.exists():
            return Inventory()
        return self.load()

    def upsert(self, node: Node) -> Inventory:
        """Insert or replace one node and persist."""
        inventory = self.load_or_empty()
        inventory.upsert(node)
        self.save(inventory)
        logger.info(f"[inventory] {node.name}={node.address or ''}")
        return inventory

    def remove(self, name: str) -> Node:
        """Explicit operator removal."""
        inventory = self.load()
        node = inventory.remove(name)
        self.save(inventory)
        logger.info(f"[inventory] removed {name}")
        return node

    def set_master_address(self, address: str) -> Inventory:
        inventory = self.load_or_empty()
        if inventory.master_address != address:
            inventory.master_address = address
            inventory.touch()
            self.save(inventory)
        return inventory
