# fleet_engine/api/routes/nodes.py
"""Inventory API routes."""

from fastapi import APIRouter, Depends, HTTPException

from fleet_engine.api.container import get_store
from fleet_engine.api.schemas.fleet import InventoryResponse, NodeResponse
from fleet_engine.core.models import Node
from fleet_engine.inventory.store import InventoryStore

router = APIRouter(prefix="/nodes", tags=["nodes"])


def to_response(node: Node) -> NodeResponse:
    return NodeResponse(
        name=node.name,
        address=node.address,
        role=node.role.value,
        state=node.state.value,
        cpus=node.resources.cpus,
        memory_mb=node.resources.memory_mb,
        disk_gb=node.resources.disk_gb,
    )


@router.get("", response_model=InventoryResponse)
def list_nodes(store: InventoryStore = Depends(get_store)):
    """
    List inventory nodes in ordinal order.

    Returns 404 until provisioning has produced an inventory.
    """
    inventory = store.load()
    return InventoryResponse(
        master_address=inventory.master_address,
        generated_at=inventory.generated_at,
        nodes=[to_response(node) for node in inventory],
    )


@router.get("/{name}", response_model=NodeResponse)
def get_node(name: str, store: InventoryStore = Depends(get_store)):
    """Get one node."""
    node = store.load().get(name)

    if not node:
        raise HTTPException(status_code=404, detail="Node not found")

    return to_response(node)
