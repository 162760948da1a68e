#fleet_engine\api\container.py
from typing import Iterator

from fastapi import HTTPException, Request

from fleet_engine.container import FleetContainer
from fleet_engine.infrastructure.history.repository import RunHistoryRepository
from fleet_engine.inventory.store import InventoryStore
from fleet_engine.monitor.checker import FleetMonitor


def get_container(request: Request) -> FleetContainer:
    return request.app.state.container


def get_store(request: Request) -> InventoryStore:
    return get_container(request).store


def get_history(request: Request) -> RunHistoryRepository:
    history = get_container(request).history
    if history is None:
        raise HTTPException(status_code=503, detail="Run history is not configured")
    return history


def get_monitor(request: Request) -> Iterator[FleetMonitor]:
    monitor = get_container(request).monitor()
    try:
        yield monitor
    finally:
        monitor.close()
