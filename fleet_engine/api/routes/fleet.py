# fleet_engine/api/routes/fleet.py
"""Live fleet status (runs one monitor cycle per request)."""

from fastapi import APIRouter, Depends

from fleet_engine.api.container import get_monitor
from fleet_engine.api.schemas.fleet import FleetStatusResponse, HealthSampleResponse, QueueResponse
from fleet_engine.monitor.checker import FleetMonitor

router = APIRouter(prefix="/fleet", tags=["fleet"])


@router.get("/status", response_model=FleetStatusResponse)
def fleet_status(monitor: FleetMonitor = Depends(get_monitor)):
    view = monitor.run_cycle()

    queue = None
    if view.queue is not None:
        queue = QueueResponse(
            queue_name=view.queue.queue_name,
            message_count=view.queue.message_count,
            consumer_count=view.queue.consumer_count,
            error=view.queue.error,
            summary=view.queue.describe(),
        )

    return FleetStatusResponse(
        taken_at=view.taken_at,
        online=view.online_count(),
        total=len(view.samples),
        nodes=[
            HealthSampleResponse(
                node_name=s.node_name,
                address=s.address,
                reachability=s.reachability.value,
                container_state=s.container.state.value,
                container_detail=str(s.container),
                timestamp=s.timestamp,
            )
            for s in view.samples
        ],
        queue=queue,
    )
