# fleet_engine/api/routes/runs.py
"""Provision/deploy run history routes."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from fleet_engine.api.container import get_history
from fleet_engine.api.schemas.fleet import NodeOutcomeResponse, RunResponse
from fleet_engine.core.models import RunReport
from fleet_engine.infrastructure.history.repository import RunHistoryRepository

router = APIRouter(prefix="/runs", tags=["runs"])


def to_response(report: RunReport) -> RunResponse:
    return RunResponse(
        run_id=report.run_id,
        operation=report.operation,
        aborted=report.aborted,
        started_at=report.started_at,
        finished_at=report.finished_at,
        succeeded=len(report.succeeded()),
        failed=len(report.failed()),
        outcomes=[
            NodeOutcomeResponse(
                node_name=o.node_name,
                status=o.status.value,
                category=o.category,
                reason=o.reason,
                detail=o.detail,
                summary=o.describe(),
            )
            for o in report.outcomes
        ],
    )


@router.get("", response_model=List[RunResponse])
def list_runs(
    limit: int = Query(20, ge=1, le=200),
    operation: Optional[str] = None,
    history: RunHistoryRepository = Depends(get_history),
):
    """Most recent runs first."""
    return [to_response(r) for r in history.list_recent(limit=limit, operation=operation)]


@router.get("/{run_id}", response_model=RunResponse)
def get_run(run_id: UUID, history: RunHistoryRepository = Depends(get_history)):
    report = history.get(run_id)

    if not report:
        raise HTTPException(status_code=404, detail="Run not found")

    return to_response(report)
