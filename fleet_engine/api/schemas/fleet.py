from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel


class NodeResponse(BaseModel):
    name: str
    address: Optional[str]
    role: str
    state: str
    cpus: int
    memory_mb: int
    disk_gb: int


class InventoryResponse(BaseModel):
    master_address: Optional[str]
    generated_at: Optional[str]
    nodes: List[NodeResponse]


class HealthSampleResponse(BaseModel):
    node_name: str
    address: Optional[str]
    reachability: str
    container_state: str
    container_detail: str
    timestamp: datetime


class QueueResponse(BaseModel):
    queue_name: str
    message_count: Optional[int]
    consumer_count: Optional[int]
    error: Optional[str]
    summary: str


class FleetStatusResponse(BaseModel):
    taken_at: datetime
    online: int
    total: int
    nodes: List[HealthSampleResponse]
    queue: Optional[QueueResponse]


class NodeOutcomeResponse(BaseModel):
    node_name: str
    status: str
    category: Optional[str]
    reason: Optional[str]
    detail: Optional[str]
    summary: str


class RunResponse(BaseModel):
    run_id: UUID
    operation: str
    aborted: bool
    started_at: datetime
    finished_at: Optional[datetime]
    succeeded: int
    failed: int
    outcomes: List[NodeOutcomeResponse]
