#fleet_engine\infrastructure\history\models.py
"""SQLAlchemy ORM models for run history tables."""

from datetime import datetime

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, String, Text, Uuid
)
from sqlalchemy.orm import relationship

from fleet_engine.core.models import OutcomeStatus
from fleet_engine.infrastructure.history.database import Base


class RunORM(Base):
    """
    One provision or deploy run.

    Indexes:
    - Primary key on run_id
    - Index on (operation, started_at) for "latest deploy" queries
    """

    __tablename__ = "runs"

    run_id = Column(Uuid, primary_key=True)
    operation = Column(String(32), nullable=False)
    aborted = Column(Boolean, nullable=False, default=False)

    started_at = Column(DateTime(timezone=True), nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    outcomes = relationship(
        "NodeOutcomeORM",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="NodeOutcomeORM.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_runs_operation_started", "operation", "started_at"),
    )


class NodeOutcomeORM(Base):
    """Per-node outcome within a run."""

    __tablename__ = "node_outcomes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Uuid, ForeignKey("runs.run_id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    node_name = Column(String(255), nullable=False)
    status = Column(SQLEnum(OutcomeStatus), nullable=False)
    category = Column(String(64), nullable=True)
    reason = Column(Text, nullable=True)
    detail = Column(Text, nullable=True)

    run = relationship("RunORM", back_populates="outcomes")
