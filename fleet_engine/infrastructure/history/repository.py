"""Run history repository."""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from fleet_engine.core.errors import FleetError
from fleet_engine.core.models import NodeOutcome, RunReport
from fleet_engine.infrastructure.history.database import session_scope
from fleet_engine.infrastructure.history.models import NodeOutcomeORM, RunORM

logger = logging.getLogger(__name__)


class HistoryPersistenceError(FleetError):
    pass


def report_to_orm(report: RunReport) -> RunORM:
    """Convert run report to ORM."""
    return RunORM(
        run_id=report.run_id,
        operation=report.operation,
        aborted=report.aborted,
        started_at=report.started_at,
        finished_at=report.finished_at,
        outcomes=[
            NodeOutcomeORM(
                position=position,
                node_name=outcome.node_name,
                status=outcome.status,
                category=outcome.category,
                reason=outcome.reason,
                detail=outcome.detail,
            )
            for position, outcome in enumerate(report.outcomes)
        ],
    )


def orm_to_report(orm: RunORM) -> RunReport:
    """Convert ORM to run report."""
    return RunReport(
        run_id=orm.run_id,
        operation=orm.operation,
        aborted=orm.aborted,
        started_at=_aware(orm.started_at),
        finished_at=_aware(orm.finished_at),
        outcomes=[
            NodeOutcome(
                node_name=o.node_name,
                status=o.status,
                category=o.category,
                reason=o.reason,
                detail=o.detail,
            )
            for o in orm.outcomes
        ],
    )


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RunHistoryRepository:
    """Repository for provision/deploy run reports."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record(self, report: RunReport) -> None:
        """Persist a finished run."""
        try:
            with session_scope(self._session_factory) as session:
                session.add(report_to_orm(report))
        except IntegrityError as e:
            raise HistoryPersistenceError(f"Run {report.run_id} already recorded") from e
        except SQLAlchemyError as e:
            raise HistoryPersistenceError(f"Failed to record run {report.run_id}: {e}") from e

        logger.debug(f"[history] recorded {report.operation} run {report.run_id}")

    def get(self, run_id: UUID) -> Optional[RunReport]:
        """Get run by ID."""
        session = self._session_factory()
        try:
            orm = session.get(RunORM, run_id)
            if not orm:
                return None
            return orm_to_report(orm)
        finally:
            session.close()

    def list_recent(self, limit: int = 20, operation: Optional[str] = None) -> List[RunReport]:
        """Most recent runs first."""
        session = self._session_factory()
        try:
            query = session.query(RunORM)
            if operation:
                query = query.filter(RunORM.operation == operation)
            orms = query.order_by(RunORM.started_at.desc()).limit(limit).all()
            return [orm_to_report(orm) for orm in orms]
        finally:
            session.close()
