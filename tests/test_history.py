#tests\test_history.py

"""Test SQLite run history repository."""

import pytest
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from fleet_engine.core.errors import TransferError
from fleet_engine.core.models import NodeOutcome, OutcomeStatus, RunReport
from fleet_engine.infrastructure.history.repository import HistoryPersistenceError


@pytest.fixture
def sample_report():
    report = RunReport(operation="deploy", outcomes=[
        NodeOutcome.success("worker1", "Up 10 seconds"),
        NodeOutcome.failure("worker2", TransferError("rsync failed (12)")),
        NodeOutcome.skipped("worker3", "not running"),
    ])
    report.finish()
    return report


class TestRunHistoryRepository:
    """Test repository operations."""

    # -------------------------
    # CREATE TESTS
    # -------------------------

    def test_record_and_get(self, history, sample_report):
        history.record(sample_report)

        stored = history.get(sample_report.run_id)

        assert stored.run_id == sample_report.run_id
        assert stored.operation == "deploy"
        assert [o.node_name for o in stored.outcomes] == ["worker1", "worker2", "worker3"]
        assert [o.status for o in stored.outcomes] == [
            OutcomeStatus.SUCCEEDED, OutcomeStatus.FAILED, OutcomeStatus.SKIPPED,
        ]
        assert stored.outcomes[1].describe() == "failed: TransportFailure (rsync failed (12))"

    def test_timestamps_are_utc(self, history, sample_report):
        history.record(sample_report)

        stored = history.get(sample_report.run_id)

        assert stored.started_at.tzinfo is not None
        assert stored.started_at.replace(microsecond=0) == sample_report.started_at.replace(microsecond=0)

    def test_duplicate_record_fails(self, history, sample_report):
        history.record(sample_report)

        with pytest.raises(HistoryPersistenceError):
            history.record(sample_report)

    # -------------------------
    # READ TESTS
    # -------------------------

    def test_get_nonexistent(self, history):
        assert history.get(uuid4()) is None

    def test_list_recent_newest_first(self, history):
        base = datetime(2024, 5, 1, tzinfo=timezone.utc)
        for hours, operation in ((0, "provision"), (1, "deploy"), (2, "deploy")):
            report = RunReport(operation=operation, started_at=base + timedelta(hours=hours))
            report.finish()
            history.record(report)

        recent = history.list_recent(limit=2)

        assert [r.started_at for r in recent] == [base + timedelta(hours=2), base + timedelta(hours=1)]

    def test_list_recent_by_operation(self, history):
        for operation in ("provision", "deploy", "deploy"):
            history.record(RunReport(operation=operation))

        assert len(history.list_recent(operation="deploy")) == 2
        assert len(history.list_recent(operation="provision")) == 1
