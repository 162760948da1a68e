#tests\test_api.py

"""Test read-only status API."""

import pytest
from uuid import uuid4

from fastapi.testclient import TestClient

from fleet_engine.api.main import create_app
from fleet_engine.container import FleetContainer
from fleet_engine.core.models import NodeOutcome, QueueSnapshot, RunReport


@pytest.fixture
def container(settings, store, transport, hypervisor, probe, credentials, history):
    return FleetContainer(
        settings=settings,
        store=store,
        transport=transport,
        hypervisor=hypervisor,
        probe=probe,
        credentials=credentials,
        history=history,
    )


@pytest.fixture
def client(container):
    return TestClient(create_app(container))


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestNodes:
    """Test inventory endpoints."""

    def test_no_inventory_is_404(self, client):
        response = client.get("/nodes")

        assert response.status_code == 404
        assert "run provision first" in response.json()["detail"]

    def test_list_nodes(self, client, running_inventory):
        response = client.get("/nodes")

        assert response.status_code == 200
        body = response.json()
        assert body["master_address"] == "192.168.1.10"
        assert [n["name"] for n in body["nodes"]] == ["worker1", "worker2", "worker3"]
        assert body["nodes"][0]["state"] == "RUNNING"
        assert body["nodes"][0]["cpus"] == 8

    def test_get_node(self, client, running_inventory):
        response = client.get("/nodes/worker2")

        assert response.status_code == 200
        assert response.json()["address"] == "192.168.122.102"

    def test_get_unknown_node(self, client, running_inventory):
        assert client.get("/nodes/worker9").status_code == 404


class TestFleetStatus:
    """Test live status endpoint (fake transport and broker)."""

    def test_status(self, client, running_inventory, transport, monkeypatch):
        transport.unreachable.add("192.168.122.103")
        monkeypatch.setattr(
            "fleet_engine.monitor.broker_client.BrokerClient.queue_snapshot",
            lambda self, queue, timeout=None: QueueSnapshot(queue, message_count=2, consumer_count=2),
        )

        response = client.get("/fleet/status")

        assert response.status_code == 200
        body = response.json()
        assert body["online"] == 2
        assert body["total"] == 3
        assert body["nodes"][2]["reachability"] == "Offline"
        assert body["nodes"][0]["container_state"] == "Up"
        assert body["queue"]["summary"] == "Queue: cdmap_national | messages=2 | consumers=2"


class TestRuns:
    """Test run history endpoints."""

    def test_list_runs(self, client, history):
        history.record(RunReport(operation="provision", outcomes=[NodeOutcome.success("worker1", "10.0.0.1")]))

        response = client.get("/runs")

        assert response.status_code == 200
        runs = response.json()
        assert len(runs) == 1
        assert runs[0]["succeeded"] == 1
        assert runs[0]["outcomes"][0]["summary"] == "succeeded (10.0.0.1)"

    def test_get_run(self, client, history):
        report = RunReport(operation="deploy")
        history.record(report)

        response = client.get(f"/runs/{report.run_id}")

        assert response.status_code == 200
        assert response.json()["operation"] == "deploy"

    def test_get_unknown_run(self, client):
        assert client.get(f"/runs/{uuid4()}").status_code == 404

    def test_history_not_configured(self, container):
        container.history = None
        client = TestClient(create_app(container))

        assert client.get("/runs").status_code == 503
