"""
Route-level tests for one node, with peers faked through a mock transport.
"""
import time

import pytest
from fastapi.testclient import TestClient

from catalog.config import Settings
from catalog.main import create_app
from catalog.models import EventKind
from conftest import make_nodes

NEW_PRODUCT = {"name": "Desk lamp", "price": 25.0, "category": "home", "stock": 3}


@pytest.fixture
def app(cluster):
    settings = Settings(node_id="server-a", nodes=make_nodes(), health_check_interval=60)
    return create_app(settings, transport=cluster.transport)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def events(app, monkeypatch):
    sent = []
    monkeypatch.setattr(
        app.state.broadcaster,
        "add_event",
        lambda kind, resource_type, payload: sent.append((kind, resource_type, payload)),
    )
    return sent


def _sync_event(kind, payload, origin="server-b"):
    return {
        "kind": kind,
        "resourceType": "products",
        "payload": payload,
        "createdAt": "2026-01-01T00:00:00+00:00",
        "originNodeId": origin,
    }


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"
    assert resp.json()["nodeId"] == "server-a"


def test_cluster_status_lists_every_node(client):
    data = client.get("/cluster/status").json()

    assert data["currentNode"]["id"] == "server-a"
    assert [r["nodeId"] for r in data["healthRecords"]] == ["server-a", "server-b", "server-c"]
    assert data["stats"]["total"] == 3
    assert set(data["stats"]) == {"total", "healthyCount", "unhealthyCount", "healthyPercentage"}
    assert "timestamp" in data


def test_healthy_nodes(app, client):
    monitor = app.state.monitor
    # let the startup probing round settle before overriding its results
    for _ in range(100):
        if all(n.last_check is not None for n in monitor.nodes):
            break
        time.sleep(0.01)
    monitor.get_node("server-a").mark_unhealthy("HTTP 500")
    monitor.get_node("server-b").mark_healthy(12.0)
    monitor.get_node("server-c").mark_healthy(15.0)

    data = client.get("/cluster/healthy-nodes").json()

    assert [r["nodeId"] for r in data["healthyNodes"]] == ["server-b", "server-c"]
    assert data["primaryNode"]["nodeId"] == "server-b"
    assert data["primaryNode"]["responseTimeMs"] == 12.0


def test_crud_emits_one_event_per_write(client, events):
    created = client.post("/products", json=NEW_PRODUCT)
    assert created.status_code == 201
    product = created.json()
    assert product["id"]
    assert product["createdAt"]

    updated = client.put(f"/products/{product['id']}", json=dict(NEW_PRODUCT, price=30.0))
    assert updated.status_code == 200
    assert updated.json()["price"] == 30.0

    deleted = client.delete(f"/products/{product['id']}")
    assert deleted.status_code == 200
    assert deleted.json() == {"message": "Product deleted", "id": product["id"]}

    assert [(k, r) for k, r, _ in events] == [
        (EventKind.CREATE, "products"),
        (EventKind.UPDATE, "products"),
        (EventKind.DELETE, "products"),
    ]
    assert events[0][2]["id"] == product["id"]
    assert events[1][2]["price"] == 30.0


def test_failed_writes_emit_nothing(client, events):
    assert client.post("/products", json=dict(NEW_PRODUCT, price=-1)).status_code == 422
    assert client.put("/products/missing", json=NEW_PRODUCT).status_code == 404
    assert client.delete("/products/missing").status_code == 404
    assert client.get("/products/missing").status_code == 404
    assert events == []


def test_create_with_unreachable_peers_is_kept_locally(client):
    created = client.post("/products", json=NEW_PRODUCT)
    assert created.status_code == 201

    listed = client.get("/products").json()
    assert [p["id"] for p in listed] == [created.json()["id"]]


def test_sync_receive_applies_peer_event_once(client):
    payload = dict(NEW_PRODUCT, id="p-9")

    first = client.post("/sync/receive", json=_sync_event("CREATE", payload), headers={"X-Node-Id": "server-b"})
    second = client.post("/sync/receive", json=_sync_event("CREATE", payload))

    assert first.status_code == 200 and first.json()["applied"] is True
    assert second.status_code == 200 and second.json()["applied"] is False
    assert [p["id"] for p in client.get("/products").json()] == ["p-9"]


def test_sync_receive_ignores_own_events(client):
    resp = client.post("/sync/receive", json=_sync_event("CREATE", dict(NEW_PRODUCT, id="p-1"), origin="server-a"))
    assert resp.status_code == 200
    assert resp.json()["applied"] is False
    assert client.get("/products").json() == []


def test_sync_receive_update_of_missing_row_is_accepted(client):
    resp = client.post("/sync/receive", json=_sync_event("UPDATE", dict(NEW_PRODUCT, id="gone")))
    assert resp.status_code == 200
    assert resp.json()["applied"] is False


def test_sync_receive_without_record_id_fails(client):
    resp = client.post("/sync/receive", json=_sync_event("DELETE", {}))
    assert resp.status_code == 500


def test_shutdown_stops_health_checks(app):
    with TestClient(app):
        assert app.state.monitor.running is True

    assert app.state.monitor.running is False
    assert app.state.broadcaster.pending == 0
