import pytest
from fastapi.testclient import TestClient

from conftest import build_settings, make_account
from snapshots.api import create_app
from snapshots.service import SnapshotService


@pytest.fixture
def service(home_root, working_dir, backend, clock):
    make_account(home_root, "alice", {"a.txt": "x"})
    make_account(home_root, "bob")
    settings = build_settings(home_root, accounts={"alice": {"quota_bytes": 10 * 1024 ** 3}})
    return SnapshotService(settings, working_dir, backend=backend, clock=clock, threaded=False)


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def test_accounts_listing(client):
    response = client.get("/v1/snapshots/accounts")
    assert response.status_code == 200
    assert response.json() == {"accounts": ["alice", "bob"]}


def test_account_status_reports_history_state(client, service):
    payload = client.get("/v1/snapshots/accounts/alice").json()
    assert payload["history_state"] == "never_snapshotted"
    assert payload["in_progress"] is False
    assert payload["phase"] == "idle"

    service.snapshot_now("alice")
    payload = client.get("/v1/snapshots/accounts/alice").json()
    assert payload["history_state"] == "present"
    assert payload["snapshot_count"] == 1
    assert payload["last_outcome"] == "created"


def test_unknown_account_is_404(client):
    assert client.get("/v1/snapshots/accounts/mallory").status_code == 404
    assert client.get("/v1/snapshots/accounts/mallory/policy").status_code == 404
    assert client.post("/v1/snapshots/accounts/mallory/admission").status_code == 404
    assert client.post("/v1/snapshots/retention", json={"account": "mallory"}).status_code == 404


def test_policy_and_admission(client):
    policy = client.get("/v1/snapshots/accounts/alice/policy").json()
    assert policy["quota_bytes"] == 10 * 1024 ** 3
    assert policy["warn_ratio"] == 0.9
    assert policy["retention"]["mode"] == "gfs"

    admission = client.post("/v1/snapshots/accounts/alice/admission").json()
    assert admission["decision"] == "allow"
    assert admission["limit_bytes"] == 10 * 1024 ** 3


def test_retention_and_events(client, service):
    service.snapshot_now("alice")

    response = client.post("/v1/snapshots/retention", json={})
    assert response.status_code == 200
    summaries = {item["account"]: item for item in response.json()["summaries"]}
    assert set(summaries) == {"alice", "bob"}
    assert len(summaries["alice"]["kept"]) == 1

    events = client.get("/v1/snapshots/events", params={"limit": 50}).json()["events"]
    names = [record["event"] for record in events]
    assert "snapshot_created" in names
    assert "retention_applied" in names
    assert client.get("/v1/snapshots/events", params={"limit": 0}).status_code == 422


def test_health_endpoint(client):
    payload = client.get("/v1/snapshots/health").json()
    assert payload["degraded"] is False
    assert payload["degraded_reason"] is None
    assert payload["summary"]["major"] == 0
