"""Tests for the remote store simulator API."""
import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Simulator app backed by a temporary database."""
    from matchstore import cloud
    monkeypatch.setattr(cloud, "CLOUD_DB_PATH", str(tmp_path / "cloud.db"))
    with TestClient(cloud.app) as test_client:
        yield test_client


def auth_headers(client, principal_id="user-1"):
    response = client.post("/v1/sessions", json={"principalId": principal_id})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['accessToken']}"}


def test_health(client):
    """Health endpoint responds."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_session(client):
    """Sessions are issued for valid principals."""
    response = client.post("/v1/sessions", json={"principalId": "user-1"})
    data = response.json()
    assert response.status_code == 200
    assert data["principalId"] == "user-1"
    assert data["accessToken"]
    assert data["expiresAt"] > 0


def test_create_session_rejects_invalid_principal(client):
    """Malformed principals get a 400."""
    response = client.post("/v1/sessions", json={"principalId": "not valid!"})
    assert response.status_code == 400


def test_records_require_token(client):
    """Record endpoints reject missing and unknown tokens."""
    assert client.get("/v1/records/player").status_code == 401
    response = client.get("/v1/records/player", headers={"Authorization": "Bearer nope"})
    assert response.status_code == 401


def test_expired_session_rejected(client, monkeypatch):
    """Tokens past their expiry are refused."""
    from matchstore import cloud
    monkeypatch.setattr(cloud, "SESSION_TTL", -1)
    headers = auth_headers(client)
    response = client.get("/v1/records/player", headers=headers)
    assert response.status_code == 401
    assert response.json()["detail"] == "Session expired"


def test_upsert_and_get_record(client):
    """A record can be written and read back."""
    headers = auth_headers(client)
    body = {"data": {"id": "p1", "name": "Aino"}, "updatedAt": 1700000000000}

    response = client.put("/v1/records/player/p1", json=body, headers=headers)
    assert response.status_code == 200
    assert response.json()["updatedAt"] == 1700000000000

    response = client.get("/v1/records/player/p1", headers=headers)
    assert response.status_code == 200
    record = response.json()
    assert record["principalId"] == "user-1"
    assert record["data"] == {"id": "p1", "name": "Aino"}


def test_negative_timestamp_rejected(client):
    """updatedAt must not be negative."""
    headers = auth_headers(client)
    response = client.put("/v1/records/player/p1", json={"data": {}, "updatedAt": -5}, headers=headers)
    assert response.status_code == 422


def test_list_records(client):
    """Listing returns the caller's records of one type, oldest first."""
    headers = auth_headers(client)
    client.put("/v1/records/player/p2", json={"data": {"name": "B"}, "updatedAt": 2}, headers=headers)
    client.put("/v1/records/player/p1", json={"data": {"name": "A"}, "updatedAt": 1}, headers=headers)
    client.put("/v1/records/team/t1", json={"data": {"name": "T"}, "updatedAt": 3}, headers=headers)

    response = client.get("/v1/records/player", headers=headers)
    assert [r["entityId"] for r in response.json()] == ["p1", "p2"]


def test_principals_cannot_see_each_other(client):
    """Rows are isolated per principal."""
    alice = auth_headers(client, "alice")
    bob = auth_headers(client, "bob")
    client.put("/v1/records/player/p1", json={"data": {"name": "A"}, "updatedAt": 1}, headers=alice)

    assert client.get("/v1/records/player/p1", headers=bob).status_code == 404
    assert client.get("/v1/records/player", headers=bob).json() == []
    assert client.delete("/v1/records/player/p1", headers=bob).status_code == 404
    assert client.get("/v1/records/player/p1", headers=alice).status_code == 200


def test_delete_record(client):
    """Deleting removes the record; deleting again is a 404."""
    headers = auth_headers(client)
    client.put("/v1/records/player/p1", json={"data": {}, "updatedAt": 1}, headers=headers)

    response = client.delete("/v1/records/player/p1", headers=headers)
    assert response.status_code == 200
    assert response.json() == {"status": "deleted"}
    assert client.delete("/v1/records/player/p1", headers=headers).status_code == 404
