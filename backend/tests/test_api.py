import pytest
from fastapi.testclient import TestClient

from simvex.config import settings
from simvex.main import create_app
from simvex.repositories import create_repositories
from simvex.schemas import AiAskIn

U1 = {"X-User-Id": "u1"}
U2 = {"X-User-Id": "u2"}


@pytest.fixture
def client():
    with TestClient(create_app(create_repositories())) as c:
        yield c


def test_health_reports_driver(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "driver": "memory"}
    assert r.headers.get("X-Request-ID")


def test_memo_crud_is_tenant_scoped(client):
    r = client.post("/api/models/7/memos", json={"title": "t", "content": "c"}, headers=U1)
    assert r.status_code == 201
    memo = r.json()
    assert memo["title"] == "t"

    assert client.get("/api/models/7/memos", headers=U1).json() == [memo]
    assert client.get("/api/models/7/memos", headers=U2).json() == []

    assert client.put(f"/api/memos/{memo['id']}", json={"title": "x", "content": ""}, headers=U2).status_code == 404
    r = client.put(f"/api/memos/{memo['id']}", json={"title": "new", "content": "body"}, headers=U1)
    assert r.status_code == 200
    assert r.json()["title"] == "new"

    assert client.delete(f"/api/memos/{memo['id']}", headers=U2).status_code == 404
    assert client.delete(f"/api/memos/{memo['id']}", headers=U1).status_code == 204
    assert client.get("/api/models/7/memos", headers=U1).json() == []


def test_missing_header_uses_guest_tenant(client):
    client.post("/api/models/1/memos", json={"title": "guest", "content": ""})
    assert [m["title"] for m in client.get("/api/models/1/memos", headers={"X-User-Id": "default-guest"}).json()] == ["guest"]
    assert client.get("/api/models/1/memos", headers=U1).json() == []


def test_ask_records_history(client):
    r = client.post("/api/ai/ask", json={"question": "What is this?", "modelId": 3, "meshName": "Gear"}, headers=U1)
    assert r.status_code == 200
    body = r.json()
    assert body["mode"] == "PART"
    assert body["meta"]["provider"] == "mock"
    assert "Gear" in body["answer"]

    history = client.get("/api/ai/history/3", headers=U1).json()
    assert len(history) == 1
    assert history[0]["question"] == "What is this?"
    assert history[0]["answer"] == body["answer"]
    assert history[0]["timestamp"]
    assert client.get("/api/ai/history/3", headers=U2).json() == []


def test_ask_validates_input(client):
    r = client.post("/api/ai/ask", json={"question": "  ", "modelId": 3})
    assert r.status_code == 400
    assert r.json()["meta"]["error"] == "question is required"
    r = client.post("/api/ai/ask", json={"question": "why"})
    assert r.status_code == 400
    assert r.json()["meta"]["error"] == "modelId is required"


def test_workflow_nodes_and_connections(client):
    a = client.post("/api/workflow/nodes", json={"title": "A", "x": 10, "y": 20}, headers=U1)
    assert a.status_code == 201
    b = client.post("/api/workflow/nodes", json={}, headers=U1)
    a_id, b_id = a.json()["id"], b.json()["id"]

    r = client.post("/api/workflow/connections", json={"from": a_id, "to": b_id}, headers=U1)
    assert r.status_code == 201
    connection = r.json()
    assert (connection["from"], connection["to"]) == (a_id, b_id)
    assert (connection["fromAnchor"], connection["toAnchor"]) == ("right", "left")

    assert client.post("/api/workflow/connections", json={"from": a_id, "to": a_id}, headers=U1).status_code == 400
    assert client.post("/api/workflow/connections", json={"from": a_id, "to": b_id}, headers=U2).status_code == 400

    assert client.put(f"/api/workflow/nodes/{a_id}", json={"title": "A2"}, headers=U1).json() == {"message": "ok"}
    assert client.put(f"/api/workflow/nodes/{a_id}", json={"title": "no"}, headers=U2).status_code == 404

    state = client.get("/api/workflow", headers=U1).json()
    assert [(n["title"], n["x"], n["y"]) for n in state["nodes"]] == [("A2", 10, 20), ("New node", 200, 120)]
    assert len(state["connections"]) == 1
    assert client.get("/api/workflow", headers=U2).json() == {"nodes": [], "connections": []}


def test_delete_connection_by_pair_or_id(client):
    a_id = client.post("/api/workflow/nodes", json={}, headers=U1).json()["id"]
    b_id = client.post("/api/workflow/nodes", json={}, headers=U1).json()["id"]
    first = client.post("/api/workflow/connections", json={"from": a_id, "to": b_id}, headers=U1).json()
    second = client.post("/api/workflow/connections", json={"from": b_id, "to": a_id}, headers=U1).json()

    assert client.delete("/api/workflow/connections", headers=U1).status_code == 400
    assert client.delete("/api/workflow/connections", params={"from": a_id, "to": b_id}, headers=U2).status_code == 404
    assert client.delete("/api/workflow/connections", params={"from": a_id, "to": b_id}, headers=U1).status_code == 204
    assert client.delete("/api/workflow/connections", params={"id": second["id"]}, headers=U1).status_code == 204
    assert client.delete("/api/workflow/connections", params={"id": first["id"]}, headers=U1).status_code == 404
    assert client.get("/api/workflow", headers=U1).json()["connections"] == []


def test_file_upload_download_and_delete(client):
    node_id = client.post("/api/workflow/nodes", json={}, headers=U1).json()["id"]
    payload = b"line one\nline two\x00\xff"
    r = client.post(
        f"/api/workflow/nodes/{node_id}/files",
        files={"file": ("notes.txt", payload, "text/plain")},
        headers=U1,
    )
    assert r.status_code == 201
    stored = r.json()
    assert stored["fileName"] == "notes.txt"
    assert stored["url"] == f"/api/workflow/files/download/{stored['id']}"

    node = client.get("/api/workflow", headers=U1).json()["nodes"][0]
    assert node["files"] == [stored]

    d = client.get(stored["url"], headers=U1)
    assert d.status_code == 200
    assert d.content == payload
    assert "notes.txt" in d.headers["content-disposition"]
    assert client.get(stored["url"], headers=U2).status_code == 404

    assert client.delete(f"/api/workflow/files/{stored['id']}", headers=U2).status_code == 404
    assert client.delete(f"/api/workflow/files/{stored['id']}", headers=U1).status_code == 204
    assert client.get(stored["url"], headers=U1).status_code == 404


def test_upload_rejects_missing_node_and_bad_names(client):
    files = {"file": ("a.txt", b"x", "text/plain")}
    assert client.post("/api/workflow/nodes/999/files", files=files, headers=U1).status_code == 404
    node_id = client.post("/api/workflow/nodes", json={}, headers=U1).json()["id"]
    assert client.post(f"/api/workflow/nodes/{node_id}/files", files=files, headers=U2).status_code == 404
    bad = {"file": ("n" * 300 + ".txt", b"x", "text/plain")}
    assert client.post(f"/api/workflow/nodes/{node_id}/files", files=bad, headers=U1).status_code == 400


def test_delete_node_removes_its_files(client):
    node_id = client.post("/api/workflow/nodes", json={}, headers=U1).json()["id"]
    stored = client.post(
        f"/api/workflow/nodes/{node_id}/files", files={"file": ("a.txt", b"x", "text/plain")}, headers=U1
    ).json()
    assert client.delete(f"/api/workflow/nodes/{node_id}", headers=U1).status_code == 204
    assert client.delete(f"/api/workflow/nodes/{node_id}", headers=U1).status_code == 404
    assert client.get(stored["url"], headers=U1).status_code == 404


def test_upload_respects_size_limit(client, monkeypatch):
    monkeypatch.setattr(settings, "MAX_UPLOAD_BYTES", 4)
    node_id = client.post("/api/workflow/nodes", json={}, headers=U1).json()["id"]
    url = f"/api/workflow/nodes/{node_id}/files"

    r = client.post(url, files={"file": ("big.bin", b"12345", "application/octet-stream")}, headers=U1)
    assert r.status_code == 400
    assert r.json()["detail"] == "file too large"
    assert client.get("/api/workflow", headers=U1).json()["nodes"][0]["files"] == []

    r = client.post(url, files={"file": ("ok.bin", b"1234", "application/octet-stream")}, headers=U1)
    assert r.status_code == 201


def test_ask_ignores_unknown_fields(client):
    r = client.post("/api/ai/ask", json={"question": "why", "modelId": 2, "notes": "scratch"}, headers=U1)
    assert r.status_code == 200
    assert r.json()["mode"] == "GLOBAL"
    assert "notes" not in AiAskIn.model_fields
