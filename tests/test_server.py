import pytest
from fastapi.testclient import TestClient

import server
from flow_builder.errors import PersistenceError


@pytest.fixture
def client(repo, storage):
    server.app.dependency_overrides[server.get_repository] = lambda: repo
    server.app.dependency_overrides[server.get_storage] = lambda: storage
    yield TestClient(server.app)
    server.app.dependency_overrides.clear()


ADMIN = {"X-Admin-Email": "admin@example.com"}


def _create_category(client, name="Food"):
    res = client.post("/api/categories", json={"translations": [{"language": "az", "name": name}]}, headers=ADMIN)
    assert res.status_code == 200
    return res.json()


def test_category_crud(client):
    created = _create_category(client)
    assert created["created_by"] == "admin@example.com"
    assert created["name"] == {"az": "Food"}

    res = client.put("/api/categories", json={"id": created["id"], "translations": [{"language": "ru", "name": "Еда"}]})
    assert res.status_code == 200
    assert res.json()["name"] == {"az": "Food", "ru": "Еда"}

    # the original client sends {"name": {lang: text}}
    res = client.post("/api/categories", json={"name": {"az": "İçki"}})
    assert res.status_code == 200

    listed = client.get("/api/categories").json()
    assert [c["order"] for c in listed] == [0, 1]

    assert client.delete("/api/categories", params={"id": created["id"]}).json() == {"success": True}
    assert len(client.get("/api/categories").json()) == 1


def test_category_errors(client):
    res = client.post("/api/categories", json={"translations": []})
    assert res.status_code == 400
    assert res.json()["error"] == "Translations are required"

    assert client.delete("/api/categories").status_code == 400
    res = client.put("/api/categories", json={"id": "missing", "translations": [{"language": "az", "name": "x"}]})
    assert res.status_code == 404


def test_question_routes(client):
    cat = _create_category(client)
    q = client.post(
        "/api/questions",
        json={"category_id": cat["id"], "translations": [{"language": "az", "question": "Q?", "answer": ""}]},
        headers=ADMIN,
    ).json()
    sub = client.post(
        "/api/questions",
        json={"parent_id": q["id"], "translations": [{"language": "az", "question": "Sub?"}]},
    ).json()

    res = client.put("/api/questions", json={"id": q["id"], "translations": [{"language": "ru", "answer": "Да"}]})
    assert res.json()["answer"] == {"ru": "Да"}

    tree = client.get("/api/questions").json()
    assert [r["id"] for r in tree] == [q["id"]]
    assert [s["id"] for s in tree[0]["sub_questions"]] == [sub["id"]]

    other = client.post(
        "/api/questions",
        json={"category_id": cat["id"], "translations": [{"language": "az", "question": "Other?"}]},
    ).json()
    res = client.post(
        "/api/questions/reorder",
        json={"items": [{"id": q["id"], "order": 0}, {"id": other["id"], "order": 1}]},
    )
    assert res.json() == {"success": True}
    assert [r["id"] for r in client.get("/api/questions").json()] == [q["id"], other["id"]]

    assert client.delete("/api/questions", params={"id": q["id"]}).status_code == 200
    assert [r["id"] for r in client.get("/api/questions").json()] == [other["id"]]
    assert client.delete("/api/questions", params={"id": q["id"]}).status_code == 404


def test_category_reorder_route(client):
    a = _create_category(client, "A")
    b = _create_category(client, "B")
    res = client.post("/api/categories/reorder", json={"items": [{"id": b["id"], "order": 0}, {"id": a["id"], "order": 1}]})
    assert res.status_code == 200
    assert [c["id"] for c in client.get("/api/categories").json()] == [b["id"], a["id"]]


def test_upload_routes(client, tmp_path):
    res = client.post("/api/upload", params={"filename": "menu.pdf"}, content=b"%PDF")
    assert res.status_code == 200
    body = res.json()
    assert body["name"] == "menu.pdf"
    assert body["url"].startswith("/uploads/menu-")
    stored = tmp_path / "uploads" / body["url"].rsplit("/", 1)[-1]
    assert stored.exists()

    assert client.delete("/api/upload", params={"url": body["url"]}).json() == {"success": True}
    assert not stored.exists()
    assert client.delete("/api/upload").status_code == 400
    assert client.post("/api/upload", params={"filename": "x"}, content=b"").status_code == 400


def test_persistence_failure_is_500(client, repo, monkeypatch):
    def boom():
        raise PersistenceError("db down")

    monkeypatch.setattr(repo, "list_categories", boom)
    res = client.get("/api/categories")
    assert res.status_code == 500
    assert res.json()["details"] == "db down"
