import pytest


def test_healthz_always_ok(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


@pytest.mark.parametrize("storage", ["memory", "sql"], indirect=True)
def test_readyz_ok(client, storage):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "storage": storage.name}


def test_readyz_reports_unreachable_storage(client, storage, monkeypatch):
    monkeypatch.setattr(storage, "ping", lambda: False)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "storage" in body.get("detail", "")


def test_readyz_handles_probe_exception(client, storage, monkeypatch):
    def boom():
        raise RuntimeError("db down")

    monkeypatch.setattr(storage, "ping", boom)
    assert client.get("/readyz").status_code == 503
