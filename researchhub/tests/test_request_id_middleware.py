import logging

from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from researchhub.core.logging import get_request_id
from researchhub.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None), "ctx": get_request_id()}

    return app


def test_generates_request_id_when_missing():
    app = _make_app()
    client = TestClient(app)

    resp = client.get("/")
    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    body = resp.json()

    assert rid_header
    assert body["request_id"] == rid_header
    assert body["ctx"] == rid_header


def test_echoes_provided_request_id():
    app = _make_app()
    client = TestClient(app)

    provided = "test-rid-123"
    resp = client.get("/", headers={"X-Request-Id": provided})

    assert resp.status_code == 200
    assert resp.headers.get("x-request-id") == provided
    assert resp.json().get("request_id") == provided


def test_completion_log_carries_action_and_user(client, auth_headers, caplog):
    with caplog.at_level(logging.INFO, logger="researchhub"):
        resp = client.get("/api/points", params={"action": "balance"}, headers=auth_headers("u7"))
    rid = resp.headers["x-request-id"]
    done = [r for r in caplog.records if r.getMessage() == "request.complete" and r.request_id == rid]
    assert len(done) == 1
    assert done[0].user_id == "u7"
    assert done[0].action == "balance"
    assert done[0].status == 200
