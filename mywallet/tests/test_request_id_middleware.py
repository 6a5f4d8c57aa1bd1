from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from mywallet.core.errors import AppError, NotFoundError, app_error_handler
from mywallet.core.logging import get_request_id
from mywallet.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None), "context": get_request_id()}

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Subscription not found")

    return app


def test_generates_request_id_when_missing():
    client = TestClient(_make_app())

    resp = client.get("/")
    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    body = resp.json()

    assert rid_header
    assert body["request_id"] == rid_header
    assert body["context"] == rid_header


def test_reuses_gateway_request_id():
    client = TestClient(_make_app())

    provided = "bb56a2f1-6aae-46ac-982e-9dcd3581d08e"
    resp = client.get("/", headers={"X-Request-Id": provided})

    assert resp.status_code == 200
    assert resp.headers.get("x-request-id") == provided
    assert resp.json()["request_id"] == provided


def test_error_body_carries_request_id():
    client = TestClient(_make_app())

    resp = client.get("/missing", headers={"X-Request-Id": "rid-404"})

    assert resp.status_code == 404
    assert resp.json()["error"] == {"code": "not_found", "message": "Subscription not found", "request_id": "rid-404"}
