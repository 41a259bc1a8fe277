from fastapi import FastAPI
from fastapi.testclient import TestClient

from config import RequestIdFilter
from middleware import LoggingMiddleware


class RecordingFilter(RequestIdFilter):
    def __init__(self):
        super().__init__()
        self.issued = []
        self.cleared = 0

    def new_request_id(self) -> str:
        request_id = super().new_request_id()
        self.issued.append(request_id)
        return request_id

    def clear(self) -> None:
        super().clear()
        self.cleared += 1


def build_app(request_id_filter):
    app = FastAPI()
    app.add_middleware(LoggingMiddleware, request_id_filter=request_id_filter)

    @app.get("/ok")
    def ok():
        return {"ok": True}

    @app.get("/boom")
    def boom():
        raise RuntimeError("boom")

    return app


def test_request_id_header_and_clear():
    request_id_filter = RecordingFilter()
    client = TestClient(build_app(request_id_filter))

    response = client.get("/ok")

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == request_id_filter.issued[0]
    assert request_id_filter.cleared == 1


def test_request_id_cleared_when_route_raises():
    request_id_filter = RecordingFilter()
    client = TestClient(build_app(request_id_filter), raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    assert len(request_id_filter.issued) == 1
    assert request_id_filter.cleared == 1
