from fastapi import FastAPI
from fastapi.testclient import TestClient

from seat_inventory.errors import NotHolder, ServiceUnavailable
from seat_inventory.main import app, register_exception_handlers


def test_health_echoes_trace_id():
    client = TestClient(app)

    response = client.get("/health", headers={"X-Trace-Id": "trace-123"})

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Trace-Id"] == "trace-123"


def test_metrics_are_exposed():
    client = TestClient(app)

    response = client.get("/metrics")

    assert response.status_code == 200
    assert "seat_inventory_seat_lock_attempts" in response.text


def test_ready_without_redis_is_unavailable():
    client = TestClient(app)

    assert client.get("/ready").status_code == 503


def test_domain_errors_render_public_message():
    api = FastAPI()
    register_exception_handlers(api)

    @api.post("/seats/{code}/release")
    async def release(code: str):
        raise NotHolder(f"seat {code} is held by user 1")

    @api.get("/down")
    async def down():
        raise ServiceUnavailable("connection reset")

    client = TestClient(api)

    response = client.post("/seats/A1/release")
    assert response.status_code == 403
    assert response.json() == {"status": False, "message": "This seat is held by another user"}

    response = client.get("/down")
    assert response.status_code == 503
    assert response.json()["message"] == "Seat service temporarily unavailable"
