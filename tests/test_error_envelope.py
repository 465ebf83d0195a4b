"""Every error path answers with the same ``{success: false, message, code}`` envelope."""

from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from payauth.api.error_handling import register_exception_handlers
from payauth.api.schemas import Envelope, FieldError
from payauth.service.errors import ConflictError, RateLimitedError
from payauth.storage.errors import ConstraintViolation


class _Body(BaseModel):
    count: int


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("already there", code="EMAIL_ALREADY_EXISTS", field="email")

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("slow down", headers={"Retry-After": "30"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("duplicate row", {"field": "email"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    @app.post("/typed")
    async def typed(body: _Body):
        return body

    return app


client = TestClient(_build_app(), raise_server_exceptions=False)


def test_service_error_envelope():
    response = client.get("/conflict")
    assert response.status_code == 409
    assert response.json() == {
        "success": False,
        "message": "already there",
        "code": "EMAIL_ALREADY_EXISTS",
        "field": "email",
    }


def test_service_error_headers_are_forwarded():
    response = client.get("/limited")
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "30"
    assert response.json()["code"] == "RATE_LIMIT_EXCEEDED"


def test_constraint_violation_is_conflict():
    response = client.get("/constraint")
    assert response.status_code == 409
    assert response.json()["code"] == "CONFLICT"
    assert response.json()["field"] == "email"


def test_unhandled_exception_hides_details():
    response = client.get("/boom")
    assert response.status_code == 500
    body = response.json()
    assert body == {"success": False, "message": "Internal server error", "code": "INTERNAL_ERROR"}
    assert "secret" not in response.text


def test_unknown_route():
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.json() == {
        "success": False,
        "message": "Route GET /nowhere not found",
        "code": "NOT_FOUND",
    }


def test_method_not_allowed():
    response = client.get("/typed")
    assert response.status_code == 405
    assert response.json()["code"] == "METHOD_NOT_ALLOWED"


def test_request_validation_lists_fields():
    response = client.post("/typed", json={"count": "many"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "VALIDATION_ERROR"
    assert body["field"] == "count"
    assert body["errors"][0]["field"] == "count"


def test_envelope_omits_empty_keys():
    assert Envelope(message="ok").model_dump(mode="json") == {"success": True, "message": "ok"}
    dumped = Envelope(
        success=False, message="bad", errors=[FieldError(field="email", message="bad")]
    ).model_dump(mode="json")
    assert dumped["errors"] == [{"field": "email", "message": "bad"}]
    assert "data" not in dumped
