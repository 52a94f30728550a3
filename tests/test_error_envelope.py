"""Tests for the error envelope format and the outermost error boundary.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from credgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from credgate.api.schemas import Envelope, ErrorBody
from credgate.service.email import NotificationError
from credgate.service.errors import AuthenticationError, ForbiddenError, UpstreamError
from credgate.service.outcomes import Messages
from credgate.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_error_body_rejects_unknown_code(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_envelope_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")

    def test_envelope_generates_request_id(self):
        assert Envelope(status="ok").request_id != Envelope(status="ok").request_id


class TestStatusMapping:
    @pytest.mark.parametrize("status_code,code", sorted(_STATUS_TO_CODE.items()))
    def test_known_codes(self, status_code, code):
        assert _error_code_for_status(status_code) == code

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(409, "conflict!", {"field": "email"})
        body = json.loads(response.body)
        assert response.status_code == 409
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "conflict",
            "message": "conflict!",
            "details": {"field": "email"},
        }


class _Body(BaseModel):
    count: int


@pytest.fixture
def boundary_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/raise/{kind}")
    async def _raise(kind: str):
        if kind == "auth":
            raise AuthenticationError(Messages.UNAUTHORIZED)
        if kind == "forbidden":
            raise ForbiddenError(Messages.FORBIDDEN)
        if kind == "upstream":
            raise UpstreamError("unable to issue token")
        if kind == "conflict":
            raise ConstraintViolation("email already exists", {"field": "email"})
        if kind == "store":
            raise StoreUnavailable("connection refused to 10.0.0.5")
        if kind == "mail":
            raise NotificationError("smtp authentication failed")
        raise RuntimeError("kaboom internals")

    @app.post("/body")
    async def _body(body: _Body):
        return {"count": body.count}

    return TestClient(app, raise_server_exceptions=False)


class TestBoundary:
    @pytest.mark.parametrize(
        "kind,status_code,code",
        [
            ("auth", 401, "unauthorized"),
            ("forbidden", 403, "forbidden"),
            ("upstream", 503, "service_unavailable"),
            ("conflict", 409, "conflict"),
        ],
    )
    def test_typed_errors(self, boundary_client, kind, status_code, code):
        response = boundary_client.get(f"/raise/{kind}")
        assert response.status_code == status_code
        assert response.json()["error"]["code"] == code

    def test_upstream_message_is_generic(self, boundary_client):
        response = boundary_client.get("/raise/upstream")
        assert response.json()["error"]["message"] == Messages.UNEXPECTED
        assert "unable to issue" not in response.text

    @pytest.mark.parametrize("kind", ["store", "mail"])
    def test_outages_hide_internal_detail(self, boundary_client, kind):
        response = boundary_client.get(f"/raise/{kind}")
        assert response.status_code == 503
        error = response.json()["error"]
        assert error["message"] == Messages.UNEXPECTED
        assert "10.0.0.5" not in response.text
        assert "smtp" not in response.text

    def test_uncaught_exception(self, boundary_client):
        response = boundary_client.get("/raise/other")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == Messages.UNEXPECTED
        assert "kaboom" not in response.text

    def test_request_validation(self, boundary_client):
        response = boundary_client.post("/body", json={"count": "many"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "count"]
