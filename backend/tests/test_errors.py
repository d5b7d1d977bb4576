"""
Tests for the error envelope: ErrorKind to status mapping and request validation rendering.
"""

import asyncio
import json
import logging

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from errors import ErrorKind, ServiceError
from main import STATUS_BY_KIND, service_error_handler, unhandled_error_handler

logger = logging.getLogger(__name__)


def make_request(path: str = "/api/test") -> Request:
    return Request({
        "type": "http",
        "method": "GET",
        "path": path,
        "headers": [],
        "query_string": b"",
        "scheme": "http",
        "server": ("testserver", 80),
    })


@pytest.mark.parametrize("kind,status_code", [
    (ErrorKind.validation_error, 422),
    (ErrorKind.not_found, 404),
    (ErrorKind.forbidden, 403),
    (ErrorKind.conflict, 409),
    (ErrorKind.unauthenticated, 401),
    (ErrorKind.delivery_failed, 502),
])
def test_service_error_status(kind, status_code):
    response = asyncio.run(service_error_handler(make_request(), ServiceError(kind, "Something happened")))

    assert response.status_code == status_code
    assert json.loads(response.body) == {"error": kind.value, "detail": "Something happened", "fields": []}


def test_every_kind_is_mapped():
    assert set(STATUS_BY_KIND) == set(ErrorKind)


def test_unauthenticated_carries_challenge_header():
    response = asyncio.run(
        service_error_handler(make_request(), ServiceError(ErrorKind.unauthenticated, "Not authenticated"))
    )

    assert response.headers["www-authenticate"] == "Bearer"


def test_unhandled_error_hides_details():
    response = asyncio.run(unhandled_error_handler(make_request(), RuntimeError("db password is hunter2")))

    assert response.status_code == 500
    body = json.loads(response.body)
    assert body == {"error": "internal_error", "detail": "Internal server error", "fields": []}
    logger.info("✓ Internal errors never leak their message")


def test_request_validation_envelope(client: TestClient, headers_a):
    response = client.post("/api/tasks", json={"title": "", "priority": "SOON"}, headers=headers_a)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "validation_error"
    assert body["detail"] == "Request validation failed"
    assert sorted(field["field"] for field in body["fields"]) == ["priority", "title"]


def test_query_validation_envelope(client: TestClient, headers_a):
    response = client.get("/api/tasks", params={"page": 0}, headers=headers_a)

    assert response.status_code == 422
    assert response.json()["fields"][0]["field"] == "page"


def test_health(client: TestClient):
    assert client.get("/health").json() == {"status": "healthy"}
