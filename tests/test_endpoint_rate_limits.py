"""Tests for per-route admission control on the auth endpoints.

Budgets come from the default settings: 5 logins per 15 minutes,
3 registrations and 3 reset requests per hour, 5 verification resends
per hour, 10 refreshes per minute.
"""

import pytest
from fastapi.testclient import TestClient

from schoolauth import app as app_module
from schoolauth.service.runtime import get_runtime


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _exhaust(client, path, payload, limit):
    for _ in range(limit):
        response = client.post(path, json=payload)
        assert response.status_code != 429
    return client.post(path, json=payload)


class TestLoginRateLimit:
    def test_sixth_attempt_rejected(self, client):
        payload = {"email": "ghost@school.example", "password": "Wrong!Pass1"}
        response = _exhaust(client, "/api/auth/login", payload, 5)

        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        retry_after = int(response.headers["Retry-After"])
        assert 0 < retry_after <= 900
        assert body["error"]["details"]["retry_after"] == retry_after
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_headers_on_admitted_requests(self, client):
        response = client.post(
            "/api/auth/request-password-reset", json={"email": "ghost@school.example"}
        )
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "3"
        assert response.headers["X-RateLimit-Remaining"] == "2"

    def test_rejection_happens_before_credentials_are_checked(self, client):
        payload = {"email": "ghost@school.example", "password": "Wrong!Pass1"}
        _exhaust(client, "/api/auth/login", payload, 5)
        before = len(get_runtime().store.list_audit_entries(action="LOGIN_FAILED"))
        client.post("/api/auth/login", json=payload)
        after = len(get_runtime().store.list_audit_entries(action="LOGIN_FAILED"))
        assert before == after


class TestOtherRoutes:
    @pytest.mark.parametrize(
        "path,payload,limit",
        [
            ("/api/auth/request-password-reset", {"email": "ghost@school.example"}, 3),
            ("/api/auth/resend-verification", {"email": "ghost@school.example"}, 5),
            ("/api/auth/refresh-token", {"refreshToken": "not-a-token"}, 10),
        ],
    )
    def test_route_limits(self, client, path, payload, limit):
        response = _exhaust(client, path, payload, limit)
        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_register_limit(self, client):
        for i in range(3):
            response = client.post(
                "/api/auth/register",
                json={"email": f"kid{i}@school.example", "password": "short", "name": "Kid Tester"},
            )
            assert response.status_code == 400
        response = client.post(
            "/api/auth/register",
            json={"email": "kid9@school.example", "password": "Str0ng!Pass", "name": "Kid Tester"},
        )
        assert response.status_code == 429

    def test_routes_have_independent_buckets(self, client):
        _exhaust(client, "/api/auth/login", {"email": "ghost@school.example", "password": "x"}, 5)
        response = client.post("/api/auth/request-password-reset", json={"email": "ghost@school.example"})
        assert response.status_code == 200

    def test_reset_password_is_not_limited(self, client):
        for _ in range(6):
            response = client.post(
                "/api/auth/reset-password", json={"token": "bogus", "password": "N3w!Password"}
            )
            assert response.status_code == 401
