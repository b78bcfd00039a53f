"""
Unit tests for the EHR service application.
"""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from service_ehr.app.main import EHRService, create_app
from shared.config import get_config
from shared.test_helpers import MockTokenGenerator, SecurityServiceStub, TestDataFactory, TestUser

SECRET = "ehr-test-secret-key-0123456789abcdef"


@pytest.fixture
def users():
    return {user.user_id: user for user in TestDataFactory.create_test_users()}


@pytest.fixture
def stub(users):
    return SecurityServiceStub([user.as_security_record() for user in users.values()])


@pytest.fixture
def config():
    return get_config("ehr", 3000, env="test", jwt_secret=SECRET, security_service_url="http://security.test/api")


@pytest.fixture
def tokens():
    return MockTokenGenerator(secret=SECRET)


class TestEHRService:
    """Test cases for EHRService."""

    @pytest.fixture
    def service(self, config, stub):
        return EHRService(config, transport=stub.transport, sleep=AsyncMock())

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    def test_health_endpoint(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "ehr"
        assert data["status"] == "ok"
        assert data["dependencies"]["cache"] == "ok"

    @patch("service_ehr.app.main.EHRService._check_dependencies")
    def test_health_reports_dependency_failure(self, mock_check_deps, client):
        mock_check_deps.side_effect = RuntimeError("store down")

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "error"

    def test_metrics_endpoint(self, client, users, tokens):
        client.get("/api/cache/stats", headers=tokens.auth_headers(users["admin-1"]))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "cache_hits_total" in response.text
        assert "outbound_requests_total" in response.text

    def test_request_id_is_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_create_app_wires_service(self, config, stub):
        app = create_app(config, transport=stub.transport)

        assert isinstance(app.state.ehr_service, EHRService)


class TestAuthentication:
    """Test cases for bearer token and role checks."""

    @pytest.fixture
    def client(self, config, stub):
        with TestClient(create_app(config, transport=stub.transport, sleep=AsyncMock())) as client:
            yield client

    def test_missing_token(self, client):
        response = client.get("/api/patients")

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_malformed_header(self, client):
        response = client.get("/api/patients", headers={"Authorization": "Token abc"})

        assert response.status_code == 401

    def test_token_signed_with_other_secret(self, client, users):
        forged = MockTokenGenerator(secret="another-secret-key-0123456789abcdef")

        response = client.get("/api/patients", headers=forged.auth_headers(users["admin-1"]))

        assert response.status_code == 401

    def test_expired_token(self, client, users, tokens):
        response = client.get("/api/patients", headers=tokens.auth_headers(users["admin-1"], expires_in=-60))

        assert response.status_code == 401

    def test_unknown_user(self, client, tokens):
        ghost = TestUser("ghost", "Ghost", "ghost@clinic.test", "ADMINISTRADOR")

        response = client.get("/api/patients", headers=tokens.auth_headers(ghost))

        assert response.status_code == 401

    def test_role_comes_from_security_service(self, client, stub, users, tokens):
        # Token claims ADMINISTRADOR but the security service says ENFERMERO
        impostor = TestUser("nurse-1", "Nora Nurse", "nurse@clinic.test", "ADMINISTRADOR")

        response = client.get("/api/cache/stats", headers=tokens.auth_headers(impostor))

        assert response.status_code == 403
        assert response.json()["code"] == "AUTHORIZATION_ERROR"

    def test_caller_lookup_is_cached(self, client, stub, users, tokens):
        headers = tokens.auth_headers(users["doc-1"])

        client.get("/api/medical-histories", headers=headers)
        client.get("/api/medical-histories", headers=headers)

        assert stub.calls("GET", "/users/doc-1") == 1

    def test_token_is_forwarded_to_security_service(self, client, stub, users, tokens):
        headers = tokens.auth_headers(users["admin-1"])

        client.get("/api/patients", headers=headers)

        forwarded = [r for r in stub.requests if r.url.path == "/api/users"]
        assert forwarded[0].headers["authorization"] == headers["Authorization"]

    def test_security_outage_is_bad_gateway(self, client, stub, users, tokens):
        stub.failures = [500, 500, 500]

        response = client.get("/api/patients", headers=tokens.auth_headers(users["admin-1"]))

        assert response.status_code == 502
        assert response.json()["code"] == "EXTERNAL_SERVICE_ERROR"


class TestCacheAdministration:
    """Test cases for the cache admin routes."""

    @pytest.fixture
    def client(self, config, stub):
        with TestClient(create_app(config, transport=stub.transport, sleep=AsyncMock())) as client:
            yield client

    def test_stats_require_admin(self, client, users, tokens):
        response = client.get("/api/cache/stats", headers=tokens.auth_headers(users["doc-1"]))

        assert response.status_code == 403

    def test_stats(self, client, users, tokens):
        response = client.get("/api/cache/stats", headers=tokens.auth_headers(users["admin-1"]))

        assert response.status_code == 200
        data = response.json()
        assert data["pending_requests"] == 0
        assert data["namespaces"]["users"]["size"] == 1
        assert data["namespaces"]["roles"]["max_entries"] == 500

    def test_flush_one_namespace(self, client, users, tokens):
        headers = tokens.auth_headers(users["admin-1"])

        response = client.delete("/api/cache", params={"namespace": "roles"}, headers=headers)

        assert response.status_code == 200
        assert response.json() == {"flushed": ["roles"]}

    def test_flush_everything(self, client, stub, users, tokens):
        headers = tokens.auth_headers(users["admin-1"])

        response = client.delete("/api/cache", headers=headers)
        client.get("/api/cache/stats", headers=headers)

        assert "users" in response.json()["flushed"]
        assert stub.calls("GET", "/users/admin-1") == 2

    def test_unknown_namespace_rejected(self, client, users, tokens):
        response = client.delete("/api/cache", params={"namespace": "prescriptions"},
                                 headers=tokens.auth_headers(users["admin-1"]))

        assert response.status_code == 422
