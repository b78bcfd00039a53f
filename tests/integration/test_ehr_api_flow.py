"""
Integration tests for the EHR API flow.

The security service is replaced by an in-process stub; everything else
(auth, caching, invalidation, repositories) runs for real.
"""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from service_ehr.app.main import create_app
from shared.config import get_config
from shared.test_helpers import MockTokenGenerator, SecurityServiceStub, TestDataFactory

SECRET = "ehr-test-secret-key-0123456789abcdef"


class TestEHRApiFlow:
    """End-to-end flows through the EHR HTTP API."""

    @pytest.fixture
    def users(self):
        return {user.user_id: user for user in TestDataFactory.create_test_users()}

    @pytest.fixture
    def stub(self, users):
        return SecurityServiceStub([user.as_security_record() for user in users.values()])

    @pytest.fixture
    def client(self, stub):
        config = get_config("ehr", 3000, env="test", jwt_secret=SECRET,
                            security_service_url="http://security.test/api")
        with TestClient(create_app(config, transport=stub.transport, sleep=AsyncMock())) as client:
            yield client

    @pytest.fixture
    def headers(self, users):
        tokens = MockTokenGenerator(secret=SECRET)
        return {user_id: tokens.auth_headers(user) for user_id, user in users.items()}

    @pytest.fixture
    def patient(self, client, headers):
        """Register p1 in the EHR."""
        response = client.post("/api/patients", json={"user_id": "p1"}, headers=headers["admin-1"])
        assert response.status_code == 201
        return response.json()["data"]

    def create_diagnostic(self, client, headers, patient_id="p1", **overrides):
        response = client.post(f"/api/diagnostics/patient/{patient_id}",
                               json=TestDataFactory.create_diagnostic_payload(**overrides),
                               headers=headers["doc-1"])
        assert response.status_code == 201
        return response.json()["data"]

    def test_patient_registration(self, client, headers, patient):
        assert patient["id"] == "p1"
        assert patient["role"] == "PACIENTE"

        duplicate = client.post("/api/patients", json={"user_id": "p1"}, headers=headers["admin-1"])
        assert duplicate.status_code == 409

        listing = client.get("/api/patients", headers=headers["nurse-1"]).json()
        assert listing["total"] == 2

    def test_new_patient_requires_identity_fields(self, client, headers):
        response = client.post("/api/patients", json={"email": "x@clinic.test"}, headers=headers["admin-1"])

        assert response.status_code == 422

    def test_only_admin_registers_patients(self, client, headers):
        response = client.post("/api/patients", json={"user_id": "p2"}, headers=headers["doc-1"])

        assert response.status_code == 403

    def test_patient_reads_only_own_record(self, client, headers, patient):
        own = client.get("/api/patients/p1", headers=headers["p1"])
        other = client.get("/api/patients/p1", headers=headers["p2"])

        assert own.status_code == 200
        assert own.json()["email"] == "paula@clinic.test"
        assert other.status_code == 403

    def test_patient_profile_update_reaches_security_service(self, client, stub, headers, patient):
        client.get("/api/patients/p1", headers=headers["admin-1"])

        response = client.put("/api/patients/p1", json={"fullname": "Paula Renamed"}, headers=headers["admin-1"])
        refreshed = client.get("/api/patients/p1", headers=headers["admin-1"])

        assert response.status_code == 200
        assert stub.users["p1"]["fullname"] == "Paula Renamed"
        assert refreshed.json()["fullname"] == "Paula Renamed"

    def test_patient_state_change(self, client, stub, headers, patient):
        response = client.patch("/api/patients/state/p1", json={"status": "INACTIVE"}, headers=headers["admin-1"])

        assert response.status_code == 200
        assert stub.users["p1"]["status"] == "INACTIVE"

    def test_diagnostic_listing_follows_writes(self, client, headers, patient):
        first = self.create_diagnostic(client, headers, consult_date="2024-01-10T09:00:00")
        before = client.get("/api/diagnostics/patient/p1", headers=headers["doc-1"]).json()

        self.create_diagnostic(client, headers, title="Follow-up", consult_date="2024-02-10T09:00:00")
        after_create = client.get("/api/diagnostics/patient/p1", headers=headers["doc-1"]).json()

        client.patch(f"/api/diagnostics/{first['id']}/state", json={"state": "DELETED"}, headers=headers["doc-1"])
        after_delete = client.get("/api/diagnostics/patient/p1", headers=headers["doc-1"]).json()

        assert before["total"] == 1
        assert after_create["total"] == 2
        assert after_create["data"][0]["title"] == "Follow-up"
        assert after_delete["total"] == 1
        assert client.get(f"/api/diagnostics/{first['id']}", headers=headers["doc-1"]).status_code == 404

    def test_diagnostic_filters(self, client, headers, patient):
        self.create_diagnostic(client, headers, consult_date="2024-01-10T09:00:00")
        archived = self.create_diagnostic(client, headers, consult_date="2024-03-10T09:00:00")
        client.patch(f"/api/diagnostics/{archived['id']}/state", json={"state": "ARCHIVED"},
                     headers=headers["doc-1"])

        by_state = client.get("/api/diagnostics/patient/p1", params={"state": "ARCHIVED"},
                              headers=headers["doc-1"]).json()
        by_date = client.get("/api/diagnostics/patient/p1",
                             params={"date_from": "2024-01-01", "date_to": "2024-01-31"},
                             headers=headers["doc-1"]).json()

        assert [d["id"] for d in by_state["data"]] == [archived["id"]]
        assert by_date["total"] == 1

    def test_nurse_cannot_write_diagnostics(self, client, headers, patient):
        response = client.post("/api/diagnostics/patient/p1",
                               json=TestDataFactory.create_diagnostic_payload(),
                               headers=headers["nurse-1"])

        assert response.status_code == 403

    def test_diagnostic_update(self, client, headers, patient):
        created = self.create_diagnostic(client, headers)
        client.get(f"/api/diagnostics/{created['id']}", headers=headers["doc-1"])

        client.put(f"/api/diagnostics/{created['id']}", json={"treatment": "Antibiotics"}, headers=headers["doc-1"])
        refreshed = client.get(f"/api/diagnostics/{created['id']}", headers=headers["doc-1"]).json()

        assert refreshed["treatment"] == "Antibiotics"

    def test_medical_history_views(self, client, headers, patient):
        assert client.get("/api/medical-histories/me", headers=headers["p1"]).status_code == 404

        self.create_diagnostic(client, headers)
        mine = client.get("/api/medical-histories/me", headers=headers["p1"])
        by_doctor = client.get("/api/medical-histories/patient/p1", headers=headers["doc-1"])
        listing = client.get("/api/medical-histories", headers=headers["doc-1"]).json()

        assert mine.status_code == 200
        assert mine.json()["doctor"]["fullname"] == "Diego Doctor"
        assert by_doctor.json()["id"] == mine.json()["id"]
        assert listing["data"][0]["diagnostic_count"] == 1
        assert client.get(f"/api/medical-histories/{mine.json()['id']}",
                          headers=headers["doc-1"]).status_code == 200

    def test_medical_history_creation_is_idempotent(self, client, headers, patient):
        first = client.post("/api/medical-histories/patient/p1", headers=headers["doc-1"])
        second = client.post("/api/medical-histories/patient/p1", headers=headers["doc-1"])
        missing = client.post("/api/medical-histories/patient/p2", headers=headers["doc-1"])

        assert first.status_code == 201
        assert second.json()["id"] == first.json()["id"]
        assert missing.status_code == 404

    def test_documents_and_timeline(self, client, headers, patient):
        created = self.create_diagnostic(client, headers, consult_date="2024-01-10T09:00:00")
        timeline_before = client.get("/api/medical-histories/me/timeline", headers=headers["p1"]).json()

        upload = client.post("/api/documents/upload", json={
            "patient_id": "p1",
            "diagnostic_id": created["id"],
            "files": [TestDataFactory.create_document_file()],
        }, headers=headers["nurse-1"])
        assert upload.status_code == 201
        document = upload.json()["data"][0]

        version = client.post(f"/api/documents/{document['id']}/versions", json={
            "file": TestDataFactory.create_document_file("xray-v2.pdf"),
            "reason": "Rescanned",
        }, headers=headers["doc-1"])
        versions = client.get(f"/api/documents/{document['id']}/versions", headers=headers["doc-1"]).json()
        first_version = client.get(f"/api/documents/{document['id']}/versions/1", headers=headers["doc-1"]).json()
        by_patient = client.get("/api/documents/patient/p1", headers=headers["nurse-1"]).json()
        timeline_after = client.get("/api/medical-histories/patient/p1/timeline", headers=headers["doc-1"]).json()

        assert timeline_before["pagination"]["total"] == 1
        assert version.status_code == 201
        assert version.json()["data"]["version"] == 2
        assert [v["version"] for v in versions["data"]] == [2, 1]
        assert first_version["filename"] == "xray.pdf"
        assert by_patient["data"][0]["filename"] == "xray-v2.pdf"
        assert [event["type"] for event in timeline_after["data"]] == ["document", "diagnostic"]

    def test_document_upload_rejects_foreign_diagnostic(self, client, headers, patient):
        created = self.create_diagnostic(client, headers)
        client.post("/api/patients", json={"user_id": "p2"}, headers=headers["admin-1"])

        response = client.post("/api/documents/upload", json={
            "patient_id": "p2",
            "diagnostic_id": created["id"],
            "files": [TestDataFactory.create_document_file()],
        }, headers=headers["nurse-1"])

        assert response.status_code == 404

    def test_document_delete(self, client, headers, patient):
        created = self.create_diagnostic(client, headers)
        document = client.post("/api/documents/upload", json={
            "patient_id": "p1",
            "diagnostic_id": created["id"],
            "files": [TestDataFactory.create_document_file()],
        }, headers=headers["nurse-1"]).json()["data"][0]

        first = client.delete(f"/api/documents/{document['id']}", headers=headers["nurse-1"])
        second = client.delete(f"/api/documents/{document['id']}", headers=headers["nurse-1"])

        assert first.status_code == 200
        assert second.status_code == 404
        assert client.get("/api/documents/patient/p1", headers=headers["nurse-1"]).json() == {"data": []}

    def test_advanced_search(self, client, headers, patient):
        self.create_diagnostic(client, headers, consult_date="2024-01-10T09:00:00")

        found = client.get("/api/patients/search/advanced", params={"diagnosis": "bronchitis"},
                           headers=headers["doc-1"]).json()
        empty = client.get("/api/patients/search/advanced", params={"diagnosis": "fracture"},
                           headers=headers["doc-1"]).json()

        assert [p["id"] for p in found["data"]] == ["p1"]
        assert empty["total"] == 0

    def test_transient_security_failure_is_retried(self, client, stub, headers):
        stub.failures = [503]

        response = client.get("/api/patients", headers=headers["nurse-1"])

        assert response.status_code == 200
        assert stub.calls("GET", "/users/nurse-1") == 2
