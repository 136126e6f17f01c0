"""
HTTP tests for the clinic onboarding API.

Test Coverage:
1. Issue a clinic, issue an invite code, validate it and use it
2. errorCode -> HTTP status mapping (400/401/403/404/409/429/500)
3. Rate-limit headers and Retry-After
4. Opaque system errors
5. Health endpoint, security headers and shutdown
6. Client address resolution behind trusted proxies
7. Security alert review (admin only)
"""
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from clinic_onboarding.auth import create_access_token
from clinic_onboarding.errors import OPAQUE_SYSTEM_MESSAGE
from clinic_onboarding.main import create_app
from clinic_onboarding.models.domain import ClinicType, Region, SecurityAlert, Severity
from clinic_onboarding.services.codes import InMemoryCounterStore

from conftest import TEST_JWT_SECRET


def auth(user_id, role="doctor", expires_hours=24):
    token = create_access_token(user_id, role, TEST_JWT_SECRET, expires_hours=expires_hours)
    return {"Authorization": f"Bearer {token}"}


def from_ip(ip, headers=None):
    merged = {"X-Forwarded-For": ip}
    merged.update(headers or {})
    return merged


def build_client(settings, store, clock, trusted_proxies):
    app = create_app(
        replace(settings, trusted_proxies=trusted_proxies),
        store=store,
        counter_store=InMemoryCounterStore(),
        clock=clock,
    )
    return TestClient(app)


@pytest.fixture
def client(settings, store, clock):
    # TestClient's peer address is "testclient"
    with build_client(settings, store, clock, ["testclient"]) as test_client:
        yield test_client


@pytest.fixture
def direct_client(settings, store, clock):
    """No trusted proxies: the socket peer is the client address."""
    with build_client(settings, store, clock, []) as test_client:
        yield test_client


@pytest.fixture
def clinic_code(client):
    response = client.post(
        "/clinic-codes",
        json={"name": "Seoul Family Clinic", "clinic_type": "clinic", "region": "SEOUL"},
        headers=auth("doctor-1"),
    )
    assert response.status_code == 201
    return response.json()["clinic"]["code"]


@pytest.fixture
def invite_code(client, clinic_code):
    response = client.post(
        "/invite-codes",
        json={"clinic_code": clinic_code, "description": "Opening week", "max_uses": 2},
        headers=auth("doctor-1"),
    )
    assert response.status_code == 201
    return response.json()["invite_code"]


# =============================================================================
# TEST: FULL FLOW
# =============================================================================

class TestOnboardingFlow:

    def test_issue_validate_use(self, client, clinic_code, invite_code):
        assert clinic_code == "OB-SEOUL-CLINIC-001"
        assert invite_code.startswith("OB-SEOUL-CLINIC-001-202401-")

        checked = client.post("/invite-codes/validate", json={"code": invite_code}, headers=from_ip("10.1.0.1"))
        assert checked.status_code == 200
        body = checked.json()
        assert body["success"] is True
        assert body["hospitalInfo"]["clinicName"] == "Seoul Family Clinic"
        assert body["codeInfo"]["remainingUses"] == 2
        assert checked.headers["X-RateLimit-Limit"] == "3"
        assert checked.headers["X-RateLimit-Remaining"] == "2"

        used = client.post(
            "/invite-codes/use",
            json={"code": invite_code},
            headers=from_ip("10.1.0.2", auth("customer-1", role="customer")),
        )
        assert used.status_code == 200
        assert used.json()["codeInfo"]["remainingUses"] == 1

    def test_issuance_response_hides_the_hash(self, client, clinic_code):
        response = client.post("/invite-codes", json={"clinic_code": clinic_code}, headers=auth("doctor-1"))

        code = response.json()["code"]
        assert "code_hash" not in code
        assert code["code_hint"].endswith(response.json()["invite_code"][-4:])
        assert code["status"] == "ACTIVE"
        assert code["max_uses"] is None

    def test_list_and_deactivate(self, client, clinic_code, invite_code):
        listed = client.get("/invite-codes", params={"clinic_code": clinic_code}, headers=auth("doctor-1"))
        assert listed.status_code == 200
        assert listed.json()["pagination"]["total"] == 1
        code_id = listed.json()["codes"][0]["id"]

        deactivated = client.put(f"/invite-codes/{code_id}/deactivate", headers=auth("doctor-1"))
        assert deactivated.status_code == 200
        assert deactivated.json()["code"]["status"] == "DEACTIVATED"

        again = client.put(f"/invite-codes/{code_id}/deactivate", headers=auth("doctor-1"))
        assert again.status_code == 200

        rejected = client.post("/invite-codes/validate", json={"code": invite_code}, headers=from_ip("10.1.0.3"))
        assert rejected.status_code == 400
        assert rejected.json()["errorCode"] == "NOT_FOUND"

    def test_usage_history(self, client, clinic_code, invite_code):
        client.post(
            "/invite-codes/use",
            json={"code": invite_code},
            headers=from_ip("10.1.0.4", auth("customer-7", role="customer")),
        )
        code_id = client.get(
            "/invite-codes", params={"clinic_code": clinic_code}, headers=auth("doctor-1")
        ).json()["codes"][0]["id"]

        history = client.get(f"/invite-codes/{code_id}/usage-history", headers=auth("doctor-1"))

        assert history.status_code == 200
        assert history.json()["total"] == 1
        assert history.json()["usages"][0]["consumer_id"] == "customer-7"
        assert history.json()["usages"][0]["client_ip"] == "10.1.0.4"

    def test_verify_clinic_code(self, client, clinic_code):
        response = client.get(f"/clinic-codes/{clinic_code.lower()}")
        assert response.status_code == 200
        assert response.json() == {
            "valid": True,
            "clinic": {
                "clinicCode": "OB-SEOUL-CLINIC-001",
                "clinicName": "Seoul Family Clinic",
                "clinicType": "clinic",
                "region": "SEOUL",
            },
        }

    def test_deactivate_clinic(self, client, clinic_code, invite_code):
        response = client.put(f"/clinic-codes/{clinic_code}/deactivate", headers=auth("doctor-1"))
        assert response.status_code == 200
        assert response.json()["clinic"]["active"] is False

        rejected = client.post("/invite-codes/validate", json={"code": invite_code}, headers=from_ip("10.1.0.5"))
        assert rejected.json()["errorCode"] == "CLINIC_INACTIVE"


# =============================================================================
# TEST: STATUS MAPPING
# =============================================================================

class TestStatusMapping:

    def test_invalid_format_is_400(self, client):
        response = client.post("/invite-codes/validate", json={"code": "hello"}, headers=from_ip("10.2.0.1"))
        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["errorCode"] == "INVALID_FORMAT"
        assert body["suggestions"]

    def test_rate_limit_is_429_with_retry_after(self, client):
        for _ in range(3):
            client.post("/invite-codes/validate", json={"code": "hello"}, headers=from_ip("10.2.0.2"))

        response = client.post("/invite-codes/validate", json={"code": "hello"}, headers=from_ip("10.2.0.2"))

        assert response.status_code == 429
        assert response.json()["errorCode"] == "RATE_LIMITED"
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_use_requires_authentication(self, client, invite_code):
        response = client.post("/invite-codes/use", json={"code": invite_code}, headers=from_ip("10.2.0.3"))
        assert response.status_code in (401, 403)

    def test_bad_token_is_401(self, client):
        response = client.post(
            "/invite-codes/use", json={"code": "x"}, headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    def test_expired_token_is_401(self, client):
        response = client.post("/invite-codes/use", json={"code": "x"}, headers=auth("customer-1", expires_hours=-1))
        assert response.status_code == 401
        assert response.json()["detail"] == "Token has expired"

    def test_customer_cannot_issue(self, client, clinic_code):
        response = client.post(
            "/invite-codes", json={"clinic_code": clinic_code}, headers=auth("customer-1", role="customer")
        )
        assert response.status_code == 403

    def test_non_owner_is_403(self, client, clinic_code):
        response = client.post("/invite-codes", json={"clinic_code": clinic_code}, headers=auth("doctor-2"))
        assert response.status_code == 403
        assert response.json()["errorCode"] == "NOT_AUTHORIZED"

    def test_invalid_list_parameter_is_400(self, client, clinic_code):
        response = client.get(
            "/invite-codes", params={"clinic_code": clinic_code, "status": "deleted"}, headers=auth("doctor-1")
        )
        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_INPUT"

    def test_unknown_invite_code_id_is_404(self, client, clinic_code):
        response = client.put("/invite-codes/no-such-id/deactivate", headers=auth("doctor-1"))
        assert response.status_code == 404
        assert response.json()["errorCode"] == "NOT_FOUND"

    def test_clinic_lookup_errors(self, client):
        assert client.get("/clinic-codes/OB-BUSAN-CLINIC-001").status_code == 404
        malformed = client.get("/clinic-codes/not-a-code")
        assert malformed.status_code == 400
        assert malformed.json()["errorCode"] == "INVALID_FORMAT"

    def test_unknown_region_is_400(self, client):
        response = client.post(
            "/clinic-codes",
            json={"name": "Clinic", "clinic_type": "clinic", "region": "Atlantis"},
            headers=auth("doctor-1"),
        )
        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_INPUT"

    def test_exhausted_sequence_is_409(self, client, store):
        store.sequences[(Region.SEOUL, ClinicType.CLINIC)] = 999
        response = client.post(
            "/clinic-codes",
            json={"name": "Clinic", "clinic_type": "clinic", "region": "SEOUL"},
            headers=auth("doctor-1"),
        )
        assert response.status_code == 409
        assert response.json()["errorCode"] == "GENERATION_EXHAUSTED"

    def test_clinic_issuance_rate_limit(self, client):
        for i in range(3):
            created = client.post(
                "/clinic-codes",
                json={"name": f"Clinic {i}", "clinic_type": "hospital", "region": "DAEGU"},
                headers=from_ip("10.2.0.9", auth("doctor-1")),
            )
            assert created.status_code == 201

        response = client.post(
            "/clinic-codes",
            json={"name": "Clinic 4", "clinic_type": "hospital", "region": "DAEGU"},
            headers=from_ip("10.2.0.9", auth("doctor-1")),
        )
        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_non_string_code_is_audited_400(self, client, store):
        response = client.post("/invite-codes/validate", json={"code": 12345678}, headers=from_ip("10.2.0.5"))

        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_FORMAT"
        attempts = [a for a in store.attempts if a.action == "code_validation"]
        assert len(attempts) == 1
        assert attempts[0].client_ip == "10.2.0.5"

    def test_max_uses_out_of_range_is_audited_400(self, client, store, clinic_code):
        response = client.post(
            "/invite-codes", json={"clinic_code": clinic_code, "max_uses": 0}, headers=auth("doctor-1")
        )

        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_INPUT"
        generation = [a for a in store.attempts if a.action == "invite_code_generation"]
        assert len(generation) == 1
        assert generation[0].success is False

    def test_long_description_is_400(self, client, clinic_code):
        response = client.post(
            "/invite-codes",
            json={"clinic_code": clinic_code, "description": "x" * 201},
            headers=auth("doctor-1"),
        )
        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_INPUT"

    def test_empty_clinic_name_is_audited_400(self, client, store):
        response = client.post(
            "/clinic-codes",
            json={"name": "  ", "clinic_type": "clinic", "region": "SEOUL"},
            headers=auth("doctor-1"),
        )

        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_INPUT"
        assert store.attempts[-1].action == "clinic_code_generation"
        assert store.attempts[-1].success is False

    def test_malformed_body_is_400(self, client, clinic_code):
        response = client.post(
            "/invite-codes",
            json={"clinic_code": clinic_code, "max_uses": "plenty"},
            headers=auth("doctor-1"),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["errorCode"] == "INVALID_INPUT"
        assert "max_uses" in body["error"]

    def test_system_error_is_opaque_500(self, client, store, invite_code):
        store.get_clinic = AsyncMock(side_effect=RuntimeError("could not connect to server at 10.9.9.9"))

        response = client.post("/invite-codes/validate", json={"code": invite_code}, headers=from_ip("10.2.0.4"))

        assert response.status_code == 500
        assert response.json()["error"] == OPAQUE_SYSTEM_MESSAGE
        assert "10.9.9.9" not in response.text


# =============================================================================
# TEST: PLUMBING
# =============================================================================

class TestPlumbing:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert "Referrer-Policy" in response.headers

    def test_shutdown_closes_the_store(self, settings, store, clock):
        store.close = AsyncMock()

        with build_client(settings, store, clock, []) as test_client:
            assert test_client.get("/health").status_code == 200
            store.close.assert_not_awaited()

        store.close.assert_awaited_once()


# =============================================================================
# TEST: CLIENT ADDRESS
# =============================================================================

class TestClientAddress:

    def test_forwarded_header_from_untrusted_peer_is_ignored(self, direct_client, store):
        for i in range(3):
            response = direct_client.post(
                "/invite-codes/validate", json={"code": "hello"}, headers=from_ip(f"10.3.0.{i}")
            )
            assert response.status_code == 400

        response = direct_client.post("/invite-codes/validate", json={"code": "hello"}, headers=from_ip("10.3.0.9"))

        assert response.status_code == 429
        assert {a.client_ip for a in store.attempts} == {"testclient"}

    def test_rightmost_untrusted_hop_wins(self, settings, store, clock):
        with build_client(settings, store, clock, ["testclient", "172.16.0.0/12"]) as test_client:
            test_client.post(
                "/invite-codes/validate",
                json={"code": "hello"},
                headers={"X-Forwarded-For": "1.1.1.1, 203.0.113.7, 172.16.4.2"},
            )
        assert store.attempts[-1].client_ip == "203.0.113.7"

    def test_real_ip_from_trusted_peer(self, client, store):
        client.post("/invite-codes/validate", json={"code": "hello"}, headers={"X-Real-IP": "198.51.100.4"})
        assert store.attempts[-1].client_ip == "198.51.100.4"


# =============================================================================
# TEST: SECURITY ALERTS
# =============================================================================

@pytest.fixture
def alert(client, store, clock):
    raised = SecurityAlert(
        alert_type="MULTIPLE_FAILED_CODES",
        severity=Severity.HIGH,
        details={"client_ip": "10.4.0.1"},
        created_at=clock.now,
    )
    store.alerts.append(raised)
    return raised


class TestSecurityAlerts:

    def test_admin_lists_alerts(self, client, alert):
        response = client.get("/security/alerts", params={"severity": "high"}, headers=auth("admin-1", role="admin"))

        assert response.status_code == 200
        body = response.json()
        assert body["pagination"]["total"] == 1
        assert body["alerts"][0]["id"] == alert.id
        assert body["alerts"][0]["severity"] == "HIGH"
        assert body["alerts"][0]["resolved"] is False

    def test_admin_resolves_alert_once(self, client, alert, store):
        headers = auth("admin-1", role="admin")
        resolved = client.put(
            f"/security/alerts/{alert.id}/resolve", json={"resolution": "Blocked at the edge"}, headers=headers
        )
        again = client.put(f"/security/alerts/{alert.id}/resolve", json={"resolution": "Again"}, headers=headers)

        assert resolved.status_code == 200
        assert resolved.json()["alert"]["resolved_by"] == "admin-1"
        assert resolved.json()["alert"]["resolution_notes"] == "Blocked at the edge"
        assert again.status_code == 404
        assert again.json()["errorCode"] == "NOT_FOUND"
        assert store.alerts[0].resolved is True

    def test_resolution_note_is_required(self, client, alert):
        response = client.put(
            f"/security/alerts/{alert.id}/resolve", json={"resolution": ""}, headers=auth("admin-1", role="admin")
        )
        assert response.status_code == 400
        assert response.json()["errorCode"] == "INVALID_INPUT"

    def test_invalid_severity_is_400(self, client):
        response = client.get("/security/alerts", params={"severity": "urgent"}, headers=auth("admin-1", role="admin"))
        assert response.status_code == 400

    def test_doctor_is_forbidden(self, client, alert):
        listed = client.get("/security/alerts", headers=auth("doctor-1"))
        resolved = client.put(
            f"/security/alerts/{alert.id}/resolve", json={"resolution": "Mine now"}, headers=auth("doctor-1")
        )
        assert listed.status_code == 403
        assert resolved.status_code == 403

    def test_anonymous_is_rejected(self, client):
        assert client.get("/security/alerts").status_code in (401, 403)
