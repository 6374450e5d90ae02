"""End-to-end tests for the HTTP API."""

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from caregate.core.auth import DEVICE_FINGERPRINT_HEADER
from caregate.core.errors import AuditWriteError
from caregate.core.permissions import Role
from caregate.middleware import CORRELATION_ID_HEADER
from caregate.models import AccessLogEntry, AccessOutcome
from conftest import TEST_FINGERPRINT, TEST_PASSWORD


async def denied_entries(session_maker, owner_id) -> int:
    async with session_maker() as db:
        result = await db.execute(
            select(func.count())
            .select_from(AccessLogEntry)
            .where(
                AccessLogEntry.owner_id == owner_id,
                AccessLogEntry.outcome == AccessOutcome.DENIED,
            )
        )
        return result.scalar_one()


def link_request(**overrides) -> dict:
    body = {
        "provider_name": "Dr. Rivera",
        "permissions": ["view-symptoms"],
        "expires_in_hours": 24,
        "max_access_count": 1,
    }
    body.update(overrides)
    return body


class TestAuth:
    @pytest.mark.asyncio
    async def test_login(self, client, owner):
        response = await client.post(
            "/api/auth/login",
            json={
                "email": owner.email,
                "password": TEST_PASSWORD,
                "device_fingerprint": TEST_FINGERPRINT,
            },
        )
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["user_id"] == str(owner.id)

    @pytest.mark.asyncio
    async def test_wrong_password(self, client, owner):
        response = await client.post(
            "/api/auth/login",
            json={
                "email": owner.email,
                "password": "wrong-password",
                "device_fingerprint": TEST_FINGERPRINT,
            },
        )
        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"

    @pytest.mark.asyncio
    async def test_missing_fingerprint(self, client, owner, login):
        headers = await login(owner)
        del headers[DEVICE_FINGERPRINT_HEADER]
        response = await client.get(
            "/api/access/permissions", params={"owner_id": str(owner.id)}, headers=headers
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_fingerprint_mismatch_ends_session(self, client, owner, login):
        headers = await login(owner)
        params = {"owner_id": str(owner.id)}

        stolen = {**headers, DEVICE_FINGERPRINT_HEADER: "other-device-0002"}
        response = await client.get("/api/access/permissions", params=params, headers=stolen)
        assert response.status_code == 401

        response = await client.get("/api/access/permissions", params=params, headers=headers)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_logout(self, client, owner, login):
        headers = await login(owner)
        response = await client.post("/api/auth/logout", headers=headers)
        assert response.status_code == 200

        response = await client.post("/api/auth/logout", headers=headers)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_elevate(self, client, owner, login):
        headers = await login(owner)
        response = await client.post(
            "/api/auth/elevate", json={"password": "nope"}, headers=headers
        )
        assert response.status_code == 401

        response = await client.post(
            "/api/auth/elevate", json={"password": TEST_PASSWORD}, headers=headers
        )
        assert response.status_code == 200
        assert response.json()["elevated"] is True


class TestAccessCheck:
    @pytest.mark.asyncio
    async def test_owner_is_granted(self, client, owner, child, login):
        headers = await login(owner)
        response = await client.post(
            "/api/access/check",
            json={
                "owner_id": str(owner.id),
                "child_id": str(child.id),
                "data_category": "symptoms",
                "action": "view",
            },
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json() == {
            "granted": True,
            "reason": "owner",
            "required_permission": "view-symptoms",
        }

    @pytest.mark.asyncio
    async def test_stranger_denial_is_recorded(
        self, client, session_maker, owner, child, make_user, login
    ):
        stranger = await make_user()
        headers = await login(stranger)
        response = await client.post(
            "/api/access/check",
            json={
                "owner_id": str(owner.id),
                "child_id": str(child.id),
                "data_category": "vitals",
                "action": "view",
            },
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["granted"] is False
        assert response.json()["reason"] == "no grant"
        assert await denied_entries(session_maker, owner.id) == 1

    @pytest.mark.asyncio
    async def test_held_permissions(self, client, owner, make_user, make_grant, login):
        viewer = await make_user()
        await make_grant(owner, viewer, Role.VIEWER)
        headers = await login(viewer)
        response = await client.get(
            "/api/access/permissions", params={"owner_id": str(owner.id)}, headers=headers
        )
        assert response.status_code == 200
        permissions = response.json()["permissions"]
        assert "view-symptoms" in permissions
        assert "edit-symptoms" not in permissions

    @pytest.mark.asyncio
    async def test_audit_failure_fails_closed(self, client, owner, child, login):
        headers = await login(owner)
        with patch(
            "caregate.services.permission_resolver.append_entry",
            side_effect=AuditWriteError(),
        ):
            response = await client.post(
                "/api/access/check",
                json={
                    "owner_id": str(owner.id),
                    "child_id": str(child.id),
                    "data_category": "symptoms",
                    "action": "view",
                },
                headers=headers,
            )
        assert response.status_code == 500
        assert response.json()["error"] == "audit_unavailable"

    @pytest.mark.asyncio
    async def test_correlation_id_header(self, client, owner, login):
        headers = await login(owner)
        response = await client.get(
            "/api/access/permissions",
            params={"owner_id": str(owner.id)},
            headers={**headers, CORRELATION_ID_HEADER: "req-123"},
        )
        assert response.headers[CORRELATION_ID_HEADER] == "req-123"


class TestAccessLinks:
    @pytest.mark.asyncio
    async def test_single_use_link(self, client, owner, child, login):
        headers = await login(owner)
        response = await client.post(
            f"/api/children/{child.id}/access-links", json=link_request(), headers=headers
        )
        assert response.status_code == 201
        created = response.json()
        raw = created["access_url_token"]
        assert raw.startswith(created["prefix"])

        response = await client.get(f"/provider-access/{raw}")
        assert response.status_code == 200
        scope = response.json()["scope"]
        assert scope["child_id"] == str(child.id)
        assert scope["permissions"] == ["view-symptoms"]
        assert scope["remaining_uses"] == 0

        response = await client.get(f"/provider-access/{raw}")
        assert response.status_code == 403
        assert response.json() == {"detail": "exhausted", "error": "token_invalid"}

    @pytest.mark.asyncio
    async def test_unknown_link(self, client):
        response = await client.get("/provider-access/cg_not-a-real-token")
        assert response.status_code == 403
        assert response.json()["error"] == "token_invalid"

    @pytest.mark.asyncio
    async def test_export_link_needs_elevation(self, client, owner, child, login):
        headers = await login(owner)
        body = link_request(permissions=["view-symptoms", "export-data"])

        response = await client.post(
            f"/api/children/{child.id}/access-links", json=body, headers=headers
        )
        assert response.status_code == 403
        assert response.json()["error"] == "elevation_required"

        await client.post("/api/auth/elevate", json={"password": TEST_PASSWORD}, headers=headers)
        response = await client.post(
            f"/api/children/{child.id}/access-links", json=body, headers=headers
        )
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_write_permissions_cannot_be_delegated(self, client, owner, child, login):
        headers = await login(owner)
        response = await client.post(
            f"/api/children/{child.id}/access-links",
            json=link_request(permissions=["edit-symptoms"]),
            headers=headers,
        )
        assert response.status_code == 403
        data = response.json()
        assert data["error"] == "excess_scope"
        assert data["context"]["not_delegable"] == ["edit-symptoms"]

    @pytest.mark.asyncio
    async def test_expiry_bounds(self, client, owner, child, login):
        headers = await login(owner)
        url = f"/api/children/{child.id}/access-links"

        response = await client.post(
            url, json=link_request(expires_in_hours=10**15), headers=headers
        )
        assert response.status_code == 422

        response = await client.post(
            url, json=link_request(expires_in_hours=24 * 60), headers=headers
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Expiry cannot exceed 720 hours"

    @pytest.mark.asyncio
    async def test_list_and_revoke(self, client, owner, child, login):
        headers = await login(owner)
        created = (
            await client.post(
                f"/api/children/{child.id}/access-links",
                json=link_request(max_access_count=3),
                headers=headers,
            )
        ).json()

        response = await client.delete(f"/api/access-links/{created['id']}", headers=headers)
        assert response.status_code == 204

        links = (
            await client.get(f"/api/children/{child.id}/access-links", headers=headers)
        ).json()["links"]
        assert [link["is_active"] for link in links] == [False]
        assert "access_url_token" not in links[0]

        response = await client.get(f"/provider-access/{created['access_url_token']}")
        assert response.json()["detail"] == "revoked"

    @pytest.mark.asyncio
    async def test_revoke_unknown_link(self, client, owner, login):
        headers = await login(owner)
        response = await client.delete(f"/api/access-links/{uuid.uuid4()}", headers=headers)
        assert response.status_code == 404


class TestPrivacyRoutes:
    @pytest.mark.asyncio
    async def test_viewer_denial_is_kept(
        self, client, session_maker, owner, make_user, make_grant, login
    ):
        viewer = await make_user()
        await make_grant(owner, viewer, Role.VIEWER)
        headers = await login(viewer)

        response = await client.put(
            f"/api/families/{owner.id}/privacy",
            json={"communications": {"sms_notifications": True}},
            headers=headers,
        )
        assert response.status_code == 403
        assert response.json()["error"] == "unauthorized"
        assert await denied_entries(session_maker, owner.id) == 1

    @pytest.mark.asyncio
    async def test_family_round_trip(self, client, owner, login):
        headers = await login(owner)
        current = (await client.get(f"/api/families/{owner.id}/privacy", headers=headers)).json()

        response = await client.put(
            f"/api/families/{owner.id}/privacy",
            json={
                "expected_version": current["version"],
                "data_retention": {"retention_period_months": 36},
            },
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["data_retention"]["retention_period_months"] == 36
        assert response.json()["version"] == current["version"] + 1

    @pytest.mark.asyncio
    async def test_child_conflict(self, client, owner, child, login):
        headers = await login(owner)
        response = await client.put(
            f"/api/children/{child.id}/privacy",
            json={"inherit_from_parent": True, "restricted_access": True},
            headers=headers,
        )
        assert response.status_code == 409
        assert response.json()["error"] == "configuration_conflict"

    @pytest.mark.asyncio
    async def test_child_override(self, client, owner, child, login):
        headers = await login(owner)
        response = await client.put(
            f"/api/children/{child.id}/privacy",
            json={"communication_restrictions": ["sms_notifications"]},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["inherit_from_parent"] is False

        response = await client.delete(f"/api/children/{child.id}/privacy", headers=headers)
        assert response.status_code == 204


class TestGrantRoutes:
    @pytest.mark.asyncio
    async def test_grant_needs_elevation(self, client, owner, make_user, login):
        user = await make_user()
        headers = await login(owner)
        body = {"user_id": str(user.id), "role": "viewer"}

        response = await client.post(f"/api/families/{owner.id}/grants", json=body, headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "elevation_required"

        await client.post("/api/auth/elevate", json={"password": TEST_PASSWORD}, headers=headers)
        response = await client.post(f"/api/families/{owner.id}/grants", json=body, headers=headers)
        assert response.status_code == 201
        grant = response.json()

        grants = (
            await client.get(f"/api/families/{owner.id}/grants", headers=headers)
        ).json()["grants"]
        assert [g["id"] for g in grants] == [grant["id"]]

    @pytest.mark.asyncio
    async def test_owner_role_rejected(self, client, owner, make_user, login):
        user = await make_user()
        headers = await login(owner)
        response = await client.post(
            f"/api/families/{owner.id}/grants",
            json={"user_id": str(user.id), "role": "owner"},
            headers=headers,
        )
        assert response.status_code == 422


class TestAuditRoutes:
    @pytest.mark.asyncio
    async def test_read_log(self, client, owner, child, login):
        headers = await login(owner)
        await client.post(
            "/api/access/check",
            json={
                "owner_id": str(owner.id),
                "child_id": str(child.id),
                "data_category": "symptoms",
                "action": "view",
            },
            headers=headers,
        )

        response = await client.get(
            f"/api/families/{owner.id}/audit",
            params={"resource_type": "symptoms"},
            headers=headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 1
        assert data["entries"][0]["action"] == "symptoms.view"

    @pytest.mark.asyncio
    async def test_inverted_range(self, client, owner, login):
        headers = await login(owner)
        response = await client.get(
            f"/api/families/{owner.id}/audit",
            params={"start": "2026-02-01T00:00:00Z", "end": "2026-01-01T00:00:00Z"},
            headers=headers,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_summary(self, client, owner, login):
        headers = await login(owner)
        response = await client.get(f"/api/families/{owner.id}/audit/summary", headers=headers)
        assert response.status_code == 200
        assert "suspicious_activity" in response.json()
