"""Tests for the central grant/deny decision."""

import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from caregate.core import permission_cache
from caregate.core.errors import AuditWriteError, Unauthenticated, Unauthorized
from caregate.core.permissions import (
    ALL_PERMISSIONS,
    VIEW_ONLY,
    Action,
    DataCategory,
    Permission,
    Role,
    role_permissions,
)
from caregate.models import AccessLogEntry, AccessOutcome, ActorType
from caregate.schemas.privacy import ChildPrivacySettingsUpdate
from caregate.services import privacy_settings, session_manager
from caregate.services.capability_tokens import issue_token, revoke_token
from caregate.services.family_access import revoke_grant
from caregate.services.permission_resolver import (
    authorize,
    held_permissions,
    resolve,
    resolve_token_request,
)


async def count_entries(db) -> int:
    result = await db.execute(select(func.count()).select_from(AccessLogEntry))
    return result.scalar_one()


async def last_entry(db) -> AccessLogEntry:
    result = await db.execute(
        select(AccessLogEntry)
        .order_by(AccessLogEntry.created_at.desc(), AccessLogEntry.id)
        .limit(1)
    )
    return result.scalar_one()


class TestIdentityDecisions:
    @pytest.mark.asyncio
    async def test_owner_is_granted(self, db_session, owner, child):
        decision = await resolve(
            db_session, owner.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.EDIT
        )
        assert decision.granted
        assert decision.reason == "owner"
        assert decision.required_permission == Permission.EDIT_SYMPTOMS

    @pytest.mark.asyncio
    async def test_no_grant_is_always_denied(self, db_session, owner, child, make_user):
        stranger = await make_user()
        for category in DataCategory:
            for action in Action:
                for child_id in (None, child.id):
                    decision = await resolve(
                        db_session, stranger.id, owner.id, child_id, category, action
                    )
                    assert not decision.granted

    @pytest.mark.asyncio
    async def test_no_grant_reason(self, db_session, owner, child, make_user):
        stranger = await make_user()
        decision = await resolve(
            db_session, stranger.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert decision.reason == "no grant"

    @pytest.mark.asyncio
    async def test_role_grants(self, db_session, owner, child, make_user, make_grant):
        viewer = await make_user()
        await make_grant(owner, viewer, Role.VIEWER)

        decision = await resolve(
            db_session, viewer.id, owner.id, child.id, DataCategory.VITALS, Action.VIEW
        )
        assert decision.granted
        assert decision.reason == "granted by role viewer"

    @pytest.mark.asyncio
    async def test_role_lacks_permission(
        self, db_session, owner, child, make_user, make_grant
    ):
        viewer = await make_user()
        await make_grant(owner, viewer, Role.VIEWER)

        decision = await resolve(
            db_session, viewer.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.EDIT
        )
        assert not decision.granted
        assert decision.reason == "role does not include edit-symptoms"

    @pytest.mark.asyncio
    async def test_unsupported_operation(
        self, db_session, owner, child, make_user, make_grant
    ):
        guardian = await make_user()
        await make_grant(owner, guardian, Role.GUARDIAN)

        decision = await resolve(
            db_session,
            guardian.id,
            owner.id,
            child.id,
            DataCategory.ANALYTICS,
            Action.EDIT,
        )
        assert not decision.granted
        assert decision.reason == "unsupported operation"
        assert decision.required_permission is None

    @pytest.mark.asyncio
    async def test_restricted_child_denies_despite_role(
        self, db_session, owner, child, make_user, make_grant
    ):
        allowed = await make_user()
        guardian = await make_user()
        await make_grant(owner, allowed, Role.VIEWER)
        await make_grant(owner, guardian, Role.GUARDIAN)
        assert Permission.EDIT_SYMPTOMS in role_permissions(Role.GUARDIAN)

        await privacy_settings.update_child_settings(
            db_session,
            owner.id,
            child.id,
            ChildPrivacySettingsUpdate(
                inherit_from_parent=False,
                restricted_access=True,
                allowed_users=[allowed.id],
            ),
        )

        decision = await resolve(
            db_session,
            guardian.id,
            owner.id,
            child.id,
            DataCategory.SYMPTOMS,
            Action.EDIT,
        )
        assert not decision.granted
        assert decision.reason == "restricted by child privacy settings"
        assert decision.restrictive_child_id == child.id

        # Family-level data is unaffected by the child override
        family_level = await resolve(
            db_session, guardian.id, owner.id, None, DataCategory.ACCESS, Action.MANAGE
        )
        assert family_level.granted

    @pytest.mark.asyncio
    async def test_custom_permissions_narrow_role(
        self, db_session, owner, child, make_user, make_grant
    ):
        caregiver = await make_user()
        await make_grant(owner, caregiver, Role.CAREGIVER)
        await privacy_settings.update_child_settings(
            db_session,
            owner.id,
            child.id,
            ChildPrivacySettingsUpdate(
                custom_permissions={caregiver.id: [Permission.VIEW_SYMPTOMS]}
            ),
        )

        view = await resolve(
            db_session, caregiver.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        edit = await resolve(
            db_session, caregiver.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.EDIT
        )
        assert view.granted
        assert not edit.granted
        assert edit.reason == "restricted by child privacy settings"

    @pytest.mark.asyncio
    async def test_unknown_child_is_denied_even_for_owner(
        self, db_session, owner, make_user, make_child
    ):
        other_owner = await make_user()
        other_child = await make_child(other_owner, "Alex")

        decision = await resolve(
            db_session,
            owner.id,
            owner.id,
            other_child.id,
            DataCategory.SYMPTOMS,
            Action.VIEW,
        )
        assert not decision.granted
        assert decision.reason == "unknown child"

        missing = await resolve(
            db_session, owner.id, owner.id, uuid.uuid4(), DataCategory.SYMPTOMS, Action.VIEW
        )
        assert missing.reason == "unknown child"

    @pytest.mark.asyncio
    async def test_revoked_grant_is_denied(
        self, db_session, owner, child, make_user, make_grant
    ):
        viewer = await make_user()
        grant = await make_grant(owner, viewer, Role.VIEWER)
        await revoke_grant(db_session, owner.id, owner.id, grant.id)

        decision = await resolve(
            db_session, viewer.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert not decision.granted
        assert decision.reason == "no grant"


class TestAuditing:
    @pytest.mark.asyncio
    async def test_every_decision_appends_one_entry(
        self, db_session, owner, child, make_user
    ):
        stranger = await make_user()
        before = await count_entries(db_session)

        await resolve(
            db_session, owner.id, owner.id, child.id, DataCategory.NOTES, Action.VIEW
        )
        await resolve(
            db_session, stranger.id, owner.id, child.id, DataCategory.NOTES, Action.VIEW
        )
        assert await count_entries(db_session) == before + 2

    @pytest.mark.asyncio
    async def test_entry_records_the_decision(self, db_session, owner, child, make_user):
        stranger = await make_user()
        await resolve(
            db_session,
            stranger.id,
            owner.id,
            child.id,
            DataCategory.NOTES,
            Action.EDIT,
            ip_address="192.0.2.7",
        )

        entry = await last_entry(db_session)
        assert entry.owner_id == owner.id
        assert entry.actor_id == str(stranger.id)
        assert entry.actor_type == ActorType.FAMILY_MEMBER
        assert entry.action == "notes.edit"
        assert entry.child_id == child.id
        assert entry.outcome == AccessOutcome.DENIED
        assert entry.reason == "no grant"
        assert entry.ip_address == "192.0.2.7"

    @pytest.mark.asyncio
    async def test_dry_run_is_marked(self, db_session, owner, child):
        await resolve(
            db_session,
            owner.id,
            owner.id,
            child.id,
            DataCategory.FILES,
            Action.VIEW,
            dry_run=True,
        )
        entry = await last_entry(db_session)
        assert entry.action == "files.view.dry_run"

    @pytest.mark.asyncio
    async def test_audit_failure_aborts_decision(self, db_session, owner, child):
        with patch.object(
            db_session, "flush", AsyncMock(side_effect=SQLAlchemyError("disk full"))
        ):
            with pytest.raises(AuditWriteError):
                await resolve(
                    db_session,
                    owner.id,
                    owner.id,
                    child.id,
                    DataCategory.SYMPTOMS,
                    Action.VIEW,
                )

        assert await count_entries(db_session) == 0


class TestSessionLiveness:
    @pytest.mark.asyncio
    async def test_invalidated_session_is_unauthenticated(
        self, db_session, owner, child, make_session
    ):
        session = await make_session(owner)
        await session_manager.invalidate(db_session, session.id, "logout")
        session = await session_manager.get_session(db_session, session.id)
        before = await count_entries(db_session)

        with pytest.raises(Unauthenticated):
            await resolve(
                db_session,
                owner.id,
                owner.id,
                child.id,
                DataCategory.SYMPTOMS,
                Action.VIEW,
                session=session,
            )

        assert await count_entries(db_session) == before + 1
        entry = await last_entry(db_session)
        assert entry.outcome == AccessOutcome.DENIED
        assert entry.session_id == session.id

    @pytest.mark.asyncio
    async def test_stale_session_is_unauthenticated(
        self, db_session, owner, child, make_session
    ):
        t0 = datetime.now(UTC)
        session = await make_session(owner, now=t0)

        with pytest.raises(Unauthenticated):
            await resolve(
                db_session,
                owner.id,
                owner.id,
                child.id,
                DataCategory.SYMPTOMS,
                Action.VIEW,
                session=session,
                now=t0 + timedelta(minutes=16),
            )

    @pytest.mark.asyncio
    async def test_session_of_another_user_is_rejected(
        self, db_session, owner, child, make_user, make_session
    ):
        other = await make_user()
        session = await make_session(other)
        with pytest.raises(Unauthenticated):
            await resolve(
                db_session,
                owner.id,
                owner.id,
                child.id,
                DataCategory.SYMPTOMS,
                Action.VIEW,
                session=session,
            )


class TestAuthorize:
    @pytest.mark.asyncio
    async def test_raises_with_reason(self, db_session, owner, child, make_user):
        stranger = await make_user()
        with pytest.raises(Unauthorized) as exc_info:
            await authorize(
                db_session,
                stranger.id,
                owner.id,
                child.id,
                DataCategory.SYMPTOMS,
                Action.VIEW,
            )
        assert exc_info.value.reason == "no grant"

    @pytest.mark.asyncio
    async def test_returns_decision_when_granted(self, db_session, owner, child):
        decision = await authorize(
            db_session, owner.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert decision.granted


class TestHeldPermissions:
    @pytest.mark.asyncio
    async def test_owner_holds_everything(self, db_session, owner, child):
        assert await held_permissions(db_session, owner.id, owner.id, child.id) == (
            ALL_PERMISSIONS
        )

    @pytest.mark.asyncio
    async def test_role_set_without_child(
        self, db_session, owner, make_user, make_grant
    ):
        viewer = await make_user()
        await make_grant(owner, viewer, Role.VIEWER)
        assert await held_permissions(db_session, viewer.id, owner.id) == VIEW_ONLY

    @pytest.mark.asyncio
    async def test_unknown_child_holds_nothing(self, db_session, owner):
        assert await held_permissions(db_session, owner.id, owner.id, uuid.uuid4()) == (
            frozenset()
        )

    @pytest.mark.asyncio
    async def test_stranger_holds_nothing(self, db_session, owner, child, make_user):
        stranger = await make_user()
        assert await held_permissions(db_session, stranger.id, owner.id, child.id) == (
            frozenset()
        )


class TestPermissionCache:
    @pytest.mark.asyncio
    async def test_decisions_are_cached(
        self, db_session, owner, child, make_user, make_grant
    ):
        viewer = await make_user()
        await make_grant(owner, viewer, Role.VIEWER)
        await resolve(
            db_session, viewer.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )

        generation = await permission_cache.current_generation(owner.id)
        snapshot = await permission_cache.get_snapshot(
            generation, viewer.id, owner.id, child.id
        )
        assert snapshot is not None
        assert snapshot["role"] == "viewer"

    @pytest.mark.asyncio
    async def test_settings_write_invalidates_cache(
        self, db_session, owner, child, make_user, make_grant
    ):
        guardian = await make_user()
        await make_grant(owner, guardian, Role.GUARDIAN)

        before = await resolve(
            db_session, guardian.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.EDIT
        )
        assert before.granted

        await privacy_settings.update_child_settings(
            db_session,
            owner.id,
            child.id,
            ChildPrivacySettingsUpdate(restricted_access=True, allowed_users=[]),
        )

        after = await resolve(
            db_session, guardian.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.EDIT
        )
        assert not after.granted
        assert after.reason == "restricted by child privacy settings"

    @pytest.mark.asyncio
    async def test_grant_revocation_invalidates_cache(
        self, db_session, owner, child, make_user, make_grant
    ):
        viewer = await make_user()
        grant = await make_grant(owner, viewer, Role.VIEWER)
        assert (
            await resolve(
                db_session, viewer.id, owner.id, child.id, DataCategory.SYMPTOMS, Action.VIEW
            )
        ).granted

        await revoke_grant(db_session, owner.id, owner.id, grant.id)

        generation = await permission_cache.current_generation(owner.id)
        assert (
            await permission_cache.get_snapshot(generation, viewer.id, owner.id, child.id)
            is None
        )

    @pytest.mark.asyncio
    async def test_snapshot_read_during_uncommitted_revoke_is_dropped(
        self, session_maker, db_session, owner, make_user, make_grant
    ):
        guardian = await make_user()
        grant = await make_grant(owner, guardian, Role.GUARDIAN)

        async with session_maker() as writer:
            await revoke_grant(writer, owner.id, owner.id, grant.id)

            # Another request still sees the committed grant and caches it
            async with session_maker() as reader:
                held = await held_permissions(reader, guardian.id, owner.id)
            assert Permission.VIEW_SYMPTOMS in held

            await writer.commit()

        decision = await resolve(
            db_session, guardian.id, owner.id, None, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert not decision.granted
        assert decision.reason == "no grant"


class TestTokenRequests:
    @pytest.mark.asyncio
    async def test_valid_token_grants_its_permissions(self, db_session, owner, child):
        token, raw = await issue_token(
            db_session,
            owner.id,
            child.id,
            [Permission.VIEW_SYMPTOMS],
            timedelta(hours=24),
            3,
            provider_name="Dr. Rivera",
        )

        decision = await resolve_token_request(
            db_session, raw, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert decision.granted
        assert decision.reason == "granted by provider link"

        entry = await last_entry(db_session)
        assert entry.actor_type == ActorType.HEALTHCARE_PROVIDER
        assert entry.actor_id == f"token:{token.id}"

        await db_session.refresh(token)
        assert token.access_count == 0

    @pytest.mark.asyncio
    async def test_permission_outside_token(self, db_session, owner, child):
        _, raw = await issue_token(
            db_session,
            owner.id,
            child.id,
            [Permission.VIEW_SYMPTOMS],
            timedelta(hours=24),
            3,
            provider_name="Dr. Rivera",
        )
        decision = await resolve_token_request(
            db_session, raw, child.id, DataCategory.VITALS, Action.VIEW
        )
        assert not decision.granted
        assert decision.reason == "token does not include view-vitals"

    @pytest.mark.asyncio
    async def test_token_is_bound_to_its_child(self, db_session, owner, child, make_child):
        sibling = await make_child(owner, "Jo")
        _, raw = await issue_token(
            db_session,
            owner.id,
            child.id,
            [Permission.VIEW_SYMPTOMS],
            timedelta(hours=24),
            3,
            provider_name="Dr. Rivera",
        )
        decision = await resolve_token_request(
            db_session, raw, sibling.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert not decision.granted
        assert decision.reason == "token not valid for this child"

    @pytest.mark.asyncio
    async def test_unknown_and_revoked_tokens(self, db_session, owner, child):
        token, raw = await issue_token(
            db_session,
            owner.id,
            child.id,
            [Permission.VIEW_SYMPTOMS],
            timedelta(hours=24),
            3,
            provider_name="Dr. Rivera",
        )
        unknown = await resolve_token_request(
            db_session, "cg_nope", child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert unknown.reason == "token invalid: unknown token"

        await revoke_token(db_session, token.id, owner.id)
        revoked = await resolve_token_request(
            db_session, raw, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert not revoked.granted
        assert revoked.reason == "token invalid: revoked"

    @pytest.mark.asyncio
    async def test_token_bounded_by_what_issuer_still_holds(
        self, db_session, owner, child, make_user, make_grant
    ):
        guardian = await make_user()
        grant = await make_grant(owner, guardian, Role.GUARDIAN)
        _, raw = await issue_token(
            db_session,
            guardian.id,
            child.id,
            [Permission.VIEW_SYMPTOMS],
            timedelta(hours=24),
            3,
            provider_name="Dr. Rivera",
        )

        await revoke_grant(db_session, owner.id, owner.id, grant.id)

        decision = await resolve_token_request(
            db_session, raw, child.id, DataCategory.SYMPTOMS, Action.VIEW
        )
        assert not decision.granted
        assert decision.reason == "token does not include view-symptoms"
