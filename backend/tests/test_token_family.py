"""
Tests for refresh token rotation, reuse detection and revocation scopes.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from config import get_settings
from models.refresh_token import RefreshToken, RevocationReason
from models.auth_audit import AuthAuditLog
from services.errors import InvalidToken, SessionCompromised
from services.token_cleanup import cleanup_expired_tokens
from services.token_family import TokenFamilyEngine
from services.token_store import RefreshTokenStore, hash_token


async def _tokens_of_family(session, family_id: str) -> list[RefreshToken]:
    result = await session.execute(
        select(RefreshToken)
        .where(RefreshToken.family_id == family_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestRefreshTokenStore:
    """Tests for the token persistence layer."""

    @pytest.mark.asyncio
    async def test_only_the_hash_is_stored(self, db_session, make_user):
        user = await make_user()
        store = RefreshTokenStore(db_session)
        token = await store.create(
            user.id, "plain-secret", datetime.now(timezone.utc) + timedelta(days=1)
        )

        assert token.token_hash == hash_token("plain-secret")
        assert token.token_hash != "plain-secret"
        assert token.family_id == token.id

    @pytest.mark.asyncio
    async def test_revoke_if_active_only_succeeds_once(self, db_session, make_user):
        user = await make_user()
        store = RefreshTokenStore(db_session)
        token = await store.create(
            user.id, "plain-secret", datetime.now(timezone.utc) + timedelta(days=1)
        )

        assert await store.revoke_if_active(token.id, RevocationReason.ROTATION.value) is True
        assert await store.revoke_if_active(token.id, RevocationReason.LOGOUT.value) is False

        reloaded = await store.get(token.id)
        assert reloaded.revoked is True
        assert reloaded.revocation_reason == "rotation"
        assert reloaded.revoked_at is not None

    @pytest.mark.asyncio
    async def test_list_active_for_user(self, db_session, make_user):
        user = await make_user()
        store = RefreshTokenStore(db_session)
        future = datetime.now(timezone.utc) + timedelta(days=1)
        active = await store.create(user.id, "active", future)
        revoked = await store.create(user.id, "revoked", future)
        await store.create(user.id, "expired", datetime.now(timezone.utc) - timedelta(minutes=1))
        await store.revoke_if_active(revoked.id, RevocationReason.LOGOUT.value)

        tokens = await store.list_active_for_user(user.id)
        assert [t.id for t in tokens] == [active.id]


class TestRotation:
    """Tests for TokenFamilyEngine.rotate."""

    @pytest.mark.asyncio
    async def test_rotation_keeps_family_and_revokes_old(self, db_session, make_user):
        user = await make_user()
        engine = TokenFamilyEngine(db_session)

        first = await engine.issue_initial_token(user.id)
        second = await engine.rotate(first.secret)
        await db_session.commit()

        assert second.secret != first.secret
        assert second.family_id == first.family_id

        tokens = await _tokens_of_family(db_session, first.family_id)
        by_id = {t.id: t for t in tokens}
        assert by_id[first.record.id].revoked is True
        assert by_id[first.record.id].revocation_reason == "rotation"
        assert by_id[second.record.id].revoked is False

    @pytest.mark.asyncio
    async def test_replay_revokes_whole_family(self, db_session, make_user, caplog):
        """Test presenting a rotated token again kills every token of its family."""
        user = await make_user()
        engine = TokenFamilyEngine(db_session)

        t1 = await engine.issue_initial_token(user.id)
        t2 = await engine.rotate(t1.secret)
        t3 = await engine.rotate(t2.secret)

        with caplog.at_level(logging.ERROR, logger="services.token_family"):
            with pytest.raises(SessionCompromised):
                await engine.rotate(t1.secret, ip_address="6.6.6.6")
        await db_session.commit()

        tokens = await _tokens_of_family(db_session, t1.family_id)
        assert all(t.revoked for t in tokens)
        current = next(t for t in tokens if t.id == t3.record.id)
        assert current.revocation_reason == "theft_detected"

        alerts = [r for r in caplog.records if "SECURITY ALERT" in r.getMessage()]
        assert len(alerts) == 1
        assert alerts[0].originalRevocationReason == "rotation"
        assert alerts[0].familyId == t1.family_id
        assert alerts[0].ipAddress == "6.6.6.6"

        # The current token of the family is dead too
        with pytest.raises(SessionCompromised):
            await engine.rotate(t3.secret)

    @pytest.mark.asyncio
    async def test_theft_is_audited(self, db_session, make_user):
        user = await make_user()
        engine = TokenFamilyEngine(db_session)

        t1 = await engine.issue_initial_token(user.id)
        await engine.rotate(t1.secret)
        with pytest.raises(SessionCompromised):
            await engine.rotate(t1.secret)
        await db_session.commit()

        result = await db_session.execute(
            select(AuthAuditLog).where(AuthAuditLog.action == AuthAuditLog.ACTION_THEFT_DETECTED)
        )
        entry = result.scalar_one()
        assert entry.user_id == user.id
        assert entry.success is False
        assert entry.details["original_revocation_reason"] == "rotation"
        assert entry.details["tokens_invalidated"] == 1

    @pytest.mark.asyncio
    async def test_replay_of_logged_out_token_reports_original_reason(
        self, db_session, make_user, caplog
    ):
        user = await make_user()
        engine = TokenFamilyEngine(db_session)

        t1 = await engine.issue_initial_token(user.id)
        assert await engine.revoke_token(t1.secret, RevocationReason.LOGOUT.value) is True

        with caplog.at_level(logging.ERROR, logger="services.token_family"):
            with pytest.raises(SessionCompromised):
                await engine.rotate(t1.secret)

        alert = next(r for r in caplog.records if "SECURITY ALERT" in r.getMessage())
        assert alert.originalRevocationReason == "logout"

    @pytest.mark.asyncio
    async def test_other_families_survive_theft(self, db_session, make_user):
        """Test a compromised family leaves the user's other devices signed in."""
        user = await make_user()
        engine = TokenFamilyEngine(db_session)

        laptop = await engine.issue_initial_token(user.id)
        phone = await engine.issue_initial_token(user.id)
        await engine.rotate(laptop.secret)

        with pytest.raises(SessionCompromised):
            await engine.rotate(laptop.secret)
        await db_session.commit()

        rotated_phone = await engine.rotate(phone.secret)
        assert rotated_phone.family_id == phone.family_id

    @pytest.mark.asyncio
    async def test_unknown_token_is_invalid(self, db_session):
        engine = TokenFamilyEngine(db_session)

        with pytest.raises(InvalidToken):
            await engine.rotate("never-issued")

    @pytest.mark.asyncio
    async def test_expired_token_is_invalid_not_theft(self, db_session, make_user):
        user = await make_user()
        store = RefreshTokenStore(db_session)
        engine = TokenFamilyEngine(db_session, store=store)

        sibling = await engine.issue_initial_token(user.id)
        await store.create(
            user.id,
            "stale-secret",
            datetime.now(timezone.utc) - timedelta(seconds=1),
            family_id=sibling.family_id,
        )

        with pytest.raises(InvalidToken) as exc_info:
            await engine.rotate("stale-secret")
        assert not isinstance(exc_info.value, SessionCompromised)

        sibling_row = await store.get(sibling.record.id)
        assert sibling_row.revoked is False

    @pytest.mark.asyncio
    async def test_detection_disabled_gives_plain_invalid_token(self, db_session, make_user):
        user = await make_user()
        settings = get_settings().model_copy(update={"THEFT_DETECTION_ENABLED": False})
        engine = TokenFamilyEngine(db_session, settings=settings)

        t1 = await engine.issue_initial_token(user.id)
        t2 = await engine.rotate(t1.secret)

        with pytest.raises(InvalidToken) as exc_info:
            await engine.rotate(t1.secret)
        assert not isinstance(exc_info.value, SessionCompromised)

        # Family untouched
        assert (await engine.store.get(t2.record.id)).revoked is False

    @pytest.mark.asyncio
    async def test_family_invalidation_disabled(self, db_session, make_user):
        user = await make_user()
        settings = get_settings().model_copy(
            update={"THEFT_DETECTION_INVALIDATE_FAMILY": False}
        )
        engine = TokenFamilyEngine(db_session, settings=settings)

        t1 = await engine.issue_initial_token(user.id)
        t2 = await engine.rotate(t1.secret)

        with pytest.raises(SessionCompromised):
            await engine.rotate(t1.secret)

        assert (await engine.store.get(t2.record.id)).revoked is False


class TestConcurrentRotation:
    @pytest.mark.asyncio
    async def test_exactly_one_racer_wins(self, session_factory, make_user):
        """Test two sessions rotating the same token: one succeeds, one sees theft."""
        user = await make_user()
        async with session_factory() as session:
            initial = await TokenFamilyEngine(session).issue_initial_token(user.id)
            await session.commit()

        async def attempt():
            async with session_factory() as session:
                engine = TokenFamilyEngine(session)
                try:
                    issued = await engine.rotate(initial.secret)
                except SessionCompromised:
                    await session.commit()
                    return "compromised", None
                await session.commit()
                return "rotated", issued.secret

        results = await asyncio.gather(attempt(), attempt())

        outcomes = sorted(outcome for outcome, _ in results)
        assert outcomes == ["compromised", "rotated"]

        winner_secret = next(secret for outcome, secret in results if outcome == "rotated")
        async with session_factory() as session:
            with pytest.raises(SessionCompromised):
                await TokenFamilyEngine(session).rotate(winner_secret)


class TestRevocationScopes:
    """Tests for logout, family and user-wide revocation."""

    @pytest.mark.asyncio
    async def test_revoke_token_is_idempotent(self, db_session, make_user):
        user = await make_user()
        engine = TokenFamilyEngine(db_session)
        token = await engine.issue_initial_token(user.id)

        assert await engine.revoke_token(token.secret, RevocationReason.LOGOUT.value) is True
        assert await engine.revoke_token(token.secret, RevocationReason.LOGOUT.value) is False
        assert await engine.revoke_token("never-issued", RevocationReason.LOGOUT.value) is False

    @pytest.mark.asyncio
    async def test_revoke_token_ignores_other_users(self, db_session, make_user):
        owner = await make_user("owner@example.com")
        other = await make_user("other@example.com")
        engine = TokenFamilyEngine(db_session)
        token = await engine.issue_initial_token(owner.id)

        revoked = await engine.revoke_token(
            token.secret, RevocationReason.LOGOUT.value, user_id=other.id
        )

        assert revoked is False
        assert (await engine.store.get(token.record.id)).revoked is False

    @pytest.mark.asyncio
    async def test_logout_only_touches_one_token(self, db_session, make_user):
        user = await make_user()
        engine = TokenFamilyEngine(db_session)
        laptop = await engine.issue_initial_token(user.id)
        phone = await engine.issue_initial_token(user.id)

        await engine.revoke_token(laptop.secret, RevocationReason.LOGOUT.value)

        assert (await engine.store.get(phone.record.id)).revoked is False

    @pytest.mark.asyncio
    async def test_revoke_all_for_user(self, db_session, make_user):
        user = await make_user()
        bystander = await make_user("bystander@example.com")
        engine = TokenFamilyEngine(db_session)
        for _ in range(3):
            await engine.issue_initial_token(user.id)
        kept = await engine.issue_initial_token(bystander.id)

        count = await engine.revoke_all_for_user(user.id, RevocationReason.PASSWORD_CHANGE.value)

        assert count == 3
        assert await engine.store.list_active_for_user(user.id) == []
        assert (await engine.store.get(kept.record.id)).revoked is False

    @pytest.mark.asyncio
    async def test_deleting_user_deletes_tokens(self, db_session, make_user):
        user = await make_user()
        engine = TokenFamilyEngine(db_session)
        token = await engine.issue_initial_token(user.id)
        token_id = token.record.id
        await db_session.commit()

        await db_session.delete(user)
        await db_session.commit()

        assert await engine.store.get(token_id) is None


class TestTokenCleanup:
    @pytest.mark.asyncio
    async def test_deletes_only_tokens_past_grace(self, session_factory, db_session, make_user):
        user = await make_user()
        store = RefreshTokenStore(db_session)
        now = datetime.now(timezone.utc)
        old = await store.create(user.id, "old", now - timedelta(days=10))
        recent = await store.create(user.id, "recent", now - timedelta(days=1))
        live = await store.create(user.id, "live", now + timedelta(days=1))
        old_id, recent_id, live_id = old.id, recent.id, live.id
        await db_session.commit()

        deleted = await cleanup_expired_tokens(session_factory, grace_days=7)

        assert deleted == 1
        assert await store.get(old_id) is None
        assert await store.get(recent_id) is not None
        assert await store.get(live_id) is not None
