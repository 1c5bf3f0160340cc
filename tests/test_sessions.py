"""Unit tests for registration, login, refresh rotation and logout."""

import asyncio

import pytest

from photofilter.logging import fingerprint
from photofilter.service.authenticator import Principal, UnifiedAuthenticator
from photofilter.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    TokenExpiredError,
    TokenNotRecognizedError,
    ValidationError,
)
from photofilter.service.passwords import PasswordHasher
from photofilter.service.sessions import SessionManager
from photofilter.service.tokens import LocalTokenCodec
from photofilter.storage.memory import MemoryStore


class RacingStore(MemoryStore):
    """Lets another refresh rotate the token between lookup and rotation."""

    race_next_rotation = False
    competitor_fingerprint = "competing-refresh"

    def rotate_refresh_token(self, username, old_fingerprint, new_fingerprint, *, keep=None):
        if self.race_next_rotation:
            self.race_next_rotation = False
            assert super().rotate_refresh_token(
                username, old_fingerprint, self.competitor_fingerprint, keep=keep
            )
        return super().rotate_refresh_token(
            username, old_fingerprint, new_fingerprint, keep=keep
        )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def codec(settings):
    return LocalTokenCodec.from_settings(settings)


@pytest.fixture
def hasher(settings):
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def sessions(memory_store, codec, hasher, settings):
    return SessionManager(memory_store, codec, hasher, settings)


@pytest.fixture
def alice(sessions):
    return asyncio.run(sessions.register("alice", "Secret123!", "alice@example.com"))


def _principal(user):
    return Principal(subject_id=user.subject_id, username=user.username)


class TestRegister:
    async def test_register_hashes_password(self, sessions, memory_store):
        user = await sessions.register("alice", "Secret123!")

        stored = memory_store.get_user_by_username("alice")
        assert stored.subject_id == user.subject_id
        assert stored.password_hash.startswith("$argon2id$")
        assert stored.email_verified is False

    async def test_duplicate_username_conflicts(self, sessions):
        await sessions.register("alice", "Secret123!")

        with pytest.raises(ConflictError):
            await sessions.register("alice", "Another123!")

    async def test_short_password_rejected(self, sessions):
        with pytest.raises(ValidationError):
            await sessions.register("alice", "short")

    async def test_signup_can_be_disabled(self, memory_store, codec, hasher, settings):
        closed = SessionManager(
            memory_store, codec, hasher, settings.model_copy(update={"allow_signup": False})
        )
        with pytest.raises(ForbiddenError):
            await closed.register("alice", "Secret123!")


class TestLogin:
    async def test_login_returns_token_pair(self, sessions, alice, memory_store):
        user, pair = await sessions.login("alice", "Secret123!")

        assert user.subject_id == alice.subject_id
        assert pair.token_type == "bearer"
        assert pair.expires_in == 15 * 60
        stored = memory_store.get_user_by_username("alice")
        assert stored.refresh_tokens == [fingerprint(pair.refresh_token)]

    async def test_access_token_authenticates(self, sessions, alice, codec):
        _, pair = await sessions.login("alice", "Secret123!")

        principal = await UnifiedAuthenticator(codec).authenticate(pair.access_token)
        assert principal.subject_id == alice.subject_id

    @pytest.mark.parametrize(
        "username,password",
        [("alice", "wrong-password"), ("nobody", "Secret123!"), ("", "Secret123!")],
    )
    async def test_failures_are_indistinguishable(self, sessions, alice, username, password):
        with pytest.raises(InvalidCredentialsError) as exc:
            await sessions.login(username, password)
        assert exc.value.status_code == 401
        assert exc.value.message == "invalid credentials"

    async def test_user_without_password_cannot_login(self, sessions, memory_store):
        memory_store.create_user("federated")

        with pytest.raises(InvalidCredentialsError):
            await sessions.login("federated", "")

    async def test_login_rehashes_outdated_hash(self, sessions, memory_store):
        weak = PasswordHasher(time_cost=1, memory_cost=512, parallelism=1)
        memory_store.create_user("legacy", password_hash=weak.hash("Secret123!"))

        await sessions.login("legacy", "Secret123!")

        rehashed = memory_store.get_user_by_username("legacy").password_hash
        assert "m=1024" in rehashed

    async def test_refresh_set_is_capped(self, sessions, alice, memory_store, settings):
        for _ in range(settings.max_refresh_tokens_per_user + 3):
            _, pair = await sessions.login("alice", "Secret123!")

        stored = memory_store.get_user_by_username("alice")
        assert len(stored.refresh_tokens) == settings.max_refresh_tokens_per_user
        assert stored.refresh_tokens[-1] == fingerprint(pair.refresh_token)


class TestRefresh:
    async def test_refresh_rotates(self, sessions, alice, memory_store):
        _, first = await sessions.login("alice", "Secret123!")

        user, second = await sessions.refresh(first.refresh_token)

        assert user.subject_id == alice.subject_id
        assert second.refresh_token != first.refresh_token
        stored = memory_store.get_user_by_username("alice")
        assert stored.refresh_tokens == [fingerprint(second.refresh_token)]

    async def test_refresh_token_redeemable_once(self, sessions, alice):
        _, pair = await sessions.login("alice", "Secret123!")
        await sessions.refresh(pair.refresh_token)

        with pytest.raises(TokenNotRecognizedError) as exc:
            await sessions.refresh(pair.refresh_token)
        assert exc.value.status_code == 403

    async def test_concurrent_refresh_only_one_wins(self, sessions, alice):
        _, pair = await sessions.login("alice", "Secret123!")

        results = await asyncio.gather(
            sessions.refresh(pair.refresh_token),
            sessions.refresh(pair.refresh_token),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, TokenNotRecognizedError)]
        assert len(winners) == 1
        assert len(losers) == 1

    async def test_rotation_lost_to_concurrent_refresh(self, tmp_path, codec, hasher, settings):
        store = RacingStore(fs_root=str(tmp_path))
        sessions = SessionManager(store, codec, hasher, settings)
        await sessions.register("alice", "Secret123!")
        _, pair = await sessions.login("alice", "Secret123!")
        store.race_next_rotation = True

        with pytest.raises(TokenNotRecognizedError) as exc:
            await sessions.refresh(pair.refresh_token)
        assert exc.value.status_code == 403

        # Only the competing request's new fingerprint is on file
        stored = store.get_user_by_username("alice")
        assert stored.refresh_tokens == [store.competitor_fingerprint]

    async def test_access_token_cannot_refresh(self, sessions, alice):
        _, pair = await sessions.login("alice", "Secret123!")

        with pytest.raises(InvalidTokenError) as exc:
            await sessions.refresh(pair.access_token)
        assert exc.value.status_code == 403

    async def test_garbage_refresh_is_invalid(self, sessions):
        with pytest.raises(InvalidTokenError):
            await sessions.refresh("not.a.token")

    async def test_expired_refresh_is_401(self, sessions, alice, memory_store, codec):
        from datetime import timedelta

        from photofilter.service.tokens import REFRESH

        issued = codec.issue(alice, REFRESH, timedelta(seconds=-3600))
        memory_store.add_refresh_token("alice", fingerprint(issued.token))

        with pytest.raises(TokenExpiredError) as exc:
            await sessions.refresh(issued.token)
        assert exc.value.status_code == 401

    async def test_refresh_for_recreated_username_not_recognized(
        self, sessions, alice, memory_store, codec
    ):
        from datetime import timedelta

        from photofilter.service.tokens import REFRESH
        from photofilter.storage.models import User

        impostor = User.new("alice")
        token = codec.issue(impostor, REFRESH, timedelta(days=1)).token
        memory_store.add_refresh_token("alice", fingerprint(token))

        with pytest.raises(TokenNotRecognizedError):
            await sessions.refresh(token)


class TestLogout:
    async def test_logout_revokes_refresh_but_not_access(self, sessions, alice, codec):
        """Access tokens stay valid until expiry after logout."""
        _, pair = await sessions.login("alice", "Secret123!")
        _, other = await sessions.login("alice", "Secret123!")

        await sessions.logout(_principal(alice))

        for token in (pair.refresh_token, other.refresh_token):
            with pytest.raises(TokenNotRecognizedError):
                await sessions.refresh(token)
        principal = await UnifiedAuthenticator(codec).authenticate(pair.access_token)
        assert principal.subject_id == alice.subject_id

    async def test_logout_for_external_principal_is_noop(self, sessions, alice, memory_store):
        _, pair = await sessions.login("alice", "Secret123!")

        await sessions.logout(
            Principal(subject_id="ext-sub", username="alice", source="external")
        )

        assert memory_store.get_user_by_username("alice").refresh_tokens == [
            fingerprint(pair.refresh_token)
        ]


async def test_alice_end_to_end(sessions, codec):
    """Register, log in, refresh, replay the old token, then log out."""
    await sessions.register("alice", "Secret123!")
    _, pair = await sessions.login("alice", "Secret123!")
    _, rotated = await sessions.refresh(pair.refresh_token)

    with pytest.raises(TokenNotRecognizedError):
        await sessions.refresh(pair.refresh_token)

    user = (await UnifiedAuthenticator(codec).authenticate(rotated.access_token))
    await sessions.logout(user)

    with pytest.raises(TokenNotRecognizedError):
        await sessions.refresh(rotated.refresh_token)
