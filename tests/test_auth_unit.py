"""Unit tests for the session coordinator.

Tests for:
- Registration and email normalisation
- Login failure indistinguishability
- Single-use refresh rotation, including concurrent refreshes
- Logout (revoke) semantics
- Deadlines and store outages surfacing as unavailable
"""

import asyncio
import threading
import time

import pytest

from eventflow_auth.service.auth import (
    ALREADY_REVOKED,
    INACTIVE_REFRESH_TOKEN,
    INVALID_CREDENTIALS,
    INVALID_REFRESH_TOKEN,
    SessionCoordinator,
)
from eventflow_auth.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ServiceUnavailableError,
)
from eventflow_auth.service.passwords import CredentialVerifier
from eventflow_auth.service.tokens import TokenIssuer
from eventflow_auth.storage.errors import StoreUnavailable
from eventflow_auth.storage.memory import MemoryStore

SECRET = "unit-test-signing-secret-with-enough-length-0123456789"


@pytest.fixture
def verifier():
    return CredentialVerifier(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def issuer():
    return TokenIssuer(secret=SECRET, issuer="eventflow-auth", audience="eventflow")


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def coordinator(memory_store, verifier, issuer):
    return SessionCoordinator(memory_store, verifier, issuer)


class RacingStore(MemoryStore):
    """Holds refresh-token reads until two callers have both read."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.read_barrier = threading.Barrier(2)

    def get_refresh_token(self, value):
        token = super().get_refresh_token(value)
        self.read_barrier.wait(timeout=5)
        return token


class SlowStore(MemoryStore):
    def get_user_by_email(self, email):
        time.sleep(0.5)
        return super().get_user_by_email(email)


class DownStore(MemoryStore):
    def get_refresh_token(self, value):
        raise StoreUnavailable("connection refused")


class SlowRotateStore(MemoryStore):
    def rotate_refresh_token(self, value, replacement):
        time.sleep(0.3)
        return super().rotate_refresh_token(value, replacement)


class SlowRegisterStore(MemoryStore):
    def add_user_with_refresh_token(self, user, token):
        time.sleep(0.3)
        return super().add_user_with_refresh_token(user, token)


def _unpersistable(store):
    def fail():
        raise StoreUnavailable("disk full")

    store._persist_state = fail


class TestRegister:
    async def test_register_normalizes_email_and_returns_bundle(self, coordinator, memory_store, issuer):
        bundle = await coordinator.register("User@Test.com", "P@ssword1", "Jo", "Do")

        assert bundle.user.email == "user@test.com"
        assert bundle.user.role == "User"
        assert memory_store.get_user_by_email("user@test.com").id == bundle.user.id
        assert memory_store.get_refresh_token(bundle.refresh_token).is_active()
        claims = issuer.decode_access_token(bundle.access_token)
        assert claims["sub"] == bundle.user.id
        assert bundle.access_token_expiry.timestamp() == claims["exp"]

    async def test_register_twice_any_case_conflicts(self, coordinator):
        await coordinator.register("User@Test.com", "P@ssword1", "Jo", "Do")

        with pytest.raises(ConflictError):
            await coordinator.register("USER@TEST.COM", "P@ssword1", "Jo", "Do")

    async def test_register_hashes_password(self, coordinator, memory_store):
        bundle = await coordinator.register("hash@test.com", "P@ssword1", "Jo", "Do")

        stored = memory_store.get_user(bundle.user.id)
        assert stored.password_hash != "P@ssword1"
        assert stored.password_hash.startswith("$argon2id$")

    async def test_missing_default_role_is_configuration_error(self, tmp_path, verifier, issuer):
        store = MemoryStore(fs_root=str(tmp_path), seed_roles=())
        coordinator = SessionCoordinator(store, verifier, issuer)

        with pytest.raises(ConfigurationError):
            await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

    def test_ensure_default_role_fails_fast_when_unseeded(self, tmp_path, verifier, issuer):
        store = MemoryStore(fs_root=str(tmp_path), seed_roles=())
        coordinator = SessionCoordinator(store, verifier, issuer)

        with pytest.raises(ConfigurationError):
            coordinator.ensure_default_role()

    def test_ensure_default_role_honours_configured_name(self, tmp_path, verifier, issuer):
        store = MemoryStore(fs_root=str(tmp_path), seed_roles=("Member",))
        coordinator = SessionCoordinator(store, verifier, issuer, default_role_name="Member")

        assert coordinator.ensure_default_role().name == "Member"


class TestLogin:
    async def test_login_succeeds_with_any_email_case(self, coordinator):
        registered = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        bundle = await coordinator.login("  USER@test.com", "P@ssword1")

        assert bundle.user.id == registered.user.id
        assert bundle.refresh_token != registered.refresh_token

    async def test_unknown_email_and_wrong_password_are_indistinguishable(self, coordinator):
        await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        with pytest.raises(AuthenticationError) as wrong_password:
            await coordinator.login("user@test.com", "wrongpass")
        with pytest.raises(AuthenticationError) as unknown_email:
            await coordinator.login("nobody@test.com", "anything")

        assert wrong_password.value.message == unknown_email.value.message == INVALID_CREDENTIALS
        assert wrong_password.value.status_code == unknown_email.value.status_code == 401

    async def test_inactive_account_gets_same_message(self, coordinator, memory_store):
        bundle = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        memory_store.set_user_active(bundle.user.id, False)

        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.login("user@test.com", "P@ssword1")

        assert exc_info.value.message == INVALID_CREDENTIALS


class TestRefresh:
    async def test_refresh_rotates_token(self, coordinator, memory_store):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        refreshed = await coordinator.refresh(login.refresh_token)

        assert refreshed.refresh_token != login.refresh_token
        assert refreshed.user.id == login.user.id
        old = memory_store.get_refresh_token(login.refresh_token)
        assert old.revoked is True
        assert old.replaced_by == refreshed.refresh_token
        assert memory_store.get_refresh_token(refreshed.refresh_token).is_active()

    async def test_refresh_token_is_single_use(self, coordinator):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        await coordinator.refresh(login.refresh_token)

        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.refresh(login.refresh_token)

        assert exc_info.value.message == INACTIVE_REFRESH_TOKEN

    async def test_unknown_refresh_token_is_unauthorized(self, coordinator):
        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.refresh("does-not-exist")

        assert exc_info.value.message == INVALID_REFRESH_TOKEN

    async def test_vanished_owner_looks_like_unknown_token(self, coordinator, memory_store):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        memory_store.delete_user(login.user.id)

        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.refresh(login.refresh_token)

        assert exc_info.value.message == INVALID_REFRESH_TOKEN

    async def test_expired_refresh_token_is_unauthorized(self, coordinator, memory_store):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        stored = memory_store.refresh_tokens[login.refresh_token]
        stored.expires_at = stored.created_at

        with pytest.raises(AuthenticationError):
            await coordinator.refresh(login.refresh_token)

    async def test_concurrent_refresh_has_exactly_one_winner(self, coordinator):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        results = await asyncio.gather(
            coordinator.refresh(login.refresh_token),
            coordinator.refresh(login.refresh_token),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], AuthenticationError)
        assert losers[0].message == INACTIVE_REFRESH_TOKEN

    async def test_race_after_both_read_active_still_has_one_winner(self, tmp_path, verifier, issuer):
        store = RacingStore(fs_root=str(tmp_path))
        coordinator = SessionCoordinator(store, verifier, issuer)
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        results = await asyncio.gather(
            coordinator.refresh(login.refresh_token),
            coordinator.refresh(login.refresh_token),
            return_exceptions=True,
        )

        losers = [r for r in results if isinstance(r, Exception)]
        assert len(losers) == 1
        assert isinstance(losers[0], AuthenticationError)
        assert losers[0].message == INACTIVE_REFRESH_TOKEN
        chain = store.list_refresh_tokens(login.user.id)
        assert sum(1 for t in chain if t.is_active()) == 1


class TestRevoke:
    async def test_revoke_then_refresh_fails(self, coordinator, memory_store):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        await coordinator.revoke(login.refresh_token)

        stored = memory_store.get_refresh_token(login.refresh_token)
        assert stored.revoked is True
        assert stored.replaced_by is None
        with pytest.raises(AuthenticationError):
            await coordinator.refresh(login.refresh_token)

    async def test_revoke_is_not_idempotent(self, coordinator):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        await coordinator.revoke(login.refresh_token)

        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.revoke(login.refresh_token)

        assert exc_info.value.message == ALREADY_REVOKED

    async def test_revoke_rotated_token_fails(self, coordinator):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        await coordinator.refresh(login.refresh_token)

        with pytest.raises(AuthenticationError):
            await coordinator.revoke(login.refresh_token)

    async def test_revoke_other_users_token_is_rejected(self, coordinator, memory_store):
        alice = await coordinator.register("alice@test.com", "P@ssword1", "Al", "Ice")
        bob = await coordinator.register("bob@test.com", "P@ssword1", "Bo", "B")

        with pytest.raises(AuthenticationError) as exc_info:
            await coordinator.revoke(alice.refresh_token, owner_id=bob.user.id)

        assert exc_info.value.message == INVALID_REFRESH_TOKEN
        assert memory_store.get_refresh_token(alice.refresh_token).is_active()


class TestDeadlines:
    async def test_slow_store_surfaces_unavailable(self, tmp_path, verifier, issuer):
        coordinator = SessionCoordinator(SlowStore(fs_root=str(tmp_path)), verifier, issuer)

        with pytest.raises(ServiceUnavailableError) as exc_info:
            await coordinator.login("user@test.com", "P@ssword1", timeout=0.05)

        assert exc_info.value.status_code == 503
        assert exc_info.value.error_code == "unavailable"

    async def test_store_outage_surfaces_unavailable(self, tmp_path, verifier, issuer):
        coordinator = SessionCoordinator(DownStore(fs_root=str(tmp_path)), verifier, issuer)

        with pytest.raises(ServiceUnavailableError):
            await coordinator.refresh("any-token")

    async def test_late_rotation_is_undone_after_timeout(self, tmp_path, verifier, issuer):
        store = SlowRotateStore(fs_root=str(tmp_path))
        coordinator = SessionCoordinator(store, verifier, issuer)
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        with pytest.raises(ServiceUnavailableError):
            await coordinator.refresh(login.refresh_token, timeout=0.1)
        await asyncio.sleep(0.6)

        chain = store.list_refresh_tokens(login.user.id)
        assert len(chain) == 2
        assert [t.token for t in chain if t.is_active()] == [login.refresh_token]
        retried = await coordinator.refresh(login.refresh_token)
        assert retried.refresh_token != login.refresh_token

    async def test_late_registration_is_undone_after_timeout(self, tmp_path, verifier, issuer):
        store = SlowRegisterStore(fs_root=str(tmp_path))
        coordinator = SessionCoordinator(store, verifier, issuer)

        with pytest.raises(ServiceUnavailableError):
            await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do", timeout=0.1)
        await asyncio.sleep(0.6)

        assert store.get_user_by_email("user@test.com") is None
        assert store.refresh_tokens == {}
        bundle = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        assert bundle.user.email == "user@test.com"


class TestPersistenceFailure:
    async def test_failed_rotation_leaves_presented_token_active(self, coordinator, memory_store):
        login = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        _unpersistable(memory_store)

        with pytest.raises(ServiceUnavailableError):
            await coordinator.refresh(login.refresh_token)

        assert memory_store.get_refresh_token(login.refresh_token).is_active()
        assert len(memory_store.list_refresh_tokens(login.user.id)) == 1

    async def test_failed_registration_leaves_no_account(self, coordinator, memory_store):
        _unpersistable(memory_store)

        with pytest.raises(ServiceUnavailableError):
            await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")

        assert memory_store.get_user_by_email("user@test.com") is None
        assert memory_store.refresh_tokens == {}


class TestPasswordUpgrade:
    async def test_login_rehashes_with_current_cost(self, memory_store, verifier, issuer):
        registered = await SessionCoordinator(memory_store, verifier, issuer).register(
            "user@test.com", "P@ssword1", "Jo", "Do"
        )
        stronger = CredentialVerifier(time_cost=2, memory_cost=1024, parallelism=1)
        coordinator = SessionCoordinator(memory_store, stronger, issuer)

        await coordinator.login("user@test.com", "P@ssword1")

        stored = memory_store.get_user(registered.user.id).password_hash
        assert ",t=2," in stored
        assert not stronger.needs_rehash(stored)
        assert (await coordinator.login("user@test.com", "P@ssword1")).user.id == registered.user.id

    async def test_current_hash_is_left_alone(self, coordinator, memory_store):
        registered = await coordinator.register("user@test.com", "P@ssword1", "Jo", "Do")
        before = memory_store.get_user(registered.user.id).password_hash

        await coordinator.login("user@test.com", "P@ssword1")

        assert memory_store.get_user(registered.user.id).password_hash == before
