from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, List, Optional, Protocol, TypeVar

from eventflow_auth.logging import get_logger
from eventflow_auth.service.errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    ServiceUnavailableError,
)
from eventflow_auth.service.passwords import CredentialVerifier
from eventflow_auth.service.tokens import TokenIssuer
from eventflow_auth.storage.errors import (
    ConstraintViolation,
    StoreUnavailable,
    TokenAlreadyRevoked,
)
from eventflow_auth.storage.models import (
    RefreshToken,
    Role,
    User,
    normalize_email,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS = "invalid email or password"
INVALID_REFRESH_TOKEN = "invalid refresh token"
INACTIVE_REFRESH_TOKEN = "refresh token is expired or revoked"
ALREADY_REVOKED = "token is already revoked or expired"


class AuthStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def add_user_with_refresh_token(self, user: User, token: RefreshToken) -> User: ...

    def remove_registration(self, user_id: str) -> None: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def get_role_by_name(self, name: str) -> Optional[Role]: ...

    def get_role(self, role_id: str) -> Optional[Role]: ...

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]: ...

    def add_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def revoke_refresh_token(
        self, value: str, replaced_by: Optional[str] = None
    ) -> RefreshToken: ...

    def rotate_refresh_token(
        self, value: str, replacement: RefreshToken
    ) -> RefreshToken: ...

    def rollback_rotation(self, value: str, replacement_value: str) -> bool: ...

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]: ...


@dataclass(frozen=True)
class UserSummary:
    id: str
    email: str
    first_name: str
    last_name: str
    role: str


@dataclass(frozen=True)
class AuthBundle:
    access_token: str
    refresh_token: str
    access_token_expiry: datetime
    user: UserSummary


class _Deadline:
    """Remaining time shared by every store call of one operation."""

    def __init__(self, seconds: float) -> None:
        self._loop = asyncio.get_running_loop()
        self._expires = self._loop.time() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires - self._loop.time())


class _StoreCall:
    """One blocking store call, plus the undo to run if its caller gives up.

    A worker thread cannot be interrupted, so a write that lands after the
    deadline has already been reported as unavailable is reversed by
    ``undo`` from the same thread.
    """

    def __init__(
        self,
        fn: Callable[..., T],
        args: tuple,
        undo: Optional[Callable[[T], Any]],
        operation: str,
    ) -> None:
        self.fn = fn
        self.args = args
        self.undo = undo
        self.operation = operation
        self._lock = threading.Lock()
        self._finished = False
        self._abandoned = False
        self._result: Any = None
        self._error: Optional[BaseException] = None

    def run(self) -> T:
        try:
            result = self.fn(*self.args)
        except BaseException as exc:
            with self._lock:
                self._finished = True
                self._error = exc
            raise
        with self._lock:
            self._finished = True
            self._result = result
            abandoned = self._abandoned
        if abandoned and self.undo is not None:
            self._compensate(result)
        return result

    def _compensate(self, result: T) -> None:
        try:
            self.undo(result)
        except Exception as exc:
            logger.error(
                "store_compensation_failed",
                operation=self.operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        logger.warning("store_late_write_undone", operation=self.operation)

    def abandon(self) -> bool:
        """Give up on the call; ``False`` means it had already finished."""
        with self._lock:
            if self._finished:
                return False
            self._abandoned = True
            return True

    def outcome(self) -> T:
        if self._error is not None:
            raise self._error
        return self._result


class SessionCoordinator:
    """Register, login, refresh and revoke flows over the credential store.

    Store calls are blocking, so each runs in a worker thread bounded by the
    operation's deadline. Nothing is retried here; a timeout or an
    unreachable store surfaces as :class:`ServiceUnavailableError`, and a
    write that lands after its caller gave up is reversed.
    """

    def __init__(
        self,
        store: AuthStore,
        verifier: CredentialVerifier,
        issuer: TokenIssuer,
        *,
        default_role_name: str = "User",
        store_timeout: float = 5.0,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.issuer = issuer
        self.default_role_name = default_role_name
        self.store_timeout = store_timeout
        self.logger = logger

    def ensure_default_role(self) -> Role:
        """Fail fast when the role assigned at registration is not seeded."""

        try:
            role = self.store.get_role_by_name(self.default_role_name)
        except StoreUnavailable as exc:
            raise ServiceUnavailableError("credential store unavailable") from exc
        if role is None:
            self.logger.error("default_role_missing", role=self.default_role_name)
            raise ConfigurationError(
                f"default role '{self.default_role_name}' is missing; seed roles first"
            )
        return role

    def _deadline(self, timeout: Optional[float]) -> _Deadline:
        return _Deadline(self.store_timeout if timeout is None else timeout)

    async def _store_call(
        self,
        deadline: _Deadline,
        fn: Callable[..., T],
        *args: Any,
        undo: Optional[Callable[[T], Any]] = None,
    ) -> T:
        operation = getattr(fn, "__name__", "store_call")
        call = _StoreCall(fn, args, undo, operation)
        try:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(call.run), timeout=deadline.remaining()
                )
            except asyncio.TimeoutError as exc:
                if call.abandon():
                    self.logger.warning(
                        "store_timeout", operation=operation, will_undo=undo is not None
                    )
                    raise ServiceUnavailableError(
                        "credential store timed out", detail={"operation": operation}
                    ) from exc
                # Finished just as the deadline fired; its outcome stands
                return call.outcome()
        except StoreUnavailable as exc:
            self.logger.error("store_unavailable", operation=operation, error=str(exc))
            raise ServiceUnavailableError(
                "credential store unavailable", detail={"operation": operation}
            ) from exc

    async def _role_name(self, deadline: _Deadline, user: User) -> str:
        role = await self._store_call(deadline, self.store.get_role, user.role_id)
        return role.name if role else self.default_role_name

    def _bundle(self, user: User, role_name: str, refresh: RefreshToken) -> AuthBundle:
        access = self.issuer.generate_access_token(
            user.id, user.email, role_name, user.first_name, user.last_name
        )
        return AuthBundle(
            access_token=access.value,
            refresh_token=refresh.token,
            access_token_expiry=access.expires_at,
            user=UserSummary(
                id=user.id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                role=role_name,
            ),
        )

    async def _issue(self, deadline: _Deadline, user: User, role_name: str) -> AuthBundle:
        refresh = self.issuer.generate_refresh_token(user.id)
        await self._store_call(
            deadline,
            self.store.add_refresh_token,
            refresh,
            undo=lambda _: self.store.revoke_refresh_token(refresh.token),
        )
        return self._bundle(user, role_name, refresh)

    async def _upgrade_hash(self, deadline: _Deadline, user: User, password: str) -> None:
        """Re-hash with the current cost settings after a successful login."""
        if not self.verifier.needs_rehash(user.password_hash):
            return
        password_hash = await asyncio.to_thread(self.verifier.hash, password)
        try:
            await self._store_call(
                deadline, self.store.update_password_hash, user.id, password_hash
            )
        except ServiceUnavailableError:
            # The old hash still verifies; the next login retries the upgrade
            self.logger.warning("password_rehash_deferred", user_id=user.id)
            return
        user.password_hash = password_hash
        self.logger.info("password_rehashed", user_id=user.id)

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        timeout: Optional[float] = None,
    ) -> AuthBundle:
        deadline = self._deadline(timeout)
        normalized = normalize_email(email)
        existing = await self._store_call(deadline, self.store.get_user_by_email, normalized)
        if existing:
            raise ConflictError("a user with this email already exists")
        role = await self._store_call(
            deadline, self.store.get_role_by_name, self.default_role_name
        )
        if role is None:
            self.logger.error("default_role_missing", role=self.default_role_name)
            raise ConfigurationError(
                f"default role '{self.default_role_name}' is missing; seed roles first"
            )

        password_hash = await asyncio.to_thread(self.verifier.hash, password)
        user = User.new(normalized, password_hash, first_name, last_name, role.id)
        refresh = self.issuer.generate_refresh_token(user.id)
        try:
            await self._store_call(
                deadline,
                self.store.add_user_with_refresh_token,
                user,
                refresh,
                undo=lambda _: self.store.remove_registration(user.id),
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same email
            raise ConflictError("a user with this email already exists") from exc

        self.logger.info("user_registered", user_id=user.id)
        return self._bundle(user, role.name, refresh)

    async def login(
        self, email: str, password: str, *, timeout: Optional[float] = None
    ) -> AuthBundle:
        deadline = self._deadline(timeout)
        user = await self._store_call(
            deadline, self.store.get_user_by_email, normalize_email(email)
        )
        if user is None:
            await asyncio.to_thread(self.verifier.verify_dummy, password)
            self.logger.warning("login_failed", reason="unknown_email")
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not await asyncio.to_thread(self.verifier.verify, password, user.password_hash):
            self.logger.warning("login_failed", reason="bad_password", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.is_active:
            self.logger.warning("login_failed", reason="inactive", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)

        await self._upgrade_hash(deadline, user, password)
        role_name = await self._role_name(deadline, user)
        bundle = await self._issue(deadline, user, role_name)
        self.logger.info("user_logged_in", user_id=user.id)
        return bundle

    async def refresh(
        self, refresh_value: str, *, timeout: Optional[float] = None
    ) -> AuthBundle:
        deadline = self._deadline(timeout)
        token = await self._store_call(deadline, self.store.get_refresh_token, refresh_value)
        if token is None:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        if not token.is_active(utcnow()):
            if token.revoked:
                self.logger.warning(
                    "refresh_token_replayed", user_id=token.user_id, refresh_id=token.id
                )
            raise AuthenticationError(INACTIVE_REFRESH_TOKEN)

        user = await self._store_call(deadline, self.store.get_user, token.user_id)
        if user is None:
            # Same outcome as an unknown token so a vanished owner is not revealed
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        role_name = await self._role_name(deadline, user)

        replacement = self.issuer.generate_refresh_token(user.id)
        try:
            await self._store_call(
                deadline,
                self.store.rotate_refresh_token,
                refresh_value,
                replacement,
                undo=lambda _: self.store.rollback_rotation(refresh_value, replacement.token),
            )
        except TokenAlreadyRevoked as exc:
            self.logger.warning(
                "refresh_token_replayed",
                user_id=token.user_id,
                refresh_id=token.id,
                concurrent=True,
            )
            raise AuthenticationError(INACTIVE_REFRESH_TOKEN) from exc

        self.logger.info("refresh_token_rotated", user_id=user.id, refresh_id=token.id)
        return self._bundle(user, role_name, replacement)

    async def revoke(
        self,
        refresh_value: str,
        *,
        owner_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Log out one refresh token; revoking twice is an error.

        When ``owner_id`` is given, a token belonging to someone else is
        reported exactly like an unknown token.
        """
        deadline = self._deadline(timeout)
        token = await self._store_call(deadline, self.store.get_refresh_token, refresh_value)
        if token is None or (owner_id is not None and token.user_id != owner_id):
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        if not token.is_active(utcnow()):
            raise AuthenticationError(ALREADY_REVOKED)
        try:
            await self._store_call(deadline, self.store.revoke_refresh_token, refresh_value)
        except TokenAlreadyRevoked as exc:
            raise AuthenticationError(ALREADY_REVOKED) from exc
        self.logger.info("refresh_token_revoked", user_id=token.user_id, refresh_id=token.id)
