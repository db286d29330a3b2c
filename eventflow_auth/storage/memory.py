from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional

from eventflow_auth.logging import get_logger
from eventflow_auth.storage.errors import (
    ConstraintViolation,
    StoreUnavailable,
    TokenAlreadyRevoked,
)
from eventflow_auth.storage.models import (
    RefreshToken,
    Role,
    User,
    as_utc,
    normalize_email,
    utcnow,
)

# Fixed ids so that seeded roles match across store implementations
SEED_ROLE_IDS = {
    "Admin": "a0000000-0000-0000-0000-000000000001",
    "User": "a0000000-0000-0000-0000-000000000002",
}


class MemoryStore:
    """In-process store for users, roles and refresh tokens.

    All reads and writes go through ``_data_lock`` so the conditional revoke
    is a single indivisible step. State is mirrored to a JSON file under
    ``fs_root`` when one is given; a write that cannot be persisted is rolled
    back in memory as well.
    """

    def __init__(
        self,
        fs_root: str | None = None,
        *,
        seed_roles: Iterable[str] | None = ("Admin", "User"),
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.roles: Dict[str, Role] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            for name in seed_roles or ():
                self.seed_role(name)

    def _state_path(self) -> Optional[Path]:
        if self.fs_root is None:
            return None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return as_utc(dt).isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Apply a change and persist it, or leave memory exactly as it was.

        Records are mutated in place by revoke/rotate, so the rollback image
        holds copies rather than references.
        """
        with self._data_lock:
            snapshot = (
                dict(self.roles),
                {key: replace(user) for key, user in self.users.items()},
                {key: replace(token) for key, token in self.refresh_tokens.items()},
            )
            try:
                yield
                self._persist_state()
            except Exception:
                self.roles, self.users, self.refresh_tokens = snapshot
                raise

    # roles
    def seed_role(self, name: str) -> Role:
        with self._mutation():
            existing = self.get_role_by_name(name)
            if existing:
                return existing
            role = Role(id=SEED_ROLE_IDS.get(name) or Role.new(name).id, name=name)
            self.roles[role.id] = role
            return role

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            return next((r for r in self.roles.values() if r.name == name), None)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._data_lock:
            return self.roles.get(role_id)

    # users
    def _insert_user(self, user: User) -> None:
        email = normalize_email(user.email)
        if any(existing.email == email for existing in self.users.values()):
            raise ConstraintViolation("email already exists", {"field": "email"})
        if user.role_id not in self.roles:
            raise ConstraintViolation("role does not exist", {"role_id": user.role_id})
        user.email = email
        self.users[user.id] = user

    def add_user(self, user: User) -> User:
        with self._mutation():
            self._insert_user(user)
            return user

    def add_user_with_refresh_token(self, user: User, token: RefreshToken) -> User:
        """Create an account together with its first session, or neither."""
        with self._mutation():
            self._insert_user(user)
            self._insert_refresh_token(token)
            return user

    def remove_registration(self, user_id: str) -> None:
        """Undo an account whose creation was never reported to its owner."""
        with self._mutation():
            self.users.pop(user_id, None)
            for value in [v for v, t in self.refresh_tokens.items() if t.user_id == user_id]:
                self.refresh_tokens.pop(value)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            user.updated_at = utcnow()
            return user

    def update_password_hash(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.updated_at = utcnow()
            return user

    def delete_user(self, user_id: str) -> bool:
        """Remove a user; their refresh tokens stay behind for audit."""
        with self._mutation():
            return self.users.pop(user_id, None) is not None

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._mutation():
            self._insert_refresh_token(token)
            return token

    def _insert_refresh_token(self, token: RefreshToken) -> None:
        if token.token in self.refresh_tokens:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        if token.user_id not in self.users:
            raise ConstraintViolation("refresh token user missing", {"user_id": token.user_id})
        self.refresh_tokens[token.token] = token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(value)
            if token is None:
                return None
            # Callers get a snapshot; only revoke/rotate mutate stored records
            return replace(token)

    def list_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [t for t in self.refresh_tokens.values() if t.user_id == user_id]
            return sorted(tokens, key=lambda t: t.created_at)

    def _compare_and_revoke(self, value: str, replaced_by: Optional[str]) -> RefreshToken:
        token = self.refresh_tokens.get(value)
        if token is None or token.revoked:
            raise TokenAlreadyRevoked(value)
        token.revoked = True
        token.replaced_by = replaced_by
        return token

    def revoke_refresh_token(
        self, value: str, replaced_by: Optional[str] = None
    ) -> RefreshToken:
        with self._mutation():
            token = self._compare_and_revoke(value, replaced_by)
            return replace(token)

    def rotate_refresh_token(
        self, value: str, replacement: RefreshToken
    ) -> RefreshToken:
        with self._mutation():
            self._compare_and_revoke(value, replacement.token)
            self._insert_refresh_token(replacement)
            return replacement

    def rollback_rotation(self, value: str, replacement_value: str) -> bool:
        """Reinstate ``value`` and retire its undelivered replacement.

        Only applies while ``value`` still points at ``replacement_value``;
        returns whether anything changed.
        """
        with self._mutation():
            original = self.refresh_tokens.get(value)
            replacement = self.refresh_tokens.get(replacement_value)
            if original is None or original.replaced_by != replacement_value:
                return False
            if replacement is not None:
                if replacement.revoked:
                    return False
                replacement.revoked = True
            original.revoked = False
            original.replaced_by = None
            return True

    def ping(self) -> bool:
        return True

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "roles": [{"id": r.id, "name": r.name} for r in self.roles.values()],
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
        }
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_state_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailable(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.roles = {r["id"]: Role(id=r["id"], name=r["name"]) for r in data.get("roles", [])}
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            t["token"]: self._deserialize_refresh_token(t)
            for t in data.get("refresh_tokens", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "role_id": user.role_id,
            "is_active": user.is_active,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            role_id=data["role_id"],
            is_active=data.get("is_active", True),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data.get("updated_at")),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token": token.token,
            "expires_at": self._serialize_datetime(token.expires_at),
            "revoked": token.revoked,
            "created_at": self._serialize_datetime(token.created_at),
            "replaced_by": token.replaced_by,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
            replaced_by=data.get("replaced_by"),
        )
