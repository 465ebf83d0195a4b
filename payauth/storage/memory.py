from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from payauth.logging import get_logger
from payauth.storage.errors import ConstraintViolation
from payauth.storage.models import (
    PermissionPage,
    User,
    UserPermission,
    UserStatus,
    UserType,
)

_UPDATABLE_USER_FIELDS = {
    "name",
    "status",
    "password_hash",
    "password_algo",
    "last_login_at",
}


class MemoryStore:
    """In-process credential store persisted to a JSON snapshot.

    Used for tests and single-node development. All reads and writes go
    through one re-entrant lock so that the unique-email check and the
    token-version increment are atomic.
    """

    def __init__(self, fs_root: str = "/tmp/payauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.permissions: Dict[Tuple[str, str], UserPermission] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # users -----------------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            return next(
                (user for user in self.users.values() if user.email == normalized),
                None,
            )

    def create_user(
        self,
        email: str,
        *,
        name: str,
        password_hash: str,
        password_algo: str,
        user_type: UserType = UserType.OWNER,
        parent_user_id: Optional[str] = None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                type=UserType(user_type),
                status=UserStatus(status),
                password_hash=password_hash,
                password_algo=password_algo,
                parent_user_id=parent_user_id,
                token_version=0,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"fields not updatable: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in fields.items():
                if key == "status":
                    value = UserStatus(value)
                setattr(user, key, value)
            user.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return user

    def increment_token_version(self, user_id: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.token_version += 1
            user.updated_at = datetime.now(timezone.utc)
            self._persist_state()
            return user.token_version

    # permissions -----------------------------------------------------------

    def get_permission(
        self, user_id: str, page: PermissionPage | str
    ) -> Optional[UserPermission]:
        with self._data_lock:
            return self.permissions.get((user_id, PermissionPage(page).value))

    def set_permission(self, permission: UserPermission) -> UserPermission:
        with self._data_lock:
            if permission.user_id not in self.users:
                raise ConstraintViolation(
                    "permission references unknown user", {"field": "userId"}
                )
            self.permissions[(permission.user_id, permission.page.value)] = permission
            self._persist_state()
            return permission

    # persistence -----------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "permissions": [
                self._serialize_permission(p) for p in self.permissions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.permissions = {}
        for entry in data.get("permissions", []):
            permission = self._deserialize_permission(entry)
            self.permissions[(permission.user_id, permission.page.value)] = permission
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_datetime(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    @staticmethod
    def _deserialize_datetime(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "type": user.type.value,
            "status": user.status.value,
            "password_hash": user.password_hash,
            "password_algo": user.password_algo,
            "parent_user_id": user.parent_user_id,
            "token_version": user.token_version,
            "last_login_at": self._serialize_datetime(user.last_login_at),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            type=UserType(data.get("type", UserType.OWNER.value)),
            status=UserStatus(data.get("status", UserStatus.ACTIVE.value)),
            password_hash=data.get("password_hash", ""),
            password_algo=data.get("password_algo", "argon2id"),
            parent_user_id=data.get("parent_user_id"),
            token_version=int(data.get("token_version", 0)),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at") or data["created_at"]
            ),
        )

    @staticmethod
    def _serialize_permission(permission: UserPermission) -> dict:
        return {
            "user_id": permission.user_id,
            "page": permission.page.value,
            "can_read": permission.can_read,
            "can_create": permission.can_create,
            "can_update": permission.can_update,
            "can_delete": permission.can_delete,
        }

    @staticmethod
    def _deserialize_permission(data: dict) -> UserPermission:
        return UserPermission(
            user_id=str(data["user_id"]),
            page=PermissionPage(data["page"]),
            can_read=bool(data.get("can_read", False)),
            can_create=bool(data.get("can_create", False)),
            can_update=bool(data.get("can_update", False)),
            can_delete=bool(data.get("can_delete", False)),
        )
