from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserType(str, Enum):
    SUPER_ADMIN = "SUPER_ADMIN"
    OWNER = "OWNER"
    STAFF = "STAFF"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


class PermissionPage(str, Enum):
    INTEGRATION = "INTEGRATION"
    RECEIVERS = "RECEIVERS"
    PAYMENT_LINKS = "PAYMENT_LINKS"
    REVIEW = "REVIEW"
    PAYMENTS = "PAYMENTS"
    CUSTOMERS = "CUSTOMERS"
    USERS = "USERS"
    SETTINGS = "SETTINGS"
    LOGS = "LOGS"
    DEVICES = "DEVICES"


class PermissionAction(str, Enum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class User:
    id: str
    email: str
    name: str
    type: UserType = UserType.OWNER
    status: UserStatus = UserStatus.ACTIVE
    password_hash: str = field(default="", repr=False)
    password_algo: str = "argon2id"
    parent_user_id: Optional[str] = None
    token_version: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def to_public(self) -> Dict[str, Any]:
        """Projection safe to return to clients; never includes credentials."""

        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "type": self.type.value,
            "status": self.status.value,
            "parentUserId": self.parent_user_id,
        }


@dataclass
class UserPermission:
    user_id: str
    page: PermissionPage
    can_read: bool = False
    can_create: bool = False
    can_update: bool = False
    can_delete: bool = False

    def allows(self, action: PermissionAction | str) -> bool:
        action = PermissionAction(action)
        return bool(getattr(self, f"can_{action.value}"))
