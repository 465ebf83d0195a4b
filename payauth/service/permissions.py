from __future__ import annotations

from typing import Optional

from payauth.logging import get_logger
from payauth.service import messages
from payauth.service.errors import ForbiddenError
from payauth.storage.models import (
    PermissionAction,
    PermissionPage,
    UserPermission,
    UserType,
)

logger = get_logger(__name__)

# Types that bypass per-page grants entirely.
UNRESTRICTED_TYPES = frozenset({UserType.SUPER_ADMIN, UserType.OWNER})
MERCHANT_TYPES = frozenset({UserType.OWNER, UserType.STAFF})
ALL_TYPES = frozenset(UserType)


def owner_id_for(
    user_type: UserType | str, user_id: str, parent_user_id: Optional[str]
) -> Optional[str]:
    """Merchant account that scopes a user's data.

    OWNER owns itself, STAFF belongs to its parent OWNER, SUPER_ADMIN is
    platform-level and has no owner.
    """
    user_type = UserType(user_type)
    if user_type == UserType.OWNER:
        return user_id
    if user_type == UserType.STAFF:
        return parent_user_id
    return None


def check_user_type(user_type: UserType | str, allowed: frozenset[UserType]) -> None:
    if UserType(user_type) not in allowed:
        raise ForbiddenError(messages.ROLE_FORBIDDEN, code=messages.FORBIDDEN.code)


def check_permission(
    user_type: UserType | str | None,
    grant: Optional[UserPermission],
    page: PermissionPage | str,
    action: PermissionAction | str,
) -> None:
    """Raise ForbiddenError unless ``user_type`` may perform ``action`` on ``page``.

    Unknown types are denied; STAFF needs an explicit grant row with the
    matching flag set.
    """
    page = PermissionPage(page)
    action = PermissionAction(action)
    try:
        resolved = UserType(user_type)
    except ValueError:
        resolved = None

    if resolved in UNRESTRICTED_TYPES:
        return
    if resolved == UserType.STAFF:
        if grant is not None and grant.page == page and grant.allows(action):
            return
        raise ForbiddenError(
            messages.permission_denied(action.value, page.value),
            code=messages.FORBIDDEN.code,
        )
    logger.warning("permission_unknown_user_type", user_type=str(user_type))
    raise ForbiddenError(messages.ACCESS_DENIED, code=messages.FORBIDDEN.code)
