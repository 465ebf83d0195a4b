"""Request gates for protected routes.

``get_current_user`` authenticates the bearer token; the role and permission
factories compose on top of it as FastAPI dependencies::

    @router.get("/payments", dependencies=[Depends(require_permission("PAYMENTS", "read"))])
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog
from fastapi import Depends, Header, Request

from payauth.logging import get_logger
from payauth.service import messages
from payauth.service.auth import AuthContext
from payauth.service.errors import ServerError
from payauth.service.permissions import (
    ALL_TYPES,
    MERCHANT_TYPES,
    check_permission,
    check_user_type,
)
from payauth.service.runtime import get_runtime
from payauth.storage.models import PermissionAction, PermissionPage, UserType

logger = get_logger(__name__)


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    request.state.user = ctx
    structlog.contextvars.bind_contextvars(user_id=ctx.user_id)
    return ctx


def require_user_type(*allowed: UserType | str) -> Callable:
    allowed_types = frozenset(UserType(t) for t in allowed)

    async def _gate(user: AuthContext = Depends(get_current_user)) -> AuthContext:
        check_user_type(user.type, allowed_types)
        return user

    return _gate


require_super_admin = require_user_type(UserType.SUPER_ADMIN)
require_owner = require_user_type(UserType.OWNER)
require_merchant = require_user_type(*MERCHANT_TYPES)
require_any_user = require_user_type(*ALL_TYPES)


def require_permission(page: PermissionPage | str, action: PermissionAction | str) -> Callable:
    page = PermissionPage(page)
    action = PermissionAction(action)

    async def _gate(user: AuthContext = Depends(get_current_user)) -> AuthContext:
        grant = None
        if user.type == UserType.STAFF:
            runtime = get_runtime()
            try:
                grant = await asyncio.to_thread(
                    runtime.store.get_permission, user.user_id, page
                )
            except Exception as exc:
                logger.error(
                    "permission_lookup_failed",
                    user_id=user.user_id,
                    page=page.value,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ServerError(messages.PERMISSION_CHECK_FAILED) from exc
        check_permission(user.type, grant, page, action)
        return user

    return _gate


async def get_owner_id(user: AuthContext = Depends(get_current_user)) -> Optional[str]:
    return user.owner_id
