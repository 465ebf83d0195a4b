from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Set, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from payauth.config import Settings
from payauth.logging import get_logger, hash_email
from payauth.service import messages
from payauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TokenError,
    ValidationError,
)
from payauth.service.permissions import owner_id_for
from payauth.service.tokens import RESET_PURPOSE, TokenCodec, TokenKind, TokenPair
from payauth.storage.errors import ConstraintViolation
from payauth.storage.models import (
    PermissionPage,
    User,
    UserPermission,
    UserStatus,
    UserType,
)

logger = get_logger(__name__)

T = TypeVar("T")


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        *,
        name: str,
        password_hash: str,
        password_algo: str,
        user_type: UserType = UserType.OWNER,
        parent_user_id: Optional[str] = None,
    ) -> User: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]: ...

    def increment_token_version(self, user_id: str) -> Optional[int]: ...

    def get_permission(
        self, user_id: str, page: PermissionPage | str
    ) -> Optional[UserPermission]: ...


class ResetNotifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...


@dataclass
class AuthContext:
    """Identity decoded from a verified access token."""

    user_id: str
    email: str
    type: UserType
    parent_user_id: Optional[str] = None

    @property
    def owner_id(self) -> Optional[str]:
        return owner_id_for(self.type, self.user_id, self.parent_user_id)


@dataclass
class AuthResult:
    user: User
    tokens: TokenPair


@dataclass
class ForgotPasswordResult:
    message: str
    # Never returned to the caller; exposed for tests and CLI tooling.
    reset_token: str = field(repr=False)


class AuthService:
    """Credential checks, token issuance and token-version revocation.

    Store and password-hashing calls run in worker threads so a slow
    database or argon2 round does not stall the event loop.
    """

    def __init__(
        self,
        store: AuthStore,
        codec: TokenCodec,
        settings: Settings,
        *,
        email: Optional[ResetNotifier] = None,
    ) -> None:
        self.store: AuthStore = store
        self.codec = codec
        self.settings = settings
        self.email = email
        self.logger = logger
        self._pwd_hasher = PasswordHasher(
            type=Type.ID, time_cost=settings.password_hash_time_cost
        )
        self._dummy_hash: Optional[str] = None
        self._mail_tasks: Set[asyncio.Task] = set()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    async def _run(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(func, *args, **kwargs)

    # passwords -------------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, password: str, stored_hash: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_verification_failed")
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails pay the same argon2 cost as a wrong password.
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self.verify_password(password, self._dummy_hash)

    # helpers ---------------------------------------------------------------

    @staticmethod
    def _invalid_credentials() -> AuthenticationError:
        return AuthenticationError(
            messages.INVALID_CREDENTIALS.message, code=messages.INVALID_CREDENTIALS.code
        )

    @staticmethod
    def _email_taken() -> ConflictError:
        return ConflictError(
            messages.EMAIL_ALREADY_EXISTS.message,
            code=messages.EMAIL_ALREADY_EXISTS.code,
            field=messages.EMAIL_ALREADY_EXISTS.field,
        )

    @staticmethod
    def _user_not_found(error_cls=NotFoundError):
        return error_cls(
            messages.USER_NOT_FOUND.message, code=messages.USER_NOT_FOUND.code
        )

    async def _check_parent(
        self, user_type: UserType, parent_user_id: Optional[str]
    ) -> None:
        if user_type != UserType.STAFF:
            if parent_user_id:
                raise ValidationError(
                    "Only STAFF accounts may have a parent user", field="parentUserId"
                )
            return
        parent = await self._run(self.store.get_user, parent_user_id) if parent_user_id else None
        if not parent or parent.type != UserType.OWNER:
            raise ValidationError(
                "STAFF accounts require an existing OWNER as parent", field="parentUserId"
            )

    async def _record_login(self, user: User) -> User:
        updated = await self._run(self.store.update_user, user.id, last_login_at=self._now())
        return updated or user

    async def _revoke_after_password_change(self, user_id: str) -> None:
        if not self.settings.revoke_sessions_on_password_change:
            return
        version = await self._run(self.store.increment_token_version, user_id)
        self.logger.info("sessions_revoked_on_password_change", user_id=user_id, token_version=version)

    # flows -----------------------------------------------------------------

    async def sign_up(
        self,
        email: str,
        password: str,
        name: str,
        user_type: UserType | str | None = None,
        parent_user_id: Optional[str] = None,
    ) -> AuthResult:
        normalized_email = email.strip().lower()
        resolved_type = UserType(user_type) if user_type else UserType.OWNER
        await self._check_parent(resolved_type, parent_user_id)

        if await self._run(self.store.get_user_by_email, normalized_email):
            raise self._email_taken()

        password_hash, algo = await self._run(self._hash_password, password)
        try:
            user = await self._run(
                self.store.create_user,
                normalized_email,
                name=name.strip(),
                password_hash=password_hash,
                password_algo=algo,
                user_type=resolved_type,
                parent_user_id=parent_user_id,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent sign-up for the same address.
            if exc.field == "email":
                raise self._email_taken() from exc
            raise ValidationError(exc.message, field=exc.field) from exc

        user = await self._record_login(user)
        self.logger.info("user_signed_up", user_id=user.id, user_type=user.type.value)
        return AuthResult(user=user, tokens=self.codec.issue_pair(user))

    async def login(self, email: str, password: str) -> AuthResult:
        normalized_email = email.strip().lower()
        user = await self._run(self.store.get_user_by_email, normalized_email)
        if not user:
            await self._run(self._burn_password_check, password)
            self.logger.info(
                "login_failed", reason="unknown_email", email_hash=hash_email(normalized_email)
            )
            raise self._invalid_credentials()
        if not await self._run(self.verify_password, password, user.password_hash):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise self._invalid_credentials()

        if user.status == UserStatus.INACTIVE:
            raise ForbiddenError(
                messages.USER_INACTIVE.message, code=messages.USER_INACTIVE.code
            )
        if user.status == UserStatus.SUSPENDED:
            raise ForbiddenError(
                messages.USER_SUSPENDED.message, code=messages.USER_SUSPENDED.code
            )

        user = await self._record_login(user)
        self.logger.info("user_logged_in", user_id=user.id)
        return AuthResult(user=user, tokens=self.codec.issue_pair(user))

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Exchange a refresh token for a fresh pair.

        The presented token is not consumed; it stays usable until it expires
        or the user's token version moves past it.
        """
        try:
            payload = self.codec.verify(TokenKind.REFRESH, refresh_token)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.code)
            raise

        user = await self._run(self.store.get_user, payload["userId"])
        if not user:
            self.logger.info("refresh_rejected", reason="user_not_found")
            raise self._user_not_found(AuthenticationError)
        if payload["tokenVersion"] != user.token_version:
            self.logger.info(
                "refresh_rejected",
                reason="token_revoked",
                user_id=user.id,
                presented_version=payload["tokenVersion"],
                current_version=user.token_version,
            )
            raise AuthenticationError(
                messages.TOKEN_REVOKED.message, code=messages.TOKEN_REVOKED.code
            )
        if user.status != UserStatus.ACTIVE:
            raise ForbiddenError(
                messages.USER_INACTIVE.message, code=messages.USER_INACTIVE.code
            )
        return self.codec.issue_pair(user)

    async def _deliver_reset_email(self, user_id: str, to_email: str, token: str) -> None:
        try:
            sent = await self._run(self.email.send_password_reset, to_email, token)
        except Exception as exc:
            self.logger.error(
                "password_reset_email_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        if not sent:
            self.logger.error("password_reset_email_failed", user_id=user_id)

    def _schedule_reset_email(
        self,
        user_id: str,
        to_email: str,
        token: str,
        schedule: Optional[Callable[..., None]],
    ) -> None:
        if schedule is not None:
            schedule(self._deliver_reset_email, user_id, to_email, token)
            return
        task = asyncio.create_task(self._deliver_reset_email(user_id, to_email, token))
        self._mail_tasks.add(task)
        task.add_done_callback(self._mail_tasks.discard)

    async def wait_for_pending_mail(self) -> None:
        """Block until every reset mail scheduled on this loop has been handed off."""
        if self._mail_tasks:
            await asyncio.gather(*list(self._mail_tasks))

    async def forgot_password(
        self, email: str, *, schedule: Optional[Callable[..., None]] = None
    ) -> ForgotPasswordResult:
        """Issue a reset token and mail it if the address is registered.

        The result is identical whether or not the account exists; only the
        logs tell the two apart. The mail goes out after this returns, either
        through ``schedule`` (e.g. ``BackgroundTasks.add_task``) or as a
        tracked task on the running loop, so SMTP latency never reaches the
        caller.
        """
        normalized_email = email.strip().lower()
        user = await self._run(self.store.get_user_by_email, normalized_email)
        message = messages.Success.PASSWORD_RESET_EMAIL_SENT
        if not user:
            self.logger.info(
                "password_reset_requested",
                email_hash=hash_email(normalized_email),
                account_found=False,
            )
            return ForgotPasswordResult(message=message, reset_token=secrets.token_hex(32))

        reset_token = self.codec.issue_reset(user.id, user.email)
        self.logger.info(
            "password_reset_requested",
            email_hash=hash_email(normalized_email),
            account_found=True,
            user_id=user.id,
        )
        if self.email is not None:
            self._schedule_reset_email(user.id, user.email, reset_token, schedule)
        return ForgotPasswordResult(message=message, reset_token=reset_token)

    async def reset_password(self, token: str, new_password: str) -> None:
        try:
            payload = self.codec.verify(TokenKind.RESET, token)
        except TokenError as exc:
            raise BadRequestError(exc.message, code=exc.code) from exc
        if payload.get("purpose") != RESET_PURPOSE:
            self.logger.warning(
                "reset_token_wrong_purpose",
                user_id=payload.get("userId"),
                purpose=payload.get("purpose"),
            )
            raise BadRequestError(
                messages.INVALID_TOKEN.message, code=messages.INVALID_TOKEN.code
            )

        password_hash, algo = await self._run(self._hash_password, new_password)
        user = await self._run(
            self.store.update_user,
            payload["userId"],
            password_hash=password_hash,
            password_algo=algo,
        )
        if not user:
            raise BadRequestError(
                messages.INVALID_TOKEN.message, code=messages.INVALID_TOKEN.code
            )
        await self._revoke_after_password_change(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> None:
        user = await self._run(self.store.get_user, user_id)
        if not user:
            raise self._user_not_found()
        if not await self._run(self.verify_password, current_password, user.password_hash):
            raise BadRequestError(
                messages.INVALID_PASSWORD.message,
                code=messages.INVALID_PASSWORD.code,
                field=messages.INVALID_PASSWORD.field,
            )
        password_hash, algo = await self._run(self._hash_password, new_password)
        await self._run(
            self.store.update_user, user_id, password_hash=password_hash, password_algo=algo
        )
        await self._revoke_after_password_change(user_id)
        self.logger.info("password_changed", user_id=user_id)

    async def logout(self, user_id: str) -> int:
        """Invalidate every outstanding refresh token for ``user_id``.

        Returns the new token version. Access tokens already issued remain
        valid until they expire.
        """
        version = await self._run(self.store.increment_token_version, user_id)
        if version is None:
            raise self._user_not_found()
        self.logger.info("user_logged_out", user_id=user_id, token_version=version)
        return version

    async def get_me(self, user_id: str) -> User:
        user = await self._run(self.store.get_user, user_id)
        if not user:
            raise self._user_not_found()
        return user

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        if not authorization:
            raise AuthenticationError(
                messages.MISSING_AUTH_HEADER, code=messages.UNAUTHORIZED.code
            )
        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token or " " in token:
            raise AuthenticationError(
                messages.INVALID_AUTH_HEADER, code=messages.UNAUTHORIZED.code
            )
        payload = self.codec.verify(TokenKind.ACCESS, token)
        return AuthContext(
            user_id=payload["userId"],
            email=payload["email"],
            type=UserType(payload["type"]),
            parent_user_id=payload.get("parentUserId"),
        )
