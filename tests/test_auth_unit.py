"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Sign-up, login and account status checks
- Refresh and token-version revocation
- Forgot/reset/change password
- Bearer header authentication
"""

import asyncio
import time

import pytest

from conftest import RecordingNotifier
from payauth.config import Settings
from payauth.service.auth import AuthService
from payauth.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from payauth.service.tokens import TokenCodec, TokenKind
from payauth.storage.models import UserStatus, UserType

PASSWORD = "Password123"


@pytest.fixture
def owner(auth_service):
    result = asyncio.run(auth_service.sign_up("owner@example.com", PASSWORD, "Owner"))
    return result.user


class TestPasswordHashing:
    def test_hash_is_argon2id_and_salted(self, auth_service):
        first, algo = auth_service._hash_password(PASSWORD)
        second, _ = auth_service._hash_password(PASSWORD)

        assert algo == "argon2id"
        assert first.startswith("$argon2id$")
        assert first != second
        assert PASSWORD not in first

    def test_verify_password(self, auth_service):
        stored, _ = auth_service._hash_password(PASSWORD)
        assert auth_service.verify_password(PASSWORD, stored)
        assert not auth_service.verify_password("Password124", stored)

    def test_verify_rejects_garbage_hash(self, auth_service):
        assert not auth_service.verify_password(PASSWORD, "not-a-hash")
        assert not auth_service.verify_password(PASSWORD, "")


class TestSignUp:
    async def test_sign_up_creates_owner_with_tokens(self, auth_service, memory_store):
        result = await auth_service.sign_up("New@Example.com", PASSWORD, "  New User ")

        assert result.user.email == "new@example.com"
        assert result.user.name == "New User"
        assert result.user.type == UserType.OWNER
        assert result.user.token_version == 0
        assert result.user.last_login_at is not None
        stored = memory_store.get_user(result.user.id)
        assert stored.password_hash != PASSWORD

        access = auth_service.codec.verify(TokenKind.ACCESS, result.tokens.access_token)
        refresh = auth_service.codec.verify(TokenKind.REFRESH, result.tokens.refresh_token)
        assert access["userId"] == result.user.id
        assert refresh["tokenVersion"] == 0

    @pytest.mark.parametrize("variant", ["owner@example.com", "OWNER@example.com", " Owner@Example.COM "])
    async def test_duplicate_email_conflicts(self, auth_service, owner, variant):
        with pytest.raises(ConflictError) as exc_info:
            await auth_service.sign_up(variant, PASSWORD, "Someone")
        assert exc_info.value.code == "EMAIL_ALREADY_EXISTS"
        assert exc_info.value.field == "email"
        assert exc_info.value.status_code == 409

    async def test_concurrent_sign_up_creates_one_account(self, auth_service, memory_store):
        results = await asyncio.gather(
            *(auth_service.sign_up("race@example.com", PASSWORD, "Racer") for _ in range(3)),
            return_exceptions=True,
        )
        created = [r for r in results if not isinstance(r, Exception)]
        assert len(created) == 1
        assert all(isinstance(r, ConflictError) for r in results if isinstance(r, Exception))
        assert len(memory_store.users) == 1

    async def test_staff_requires_owner_parent(self, auth_service, owner):
        staff = await auth_service.sign_up(
            "staff@example.com",
            PASSWORD,
            "Staff",
            user_type=UserType.STAFF,
            parent_user_id=owner.id,
        )
        assert staff.user.parent_user_id == owner.id

        with pytest.raises(ValidationError) as exc_info:
            await auth_service.sign_up("orphan@example.com", PASSWORD, "Orphan", user_type="STAFF")
        assert exc_info.value.field == "parentUserId"

        with pytest.raises(ValidationError):
            await auth_service.sign_up(
                "nested@example.com",
                PASSWORD,
                "Nested",
                user_type=UserType.STAFF,
                parent_user_id=staff.user.id,
            )

    async def test_owner_cannot_have_parent(self, auth_service, owner):
        with pytest.raises(ValidationError):
            await auth_service.sign_up(
                "child@example.com", PASSWORD, "Child", parent_user_id=owner.id
            )


class TestLogin:
    async def test_login_updates_last_login(self, auth_service, owner, memory_store):
        before = memory_store.get_user(owner.id).last_login_at
        result = await auth_service.login("OWNER@example.com", PASSWORD)
        assert result.user.id == owner.id
        assert result.user.last_login_at >= before

    async def test_unknown_email_and_bad_password_look_identical(self, auth_service, owner):
        with pytest.raises(AuthenticationError) as unknown:
            await auth_service.login("nobody@example.com", PASSWORD)
        with pytest.raises(AuthenticationError) as wrong:
            await auth_service.login("owner@example.com", "Wrong12345")

        assert unknown.value.code == wrong.value.code == "INVALID_CREDENTIALS"
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code == 401

    @pytest.mark.parametrize(
        "status,code",
        [(UserStatus.INACTIVE, "USER_INACTIVE"), (UserStatus.SUSPENDED, "USER_SUSPENDED")],
    )
    async def test_blocked_accounts_forbidden(self, auth_service, owner, memory_store, status, code):
        memory_store.update_user(owner.id, status=status)
        with pytest.raises(ForbiddenError) as exc_info:
            await auth_service.login("owner@example.com", PASSWORD)
        assert exc_info.value.code == code

    async def test_blocked_account_with_wrong_password_gets_invalid_credentials(
        self, auth_service, owner, memory_store
    ):
        memory_store.update_user(owner.id, status=UserStatus.SUSPENDED)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.login("owner@example.com", "Wrong12345")
        assert exc_info.value.code == "INVALID_CREDENTIALS"


class TestRefreshAndLogout:
    async def test_refresh_issues_new_pair(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        pair = await auth_service.refresh(login.tokens.refresh_token)
        payload = auth_service.codec.verify(TokenKind.ACCESS, pair.access_token)
        assert payload["userId"] == owner.id
        # The presented refresh token is not consumed.
        again = await auth_service.refresh(login.tokens.refresh_token)
        assert again.refresh_token

    async def test_logout_revokes_refresh_tokens(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        assert await auth_service.logout(owner.id) == 1

        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(login.tokens.refresh_token)
        assert exc_info.value.code == "TOKEN_REVOKED"

        fresh = await auth_service.login("owner@example.com", PASSWORD)
        refreshed = await auth_service.refresh(fresh.tokens.refresh_token)
        payload = auth_service.codec.verify(TokenKind.REFRESH, refreshed.refresh_token)
        assert payload["tokenVersion"] == 1

    async def test_concurrent_logouts_each_increment(self, auth_service, owner, memory_store):
        versions = await asyncio.gather(auth_service.logout(owner.id), auth_service.logout(owner.id))
        assert sorted(versions) == [1, 2]
        assert memory_store.get_user(owner.id).token_version == 2

    async def test_logout_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError) as exc_info:
            await auth_service.logout("missing")
        assert exc_info.value.code == "USER_NOT_FOUND"

    async def test_refresh_rejects_access_token(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.refresh(login.tokens.access_token)

    async def test_refresh_for_deleted_user(self, auth_service, codec):
        token = codec.issue_refresh("ghost", 0)
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.refresh(token)
        assert exc_info.value.code == "USER_NOT_FOUND"
        assert exc_info.value.status_code == 401

    async def test_refresh_for_suspended_user(self, auth_service, owner, memory_store):
        login = await auth_service.login("owner@example.com", PASSWORD)
        memory_store.update_user(owner.id, status=UserStatus.SUSPENDED)
        with pytest.raises(ForbiddenError) as exc_info:
            await auth_service.refresh(login.tokens.refresh_token)
        assert exc_info.value.code == "USER_INACTIVE"


class SlowNotifier(RecordingNotifier):
    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    def send_password_reset(self, to_email: str, token: str) -> bool:
        time.sleep(self.delay)
        return super().send_password_reset(to_email, token)


class ExplodingNotifier:
    def send_password_reset(self, to_email: str, token: str) -> bool:
        raise ConnectionError("smtp unreachable")


class TestPasswordReset:
    async def test_forgot_password_mails_reset_token(self, auth_service, owner, notifier):
        result = await auth_service.forgot_password("Owner@Example.com")
        await auth_service.wait_for_pending_mail()

        assert notifier.sent == [("owner@example.com", result.reset_token)]
        payload = auth_service.codec.verify(TokenKind.RESET, result.reset_token)
        assert payload["userId"] == owner.id

    async def test_forgot_password_unknown_email_is_uniform(self, auth_service, owner, notifier):
        known = await auth_service.forgot_password("owner@example.com")
        unknown = await auth_service.forgot_password("nobody@example.com")
        await auth_service.wait_for_pending_mail()

        assert known.message == unknown.message
        assert len(notifier.sent) == 1
        assert unknown.reset_token

    async def test_slow_mail_does_not_delay_response(self, memory_store, codec, settings):
        slow = SlowNotifier(delay=1.0)
        service = AuthService(memory_store, codec, settings, email=slow)
        await service.sign_up("owner@example.com", PASSWORD, "Owner")

        started = time.perf_counter()
        await service.forgot_password("owner@example.com")
        known_elapsed = time.perf_counter() - started
        started = time.perf_counter()
        await service.forgot_password("nobody@example.com")
        unknown_elapsed = time.perf_counter() - started

        assert known_elapsed < 0.5
        assert abs(known_elapsed - unknown_elapsed) < 0.5
        assert slow.sent == []
        await service.wait_for_pending_mail()
        assert [to for to, _ in slow.sent] == ["owner@example.com"]

    async def test_forgot_password_uses_given_scheduler(self, auth_service, owner, notifier):
        scheduled = []
        result = await auth_service.forgot_password(
            "owner@example.com", schedule=lambda func, *args: scheduled.append((func, args))
        )
        assert notifier.sent == []
        assert len(scheduled) == 1

        func, args = scheduled[0]
        await func(*args)
        assert notifier.sent == [("owner@example.com", result.reset_token)]

    async def test_forgot_password_mail_failure_is_not_reported(
        self, memory_store, codec, settings
    ):
        service = AuthService(memory_store, codec, settings, email=RecordingNotifier(succeed=False))
        await service.sign_up("owner@example.com", PASSWORD, "Owner")
        result = await service.forgot_password("owner@example.com")
        assert result.message == (await service.forgot_password("nobody@example.com")).message
        await service.wait_for_pending_mail()

    async def test_forgot_password_mail_exception_is_contained(
        self, memory_store, codec, settings
    ):
        service = AuthService(memory_store, codec, settings, email=ExplodingNotifier())
        await service.sign_up("owner@example.com", PASSWORD, "Owner")
        result = await service.forgot_password("owner@example.com")
        await service.wait_for_pending_mail()
        assert result.reset_token

    async def test_reset_password_changes_credentials(self, auth_service, owner):
        forgot = await auth_service.forgot_password("owner@example.com")
        await auth_service.reset_password(forgot.reset_token, "NewPassword9")

        with pytest.raises(AuthenticationError):
            await auth_service.login("owner@example.com", PASSWORD)
        assert (await auth_service.login("owner@example.com", "NewPassword9")).user.id == owner.id

    async def test_reset_token_without_purpose_rejected(self, auth_service, owner, codec):
        payload = codec.verify(TokenKind.RESET, codec.issue_reset(owner.id, owner.email))
        payload["purpose"] = "something_else"
        forged = TokenCodec.encode(payload, codec._secrets[TokenKind.RESET])

        with pytest.raises(BadRequestError) as exc_info:
            await auth_service.reset_password(forged, "NewPassword9")
        assert exc_info.value.code == "INVALID_TOKEN"
        assert exc_info.value.status_code == 400

    async def test_access_token_cannot_reset_password(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        with pytest.raises(BadRequestError) as exc_info:
            await auth_service.reset_password(login.tokens.access_token, "NewPassword9")
        assert exc_info.value.code == "INVALID_TOKEN"

    async def test_refresh_token_cannot_reset_password(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        with pytest.raises(BadRequestError):
            await auth_service.reset_password(login.tokens.refresh_token, "NewPassword9")

    async def test_reset_for_vanished_user(self, auth_service, codec):
        token = codec.issue_reset("ghost", "ghost@example.com")
        with pytest.raises(BadRequestError) as exc_info:
            await auth_service.reset_password(token, "NewPassword9")
        assert exc_info.value.code == "INVALID_TOKEN"

    async def test_reset_keeps_sessions_by_default(self, auth_service, owner, memory_store):
        forgot = await auth_service.forgot_password("owner@example.com")
        await auth_service.reset_password(forgot.reset_token, "NewPassword9")
        assert memory_store.get_user(owner.id).token_version == 0

    async def test_reset_revokes_sessions_when_enabled(self, memory_store, codec):
        settings = Settings(
            jwt_secret="unit-access-secret-0123456789-abcdefghijkl",
            jwt_refresh_secret="unit-refresh-secret-0123456789-mnopqrstuvw",
            password_hash_time_cost=1,
            revoke_sessions_on_password_change=True,
        )
        service = AuthService(memory_store, codec, settings)
        signed_up = await service.sign_up("owner@example.com", PASSWORD, "Owner")
        forgot = await service.forgot_password("owner@example.com")
        await service.reset_password(forgot.reset_token, "NewPassword9")

        assert memory_store.get_user(signed_up.user.id).token_version == 1
        with pytest.raises(AuthenticationError) as exc_info:
            await service.refresh(signed_up.tokens.refresh_token)
        assert exc_info.value.code == "TOKEN_REVOKED"


class TestChangePassword:
    async def test_change_password(self, auth_service, owner):
        await auth_service.change_password(owner.id, PASSWORD, "Changed12345")
        assert (await auth_service.login("owner@example.com", "Changed12345")).user.id == owner.id

    async def test_wrong_current_password(self, auth_service, owner):
        with pytest.raises(BadRequestError) as exc_info:
            await auth_service.change_password(owner.id, "Wrong12345", "Changed12345")
        assert exc_info.value.code == "INVALID_PASSWORD"
        assert exc_info.value.field == "currentPassword"

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.change_password("missing", PASSWORD, "Changed12345")


class TestAuthenticate:
    async def test_bearer_header(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        ctx = await auth_service.authenticate(f"Bearer {login.tokens.access_token}")
        assert ctx.user_id == owner.id
        assert ctx.type == UserType.OWNER
        assert ctx.owner_id == owner.id

    async def test_scheme_is_case_insensitive(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        ctx = await auth_service.authenticate(f"bearer {login.tokens.access_token}")
        assert ctx.email == "owner@example.com"

    @pytest.mark.parametrize(
        "header,message",
        [
            (None, "No authorization header provided"),
            ("", "No authorization header provided"),
            ("Basic abc", "Invalid authorization header format"),
            ("Bearer", "Invalid authorization header format"),
            ("Bearer a b", "Invalid authorization header format"),
        ],
    )
    async def test_bad_headers(self, auth_service, header, message):
        with pytest.raises(AuthenticationError) as exc_info:
            await auth_service.authenticate(header)
        assert exc_info.value.message == message
        assert exc_info.value.status_code == 401

    async def test_refresh_token_not_accepted_as_bearer(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        with pytest.raises(InvalidTokenError):
            await auth_service.authenticate(f"Bearer {login.tokens.refresh_token}")

    async def test_access_token_survives_logout(self, auth_service, owner):
        login = await auth_service.login("owner@example.com", PASSWORD)
        await auth_service.logout(owner.id)
        ctx = await auth_service.authenticate(f"Bearer {login.tokens.access_token}")
        assert ctx.user_id == owner.id

    async def test_staff_owner_id_is_parent(self, auth_service, owner):
        staff = await auth_service.sign_up(
            "staff@example.com", PASSWORD, "Staff", user_type="STAFF", parent_user_id=owner.id
        )
        ctx = await auth_service.authenticate(f"Bearer {staff.tokens.access_token}")
        assert ctx.type == UserType.STAFF
        assert ctx.owner_id == owner.id

    async def test_get_me(self, auth_service, owner):
        assert (await auth_service.get_me(owner.id)).email == "owner@example.com"
        with pytest.raises(NotFoundError):
            await auth_service.get_me("missing")
