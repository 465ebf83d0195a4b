from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from payauth.logging import get_logger
from payauth.service import messages
from payauth.service.errors import InvalidTokenError, TokenExpiredError
from payauth.storage.models import User, UserType

logger = get_logger(__name__)

RESET_PURPOSE = "reset_password"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


def _is_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def _valid_access_claims(payload: dict[str, Any]) -> bool:
    parent = payload.get("parentUserId")
    return (
        _is_str(payload.get("userId"))
        and _is_str(payload.get("email"))
        and payload.get("type") in {t.value for t in UserType}
        and (parent is None or _is_str(parent))
    )


def _valid_refresh_claims(payload: dict[str, Any]) -> bool:
    version = payload.get("tokenVersion")
    return (
        _is_str(payload.get("userId"))
        and isinstance(version, int)
        and not isinstance(version, bool)
        and version >= 0
    )


def _valid_reset_claims(payload: dict[str, Any]) -> bool:
    return _is_str(payload.get("userId")) and _is_str(payload.get("email"))


_CLAIM_CHECKS: dict[TokenKind, Callable[[dict[str, Any]], bool]] = {
    TokenKind.ACCESS: _valid_access_claims,
    TokenKind.REFRESH: _valid_refresh_claims,
    TokenKind.RESET: _valid_reset_claims,
}


class TokenCodec:
    """Signs and verifies the three HS256 token kinds.

    Access and reset tokens share the access secret; refresh tokens use a
    separate secret so a leaked access key cannot mint long-lived refresh
    tokens. The codec checks signatures, issuer/audience, expiry and claim
    shape only: reset ``purpose`` and refresh ``tokenVersion`` are the
    caller's business.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        *,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=30),
        refresh_ttl: timedelta = timedelta(days=7),
        reset_ttl: timedelta = timedelta(hours=2),
        leeway_seconds: int = 0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not access_secret or not refresh_secret:
            raise ValueError("token secrets must be non-empty")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
            TokenKind.RESET: access_secret.encode(),
        }
        self._ttls = {
            TokenKind.ACCESS: access_ttl,
            TokenKind.REFRESH: refresh_ttl,
            TokenKind.RESET: reset_ttl,
        }
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(cls, settings) -> "TokenCodec":
        return cls(
            settings.jwt_secret,
            settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            reset_ttl=timedelta(minutes=settings.reset_token_ttl_minutes),
            leeway_seconds=settings.jwt_leeway_seconds,
        )

    @property
    def access_ttl_seconds(self) -> int:
        return int(self._ttls[TokenKind.ACCESS].total_seconds())

    # issuing ---------------------------------------------------------------

    def issue_access(self, user: User) -> str:
        return self._issue(
            TokenKind.ACCESS,
            {
                "userId": user.id,
                "email": user.email,
                "type": user.type.value,
                "parentUserId": user.parent_user_id,
            },
        )

    def issue_refresh(self, user_id: str, token_version: int) -> str:
        return self._issue(
            TokenKind.REFRESH, {"userId": user_id, "tokenVersion": int(token_version)}
        )

    def issue_reset(self, user_id: str, email: str) -> str:
        return self._issue(
            TokenKind.RESET, {"userId": user_id, "email": email, "purpose": RESET_PURPOSE}
        )

    def issue_pair(self, user: User) -> TokenPair:
        return TokenPair(
            access_token=self.issue_access(user),
            refresh_token=self.issue_refresh(user.id, user.token_version),
            expires_in=self.access_ttl_seconds,
        )

    def _issue(self, kind: TokenKind, claims: dict[str, Any]) -> str:
        now = self._clock()
        payload = {
            **claims,
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttls[kind]).timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        return self.encode(payload, self._secrets[kind])

    # wire format -----------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    @classmethod
    def _sign(cls, signing_input: str, secret: bytes) -> str:
        return cls._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    @classmethod
    def encode(
        cls, payload: dict[str, Any], secret: bytes, *, header: Optional[dict] = None
    ) -> str:
        header = header or {"alg": "HS256", "typ": "JWT"}
        header_enc = cls._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = cls._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{cls._sign(signing_input, secret)}"

    # verification ----------------------------------------------------------

    def verify(self, kind: TokenKind | str, token: str) -> dict[str, Any]:
        """Return the payload of a valid ``kind`` token.

        Raises:
            TokenExpiredError: signature is valid but ``exp`` has passed
            InvalidTokenError: anything else wrong with the token
        """
        kind = TokenKind(kind)
        # JWT segments are base64url; anything outside ASCII is malformed.
        if not isinstance(token, str) or not token.isascii() or token.count(".") != 2:
            raise self._invalid(kind, "malformed")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            raise self._invalid(kind, "header_decode_failed")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.warning("jwt_invalid_algorithm", alg=alg, kind=kind.value)
            raise self._invalid(kind, "algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", self._secrets[kind])
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise self._invalid(kind, "signature")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise self._invalid(kind, "payload_decode_failed")
        if not isinstance(payload, dict):
            raise self._invalid(kind, "payload_not_object")

        if payload.get("iss") != self.issuer:
            raise self._invalid(kind, "issuer")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            raise self._invalid(kind, "audience")

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise self._invalid(kind, "missing_exp")
        if self._clock().timestamp() >= exp + self.leeway_seconds:
            raise TokenExpiredError(messages.TOKEN_EXPIRED.message)

        if not _CLAIM_CHECKS[kind](payload):
            raise self._invalid(kind, "claims")
        return payload

    @staticmethod
    def _invalid(kind: TokenKind, reason: str) -> InvalidTokenError:
        logger.debug("token_rejected", kind=kind.value, reason=reason)
        return InvalidTokenError(messages.INVALID_TOKEN.message)
