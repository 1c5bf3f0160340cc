from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from photofilter.config import Settings
from photofilter.logging import get_logger
from photofilter.storage.models import User

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
TOKEN_KINDS = (ACCESS, REFRESH)


class VerifyStatus(str, Enum):
    OK = "ok"
    NOT_APPLICABLE = "not_applicable"
    INVALID = "invalid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of checking a bearer token against one verifier.

    ``NOT_APPLICABLE`` means the token is not shaped like this verifier's
    tokens and the caller should try the next one. ``INVALID`` and ``EXPIRED``
    are definite rejections; ``claims`` is only populated for ``OK``.
    """

    status: VerifyStatus
    claims: dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is VerifyStatus.OK

    @classmethod
    def success(cls, claims: dict[str, Any]) -> "VerifyResult":
        return cls(VerifyStatus.OK, claims)

    @classmethod
    def not_applicable(cls, reason: str) -> "VerifyResult":
        return cls(VerifyStatus.NOT_APPLICABLE, reason=reason)

    @classmethod
    def invalid(cls, reason: str) -> "VerifyResult":
        return cls(VerifyStatus.INVALID, reason=reason)

    @classmethod
    def expired(cls, reason: str = "token expired") -> "VerifyResult":
        return cls(VerifyStatus.EXPIRED, reason=reason)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    claims: dict[str, Any]
    expires_at: datetime


class LocalTokenCodec:
    """Issues and verifies HS256-signed compact JWS tokens for local sessions."""

    algorithm = "HS256"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        leeway_seconds: int = 0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must be set")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "LocalTokenCodec":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.token_leeway_seconds,
        )

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user: User, kind: str, ttl: timedelta) -> IssuedToken:
        if kind not in TOKEN_KINDS:
            raise ValueError(f"unknown token kind: {kind}")
        now = int(self._clock())
        exp = now + int(ttl.total_seconds())
        claims: dict[str, Any] = {
            "sub": user.subject_id,
            "username": user.username,
            "kind": kind,
            "iat": now,
            "exp": exp,
            # Distinguishes tokens minted within the same second
            "jti": uuid.uuid4().hex,
            "iss": self.issuer,
            "aud": self.audience,
        }
        if kind == ACCESS:
            claims["email"] = user.email
            claims["email_verified"] = bool(user.email_verified)
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(signing_input)}"
        return IssuedToken(
            token=token,
            claims=claims,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
        )

    def verify(self, token: str, *, kind: Optional[str] = None) -> VerifyResult:
        """Check signature, then issuer/audience, then kind, then expiry."""
        if not token or not isinstance(token, str):
            return VerifyResult.invalid("empty token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return VerifyResult.invalid("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            return VerifyResult.invalid("malformed header")
        if not isinstance(header, dict) or header.get("alg") != self.algorithm:
            alg = header.get("alg") if isinstance(header, dict) else None
            logger.debug("local_token_wrong_algorithm", alg=alg)
            return VerifyResult.invalid("unsupported algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return VerifyResult.invalid("bad signature")

        try:
            claims = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            return VerifyResult.invalid("malformed payload")
        if not isinstance(claims, dict):
            return VerifyResult.invalid("malformed payload")

        if claims.get("iss") != self.issuer:
            return VerifyResult.invalid("wrong issuer")
        aud = claims.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return VerifyResult.invalid("wrong audience")
        if not claims.get("sub"):
            return VerifyResult.invalid("missing subject")
        if kind is not None and claims.get("kind") != kind:
            return VerifyResult.invalid(f"expected {kind} token")

        exp = claims.get("exp")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return VerifyResult.invalid("missing expiry")
        if exp_ts <= self._clock() - self.leeway_seconds:
            return VerifyResult.expired()
        return VerifyResult.success(claims)
