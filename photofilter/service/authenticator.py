from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from photofilter.logging import get_logger, token_prefix
from photofilter.service.errors import (
    InvalidTokenError,
    MissingCredentialsError,
    TokenExpiredError,
)
from photofilter.service.identity import ExternalIdentityVerifier
from photofilter.service.tokens import ACCESS, LocalTokenCodec, VerifyStatus

logger = get_logger(__name__)

SOURCE_EXTERNAL = "external"
SOURCE_LOCAL = "local"


@dataclass
class Principal:
    """Caller identity resolved from a bearer token."""

    subject_id: str
    username: str
    email: Optional[str] = None
    email_verified: bool = False
    source: str = SOURCE_LOCAL
    claims: dict[str, Any] = field(default_factory=dict)


def _principal_from_external(claims: dict[str, Any]) -> Principal:
    username = (
        claims.get("cognito:username")
        or claims.get("username")
        or claims.get("preferred_username")
        or claims.get("email")
        or claims["sub"]
    )
    verified = claims.get("email_verified", False)
    if isinstance(verified, str):
        verified = verified.lower() == "true"
    return Principal(
        subject_id=str(claims["sub"]),
        username=str(username),
        email=claims.get("email"),
        email_verified=bool(verified),
        source=SOURCE_EXTERNAL,
        claims=claims,
    )


def _principal_from_local(claims: dict[str, Any]) -> Principal:
    return Principal(
        subject_id=str(claims["sub"]),
        username=str(claims.get("username") or ""),
        email=claims.get("email"),
        email_verified=bool(claims.get("email_verified", False)),
        source=SOURCE_LOCAL,
        claims=claims,
    )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credential = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    if not credential or " " in credential:
        return None
    return credential


class UnifiedAuthenticator:
    """Resolves a bearer token to a Principal using the external provider, then local tokens.

    The external verifier only gets the final word when it accepts the
    token. Any other outcome falls through to the local codec, whose verdict
    decides between a 401 (expired, refresh may help) and a 403.
    """

    def __init__(
        self,
        codec: LocalTokenCodec,
        external: Optional[ExternalIdentityVerifier] = None,
    ) -> None:
        self.codec = codec
        self.external = external

    async def authenticate(self, bearer_token: Optional[str]) -> Principal:
        if not bearer_token:
            raise MissingCredentialsError()

        if self.external is not None:
            ext = await self.external.verify(bearer_token)
            if ext.status is VerifyStatus.OK:
                return _principal_from_external(ext.claims)
            if ext.status is VerifyStatus.NOT_APPLICABLE:
                logger.debug("external_token_not_applicable", reason=ext.reason)
            else:
                logger.info(
                    "external_token_rejected",
                    status=ext.status.value,
                    reason=ext.reason,
                    token_prefix=token_prefix(bearer_token),
                )

        local = self.codec.verify(bearer_token, kind=ACCESS)
        if local.status is VerifyStatus.OK:
            return _principal_from_local(local.claims)
        if local.status is VerifyStatus.EXPIRED:
            raise TokenExpiredError()
        logger.info(
            "access_token_rejected",
            reason=local.reason,
            token_prefix=token_prefix(bearer_token),
        )
        raise InvalidTokenError()

    async def authenticate_header(self, authorization: Optional[str]) -> Principal:
        return await self.authenticate(extract_bearer(authorization))


__all__ = ["Principal", "UnifiedAuthenticator", "extract_bearer"]
