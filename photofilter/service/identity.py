from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from jwt import PyJWK

from photofilter.config import Settings
from photofilter.logging import get_logger, token_prefix
from photofilter.service.tokens import VerifyResult

logger = get_logger(__name__)

ALLOWED_ALGORITHMS = ("RS256", "RS384", "RS512")


class JwksUnavailableError(Exception):
    """Signing keys could not be fetched or parsed."""


class ExternalIdentityVerifier:
    """Verifies RS256 ID tokens issued by an external identity provider.

    Signing keys are read from the provider's JWKS endpoint and cached by
    key id. The cache is refreshed when it ages out and when a token names an
    unknown key id, the latter no more often than ``min_refresh_seconds`` so a
    stream of forged key ids cannot hammer the provider.
    """

    def __init__(
        self,
        *,
        issuer: str,
        jwks_url: str,
        client_id: Optional[str] = None,
        token_use: Optional[str] = "id",
        cache_seconds: int = 3600,
        min_refresh_seconds: int = 60,
        http_timeout: float = 5.0,
        leeway_seconds: int = 0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.issuer = issuer.rstrip("/")
        self.jwks_url = jwks_url
        self.client_id = client_id
        self.token_use = token_use
        self.cache_seconds = cache_seconds
        self.min_refresh_seconds = min_refresh_seconds
        self.http_timeout = http_timeout
        self.leeway_seconds = leeway_seconds
        self._transport = transport
        self._clock = clock
        self._keys: Dict[str, PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._last_attempt: Optional[float] = None
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> Optional["ExternalIdentityVerifier"]:
        if not settings.identity_configured:
            return None
        return cls(
            issuer=settings.resolved_identity_issuer,
            jwks_url=settings.resolved_identity_jwks_url,
            client_id=settings.identity_client_id,
            token_use=settings.identity_token_use or None,
            cache_seconds=settings.identity_jwks_cache_seconds,
            min_refresh_seconds=settings.identity_jwks_min_refresh_seconds,
            http_timeout=settings.identity_http_timeout_seconds,
            leeway_seconds=settings.token_leeway_seconds,
            transport=transport,
        )

    async def verify(self, token: str) -> VerifyResult:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError:
            return VerifyResult.not_applicable("not a JWS")
        alg = header.get("alg")
        if alg not in ALLOWED_ALGORITHMS:
            return VerifyResult.not_applicable(f"algorithm {alg} not used by provider")
        try:
            unverified = jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return VerifyResult.not_applicable("unreadable claims")
        if str(unverified.get("iss", "")).rstrip("/") != self.issuer:
            return VerifyResult.not_applicable("issuer mismatch")

        kid = header.get("kid")
        if not kid:
            return VerifyResult.invalid("missing key id")
        try:
            signing_key = await self._signing_key(kid)
        except JwksUnavailableError as exc:
            logger.warning("identity_jwks_unavailable", error=str(exc))
            return VerifyResult.invalid("signing keys unavailable")
        if signing_key is None:
            logger.info("identity_unknown_kid", kid=kid, token_prefix=token_prefix(token))
            return VerifyResult.invalid("unknown key id")

        # Access tokens carry the app client in client_id rather than aud
        check_aud = bool(self.client_id) and self.token_use != "access"
        try:
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=[alg],
                audience=self.client_id if check_aud else None,
                issuer=unverified.get("iss"),
                leeway=self.leeway_seconds,
                options={
                    "verify_aud": check_aud,
                    "require": ["exp", "iat", "iss", "sub"],
                },
            )
        except jwt.ExpiredSignatureError:
            return VerifyResult.expired()
        except jwt.InvalidAudienceError:
            return VerifyResult.invalid("wrong audience")
        except jwt.InvalidTokenError as exc:
            return VerifyResult.invalid(f"verification failed: {exc}")

        if self.token_use and claims.get("token_use") != self.token_use:
            return VerifyResult.invalid(f"expected token_use={self.token_use}")
        if (
            self.client_id
            and self.token_use == "access"
            and claims.get("client_id") != self.client_id
        ):
            return VerifyResult.invalid("wrong client")
        return VerifyResult.success(claims)

    async def _signing_key(self, kid: str) -> Optional[PyJWK]:
        if self._cache_stale():
            try:
                await self._refresh_keys()
            except JwksUnavailableError:
                if not self._keys:
                    raise
                logger.warning("identity_jwks_stale_refresh_failed", cached=len(self._keys))
        key = self._keys.get(kid)
        if key is None and self._may_refresh():
            await self._refresh_keys()
            key = self._keys.get(kid)
        return key

    def _cache_stale(self) -> bool:
        if self._fetched_at is None:
            return self._may_refresh()
        return self._clock() - self._fetched_at >= self.cache_seconds and self._may_refresh()

    def _may_refresh(self) -> bool:
        if self._last_attempt is None:
            return True
        return self._clock() - self._last_attempt >= self.min_refresh_seconds

    async def _refresh_keys(self) -> None:
        seen = self._last_attempt
        async with self._refresh_lock:
            if self._last_attempt != seen:
                # Another request refreshed while this one waited
                return
            self._last_attempt = self._clock()
            data = await self._fetch_jwks()
            keys: Dict[str, PyJWK] = {}
            for jwk_data in data.get("keys", []):
                kid = jwk_data.get("kid")
                if not kid or jwk_data.get("use", "sig") != "sig":
                    continue
                try:
                    keys[kid] = PyJWK(jwk_data)
                except (jwt.PyJWKError, jwt.InvalidKeyError) as exc:
                    logger.warning("identity_jwk_skipped", kid=kid, error=str(exc))
            if not keys:
                raise JwksUnavailableError("no usable signing keys in JWKS")
            self._keys = keys
            self._fetched_at = self._clock()
            logger.info("identity_jwks_refreshed", keys=len(keys))

    async def _fetch_jwks(self) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(
                timeout=self.http_timeout, transport=self._transport
            ) as client:
                resp = await client.get(self.jwks_url)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise JwksUnavailableError(f"JWKS fetch failed: {exc}") from exc
        if not isinstance(data, dict):
            raise JwksUnavailableError("JWKS document is not an object")
        return data


__all__ = ["ALLOWED_ALGORITHMS", "ExternalIdentityVerifier", "JwksUnavailableError"]
