from __future__ import annotations

import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from photofilter.config import Settings
from photofilter.logging import get_logger, token_prefix
from photofilter.service.authenticator import Principal
from photofilter.service.errors import (
    NotFoundError,
    RateLimitedError,
    ShareTokenExpiredError,
    ShareTokenNotFoundError,
    ValidationError,
    VerificationTokenNotFoundError,
)
from photofilter.service.sessions import AuthStore
from photofilter.storage.models import ShareGrant, User, utcnow

logger = get_logger(__name__)


class ShareStore(Protocol):
    async def put(self, grant: ShareGrant) -> None: ...

    async def get(self, token: str) -> Optional[ShareGrant]: ...

    async def delete(self, token: str) -> None: ...

    async def purge_expired(self, now: Optional[datetime] = None) -> int: ...


class EmailVerificationManager:
    """Single-use email verification tokens stored on the user record."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=settings.email_verification_ttl_hours)
        self.cooldown = timedelta(
            seconds=settings.email_verification_resend_cooldown_seconds
        )
        self._clock = clock

    async def issue(self, user: User) -> str:
        """Create a fresh token for ``user``, replacing any earlier one."""
        if not user.email:
            raise ValidationError(
                "no email address associated with this account",
                detail={"field": "email"},
            )
        if user.email_verified:
            raise ValidationError("email is already verified")
        now = self._clock()
        last = user.email_verification_issued_at
        if last is not None and now - last < self.cooldown:
            retry_after = int((self.cooldown - (now - last)).total_seconds()) + 1
            raise RateLimitedError(
                "verification email recently sent",
                detail={"retry_after": retry_after},
            )
        token = secrets.token_urlsafe(32)
        updated = self.store.set_email_verification_token(
            user.username,
            token,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        if updated is None:
            raise NotFoundError("user not found")
        logger.info("email_verification_issued", subject_id=user.subject_id)
        return token

    async def consume(self, token: str) -> User:
        user = self.store.consume_email_verification_token(token or "", now=self._clock())
        if user is None:
            # Unknown, already used and expired tokens are indistinguishable to callers
            logger.info("email_verification_rejected", token_prefix=token_prefix(token))
            raise VerificationTokenNotFoundError()
        logger.info("email_verified", subject_id=user.subject_id)
        return user


class ShareTokenManager:
    """Time-boxed anonymous links to a single resource variant."""

    def __init__(
        self,
        share_store: ShareStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.share_store = share_store
        self.max_ttl_hours = settings.share_token_max_ttl_hours
        self._clock = clock

    async def create(
        self,
        owner: Principal,
        resource_id: str,
        resource_variant: str,
        ttl_hours: float,
    ) -> ShareGrant:
        if not resource_id or not resource_variant:
            raise ValidationError("resource_id and variant are required")
        if not math.isfinite(ttl_hours) or not 0 <= ttl_hours <= self.max_ttl_hours:
            raise ValidationError(
                f"ttl_hours must be between 0 and {self.max_ttl_hours}",
                detail={"field": "ttl_hours"},
            )
        now = self._clock()
        grant = ShareGrant(
            token=secrets.token_urlsafe(24),
            resource_id=resource_id,
            resource_variant=resource_variant,
            owner_subject_id=owner.subject_id,
            expires_at=now + timedelta(hours=ttl_hours),
            created_at=now,
        )
        await self.share_store.put(grant)
        logger.info(
            "share_token_created",
            subject_id=owner.subject_id,
            resource_id=resource_id,
            ttl_hours=ttl_hours,
        )
        return grant

    async def resolve(self, token: str) -> ShareGrant:
        grant = await self.share_store.get(token) if token else None
        if grant is None:
            raise ShareTokenNotFoundError()
        if grant.is_expired(self._clock()):
            await self.share_store.delete(token)
            logger.info("share_token_expired", token_prefix=token_prefix(token))
            raise ShareTokenExpiredError()
        return grant

    async def cleanup_expired(self) -> int:
        purged = await self.share_store.purge_expired(self._clock())
        if purged:
            logger.info("share_tokens_purged", count=purged)
        return purged


__all__ = ["EmailVerificationManager", "ShareStore", "ShareTokenManager"]
