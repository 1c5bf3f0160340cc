from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    subject_id: str
    username: str
    password_hash: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_issued_at: Optional[datetime] = None
    email_verification_expires_at: Optional[datetime] = None
    # SHA-256 fingerprints of live refresh tokens, newest last
    refresh_tokens: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        email_verified: bool = False,
    ) -> "User":
        return cls(
            subject_id=str(uuid.uuid4()),
            username=username,
            password_hash=password_hash,
            email=email or None,
            email_verified=email_verified,
        )


@dataclass
class ShareGrant:
    """Anonymous read access to exactly one resource variant until ``expires_at``."""

    token: str
    resource_id: str
    resource_variant: str
    owner_subject_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "resource_id": self.resource_id,
            "resource_variant": self.resource_variant,
            "owner_subject_id": self.owner_subject_id,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ShareGrant":
        return cls(
            token=data["token"],
            resource_id=data["resource_id"],
            resource_variant=data["resource_variant"],
            owner_subject_id=data["owner_subject_id"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
