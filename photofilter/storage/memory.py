from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from photofilter.logging import get_logger
from photofilter.storage.errors import ConstraintViolation
from photofilter.storage.models import ShareGrant, User, utcnow


def _trim(tokens: List[str], keep: Optional[int]) -> List[str]:
    if keep and keep > 0 and len(tokens) > keep:
        return tokens[-keep:]
    return tokens


class MemoryStore:
    """In-process credential store persisted to a JSON file under ``fs_root``.

    Every read-modify-write runs under one re-entrant lock, which is what makes
    refresh rotation and verification-token consumption atomic here.
    """

    def __init__(self, fs_root: str = "/tmp/photofilter") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "credential_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _copy(user: User) -> User:
        # Callers get snapshots so they cannot mutate store state without a lock
        return replace(user, refresh_tokens=list(user.refresh_tokens))

    # users
    def create_user(
        self,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        with self._data_lock:
            if username in self.users:
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User.new(
                username,
                password_hash=password_hash,
                email=email,
                email_verified=email_verified,
            )
            self.users[username] = user
            self._persist_state()
            return self._copy(user)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(username)
            return self._copy(user) if user else None

    def get_user(self, subject_id: str) -> Optional[User]:
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.subject_id == subject_id), None
            )
            return self._copy(user) if user else None

    def set_password_hash(self, username: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(username)
            if not user:
                return None
            user.password_hash = password_hash
            self._persist_state()
            return self._copy(user)

    # refresh tokens
    def add_refresh_token(
        self, username: str, token_fingerprint: str, *, keep: Optional[int] = None
    ) -> bool:
        with self._data_lock:
            user = self.users.get(username)
            if not user:
                return False
            user.refresh_tokens = _trim(
                user.refresh_tokens + [token_fingerprint], keep
            )
            self._persist_state()
            return True

    def rotate_refresh_token(
        self,
        username: str,
        old_fingerprint: str,
        new_fingerprint: str,
        *,
        keep: Optional[int] = None,
    ) -> bool:
        with self._data_lock:
            user = self.users.get(username)
            if not user or old_fingerprint not in user.refresh_tokens:
                return False
            remaining = [t for t in user.refresh_tokens if t != old_fingerprint]
            user.refresh_tokens = _trim(remaining + [new_fingerprint], keep)
            self._persist_state()
            return True

    def has_refresh_token(self, username: str, token_fingerprint: str) -> bool:
        with self._data_lock:
            user = self.users.get(username)
            return bool(user and token_fingerprint in user.refresh_tokens)

    def clear_refresh_tokens(self, username: str) -> None:
        with self._data_lock:
            user = self.users.get(username)
            if not user or not user.refresh_tokens:
                return
            user.refresh_tokens = []
            self._persist_state()

    # email verification
    def set_email_verification_token(
        self,
        username: str,
        token: str,
        *,
        issued_at: datetime,
        expires_at: Optional[datetime],
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(username)
            if not user:
                return None
            user.email_verification_token = token
            user.email_verification_issued_at = issued_at
            user.email_verification_expires_at = expires_at
            self._persist_state()
            return self._copy(user)

    def consume_email_verification_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        if not token:
            return None
        current = now or utcnow()
        with self._data_lock:
            user = next(
                (
                    u
                    for u in self.users.values()
                    if u.email_verification_token == token
                ),
                None,
            )
            if not user:
                return None
            expires_at = user.email_verification_expires_at
            if expires_at is not None and expires_at <= current:
                return None
            user.email_verified = True
            user.email_verification_token = None
            user.email_verification_issued_at = None
            user.email_verification_expires_at = None
            self._persist_state()
            return self._copy(user)

    # persistence
    def _persist_state(self) -> None:
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["username"]: self._deserialize_user(u) for u in data.get("users", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "subject_id": user.subject_id,
            "username": user.username,
            "password_hash": user.password_hash,
            "email": user.email,
            "email_verified": user.email_verified,
            "email_verification_token": user.email_verification_token,
            "email_verification_issued_at": self._serialize_datetime(
                user.email_verification_issued_at
            ),
            "email_verification_expires_at": self._serialize_datetime(
                user.email_verification_expires_at
            ),
            "refresh_tokens": list(user.refresh_tokens),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            subject_id=str(data["subject_id"]),
            username=data["username"],
            password_hash=data.get("password_hash"),
            email=data.get("email"),
            email_verified=bool(data.get("email_verified", False)),
            email_verification_token=data.get("email_verification_token"),
            email_verification_issued_at=self._deserialize_datetime(
                data.get("email_verification_issued_at")
            ),
            email_verification_expires_at=self._deserialize_datetime(
                data.get("email_verification_expires_at")
            ),
            refresh_tokens=list(data.get("refresh_tokens") or []),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )


class MemoryShareStore:
    """Share grants held in process memory; lost on restart and not shared across instances."""

    def __init__(self) -> None:
        self.grants: Dict[str, ShareGrant] = {}
        self._lock = asyncio.Lock()

    async def put(self, grant: ShareGrant) -> None:
        async with self._lock:
            self.grants[grant.token] = grant

    async def get(self, token: str) -> Optional[ShareGrant]:
        async with self._lock:
            return self.grants.get(token)

    async def delete(self, token: str) -> None:
        async with self._lock:
            self.grants.pop(token, None)

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        current = now or utcnow()
        async with self._lock:
            expired = [t for t, g in self.grants.items() if g.is_expired(current)]
            for token in expired:
                self.grants.pop(token, None)
            return len(expired)
