from __future__ import annotations

import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from photofilter.logging import get_logger
from photofilter.storage.errors import ConstraintViolation
from photofilter.storage.models import User, utcnow

# Upper bound used when no refresh-token cap is requested
_UNBOUNDED = 2_147_483_647

_SCHEMA = """
CREATE TABLE IF NOT EXISTS app_user (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    password_hash TEXT,
    email TEXT,
    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
    email_verification_token TEXT UNIQUE,
    email_verification_issued_at TIMESTAMPTZ,
    email_verification_expires_at TIMESTAMPTZ,
    refresh_tokens TEXT[] NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
)
"""

# Appends to the array after removing ``old`` and keeps the newest ``keep`` entries
_TRIMMED_APPEND = """
(SELECT a[greatest(coalesce(array_length(a, 1), 0) - %(keep)s + 1, 1):]
   FROM (SELECT array_append(array_remove(refresh_tokens, %(old)s), %(new)s) AS a) s)
"""


class PostgresStore:
    """Credential store on Postgres.

    Each conditional mutation is a single ``UPDATE ... WHERE ... RETURNING``
    so concurrent refreshes or verification clicks cannot both succeed.
    """

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            subject_id=str(row["id"]),
            username=row["username"],
            password_hash=row.get("password_hash"),
            email=row.get("email"),
            email_verified=bool(row.get("email_verified")),
            email_verification_token=row.get("email_verification_token"),
            email_verification_issued_at=row.get("email_verification_issued_at"),
            email_verification_expires_at=row.get("email_verification_expires_at"),
            refresh_tokens=list(row.get("refresh_tokens") or []),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(
        self,
        username: str,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, password_hash, email, email_verified)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, password_hash, email or None, email_verified),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("username already exists", {"field": "username"})
        return self._row_to_user(row)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user(self, subject_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (subject_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(self, username: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE username = %s RETURNING *",
                (password_hash, username),
            ).fetchone()
        return self._row_to_user(row) if row else None

    # refresh tokens
    def add_refresh_token(
        self, username: str, token_fingerprint: str, *, keep: Optional[int] = None
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET refresh_tokens = {_TRIMMED_APPEND} "
                "WHERE username = %(username)s RETURNING id",
                {
                    "keep": keep if keep and keep > 0 else _UNBOUNDED,
                    "old": token_fingerprint,
                    "new": token_fingerprint,
                    "username": username,
                },
            ).fetchone()
        return row is not None

    def rotate_refresh_token(
        self,
        username: str,
        old_fingerprint: str,
        new_fingerprint: str,
        *,
        keep: Optional[int] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET refresh_tokens = {_TRIMMED_APPEND} "
                "WHERE username = %(username)s AND %(old)s = ANY(refresh_tokens) "
                "RETURNING id",
                {
                    "keep": keep if keep and keep > 0 else _UNBOUNDED,
                    "old": old_fingerprint,
                    "new": new_fingerprint,
                    "username": username,
                },
            ).fetchone()
        if row is None:
            self.logger.info("refresh_rotation_rejected", username=username)
        return row is not None

    def clear_refresh_tokens(self, username: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET refresh_tokens = '{}' WHERE username = %s",
                (username,),
            )

    # email verification
    def set_email_verification_token(
        self,
        username: str,
        token: str,
        *,
        issued_at: datetime,
        expires_at: Optional[datetime],
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                   SET email_verification_token = %s,
                       email_verification_issued_at = %s,
                       email_verification_expires_at = %s
                 WHERE username = %s
                RETURNING *
                """,
                (token, issued_at, expires_at, username),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def consume_email_verification_token(
        self, token: str, *, now: Optional[datetime] = None
    ) -> Optional[User]:
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                   SET email_verified = TRUE,
                       email_verification_token = NULL,
                       email_verification_issued_at = NULL,
                       email_verification_expires_at = NULL
                 WHERE email_verification_token = %s
                   AND (email_verification_expires_at IS NULL
                        OR email_verification_expires_at > %s)
                RETURNING *
                """,
                (token, now or utcnow()),
            ).fetchone()
        return self._row_to_user(row) if row else None
