from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from zust.logging import get_logger
from zust.storage.errors import (
    ConstraintViolation,
    InvalidValueError,
    StorageUnavailableError,
)
from zust.storage.models import (
    Account,
    AccountStatus,
    Subscription,
    Video,
    VideoDetail,
    VideoStatus,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id UUID PRIMARY KEY,
        email VARCHAR(40) NOT NULL,
        username VARCHAR(20) NOT NULL,
        password_hash TEXT,
        description VARCHAR(100),
        status TEXT NOT NULL DEFAULT 'inactive'
            CHECK (status IN ('inactive', 'active', 'banned', 'locked')),
        role TEXT NOT NULL DEFAULT 'user',
        oauth_provider VARCHAR(20),
        oauth_provider_id VARCHAR(255),
        token_version INT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT accounts_email_key UNIQUE (email),
        CONSTRAINT accounts_username_key UNIQUE (username),
        CONSTRAINT accounts_oauth_identity_key UNIQUE (oauth_provider, oauth_provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        subscriber_id UUID NOT NULL REFERENCES accounts(id),
        subscribe_to_id UUID NOT NULL REFERENCES accounts(id),
        subscribed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (subscriber_id, subscribe_to_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS videos (
        id UUID PRIMARY KEY,
        title VARCHAR(50) NOT NULL,
        duration INT NOT NULL DEFAULT 0,
        description VARCHAR(500),
        publisher_id UUID NOT NULL REFERENCES accounts(id),
        status TEXT NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'published', 'deleted')),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    # Deleted videos release their title
    """
    CREATE UNIQUE INDEX IF NOT EXISTS videos_title_key
        ON videos (title) WHERE status <> 'deleted'
    """,
    """
    CREATE TABLE IF NOT EXISTS video_likes (
        video_id UUID NOT NULL REFERENCES videos(id),
        account_id UUID NOT NULL REFERENCES accounts(id),
        liked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (video_id, account_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS video_views (
        video_id UUID NOT NULL REFERENCES videos(id),
        account_id UUID NOT NULL REFERENCES accounts(id),
        viewed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (video_id, account_id)
    )
    """,
)

# Maps unique constraints to the request field they protect
_CONSTRAINT_FIELDS = {
    "accounts_email_key": "email",
    "accounts_username_key": "username",
    "accounts_oauth_identity_key": "oauth_provider_id",
    "videos_title_key": "title",
}

_ACCOUNT_COLUMNS = (
    "id, email, username, password_hash, description, status, role, "
    "oauth_provider, oauth_provider_id, token_version, created_at"
)


def _valid_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed account, subscription and video store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Borrow a pooled connection, translating driver errors.

        Unique and FK violations become ``ConstraintViolation``, values that
        do not fit their column ``InvalidValueError``; connectivity
        failures become ``StorageUnavailableError`` with the driver text only
        in the log.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            constraint = exc.diag.constraint_name
            raise ConstraintViolation(
                f"{_CONSTRAINT_FIELDS.get(constraint, 'value')} already exists",
                {"field": _CONSTRAINT_FIELDS.get(constraint), "constraint": constraint},
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced row not found",
                {"constraint": exc.diag.constraint_name},
            ) from exc
        except psycopg.DataError as exc:
            self.logger.warning(
                "postgres_invalid_value", error_type=type(exc).__name__, error=str(exc)
            )
            raise InvalidValueError("value does not fit the column") from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailableError("database unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row.get("password_hash"),
            description=row.get("description"),
            status=AccountStatus(row["status"]),
            role=row.get("role") or "user",
            oauth_provider=row.get("oauth_provider"),
            oauth_provider_id=row.get("oauth_provider_id"),
            token_version=int(row["token_version"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_video(row: Dict[str, Any]) -> Video:
        return Video(
            id=str(row["id"]),
            title=row["title"],
            publisher_id=str(row["publisher_id"]),
            description=row.get("description"),
            duration=int(row.get("duration") or 0),
            status=VideoStatus(row["status"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # -- accounts ---------------------------------------------------------

    def create_account_with_password(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = "user",
        status: AccountStatus = AccountStatus.INACTIVE,
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO accounts (id, email, username, password_hash, role, status)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (str(uuid.uuid4()), email, username, password_hash, role, AccountStatus(status).value),
            ).fetchone()
        return self._row_to_account(row)

    def create_account_with_oauth(
        self,
        email: str,
        username: str,
        provider: str,
        provider_id: str,
    ) -> Account:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                INSERT INTO accounts (id, email, username, status, oauth_provider, oauth_provider_id)
                VALUES (%s, %s, %s, 'active', %s, %s)
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (str(uuid.uuid4()), email, username, provider, provider_id),
            ).fetchone()
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        if not _valid_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s", (email,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS} FROM accounts
                WHERE oauth_provider = %s AND oauth_provider_id = %s
                """,
                (provider, provider_id),
            ).fetchone()
        return self._row_to_account(row)

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        if not _valid_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE accounts SET status = %s WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}",
                (AccountStatus(status).value, account_id),
            ).fetchone()
        return self._row_to_account(row)

    def set_account_role(self, account_id: str, role: str) -> Optional[Account]:
        if not _valid_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE accounts SET role = %s WHERE id = %s RETURNING {_ACCOUNT_COLUMNS}",
                (role, account_id),
            ).fetchone()
        return self._row_to_account(row)

    def activate_account(self, account_id: str) -> Optional[Account]:
        """Move an inactive account to active; other states are left untouched."""
        if not _valid_uuid(account_id):
            return None
        with self._connect() as conn:
            conn.execute(
                "UPDATE accounts SET status = 'active' WHERE id = %s AND status = 'inactive'",
                (account_id,),
            )
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row)

    def update_profile(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Account]:
        if not _valid_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE accounts
                SET username = COALESCE(%s, username),
                    description = COALESCE(%s, description)
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (username, description, account_id),
            ).fetchone()
        return self._row_to_account(row)

    # -- token versions ---------------------------------------------------

    def get_token_version(self, account_id: str) -> Optional[int]:
        if not _valid_uuid(account_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT token_version FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return int(row["token_version"]) if row else None

    def increment_token_version(
        self, account_id: str, *, expected: Optional[int] = None
    ) -> Optional[int]:
        """Atomically bump the version, optionally only from ``expected``."""
        if not _valid_uuid(account_id):
            return None
        if expected is None:
            query = (
                "UPDATE accounts SET token_version = token_version + 1 "
                "WHERE id = %s RETURNING token_version"
            )
            params: tuple = (account_id,)
        else:
            query = (
                "UPDATE accounts SET token_version = token_version + 1 "
                "WHERE id = %s AND token_version = %s RETURNING token_version"
            )
            params = (account_id, expected)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["token_version"]) if row else None

    # -- subscriptions ----------------------------------------------------

    def subscribe(self, subscriber_id: str, subscribe_to_id: str) -> Subscription:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO subscriptions (subscriber_id, subscribe_to_id)
                VALUES (%s, %s)
                ON CONFLICT (subscriber_id, subscribe_to_id) DO NOTHING
                """,
                (subscriber_id, subscribe_to_id),
            )
            row = conn.execute(
                """
                SELECT subscriber_id, subscribe_to_id, subscribed_at FROM subscriptions
                WHERE subscriber_id = %s AND subscribe_to_id = %s
                """,
                (subscriber_id, subscribe_to_id),
            ).fetchone()
        return Subscription(
            subscriber_id=str(row["subscriber_id"]),
            subscribe_to_id=str(row["subscribe_to_id"]),
            subscribed_at=row["subscribed_at"],
        )

    def unsubscribe(self, subscriber_id: str, subscribe_to_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM subscriptions WHERE subscriber_id = %s AND subscribe_to_id = %s",
                (subscriber_id, subscribe_to_id),
            )
            return cur.rowcount > 0

    def count_subscribers(self, account_id: str) -> int:
        if not _valid_uuid(account_id):
            return 0
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM subscriptions WHERE subscribe_to_id = %s",
                (account_id,),
            ).fetchone()
        return int(row["total"])

    # -- videos -----------------------------------------------------------

    def create_video(
        self, title: str, publisher_id: str, description: Optional[str] = None
    ) -> Video:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO videos (id, title, description, publisher_id)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), title, description, publisher_id),
            ).fetchone()
        return self._row_to_video(row)

    def publish_video(self, video_id: str, duration: int) -> Optional[Video]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE videos SET duration = %s, status = 'published', updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (duration, video_id),
            ).fetchone()
        return self._row_to_video(row) if row else None

    def delete_video(self, video_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE videos SET status = 'deleted', updated_at = now() WHERE id = %s",
                (video_id,),
            )
            return cur.rowcount > 0

    def get_video_detail(self, video_id: str) -> Optional[VideoDetail]:
        if not _valid_uuid(video_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT v.*, a.username AS publisher_username,
                    (SELECT COUNT(*) FROM subscriptions s
                        WHERE s.subscribe_to_id = v.publisher_id) AS total_subscribers,
                    (SELECT COUNT(*) FROM video_views vv WHERE vv.video_id = v.id) AS total_views,
                    (SELECT COUNT(*) FROM video_likes vl WHERE vl.video_id = v.id) AS total_likes
                FROM videos v
                JOIN accounts a ON a.id = v.publisher_id
                WHERE v.id = %s
                """,
                (video_id,),
            ).fetchone()
        if not row:
            return None
        return VideoDetail(
            video=self._row_to_video(row),
            publisher_username=row["publisher_username"],
            total_subscribers=int(row["total_subscribers"]),
            total_views=int(row["total_views"]),
            total_likes=int(row["total_likes"]),
        )

    def like_video(self, video_id: str, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO video_likes (video_id, account_id) VALUES (%s, %s)
                ON CONFLICT (video_id, account_id) DO NOTHING
                """,
                (video_id, account_id),
            )
            return cur.rowcount > 0

    def unlike_video(self, video_id: str, account_id: str) -> bool:
        if not _valid_uuid(video_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM video_likes WHERE video_id = %s AND account_id = %s",
                (video_id, account_id),
            )
            return cur.rowcount > 0

    def record_view(self, video_id: str, account_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO video_views (video_id, account_id) VALUES (%s, %s)
                ON CONFLICT (video_id, account_id) DO NOTHING
                """,
                (video_id, account_id),
            )
            return cur.rowcount > 0
