from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation, StoreUnavailable
from schoolauth.storage.models import (
    Account,
    AccountStatus,
    AuditLogEntry,
    Role,
    utcnow,
)

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        username TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        role TEXT NOT NULL DEFAULT 'student',
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        status TEXT NOT NULL DEFAULT 'active',
        failed_login_count INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_count >= 0),
        locked_until TIMESTAMPTZ,
        reset_token TEXT,
        reset_token_expires TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        first_name TEXT NOT NULL DEFAULT '',
        last_name TEXT NOT NULL DEFAULT '',
        phone TEXT,
        address TEXT,
        date_of_birth TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CHECK ((reset_token IS NULL) = (reset_token_expires IS NULL))
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS accounts_email_key ON accounts (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS accounts_username_key ON accounts (lower(username))",
    """
    CREATE TABLE IF NOT EXISTS audit_logs (
        id UUID PRIMARY KEY,
        action TEXT NOT NULL,
        user_id UUID,
        details TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_logs_user_idx ON audit_logs (user_id, created_at)",
]

_REQUIRED_TABLES = ["accounts", "audit_logs"]


class PostgresStore:
    """Postgres-backed credential store; one statement per account mutation."""

    def __init__(self, dsn: str, *, pool: Optional[ConnectionPool] = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.OperationalError, PoolTimeout) as exc:
            self.logger.error("credential_store_unavailable", error=str(exc))
            raise StoreUnavailable("credential store unavailable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Fail fast when the identity tables are missing."""

        with self._connect() as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing)))
            )

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            role=Role(row.get("role") or Role.STUDENT.value),
            verified=bool(row.get("verified")),
            email_verified_at=row.get("email_verified_at"),
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            failed_login_count=int(row.get("failed_login_count") or 0),
            locked_until=row.get("locked_until"),
            reset_token=row.get("reset_token"),
            reset_token_expires=row.get("reset_token_expires"),
            last_login=row.get("last_login"),
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
            phone=row.get("phone"),
            address=row.get("address"),
            date_of_birth=row.get("date_of_birth"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    def _fetch_one(self, sql: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._account_from_row(row) if row else None

    def find_by_email_or_username(self, identifier: str) -> Optional[Account]:
        needle = (identifier or "").strip().lower()
        if not needle:
            return None
        return self._fetch_one(
            "SELECT * FROM accounts WHERE lower(email) = %s OR lower(username) = %s LIMIT 1",
            (needle, needle),
        )

    def find_by_id(self, account_id: str) -> Optional[Account]:
        return self._fetch_one("SELECT * FROM accounts WHERE id = %s", (account_id,))

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 AS present FROM accounts WHERE lower(username) = %s",
                (username.lower(),),
            ).fetchone()
        return bool(row)

    def insert_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO accounts (
                        id, email, username, password_hash, password_algo, role,
                        verified, status, first_name, last_name, phone, address,
                        date_of_birth, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account.id,
                        account.email.lower(),
                        account.username,
                        account.password_hash,
                        account.password_algo,
                        account.role.value,
                        account.verified,
                        account.status.value,
                        account.first_name,
                        account.last_name,
                        account.phone,
                        account.address,
                        account.date_of_birth,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def _update_returning(self, sql: str, params: tuple) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql + " RETURNING *", params).fetchone()
        return self._account_from_row(row) if row else None

    def update_lockout_fields(
        self,
        account_id: str,
        *,
        failed_login_count: int,
        locked_until: Optional[datetime],
        status: AccountStatus,
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE accounts
            SET failed_login_count = %s, locked_until = %s, status = %s, updated_at = now()
            WHERE id = %s
            """,
            (failed_login_count, locked_until, status.value, account_id),
        )

    def update_verification(
        self, account_id: str, *, verified: bool, verified_at: Optional[datetime]
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE accounts
            SET verified = %s, email_verified_at = %s, updated_at = now()
            WHERE id = %s
            """,
            (verified, verified_at, account_id),
        )

    def update_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE accounts
            SET reset_token = %s, reset_token_expires = %s, updated_at = now()
            WHERE id = %s
            """,
            (token, expires_at, account_id),
        )

    def clear_reset_token(self, account_id: str) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE accounts
            SET reset_token = NULL, reset_token_expires = NULL, updated_at = now()
            WHERE id = %s
            """,
            (account_id,),
        )

    def update_password_hash(
        self,
        account_id: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        clear_reset: bool = False,
        clear_lockout: bool = False,
    ) -> Optional[Account]:
        assignments = ["password_hash = %s", "password_algo = %s", "updated_at = now()"]
        if clear_reset:
            assignments += ["reset_token = NULL", "reset_token_expires = NULL"]
        if clear_lockout:
            assignments += [
                "failed_login_count = 0",
                "locked_until = NULL",
                "status = CASE WHEN status = 'locked' THEN 'active' ELSE status END",
            ]
        return self._update_returning(
            f"UPDATE accounts SET {', '.join(assignments)} WHERE id = %s",
            (password_hash, password_algo, account_id),
        )

    def update_status(self, account_id: str, status: AccountStatus) -> Optional[Account]:
        return self._update_returning(
            "UPDATE accounts SET status = %s, updated_at = now() WHERE id = %s",
            (status.value, account_id),
        )

    def update_role(self, account_id: str, role: Role) -> Optional[Account]:
        return self._update_returning(
            "UPDATE accounts SET role = %s, updated_at = now() WHERE id = %s",
            (role.value, account_id),
        )

    def update_profile(
        self,
        account_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE accounts
            SET first_name = COALESCE(%s, first_name),
                last_name = COALESCE(%s, last_name),
                phone = COALESCE(%s, phone),
                address = COALESCE(%s, address),
                updated_at = now()
            WHERE id = %s
            """,
            (first_name, last_name, phone, address, account_id),
        )

    def record_login(self, account_id: str, when: datetime) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE accounts
            SET failed_login_count = 0,
                locked_until = NULL,
                status = CASE WHEN status = 'locked' THEN 'active' ELSE status END,
                last_login = %s,
                updated_at = now()
            WHERE id = %s
            """,
            (when, account_id),
        )

    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs (id, action, user_id, details, ip_address, user_agent, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action,
                    entry.account_id,
                    entry.details,
                    entry.ip_address,
                    entry.user_agent,
                    json.dumps(entry.metadata or {}, default=str),
                    entry.created_at,
                ),
            )

    def list_audit_entries(
        self, account_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditLogEntry]:
        clauses, params = [], []
        if account_id is not None:
            clauses.append("user_id = %s")
            params.append(account_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_logs {where} ORDER BY created_at", tuple(params)
            ).fetchall()
        return [
            AuditLogEntry(
                id=str(row["id"]),
                action=row["action"],
                account_id=str(row["user_id"]) if row.get("user_id") else None,
                details=row.get("details"),
                ip_address=row.get("ip_address"),
                user_agent=row.get("user_agent"),
                metadata=row.get("metadata") or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
