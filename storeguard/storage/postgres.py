from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from storeguard.logging import get_logger
from storeguard.storage.common import (
    MfaSecretCipher,
    normalize_ip_address,
    safe_row_value,
)
from storeguard.storage.errors import ConstraintViolation
from storeguard.storage.models import (
    Account,
    AccountStatus,
    BackupCode,
    PasswordHistoryEntry,
    Role,
    normalize_email,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'CUSTOMER',
        tenant_id TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        name TEXT,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verification_token TEXT UNIQUE,
        verification_expires TIMESTAMPTZ,
        reset_token TEXT UNIQUE,
        reset_expires TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        last_login_ip TEXT,
        password_changed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_history (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        hashed_password TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_history_account_idx ON password_history (account_id, created_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS mfa_backup_code (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        hashed_code TEXT NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS mfa_backup_code_account_idx ON mfa_backup_code (account_id, hashed_code)",
)


class PostgresStore:
    """Postgres-backed account store.

    Each mutation that the security invariants depend on (lockout counter,
    reset-token consumption, backup-code consumption) is a single
    ``UPDATE ... RETURNING`` statement so row-level locking serialises
    concurrent callers.
    """

    def __init__(self, dsn: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._mfa_cipher = MfaSecretCipher(mfa_encryption_key)
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the account tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _row_to_account(self, row: Optional[dict]) -> Optional[Account]:
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role") or Role.CUSTOMER,
            tenant_id=row.get("tenant_id"),
            status=row.get("status") or AccountStatus.ACTIVE,
            name=row.get("name"),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_secret=self._mfa_cipher.decrypt(row.get("mfa_secret")),
            email_verified=bool(row.get("email_verified", False)),
            verification_token=row.get("verification_token"),
            verification_expires=row.get("verification_expires"),
            reset_token=row.get("reset_token"),
            reset_expires=row.get("reset_expires"),
            last_login_at=row.get("last_login_at"),
            last_login_ip=safe_row_value(row, "last_login_ip"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row.get("created_at") or utcnow(),
            deleted_at=row.get("deleted_at"),
        )

    def _update_returning(self, sql: str, params: Tuple[Any, ...]) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return self._row_to_account(row)

    # -- accounts -------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        role: Role | str = Role.CUSTOMER,
        tenant_id: Optional[str] = None,
        name: Optional[str] = None,
        status: AccountStatus | str = AccountStatus.ACTIVE,
        email_verified: bool = False,
        verification_token: Optional[str] = None,
        verification_expires: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Account:
        created = now or utcnow()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (
                        id, email, password_hash, role, tenant_id, status, name,
                        email_verified, verification_token, verification_expires,
                        password_changed_at, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        normalize_email(email),
                        password_hash,
                        Role(role).value,
                        tenant_id,
                        AccountStatus(status).value,
                        name,
                        email_verified,
                        verification_token,
                        verification_expires,
                        created,
                        created,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_account(row)

    def update_account_role(
        self, account_id: str, role: Role | str, tenant_id: Optional[str] = None
    ) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET role = %s, tenant_id = %s WHERE id = %s RETURNING *",
            (Role(role).value, tenant_id, account_id),
        )

    def set_account_status(
        self, account_id: str, status: AccountStatus | str, *, now: Optional[datetime] = None
    ) -> Optional[Account]:
        status = AccountStatus(status)
        return self._update_returning(
            """
            UPDATE account
            SET status = %s,
                deleted_at = CASE WHEN %s AND deleted_at IS NULL THEN %s ELSE deleted_at END
            WHERE id = %s
            RETURNING *
            """,
            (status.value, status == AccountStatus.DELETED, now or utcnow(), account_id),
        )

    # -- lockout --------------------------------------------------------

    def record_failed_login(
        self, account_id: str, now: datetime, max_attempts: int, lock_until: datetime
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE account
            SET failed_login_attempts = failed_login_attempts + 1,
                locked_until = CASE
                    WHEN failed_login_attempts + 1 >= %s THEN %s
                    ELSE locked_until
                END
            WHERE id = %s
            RETURNING *
            """,
            (max_attempts, lock_until, account_id),
        )

    def record_successful_login(
        self,
        account_id: str,
        now: datetime,
        ip_address: Optional[str] = None,
        *,
        clear_lockout: bool = True,
    ) -> Optional[Account]:
        params = (now, normalize_ip_address(ip_address), account_id)
        if not clear_lockout:
            return self._update_returning(
                "UPDATE account SET last_login_at = %s, last_login_ip = %s WHERE id = %s RETURNING *",
                params,
            )
        return self._update_returning(
            """
            UPDATE account
            SET failed_login_attempts = 0,
                locked_until = NULL,
                last_login_at = %s,
                last_login_ip = %s
            WHERE id = %s
            RETURNING *
            """,
            params,
        )

    def reset_failed_logins(self, account_id: str) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET failed_login_attempts = 0, locked_until = NULL WHERE id = %s RETURNING *",
            (account_id,),
        )

    # -- passwords ------------------------------------------------------

    def update_password_hash(self, account_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE account SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, account_id),
            ).fetchone()
        return row is not None

    def set_password(
        self, account_id: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE account
            SET password_hash = %s,
                password_changed_at = %s,
                reset_token = NULL,
                reset_expires = NULL,
                failed_login_attempts = 0,
                locked_until = NULL
            WHERE id = %s
            RETURNING *
            """,
            (password_hash, now, account_id),
        )

    def add_password_history(
        self, account_id: str, hashed_password: str, *, retain: int, now: Optional[datetime] = None
    ) -> PasswordHistoryEntry:
        entry = PasswordHistoryEntry(
            account_id=account_id,
            hashed_password=hashed_password,
            created_at=now or utcnow(),
        )
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO password_history (id, account_id, hashed_password, created_at) VALUES (%s, %s, %s, %s)",
                (entry.id, account_id, hashed_password, entry.created_at),
            )
            conn.execute(
                """
                DELETE FROM password_history
                WHERE account_id = %s
                  AND id NOT IN (
                    SELECT id FROM password_history
                    WHERE account_id = %s
                    ORDER BY created_at DESC
                    LIMIT %s
                  )
                """,
                (account_id, account_id, retain),
            )
        return entry

    def list_password_history(
        self, account_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM password_history
                WHERE account_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                id=str(row["id"]),
                account_id=str(row["account_id"]),
                hashed_password=row["hashed_password"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # -- reset and verification tokens ---------------------------------

    def set_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET reset_token = %s, reset_expires = %s WHERE id = %s RETURNING *",
            (token, expires_at, account_id),
        )

    def get_account_by_reset_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE reset_token = %s", (token,)
            ).fetchone()
        return self._row_to_account(row)

    def consume_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[Account]:
        if not token:
            return None
        return self._update_returning(
            """
            UPDATE account
            SET password_hash = %s,
                password_changed_at = %s,
                reset_token = NULL,
                reset_expires = NULL,
                failed_login_attempts = 0,
                locked_until = NULL
            WHERE reset_token = %s
              AND reset_expires > %s
              AND deleted_at IS NULL
            RETURNING *
            """,
            (password_hash, now, token, now),
        )

    def set_verification_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET verification_token = %s, verification_expires = %s WHERE id = %s RETURNING *",
            (token, expires_at, account_id),
        )

    def consume_verification_token(self, token: str, now: datetime) -> Optional[Account]:
        if not token:
            return None
        return self._update_returning(
            """
            UPDATE account
            SET email_verified = TRUE,
                verification_token = NULL,
                verification_expires = NULL
            WHERE verification_token = %s
              AND verification_expires > %s
              AND deleted_at IS NULL
            RETURNING *
            """,
            (token, now),
        )

    # -- MFA ------------------------------------------------------------

    def set_mfa_secret(self, account_id: str, secret: str) -> Optional[Account]:
        return self._update_returning(
            "UPDATE account SET mfa_secret = %s, mfa_enabled = FALSE WHERE id = %s RETURNING *",
            (self._mfa_cipher.encrypt(secret), account_id),
        )

    def enable_mfa(self, account_id: str) -> Optional[Account]:
        return self._update_returning(
            """
            UPDATE account
            SET mfa_enabled = TRUE,
                failed_login_attempts = 0,
                locked_until = NULL
            WHERE id = %s AND mfa_secret IS NOT NULL
            RETURNING *
            """,
            (account_id,),
        )

    def disable_mfa(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "DELETE FROM mfa_backup_code WHERE account_id = %s", (account_id,)
                )
                row = conn.execute(
                    "UPDATE account SET mfa_enabled = FALSE, mfa_secret = NULL WHERE id = %s RETURNING *",
                    (account_id,),
                ).fetchone()
        return self._row_to_account(row)

    def replace_backup_codes(
        self,
        account_id: str,
        hashed_codes: Iterable[str],
        *,
        expires_at: datetime,
        now: datetime,
    ) -> List[BackupCode]:
        batch = [
            BackupCode(
                account_id=account_id,
                hashed_code=hashed,
                expires_at=expires_at,
                created_at=now,
            )
            for hashed in hashed_codes
        ]
        try:
            with self._connect() as conn:
                with conn.transaction():
                    conn.execute(
                        "DELETE FROM mfa_backup_code WHERE account_id = %s", (account_id,)
                    )
                    with conn.cursor() as cur:
                        cur.executemany(
                            """
                            INSERT INTO mfa_backup_code (id, account_id, hashed_code, created_at, expires_at)
                            VALUES (%s, %s, %s, %s, %s)
                            """,
                            [
                                (code.id, account_id, code.hashed_code, now, expires_at)
                                for code in batch
                            ],
                        )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for backup codes", {"account_id": account_id}
            )
        return batch

    def consume_backup_code(self, account_id: str, hashed_code: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_backup_code
                SET used = TRUE, used_at = %s
                WHERE id = (
                    SELECT id FROM mfa_backup_code
                    WHERE account_id = %s
                      AND hashed_code = %s
                      AND used = FALSE
                      AND expires_at > %s
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                AND used = FALSE
                RETURNING id
                """,
                (now, account_id, hashed_code, now),
            ).fetchone()
        return row is not None

    def count_backup_codes(self, account_id: str, now: datetime) -> Tuple[int, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) FILTER (WHERE used = FALSE AND expires_at > %s) AS remaining,
                    COUNT(*) AS total
                FROM mfa_backup_code
                WHERE account_id = %s
                """,
                (now, account_id),
            ).fetchone()
        if not row:
            return 0, 0
        return int(row["remaining"] or 0), int(row["total"] or 0)

    def ping(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except Exception as exc:
            self.logger.warning("postgres_ping_failed", error=str(exc))
            return False
        return True


__all__ = ["PostgresStore"]
