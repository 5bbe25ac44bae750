from __future__ import annotations

import contextlib
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from phonegate.logging import get_logger
from phonegate.storage.errors import ConstraintViolation, StoreUnavailable
from phonegate.storage.models import (
    AccountStatus,
    AuditEvent,
    DeviceInfo,
    OtpRecord,
    Session,
    User,
)

_USER_COLUMNS = (
    "id",
    "phone",
    "password_hash",
    "role",
    "status",
    "phone_verified",
    "phone_verified_at",
    "suspension_reason",
    "suspension_until",
    "deactivated_at",
    "pending_deletion_at",
    "failed_login_attempts",
    "last_failed_login_at",
    "password_changed_at",
    "last_login_at",
    "login_count",
    "registration_ip",
    "last_ip",
    "created_at",
    "updated_at",
)

_REQUIRED_TABLES = ("users", "user_sessions", "otp_verifications", "audit_logs")


class PostgresStore:
    """Postgres-backed store for users, sessions, OTP records and audit events.

    ``transaction()`` binds one pooled connection to the current context; all
    store calls made inside the block run on that connection, and a nested
    ``transaction()`` becomes a savepoint.
    """

    def __init__(self, dsn: str, fs_root: Optional[str] = None, *, pool: Any = None) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root) if fs_root else None
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._tx_conn: ContextVar[Optional[Connection]] = ContextVar(
            f"phonegate_pg_tx_{id(self)}", default=None
        )
        if pool is None:
            self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        active = self._tx_conn.get()
        if active is not None:
            yield active
            return
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.OperationalError as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("database unavailable") from exc

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        active = self._tx_conn.get()
        if active is not None:
            with active.transaction():
                yield
            return
        with self._connect() as conn:
            token = self._tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield
            finally:
                self._tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/001_auth_core.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        values = {col: row.get(col) for col in _USER_COLUMNS}
        values["id"] = str(row["id"])
        values["failed_login_attempts"] = row.get("failed_login_attempts") or 0
        values["login_count"] = row.get("login_count") or 0
        values["phone_verified"] = bool(row.get("phone_verified"))
        return User(**values)

    def create_user(self, user: User) -> User:
        placeholders = ", ".join(["%s"] * len(_USER_COLUMNS))
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO users ({', '.join(_USER_COLUMNS)}) VALUES ({placeholders})",
                    tuple(getattr(user, col) for col in _USER_COLUMNS),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("phone already registered", {"field": "phone"})
        return user

    def get_user(self, user_id: str, *, for_update: bool = False) -> Optional[User]:
        query = "SELECT * FROM users WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_phone(self, phone: str, *, for_update: bool = False) -> Optional[User]:
        query = "SELECT * FROM users WHERE phone = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (phone,)).fetchone()
        return self._row_to_user(row) if row else None

    def save_user(self, user: User) -> User:
        mutable = [col for col in _USER_COLUMNS if col not in {"id", "created_at"}]
        assignments = ", ".join(f"{col} = %s" for col in mutable)
        try:
            with self._connect() as conn:
                result = conn.execute(
                    f"UPDATE users SET {assignments} WHERE id = %s",
                    tuple(getattr(user, col) for col in mutable) + (user.id,),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("phone already registered", {"field": "phone"})
        if result.rowcount == 0:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return user

    def delete_user(self, user_id: str) -> bool:
        # user_sessions and otp_verifications cascade; audit_logs keep the row
        with self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    def list_users_pending_deletion(self, before: datetime, limit: int = 500) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE status = %s AND pending_deletion_at <= %s
                ORDER BY pending_deletion_at
                LIMIT %s
                """,
                (AccountStatus.PENDING_DELETION.value, before, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_expired_suspensions(self, now: datetime, limit: int = 500) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM users
                WHERE status = %s AND suspension_until IS NOT NULL AND suspension_until <= %s
                LIMIT %s
                """,
                (AccountStatus.SUSPENDED.value, now, limit),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # sessions
    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_jti=row["refresh_jti"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            device=DeviceInfo.from_dict(row.get("device")),
            ip_address=row.get("ip_address"),
            revoked_at=row.get("revoked_at"),
            revoke_reason=row.get("revoke_reason"),
            last_refreshed_at=row.get("last_refreshed_at"),
        )

    def insert_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_sessions (id, user_id, refresh_jti, device, ip_address, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_jti,
                        Jsonb(session.device.to_dict()),
                        session.ip_address,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_valid_sessions(self, user_id: str, now: datetime) -> List[Session]:
        """Valid sessions for a user, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM user_sessions
                WHERE user_id = %s AND revoked_at IS NULL AND expires_at > %s
                ORDER BY created_at ASC
                """,
                (user_id, now),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def revoke_sessions(
        self, session_ids: Sequence[str], now: datetime, reason: str
    ) -> List[str]:
        if not session_ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_sessions
                SET revoked_at = %s, revoke_reason = %s
                WHERE id = ANY(%s::uuid[]) AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason, list(session_ids)),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def revoke_user_sessions(
        self,
        user_id: str,
        now: datetime,
        reason: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE user_sessions
                SET revoked_at = %s, revoke_reason = %s
                WHERE user_id = %s AND revoked_at IS NULL
                  AND (%s::uuid IS NULL OR id <> %s::uuid)
                RETURNING id
                """,
                (now, reason, user_id, except_session_id, except_session_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, new_jti: str, now: datetime
    ) -> bool:
        """Swap the refresh jti only if it still equals ``expected_jti``."""
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE user_sessions
                SET refresh_jti = %s, last_refreshed_at = %s
                WHERE id = %s AND refresh_jti = %s AND revoked_at IS NULL
                """,
                (new_jti, now, session_id, expected_jti),
            )
            return result.rowcount == 1

    def purge_sessions(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM user_sessions WHERE expires_at <= %s OR revoked_at <= %s",
                (before, before),
            )
            return result.rowcount

    # otp
    @staticmethod
    def _row_to_otp(row: Dict[str, Any]) -> OtpRecord:
        return OtpRecord(
            verification_id=str(row["verification_id"]),
            phone=row["phone"],
            code_hash=row["code_hash"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            max_attempts=row["max_attempts"],
            attempts=row["attempts"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            verified_at=row.get("verified_at"),
        )

    def insert_otp(self, record: OtpRecord) -> OtpRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_verifications
                        (verification_id, user_id, phone, code_hash, purpose, attempts,
                         max_attempts, ip_address, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.verification_id,
                        record.user_id,
                        record.phone,
                        record.code_hash,
                        record.purpose,
                        record.attempts,
                        record.max_attempts,
                        record.ip_address,
                        record.created_at,
                        record.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("otp user missing", {"user_id": record.user_id})
        return record

    def get_otp(self, verification_id: str, *, for_update: bool = False) -> Optional[OtpRecord]:
        query = "SELECT * FROM otp_verifications WHERE verification_id = %s"
        if for_update:
            query += " FOR UPDATE"
        with self._connect() as conn:
            row = conn.execute(query, (verification_id,)).fetchone()
        return self._row_to_otp(row) if row else None

    def save_otp(self, record: OtpRecord) -> OtpRecord:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE otp_verifications
                SET attempts = %s, verified_at = %s
                WHERE verification_id = %s
                """,
                (record.attempts, record.verified_at, record.verification_id),
            )
        if result.rowcount == 0:
            raise ConstraintViolation(
                "otp not found", {"verification_id": record.verification_id}
            )
        return record

    def delete_otp(self, verification_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_verifications WHERE verification_id = %s",
                (verification_id,),
            )
            return result.rowcount > 0

    def purge_expired_otps(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_verifications WHERE verified_at IS NULL AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    def purge_verified_otps(self, before: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM otp_verifications WHERE verified_at IS NOT NULL AND verified_at <= %s",
                (before,),
            )
            return result.rowcount

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_logs
                    (actor_id, action, resource, resource_id, before, after, ip_address, session_id, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.actor_id,
                    event.action,
                    event.resource,
                    event.resource_id,
                    Jsonb(event.before) if event.before is not None else None,
                    Jsonb(event.after) if event.after is not None else None,
                    event.ip_address,
                    event.session_id,
                    event.created_at,
                ),
            )

    def list_audit_events(
        self, *, resource_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM audit_logs
                WHERE (%s::text IS NULL OR resource_id = %s)
                  AND (%s::text IS NULL OR action = %s)
                ORDER BY id
                """,
                (resource_id, resource_id, action, action),
            ).fetchall()
        return [
            AuditEvent(
                action=row["action"],
                resource=row["resource"],
                actor_id=str(row["actor_id"]) if row.get("actor_id") else None,
                resource_id=row.get("resource_id"),
                before=row.get("before"),
                after=row.get("after"),
                ip_address=row.get("ip_address"),
                session_id=row.get("session_id"),
                created_at=row["created_at"],
            )
            for row in rows
        ]
