from __future__ import annotations

import contextlib
import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from phonegate.logging import get_logger
from phonegate.storage.errors import ConstraintViolation
from phonegate.storage.models import (
    AccountStatus,
    AuditEvent,
    DeviceInfo,
    OtpRecord,
    Session,
    User,
)


class MemoryStore:
    """In-process store with JSON snapshots for local development and tests.

    Every public method runs under a re-entrant lock. ``transaction()`` holds
    that lock for the whole block, so a transaction body is serialized against
    all other store calls; this is what gives OTP consumption and session-cap
    enforcement their check-and-set semantics here.
    """

    def __init__(self, fs_root: str = "/tmp/phonegate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.otps: Dict[str, OtpRecord] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so store methods can be called inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if persist and not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if self.persist and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[None]:
        """Run a block atomically; tables roll back if it raises."""

        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = None
            if outermost:
                snapshot = (
                    copy.deepcopy(self.users),
                    copy.deepcopy(self.sessions),
                    copy.deepcopy(self.otps),
                    list(self.audit_events),
                )
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                if outermost and snapshot is not None:
                    self.users, self.sessions, self.otps, self.audit_events = snapshot
                raise
            finally:
                self._tx_depth -= 1
            if outermost:
                self._persist_state()

    # users
    def create_user(self, user: User) -> User:
        with self.transaction():
            if any(existing.phone == user.phone for existing in self.users.values()):
                raise ConstraintViolation("phone already registered", {"field": "phone"})
            self.users[user.id] = copy.copy(user)
            return copy.copy(user)

    def get_user(self, user_id: str, *, for_update: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_phone(self, phone: str, *, for_update: bool = False) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.phone == phone:
                    return copy.copy(user)
            return None

    def save_user(self, user: User) -> User:
        with self.transaction():
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            for other in self.users.values():
                if other.id != user.id and other.phone == user.phone:
                    raise ConstraintViolation("phone already registered", {"field": "phone"})
            self.users[user.id] = copy.copy(user)
            return copy.copy(user)

    def delete_user(self, user_id: str) -> bool:
        with self.transaction():
            if self.users.pop(user_id, None) is None:
                return False
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for otp_id, otp in list(self.otps.items()):
                if otp.user_id == user_id:
                    self.otps.pop(otp_id, None)
            return True

    def list_users_pending_deletion(self, before: datetime, limit: int = 500) -> List[User]:
        with self._data_lock:
            due = [
                copy.copy(u)
                for u in self.users.values()
                if u.status == AccountStatus.PENDING_DELETION.value
                and u.pending_deletion_at is not None
                and u.pending_deletion_at <= before
            ]
            due.sort(key=lambda u: u.pending_deletion_at)
            return due[:limit]

    def list_expired_suspensions(self, now: datetime, limit: int = 500) -> List[User]:
        with self._data_lock:
            due = [
                copy.copy(u)
                for u in self.users.values()
                if u.status == AccountStatus.SUSPENDED.value
                and u.suspension_until is not None
                and u.suspension_until <= now
            ]
            return due[:limit]

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self.transaction():
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = copy.deepcopy(session)
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.deepcopy(sess) if sess else None

    def list_valid_sessions(self, user_id: str, now: datetime) -> List[Session]:
        """Valid sessions for a user, oldest first."""
        with self._data_lock:
            valid = [
                copy.deepcopy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_valid(now)
            ]
            valid.sort(key=lambda s: s.created_at)
            return valid

    def revoke_sessions(
        self, session_ids: Sequence[str], now: datetime, reason: str
    ) -> List[str]:
        with self.transaction():
            revoked: List[str] = []
            for sid in session_ids:
                sess = self.sessions.get(sid)
                if sess is None or sess.revoked_at is not None:
                    continue
                sess.revoked_at = now
                sess.revoke_reason = reason
                revoked.append(sid)
            return revoked

    def revoke_user_sessions(
        self,
        user_id: str,
        now: datetime,
        reason: str,
        *,
        except_session_id: Optional[str] = None,
    ) -> List[str]:
        with self.transaction():
            targets = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            return self.revoke_sessions(targets, now, reason)

    def rotate_refresh_jti(
        self, session_id: str, expected_jti: str, new_jti: str, now: datetime
    ) -> bool:
        """Swap the refresh jti only if it still equals ``expected_jti``."""
        with self.transaction():
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked_at is not None or sess.refresh_jti != expected_jti:
                return False
            sess.refresh_jti = new_jti
            sess.last_refreshed_at = now
            return True

    def purge_sessions(self, before: datetime) -> int:
        with self.transaction():
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.expires_at <= before
                or (sess.revoked_at is not None and sess.revoked_at <= before)
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    # otp
    def insert_otp(self, record: OtpRecord) -> OtpRecord:
        with self.transaction():
            if record.user_id is not None and record.user_id not in self.users:
                raise ConstraintViolation("otp user missing", {"user_id": record.user_id})
            self.otps[record.verification_id] = copy.copy(record)
            return record

    def get_otp(self, verification_id: str, *, for_update: bool = False) -> Optional[OtpRecord]:
        with self._data_lock:
            record = self.otps.get(verification_id)
            return copy.copy(record) if record else None

    def save_otp(self, record: OtpRecord) -> OtpRecord:
        with self.transaction():
            if record.verification_id not in self.otps:
                raise ConstraintViolation(
                    "otp not found", {"verification_id": record.verification_id}
                )
            self.otps[record.verification_id] = copy.copy(record)
            return record

    def delete_otp(self, verification_id: str) -> bool:
        with self.transaction():
            return self.otps.pop(verification_id, None) is not None

    def purge_expired_otps(self, now: datetime) -> int:
        with self.transaction():
            stale = [
                vid
                for vid, rec in self.otps.items()
                if rec.verified_at is None and rec.expires_at <= now
            ]
            for vid in stale:
                self.otps.pop(vid, None)
            return len(stale)

    def purge_verified_otps(self, before: datetime) -> int:
        with self.transaction():
            stale = [
                vid
                for vid, rec in self.otps.items()
                if rec.verified_at is not None and rec.verified_at <= before
            ]
            for vid in stale:
                self.otps.pop(vid, None)
            return len(stale)

    # audit
    def record_audit_event(self, event: AuditEvent) -> None:
        with self.transaction():
            self.audit_events.append(copy.deepcopy(event))

    def list_audit_events(
        self, *, resource_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditEvent]:
        with self._data_lock:
            return [
                copy.deepcopy(e)
                for e in self.audit_events
                if (resource_id is None or e.resource_id == resource_id)
                and (action is None or e.action == action)
            ]

    # persistence
    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        data: Dict[str, Any] = dict(user.__dict__)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _deserialize_user(self, data: dict) -> User:
        parsed = dict(data)
        for key in (
            "phone_verified_at",
            "suspension_until",
            "deactivated_at",
            "pending_deletion_at",
            "last_failed_login_at",
            "password_changed_at",
            "last_login_at",
            "created_at",
            "updated_at",
        ):
            parsed[key] = self._deserialize_datetime(parsed.get(key))
        return User(**parsed)

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "refresh_jti": sess.refresh_jti,
            "created_at": self._serialize_datetime(sess.created_at),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "device": sess.device.to_dict(),
            "ip_address": sess.ip_address,
            "revoked_at": self._serialize_datetime(sess.revoked_at),
            "revoke_reason": sess.revoke_reason,
            "last_refreshed_at": self._serialize_datetime(sess.last_refreshed_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            refresh_jti=data["refresh_jti"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device=DeviceInfo.from_dict(data.get("device")),
            ip_address=data.get("ip_address"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoke_reason=data.get("revoke_reason"),
            last_refreshed_at=self._deserialize_datetime(data.get("last_refreshed_at")),
        )

    def _serialize_otp(self, rec: OtpRecord) -> dict:
        data: Dict[str, Any] = dict(rec.__dict__)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = self._serialize_datetime(value)
        return data

    def _deserialize_otp(self, data: dict) -> OtpRecord:
        parsed = dict(data)
        for key in ("expires_at", "created_at", "verified_at"):
            parsed[key] = self._deserialize_datetime(parsed.get(key))
        return OtpRecord(**parsed)

    def _serialize_audit(self, event: AuditEvent) -> dict:
        data: Dict[str, Any] = dict(event.__dict__)
        data["created_at"] = self._serialize_datetime(event.created_at)
        return data

    def _deserialize_audit(self, data: dict) -> AuditEvent:
        parsed = dict(data)
        parsed["created_at"] = self._deserialize_datetime(parsed.get("created_at"))
        return AuditEvent(**parsed)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "otps": [self._serialize_otp(o) for o in self.otps.values()],
            "audit_events": [self._serialize_audit(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.otps = {
            o["verification_id"]: self._deserialize_otp(o) for o in data.get("otps", [])
        }
        self.audit_events = [self._deserialize_audit(e) for e in data.get("audit_events", [])]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            otps=len(self.otps),
        )
        return True
