from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from phonegate.config import SessionSettings
from phonegate.logging import get_logger
from phonegate.service.audit import AuditEmitter
from phonegate.service.errors import (
    AuthenticationError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionRevokedError,
)
from phonegate.service.tokens import ACCESS, REFRESH, TokenIssuer, TokenPair, TokenSubject
from phonegate.storage.models import AccountStatus, AuditEvent, DeviceInfo, Session, User, utcnow

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    role: str = "user"
    roles: List[str] = field(default_factory=lambda: ["user"])
    device_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


@dataclass
class IssuedSession:
    session: Session
    tokens: TokenPair


class SessionManager:
    """Creates, validates, rotates and revokes sessions.

    Session creation locks the owning user row for the whole evict-and-insert
    step, so concurrent logins cannot push a user past ``max_sessions``.
    """

    def __init__(
        self,
        store,
        tokens: TokenIssuer,
        settings: Optional[SessionSettings] = None,
        *,
        audit: Optional[AuditEmitter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings or SessionSettings()
        self.audit = audit or AuditEmitter()
        self._clock = clock
        self.logger = logger

    def open_session(
        self,
        user: User,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Session:
        """Evict the oldest sessions over the cap and insert a new one.

        Safe to call inside a caller's transaction; it nests.
        """
        now = now or self._clock()
        with self.store.transaction():
            if self.store.get_user(user.id, for_update=True) is None:
                raise AuthenticationError("invalid credentials")
            valid = self.store.list_valid_sessions(user.id, now)
            excess = len(valid) - self.settings.max_sessions + 1
            evicted: List[str] = []
            if excess > 0:
                evicted = self.store.revoke_sessions(
                    [sess.id for sess in valid[:excess]], now, "session_limit"
                )
            session = Session.new(
                user.id,
                ttl_days=self.settings.ttl_days,
                device=device,
                ip_address=ip,
                now=now,
            )
            self.store.insert_session(session)
        for session_id in evicted:
            self.logger.info("session_evicted", user_id=user.id, session_id=session_id)
        self.logger.info("session_created", user_id=user.id, session_id=session.id)
        return session

    def mint(self, user: User, session: Session) -> TokenPair:
        return self.tokens.issue_pair(
            TokenSubject(
                user_id=user.id,
                session_id=session.id,
                roles=user.roles,
                device_id=session.device.device_id,
                refresh_jti=session.refresh_jti,
                refresh_not_after=session.expires_at,
            )
        )

    async def create(
        self,
        user: User,
        device: Optional[DeviceInfo] = None,
        ip: Optional[str] = None,
    ) -> IssuedSession:
        session = self.open_session(user, device, ip)
        # tokens only exist for committed sessions
        return IssuedSession(session=session, tokens=self.mint(user, session))

    async def validate(self, session_id: str) -> Session:
        session = self.store.get_session(session_id) if session_id else None
        if session is None:
            raise SessionNotFoundError("session not found")
        if session.is_revoked:
            raise SessionRevokedError("session revoked")
        if session.is_expired(self._clock()):
            raise SessionExpiredError("session expired")
        return session

    def _session_event(
        self,
        action: str,
        session: Session,
        now: datetime,
        *,
        after: Optional[dict] = None,
        ip: Optional[str] = None,
    ) -> AuditEvent:
        return AuditEvent(
            action=action,
            resource="session",
            actor_id=session.user_id,
            resource_id=session.id,
            after=after,
            ip_address=ip,
            session_id=session.id,
            created_at=now,
        )

    async def refresh(self, refresh_token: str, ip: Optional[str] = None) -> IssuedSession:
        claims = self.tokens.verify(refresh_token, REFRESH)
        session = await self.validate(claims.sid)
        if session.user_id != claims.sub:
            raise AuthenticationError("invalid or expired token")
        user = self.store.get_user(session.user_id)
        if user is None or user.status != AccountStatus.ACTIVE.value:
            raise AuthenticationError("account is not active")

        now = self._clock()
        new_jti = str(uuid.uuid4())
        if session.refresh_jti != claims.jti or not self.store.rotate_refresh_jti(
            session.id, claims.jti, new_jti, now
        ):
            self.logger.warning("refresh_token_replay", session_id=session.id, user_id=user.id)
            self.audit.emit(self._session_event("session.refresh_replay", session, now, ip=ip))
            raise AuthenticationError("invalid or expired token")
        session.refresh_jti = new_jti
        session.last_refreshed_at = now
        self.logger.info("session_refreshed", session_id=session.id, user_id=user.id)
        self.audit.emit(self._session_event("session.refreshed", session, now, ip=ip))
        return IssuedSession(session=session, tokens=self.mint(user, session))

    async def revoke(self, session_id: str, reason: str = "logout") -> bool:
        revoked = self.store.revoke_sessions([session_id], self._clock(), reason)
        if revoked:
            self.logger.info("session_revoked", session_id=session_id, reason=reason)
        return bool(revoked)

    async def revoke_all(
        self,
        user_id: str,
        except_session_id: Optional[str] = None,
        reason: str = "revoke_all",
    ) -> List[str]:
        revoked = self.store.revoke_user_sessions(
            user_id, self._clock(), reason, except_session_id=except_session_id
        )
        if revoked:
            self.logger.info(
                "user_sessions_revoked", user_id=user_id, count=len(revoked), reason=reason
            )
        return revoked

    async def list_active(self, user_id: str) -> List[Session]:
        return self.store.list_valid_sessions(user_id, self._clock())

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token")
        claims = self.tokens.verify(token, ACCESS)
        session = await self.validate(claims.sid)
        if session.user_id != claims.sub:
            raise AuthenticationError("invalid or expired token")
        user = self.store.get_user(claims.sub)
        if user is None or user.status != AccountStatus.ACTIVE.value:
            raise AuthenticationError("account is not active")
        return AuthContext(
            user_id=user.id,
            session_id=session.id,
            role=user.role,
            roles=user.roles,
            device_id=claims.device_id,
        )
