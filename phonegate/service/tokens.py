from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from phonegate.config import TokenSettings
from phonegate.logging import get_logger
from phonegate.service.errors import AuthenticationError

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenSubject:
    """Who a token pair is minted for."""

    user_id: str
    session_id: str
    roles: Sequence[str] = ("user",)
    device_id: Optional[str] = None
    refresh_jti: Optional[str] = None
    refresh_not_after: Optional[datetime] = None


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    sid: str
    jti: str
    iat: int
    exp: int
    iss: str
    aud: str
    token_type: str
    roles: List[str] = field(default_factory=list)
    device_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """HS256 access/refresh tokens with a current and an optional previous key.

    New tokens are signed with the current key and carry its ``kid``;
    verification accepts either key so a rotation does not log everyone out.
    """

    def __init__(self, settings: TokenSettings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock
        self.current_kid = settings.jwt_key_id
        self._keys: Dict[str, bytes] = {settings.jwt_key_id: settings.jwt_secret.encode()}
        if settings.jwt_previous_secret:
            previous_kid = settings.jwt_previous_key_id or f"{settings.jwt_key_id}-previous"
            self._keys.setdefault(previous_kid, settings.jwt_previous_secret.encode())

    def _sign(self, signing_input: str, key: bytes) -> str:
        return _encode_segment(hmac.new(key, signing_input.encode(), hashlib.sha256).digest())

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT", "kid": self.current_kid}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, self._keys[self.current_kid])}"

    def _claims(self, subject: TokenSubject, kind: str, ttl_seconds: int, jti: str) -> Dict[str, Any]:
        now = int(self._clock())
        exp = now + ttl_seconds
        if kind == REFRESH and subject.refresh_not_after is not None:
            # a refresh token never outlives its session
            exp = min(exp, int(subject.refresh_not_after.timestamp()))
        return {
            "iss": self.settings.issuer,
            "aud": self.settings.audience,
            "sub": subject.user_id,
            "sid": subject.session_id,
            "device_id": subject.device_id,
            "roles": list(subject.roles),
            "token_type": kind,
            "jti": jti,
            "iat": now,
            "exp": exp,
        }

    def issue_access(self, subject: TokenSubject) -> str:
        payload = self._claims(
            subject, ACCESS, self.settings.access_ttl_minutes * 60, str(uuid.uuid4())
        )
        return self._encode(payload)

    def issue_refresh(self, subject: TokenSubject) -> str:
        if not subject.refresh_jti:
            raise ValueError("refresh tokens require the session's refresh_jti")
        payload = self._claims(
            subject, REFRESH, self.settings.refresh_ttl_days * 86400, subject.refresh_jti
        )
        return self._encode(payload)

    def issue_pair(self, subject: TokenSubject) -> TokenPair:
        access = self.issue_access(subject)
        refresh = self.issue_refresh(subject)
        access_claims = self._unverified_payload(access)
        refresh_claims = self._unverified_payload(refresh)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=datetime.fromtimestamp(access_claims["exp"], tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_claims["exp"], tz=timezone.utc),
        )

    @staticmethod
    def _unverified_payload(token: str) -> Dict[str, Any]:
        return json.loads(_decode_segment(token.split(".")[1]))

    def verify(self, token: str, expected_kind: str) -> TokenClaims:
        payload = self._decode(token)
        if payload is None:
            raise AuthenticationError("invalid or expired token")
        if payload.get("token_type") != expected_kind:
            logger.warning("jwt_wrong_kind", expected=expected_kind, got=payload.get("token_type"))
            raise AuthenticationError("invalid or expired token")
        try:
            return TokenClaims(
                sub=str(payload["sub"]),
                sid=str(payload["sid"]),
                jti=str(payload["jti"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                iss=payload["iss"],
                aud=payload["aud"],
                token_type=payload["token_type"],
                roles=list(payload.get("roles") or []),
                device_id=payload.get("device_id"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("jwt_claims_incomplete")
            raise AuthenticationError("invalid or expired token")

    def _decode(self, token: str) -> Optional[Dict[str, Any]]:
        if not isinstance(token, str) or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a token cannot choose its own verification scheme
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            return None
        kid = header.get("kid") or self.current_kid
        if not isinstance(kid, str):
            logger.warning("jwt_invalid_key_id")
            return None
        key = self._keys.get(kid)
        if key is None:
            logger.warning("jwt_unknown_key_id", kid=kid)
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected = self._sign(signing_input, key).encode("ascii")
        if not hmac.compare_digest(expected, sig_b64.encode("ascii")):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None

        if payload.get("iss") != self.settings.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.audience in aud
        else:
            valid_aud = aud == self.settings.audience
        if not valid_aud:
            return None

        leeway = self.settings.clock_skew_seconds
        now = self._clock()
        try:
            exp_ts = float(payload["exp"])
            iat_ts = float(payload["iat"])
        except (KeyError, TypeError, ValueError):
            return None
        if exp_ts <= now - leeway:
            return None
        if iat_ts > now + leeway:
            logger.warning("jwt_issued_in_future", iat=iat_ts)
            return None
        return payload
