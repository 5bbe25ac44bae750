from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from phonegate.config import OtpSettings, SmsSettings
from phonegate.logging import get_logger
from phonegate.service.errors import AuthenticationError, ServerError, ValidationError
from phonegate.service.phone import PhoneNormalizer, mask_phone
from phonegate.service.rate_limit import Algorithm, RateLimiter
from phonegate.service.sms import SmsDeliveryChannel, deliver_with_retry
from phonegate.storage.models import OtpPurpose, OtpRecord, utcnow

logger = get_logger(__name__)

GENERIC_OTP_FAILURE = "invalid or expired verification code"


@dataclass(frozen=True)
class OtpIssue:
    verification_id: str
    expires_at: datetime
    phone_masked: str


@dataclass(frozen=True)
class Consumed:
    record: OtpRecord


@dataclass(frozen=True)
class Rejected:
    reason: str
    attempts_remaining: Optional[int] = None


OtpResult = Union[Consumed, Rejected]


def _parse_purpose(purpose: Union[str, OtpPurpose]) -> OtpPurpose:
    try:
        return OtpPurpose(purpose)
    except ValueError:
        raise ValidationError(
            "unsupported verification purpose",
            detail={"errors": [{"field": "purpose", "constraint": "enum", "message": "unsupported verification purpose"}]},
        )


class OtpEngine:
    """Issues one-time codes and consumes them exactly once.

    ``verify`` is synchronous and never raises on a wrong code so it can run
    inside a caller's store transaction: the attempt counter must commit even
    when the caller then refuses the request.
    """

    def __init__(
        self,
        store,
        limiter: RateLimiter,
        channel: SmsDeliveryChannel,
        *,
        settings: Optional[OtpSettings] = None,
        sms_settings: Optional[SmsSettings] = None,
        phones: Optional[PhoneNormalizer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.channel = channel
        self.settings = settings or OtpSettings()
        self.sms_settings = sms_settings or SmsSettings()
        self.phones = phones or PhoneNormalizer()
        self._clock = clock

    @staticmethod
    def _hash_code(verification_id: str, code: str) -> str:
        return hashlib.sha256(f"{verification_id}:{code}".encode()).hexdigest()

    def _generate_code(self) -> str:
        length = self.settings.code_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    async def _enforce_issue_limits(self, phone: str, purpose: OtpPurpose, ip: Optional[str]) -> None:
        cfg = self.settings
        await self.limiter.enforce(
            f"otp:phone:{phone}",
            cfg.per_phone_limit,
            cfg.per_phone_window_seconds,
            Algorithm.SLIDING,
            message="too many verification codes requested",
        )
        await self.limiter.enforce(
            f"otp:purpose:{purpose.value}:{phone}",
            cfg.per_purpose_limit,
            cfg.per_purpose_window_seconds,
            Algorithm.FIXED,
            message="too many verification codes requested",
        )
        if ip:
            await self.limiter.enforce(
                f"otp:ip:{ip}",
                cfg.per_ip_limit,
                cfg.per_ip_window_seconds,
                Algorithm.FIXED,
                message="too many verification codes requested",
            )

    async def issue(
        self,
        phone: str,
        purpose: Union[str, OtpPurpose],
        ip: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> OtpIssue:
        canonical = self.phones.normalize(phone)
        purpose = _parse_purpose(purpose)
        await self._enforce_issue_limits(canonical.e164, purpose, ip)

        now = self._clock()
        verification_id = str(uuid.uuid4())
        code = self._generate_code()
        record = OtpRecord(
            verification_id=verification_id,
            phone=canonical.e164,
            code_hash=self._hash_code(verification_id, code),
            purpose=purpose.value,
            expires_at=now + timedelta(minutes=self.settings.ttl_minutes),
            max_attempts=self.settings.max_attempts,
            user_id=user_id,
            ip_address=ip,
            created_at=now,
        )
        self.store.insert_otp(record)

        try:
            await deliver_with_retry(
                self.channel,
                canonical.e164,
                self.sms_settings.template_for(purpose.value),
                code,
                max_attempts=self.sms_settings.max_attempts,
                backoff_seconds=self.sms_settings.backoff_seconds,
            )
        except ServerError:
            self.store.delete_otp(verification_id)
            raise

        masked = mask_phone(canonical.e164)
        logger.info(
            "otp_issued",
            verification_id=verification_id,
            purpose=purpose.value,
            phone_masked=masked,
        )
        return OtpIssue(verification_id=verification_id, expires_at=record.expires_at, phone_masked=masked)

    def verify(
        self,
        verification_id: str,
        code: str,
        *,
        phone: Optional[str] = None,
        purpose: Union[str, OtpPurpose, None] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OtpResult:
        now = now or self._clock()
        try:
            uuid.UUID(str(verification_id))
        except ValueError:
            return Rejected("not_found")
        purpose_value = OtpPurpose(purpose).value if purpose is not None else None

        with self.store.transaction():
            record = self.store.get_otp(verification_id, for_update=True)
            if record is None:
                return Rejected("not_found")
            if not record.is_consumable(now):
                return self._unusable(record)

            bound = (
                (phone is None or record.phone == phone)
                and (purpose_value is None or record.purpose == purpose_value)
                and (user_id is None or record.user_id == user_id)
            )
            matches = hmac.compare_digest(
                record.code_hash, self._hash_code(verification_id, str(code or ""))
            )
            if not (bound and matches):
                record.attempts += 1
                self.store.save_otp(record)
                remaining = max(0, record.max_attempts - record.attempts)
                logger.info(
                    "otp_verification_failed",
                    verification_id=verification_id,
                    attempts_remaining=remaining,
                    binding_mismatch=not bound,
                )
                return Rejected("exhausted" if remaining == 0 else "mismatch", remaining)

            record.verified_at = now
            self.store.save_otp(record)
        logger.info("otp_consumed", verification_id=verification_id, purpose=record.purpose)
        return Consumed(record)

    @staticmethod
    def _unusable(record: OtpRecord) -> Rejected:
        if record.is_verified:
            return Rejected("already_used", 0)
        if record.is_exhausted:
            return Rejected("exhausted", 0)
        return Rejected("expired", max(0, record.max_attempts - record.attempts))

    @staticmethod
    def rejection_error(result: Rejected) -> AuthenticationError:
        detail = {}
        if result.attempts_remaining is not None:
            detail["attempts_remaining"] = result.attempts_remaining
        return AuthenticationError(GENERIC_OTP_FAILURE, detail=detail)

    def consume(
        self,
        verification_id: str,
        code: str,
        *,
        phone: Optional[str] = None,
        purpose: Union[str, OtpPurpose, None] = None,
        user_id: Optional[str] = None,
    ) -> OtpRecord:
        result = self.verify(verification_id, code, phone=phone, purpose=purpose, user_id=user_id)
        if isinstance(result, Rejected):
            raise self.rejection_error(result)
        return result.record

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.purge_expired_otps(now or self._clock())

    def purge_verified_before(self, cutoff: datetime) -> int:
        return self.store.purge_verified_otps(cutoff)
