from __future__ import annotations

import math
import re
import secrets
from typing import Any, Dict, List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from phonegate.config import PasswordPolicySettings
from phonegate.logging import get_logger
from phonegate.service.errors import ValidationError

logger = get_logger(__name__)

SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'
_SPECIAL_RE = re.compile(r'[!@#$%^&*(),.?":{}|<>]')
_OTHER_RE = re.compile(r'[^a-zA-Z0-9!@#$%^&*(),.?":{}|<>]')

_WEAK_WORDS = ("password", "qwerty", "admin", "welcome", "login", "master", "secret", "abc123")
_NUMERIC_RUNS = ("123456", "012345", "987654", "111111", "000000")
_PATTERN_CHECKS = (
    re.compile(r"(\w)\1{2,}"),
    re.compile(r"(\d)\1{3,}"),
    re.compile(r"^[a-zA-Z]+$"),
    re.compile(r"^[0-9]+$"),
    re.compile(r"^(.)\1*$"),
)


def _has_sequential_digits(password: str, run: int = 4) -> bool:
    """True when ``run`` consecutive digits step by +1 or -1 throughout."""

    streak_up = streak_down = 1
    for prev, cur in zip(password, password[1:]):
        if prev.isdigit() and cur.isdigit():
            step = int(cur) - int(prev)
            streak_up = streak_up + 1 if step == 1 else 1
            streak_down = streak_down + 1 if step == -1 else 1
        else:
            streak_up = streak_down = 1
        if streak_up >= run or streak_down >= run:
            return True
    return False


def charset_size(password: str) -> int:
    size = 0
    if re.search(r"[a-z]", password):
        size += 26
    if re.search(r"[A-Z]", password):
        size += 26
    if re.search(r"[0-9]", password):
        size += 10
    if _SPECIAL_RE.search(password):
        size += 22
    if _OTHER_RE.search(password):
        size += 10
    return size


def estimate_entropy(password: str) -> float:
    if not password:
        return 0.0
    return len(password) * math.log2(charset_size(password))


def has_common_pattern(password: str) -> bool:
    lowered = password.lower()
    if any(word in lowered for word in _WEAK_WORDS):
        return True
    if any(run in password for run in _NUMERIC_RUNS):
        return True
    if any(pattern.search(password) for pattern in _PATTERN_CHECKS):
        return True
    return _has_sequential_digits(password)


class CredentialPolicy:
    """Password policy checks. ``validate`` reports every violated rule at once."""

    def __init__(self, settings: Optional[PasswordPolicySettings] = None) -> None:
        self.settings = settings or PasswordPolicySettings()

    def violations(self, password: Any) -> List[Dict[str, str]]:
        cfg = self.settings
        errors: List[Dict[str, str]] = []

        def add(constraint: str, message: str) -> None:
            errors.append({"field": "password", "constraint": constraint, "message": message})

        if not isinstance(password, str) or not password:
            add("required", "password is required")
            return errors

        if len(password) < cfg.min_length:
            add(f"min_length:{cfg.min_length}", f"password must be at least {cfg.min_length} characters long")
        if len(password) > cfg.max_length:
            add(f"max_length:{cfg.max_length}", f"password must not exceed {cfg.max_length} characters")
        if cfg.require_uppercase and not re.search(r"[A-Z]", password):
            add("uppercase_required", "password must contain at least one uppercase letter")
        if cfg.require_lowercase and not re.search(r"[a-z]", password):
            add("lowercase_required", "password must contain at least one lowercase letter")
        if cfg.require_digit and not re.search(r"\d", password):
            add("digit_required", "password must contain at least one digit")
        if cfg.require_special and not _SPECIAL_RE.search(password):
            add("special_char_required", "password must contain at least one special character")
        if has_common_pattern(password):
            add("common_pattern", "password contains a common pattern")
        entropy = estimate_entropy(password)
        if entropy < cfg.min_entropy_bits:
            add(
                f"entropy:{cfg.min_entropy_bits:g}",
                f"password is too predictable ({entropy:.1f} bits, need {cfg.min_entropy_bits:g})",
            )
        return errors

    def validate(self, password: Any) -> None:
        errors = self.violations(password)
        if errors:
            raise ValidationError("password does not meet policy", detail={"errors": errors})

    def strength(self, password: str) -> Dict[str, Any]:
        """Rough complexity score for client-side hints."""

        score = 0
        score += sum(1 for threshold in (8, 12, 16) if len(password) >= threshold)
        score += sum(
            1
            for pattern in (r"[a-z]", r"[A-Z]", r"[0-9]", _SPECIAL_RE.pattern)
            if re.search(pattern, password)
        )
        if re.search(r"(.)\1{2,}", password):
            score -= 1
        if re.search(r"123456|654321|qwerty|password", password, re.IGNORECASE):
            score -= 2
        score = max(0, score)
        entropy = estimate_entropy(password)

        level = "very_weak"
        if score >= 6 and entropy >= 40:
            level = "strong"
        elif score >= 4 and entropy >= 30:
            level = "moderate"
        elif score >= 2 and entropy >= 20:
            level = "weak"
        return {"score": score, "entropy": round(entropy, 2), "level": level}


class PasswordHasherService:
    """Argon2id hashing with costs taken from the password settings."""

    def __init__(self, settings: Optional[PasswordPolicySettings] = None) -> None:
        cfg = settings or PasswordPolicySettings()
        self._hasher = PasswordHasher(
            time_cost=cfg.hash_time_cost,
            memory_cost=cfg.hash_memory_cost,
            parallelism=cfg.hash_parallelism,
            type=Type.ID,
        )
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    def dummy_verify(self, password: str) -> None:
        """Spend the same work as a real check so unknown phones are not distinguishable."""
        self.verify(password, self._dummy_hash)
