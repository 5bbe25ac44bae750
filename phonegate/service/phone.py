from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from phonegate.config import PhoneSettings
from phonegate.service.errors import ValidationError


@dataclass(frozen=True)
class Region:
    code: str
    calling_code: str
    mobile_pattern: re.Pattern


REGIONS = {
    "CN": Region("CN", "86", re.compile(r"1[3-9][0-9]{9}")),
    "HK": Region("HK", "852", re.compile(r"[5679][0-9]{7}")),
    "MO": Region("MO", "853", re.compile(r"6[0-9]{7}")),
    "TW": Region("TW", "886", re.compile(r"9[0-9]{8}")),
}

_SEPARATORS = re.compile(r"[\s\-().]")
_ASCII_DIGITS = re.compile(r"[0-9]+")


@dataclass(frozen=True)
class CanonicalPhone:
    e164: str
    calling_code: str
    national_number: str
    region: str

    def __str__(self) -> str:
        return self.e164


def _invalid(raw: Any, constraint: str = "invalid_phone", message: str = "invalid phone number") -> ValidationError:
    return ValidationError(
        message,
        detail={"errors": [{"field": "phone", "constraint": constraint, "message": message}]},
    )


def _match_national(region: Region, national: str) -> Optional[CanonicalPhone]:
    # national numbers may carry a trunk 0 (e.g. TW 09xx)
    if national.startswith("0"):
        national = national[1:]
    if not region.mobile_pattern.fullmatch(national):
        return None
    return CanonicalPhone(
        e164=f"+{region.calling_code}{national}",
        calling_code=region.calling_code,
        national_number=national,
        region=region.code,
    )


def _split_calling_code(digits: str, regions: Iterable[Region]) -> Optional[tuple[Region, str]]:
    # longest calling code first so 852 is not read as 85 + 2...
    for region in sorted(regions, key=lambda r: len(r.calling_code), reverse=True):
        if digits.startswith(region.calling_code):
            return region, digits[len(region.calling_code):]
    return None


def normalize(
    raw: Any,
    default_region: str = "CN",
    allowed_regions: Optional[Iterable[str]] = None,
) -> CanonicalPhone:
    """Canonicalize ``raw`` to E.164 for a supported mobile region.

    Accepts ``+<cc>``, ``00<cc>``, bare ``<cc><national>`` and national numbers
    of the default region. Raises ValidationError otherwise.
    """

    if not isinstance(raw, str) or not raw.strip():
        raise _invalid(raw, "required", "phone number is required")
    cleaned = _SEPARATORS.sub("", raw.strip())

    allowed = [REGIONS[code] for code in (allowed_regions or REGIONS) if code in REGIONS]
    international = False
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
        international = True
    elif cleaned.startswith("00"):
        cleaned = cleaned[2:]
        international = True

    # ASCII digits only
    if not _ASCII_DIGITS.fullmatch(cleaned):
        raise _invalid(raw)

    if international:
        split = _split_calling_code(cleaned, REGIONS.values())
        if split is None or split[0] not in allowed:
            raise _invalid(raw, "unsupported_calling_code", "calling code is not supported")
        phone = _match_national(split[0], split[1])
        if phone is None:
            raise _invalid(raw)
        return phone

    home = REGIONS.get(default_region.upper())
    if home is not None and home in allowed:
        phone = _match_national(home, cleaned)
        if phone is not None:
            return phone

    split = _split_calling_code(cleaned, allowed)
    if split is not None:
        phone = _match_national(split[0], split[1])
        if phone is not None:
            return phone
    raise _invalid(raw)


def mask_phone(phone: str) -> str:
    """Mask the middle of a phone number for logs and API output."""

    if not phone:
        return phone
    prefix = ""
    digits = phone
    if phone.startswith("+"):
        split = _split_calling_code(phone[1:], REGIONS.values())
        if split is not None:
            prefix = f"+{split[0].calling_code}"
            digits = split[1]
        else:
            prefix, digits = "+", phone[1:]
    if len(digits) >= 8:
        return f"{prefix}{digits[:3]}{'*' * (len(digits) - 7)}{digits[-4:]}"
    if len(digits) > 4:
        return f"{prefix}{digits[:2]}{'*' * (len(digits) - 4)}{digits[-2:]}"
    return f"{prefix}{'*' * len(digits)}"


class PhoneNormalizer:
    """Normalizer bound to the configured default and allowed regions."""

    def __init__(self, settings: Optional[PhoneSettings] = None) -> None:
        self.settings = settings or PhoneSettings()

    def normalize(self, raw: Any) -> CanonicalPhone:
        return normalize(raw, self.settings.default_region, self.settings.allowed_regions)

    @staticmethod
    def mask(phone: str) -> str:
        return mask_phone(phone)
