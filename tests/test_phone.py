"""Tests for phone canonicalization and masking."""

import pytest

from phonegate.config import PhoneSettings
from phonegate.service.errors import ValidationError
from phonegate.service.phone import PhoneNormalizer, mask_phone, normalize


class TestNormalize:
    @pytest.mark.parametrize(
        "raw",
        [
            "+86-138-0013-8000",
            "+86 138 0013 8000",
            "+8613800138000",
            "008613800138000",
            "8613800138000",
            "13800138000",
            "(138) 0013-8000",
        ],
    )
    def test_variants_share_one_canonical_form(self, raw):
        phone = normalize(raw)
        assert phone.e164 == "+8613800138000"
        assert phone.region == "CN"
        assert phone.calling_code == "86"
        assert phone.national_number == "13800138000"

    def test_other_supported_regions(self):
        assert normalize("+852 5123 4567").e164 == "+85251234567"
        assert normalize("+853 6612 3456").e164 == "+85366123456"
        assert normalize("+886 0912 345 678").e164 == "+886912345678"

    @pytest.mark.parametrize("raw", ["+1 415 555 0100", "+44 7700 900123"])
    def test_unsupported_calling_code(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            normalize(raw)
        assert exc_info.value.detail["errors"][0]["constraint"] == "unsupported_calling_code"

    @pytest.mark.parametrize("raw", ["", "   ", None, "+86 138 0013", "+86abc", "12345"])
    def test_invalid_numbers(self, raw):
        with pytest.raises(ValidationError):
            normalize(raw)

    @pytest.mark.parametrize(
        "raw",
        [
            "+86 13٨٠٠١٣٨٠٠٠",
            "١٣٨٠٠١٣٨٠٠٠",
            "+86 １３８００１３８０００",
            "+86 1৩800138000",
        ],
    )
    def test_non_ascii_digits_rejected(self, raw):
        with pytest.raises(ValidationError):
            normalize(raw)

    def test_disallowed_region_is_unsupported(self):
        normalizer = PhoneNormalizer(PhoneSettings(allowed_regions=["CN"]))
        with pytest.raises(ValidationError) as exc_info:
            normalizer.normalize("+852 5123 4567")
        assert exc_info.value.detail["errors"][0]["constraint"] == "unsupported_calling_code"

    def test_allowed_regions_from_csv(self):
        settings = PhoneSettings(allowed_regions="cn, hk")
        assert settings.allowed_regions == ["CN", "HK"]


class TestMask:
    def test_mask_keeps_calling_code_and_edges(self):
        assert mask_phone("+8613800138000") == "+86138****8000"

    def test_mask_short_numbers(self):
        assert mask_phone("+85251234567") == "+852512*4567"
        assert mask_phone("1234") == "****"
        assert mask_phone("") == ""
