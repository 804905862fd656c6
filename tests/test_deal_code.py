"""
Deal code, amount and wallet parsing
"""

from decimal import Decimal

import pytest

from utils.deal_code import (
    CODE_ALPHABET,
    DEAL_CODE_PATTERN,
    generate_deal_code,
    normalize_deal_code,
    normalize_wallet,
    parse_amount,
)
from utils.exceptions import ValidationError


class TestDealCodes:

    def test_generated_codes_are_well_formed(self):
        for _ in range(50):
            code = generate_deal_code("TL", 4)
            assert DEAL_CODE_PATTERN.match(code)
            assert all(ch in CODE_ALPHABET for ch in code[3:])

    def test_ambiguous_characters_excluded(self):
        assert not set("01IO").intersection(CODE_ALPHABET)

    @pytest.mark.parametrize("raw,expected", [
        ("tl-7q2k", "TL-7Q2K"),
        ("  TL-7Q2K\n", "TL-7Q2K"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_deal_code(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "7Q2K", "TL_7Q2K", "TL-7Q", "TOOLONG-7Q2K"])
    def test_malformed(self, raw):
        with pytest.raises(ValidationError):
            normalize_deal_code(raw)


class TestParseAmount:

    def test_quantised_down_to_six_places(self):
        assert parse_amount("12.3456789") == Decimal("12.345678")

    def test_bounds_inclusive(self):
        assert parse_amount("1") == Decimal("1")
        assert parse_amount("500") == Decimal("500")

    @pytest.mark.parametrize("raw", ["0.99", "500.000001", "NaN", "Infinity", "", "ten"])
    def test_rejected(self, raw):
        with pytest.raises(ValidationError):
            parse_amount(raw)

    def test_custom_bounds(self):
        assert parse_amount("1000", maximum=Decimal("5000")) == Decimal("1000")


class TestWallets:

    def test_lowercased(self):
        assert normalize_wallet(" 0x" + "AbCd" * 10 + " ") == "0x" + "abcd" * 10

    @pytest.mark.parametrize("raw", [None, "0x123", "ab" * 20, "0x" + "g" * 40])
    def test_rejected(self, raw):
        with pytest.raises(ValidationError):
            normalize_wallet(raw)
