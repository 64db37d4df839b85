"""
Unit tests for merchant normalization.
"""
import pytest

from finpulse.services.merchant import merchant_key_for, normalize_merchant
from tests.factories.financial_factory import make_transaction


class TestNormalizeMerchant:
    """Test cases for normalize_merchant."""

    @pytest.mark.unit
    def test_strips_punctuation_and_case(self):
        """Test punctuation is dropped and case folded."""
        assert normalize_merchant("SPOTIFY USA  Premium #4412") == "spotify usa premium"

    @pytest.mark.unit
    def test_keeps_first_three_tokens(self):
        """Test only the first three tokens form the key."""
        assert normalize_merchant("Amazon Prime Video Monthly Charge") == "amazon prime video"

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "   ", "#*!"])
    def test_empty_key_for_unusable_names(self, raw):
        """Test names without alphanumerics produce an empty key."""
        assert normalize_merchant(raw) == ""

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [
        "Netflix.com",
        "  Trader Joe's #552 ",
        "PG&E Utility Bill Payment",
        "uber   *trip  help.uber.com",
    ])
    def test_idempotent(self, raw):
        """Test normalizing a key again leaves it unchanged."""
        once = normalize_merchant(raw)
        assert normalize_merchant(once) == once

    @pytest.mark.unit
    def test_key_prefers_display_name(self):
        """Test the transaction label order: display name, merchant name, raw name."""
        tx = make_transaction(name="POS 1234 NFLX", merchant_name="Netflix Inc", display_name="Netflix")
        assert merchant_key_for(tx) == "netflix"

        tx = make_transaction(name="POS 1234 NFLX", merchant_name=None, display_name=None)
        assert merchant_key_for(tx) == "pos 1234 nflx"
