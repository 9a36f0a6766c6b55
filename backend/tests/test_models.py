"""
Voucher Escrow - Schema & Configuration Tests

RULE: token amounts are never floats.
"""

import pytest
from pydantic import ValidationError

from voucher_escrow.core.config import Settings
from voucher_escrow.core.types import same_identity
from voucher_escrow.models.listing import Listing, ListingStatus
from voucher_escrow.models.release import (
    FailureKind,
    OutcomeKind,
    ReleaseAction,
    ReleaseOutcome,
)


def _listing(**overrides):
    values = dict(id=1, seller="0xseller", price=100, status=ListingStatus.LISTED)
    values.update(overrides)
    return Listing(**values)


class TestTokenAmount:
    def test_int_accepted(self):
        assert _listing(price=100).price == 100

    def test_uint256_string_accepted(self):
        big = "115792089237316195423570985008687907853269984665640564039457584007913129639935"
        assert _listing(price=big).price == int(big)

    @pytest.mark.parametrize("bad", [1.5, 100.0, -1, "12.5", "abc", True])
    def test_invalid_amounts_rejected(self, bad):
        with pytest.raises(ValidationError):
            _listing(price=bad)


class TestListing:
    def test_defaults(self):
        listing = _listing()
        assert listing.buyer is None
        assert listing.expiry == 0
        assert listing.value == 0
        assert listing.metadata_ref == ""

    def test_id_must_be_positive(self):
        with pytest.raises(ValidationError):
            _listing(id=0)

    def test_status_from_ledger_integer(self):
        assert _listing(status=4).status == ListingStatus.BUYER_CONFIRMED

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            _listing(status=42)


class TestIdentity:
    def test_checksum_casing_ignored(self):
        assert same_identity("0xAbCdEf0000000000000000000000000000000001", "0xabcdef0000000000000000000000000000000001")

    def test_different_identities(self):
        assert not same_identity("0x01", "0x02")

    @pytest.mark.parametrize("a,b", [(None, "0x01"), ("", ""), ("0x01", None)])
    def test_missing_identity_never_matches(self, a, b):
        assert not same_identity(a, b)


class TestReleaseOutcome:
    def test_already_terminal_skip_is_benign(self):
        outcome = ReleaseOutcome(listing_id=1, action=ReleaseAction.RELEASE, kind=OutcomeKind.SKIPPED, reason="already terminal")
        assert outcome.is_benign

    def test_failed_message_names_failure_kind(self):
        outcome = ReleaseOutcome(
            listing_id=3,
            action=ReleaseAction.REFUND,
            kind=OutcomeKind.FAILED,
            reason="Not refundable",
            failure=FailureKind.STRUCTURAL,
        )
        assert not outcome.is_benign
        assert outcome.message == "Refund failed for listing #3 (structural): Not refundable"


class TestSettings:
    def test_mock_backend_needs_nothing(self):
        settings = Settings(_env_file=None, LEDGER_BACKEND="mock")
        assert settings.missing_required() == []

    def test_evm_backend_reports_missing(self):
        settings = Settings(
            _env_file=None,
            LEDGER_BACKEND="evm",
            ADMIN_PRIVATE_KEY="0x" + "11" * 32,
            LEDGER_RPC_URL=None,
            MARKETPLACE_ADDRESS="0x0000000000000000000000000000000000000001",
            ESCROW_ADDRESS=None,
        )
        assert settings.missing_required() == ["LEDGER_RPC_URL", "ESCROW_ADDRESS"]

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("SCAN_INTERVAL_MINUTES", "0")
        monkeypatch.setenv("CONFIRMATION_DEPTH", "3")
        settings = Settings(_env_file=None)
        assert settings.SCAN_INTERVAL_MINUTES == 0
        assert settings.CONFIRMATION_DEPTH == 3

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, LEDGER_BACKEND="sqlite")
