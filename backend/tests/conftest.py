"""Shared fixtures for the reconciliation service tests."""

import pytest

from voucher_escrow.core.config import Settings
from voucher_escrow.services.controller import ServiceController
from voucher_escrow.services.events.publisher import ReleaseEventPublisher
from voucher_escrow.services.mocks.ledger import DEFAULT_ADMIN, LedgerMock

SELLER = "0x5e11e50000000000000000000000000000000001"
BUYER = "0xb0b0000000000000000000000000000000000002"
INTRUDER = "0x1badbad000000000000000000000000000000003"


@pytest.fixture
def ledger() -> LedgerMock:
    return LedgerMock()


@pytest.fixture
def publisher() -> ReleaseEventPublisher:
    return ReleaseEventPublisher()


@pytest.fixture
def mock_settings() -> Settings:
    return Settings(
        _env_file=None,
        LEDGER_BACKEND="mock",
        MOCK_ADMIN_IDENTITY=DEFAULT_ADMIN,
        SCAN_INTERVAL_MINUTES=0,
        TX_TIMEOUT_SECONDS=2.0,
        AUTO_START=False,
    )


@pytest.fixture
def controller(mock_settings, ledger, publisher) -> ServiceController:
    return ServiceController(mock_settings, ledger_factory=lambda _: ledger, publisher=publisher)
