from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Ledger
    LEDGER_BACKEND: Literal["evm", "mock"] = "evm"
    LEDGER_RPC_URL: Optional[str] = None
    MARKETPLACE_ADDRESS: Optional[str] = None
    ESCROW_ADDRESS: Optional[str] = None
    MOCK_ADMIN_IDENTITY: str = "0x00000000000000000000000000000000000a11ce"

    # Admin signer
    ADMIN_PRIVATE_KEY: Optional[str] = None

    # Release execution
    CONFIRMATION_DEPTH: int = 1
    TX_TIMEOUT_SECONDS: float = 120.0
    MAX_CONCURRENT_RELEASES: int = 4

    # Reconciliation
    SCAN_INTERVAL_MINUTES: int = 10
    SCAN_BATCH_SIZE: int = 20
    EVENT_POLL_INTERVAL_SECONDS: float = 5.0

    # Observability
    RELEASE_WEBHOOK_URL: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    # App
    APP_NAME: str = "Voucher Escrow Reconciler"
    AUTO_START: bool = True

    class Config:
        env_file = ".env"
        extra = "ignore"

    def missing_required(self) -> list[str]:
        """Names of required variables that are not set for the selected backend."""
        if self.LEDGER_BACKEND == "mock":
            return []
        required = {
            "ADMIN_PRIVATE_KEY": self.ADMIN_PRIVATE_KEY,
            "LEDGER_RPC_URL": self.LEDGER_RPC_URL,
            "MARKETPLACE_ADDRESS": self.MARKETPLACE_ADDRESS,
            "ESCROW_ADDRESS": self.ESCROW_ADDRESS,
        }
        return [name for name, value in required.items() if not value]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
