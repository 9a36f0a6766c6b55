from .ledger import LedgerMock

__all__ = ["LedgerMock"]
