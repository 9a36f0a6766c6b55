"""Process-wide logging setup."""

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
HANDLER_NAME = "voucher_escrow"


def configure_logging(level: str = "INFO") -> None:
    """Install the stdout handler on the root logger (once)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(h.get_name() == HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    # web3 request tracing is far too chatty at DEBUG
    logging.getLogger("web3").setLevel(logging.WARNING)
