"""
Voucher Escrow - Canonical Amount & Identity Types
==================================================

RULE: No floats allowed for token amounts.

Amounts:  int in the payment token's smallest unit (wei-style)
        - Exact arithmetic, never rounded
        - JSON-serializable as integer
        - Never negative

Identities: ledger account references (hex addresses on EVM ledgers)
        - Compared case-insensitively
        - Stored exactly as the ledger reports them
"""

from typing import Annotated, Any, Optional

from pydantic import BeforeValidator, Field, WithJsonSchema


def _validate_token_amount(v: Any) -> int:
    """
    Validate a token amount.

    Accepts:
        - int: Already in smallest units
        - str: Decimal digits (ledgers report uint256 values as strings)
        - float: REJECTED (raises ValueError)
    """
    if isinstance(v, bool):
        raise ValueError(f"Invalid token amount type: {type(v)}")

    if isinstance(v, float):
        raise ValueError(
            "Float not allowed for token amounts. Use int smallest units. "
            f"Got: {v}"
        )

    if isinstance(v, str):
        try:
            v = int(v, 10)
        except ValueError:
            raise ValueError(f"Invalid token amount string: {v}")

    if not isinstance(v, int):
        raise ValueError(f"Invalid token amount type: {type(v)}")

    if v < 0:
        raise ValueError(f"Token amount must be non-negative. Got: {v}")

    return v


TokenAmount = Annotated[
    int,
    BeforeValidator(_validate_token_amount),
    WithJsonSchema({"type": "integer", "minimum": 0, "description": "Amount in token smallest units"}),
]

ListingId = Annotated[int, Field(gt=0)]


def same_identity(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two ledger identities, ignoring hex checksum casing."""
    if not a or not b:
        return False
    return a.strip().lower() == b.strip().lower()
