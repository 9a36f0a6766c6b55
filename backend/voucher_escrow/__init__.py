"""Voucher Escrow - reconciliation service for escrow-backed voucher sales."""

__version__ = "1.0.0"
