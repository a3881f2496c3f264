"""Milestone escrow service: ledger-backed escrows released milestone by milestone."""

__version__ = "0.1.0"
