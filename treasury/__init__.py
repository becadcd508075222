"""
Treasury Wallet Ledger

This module provides:
- One Treasury wallet per admin (balance, total deposited, total used, total earned)
- Deposit, debit, credit and match settlement flows
- Append-only transactions with before/after balance snapshots
- Idempotent deposits (by gateway reference) and settlements (by match)
- Ledger audit that replays the transaction trail against the wallet
"""

from .models import (
    TransactionType,
    TransactionStatus,
    WalletStatus,
    TreasuryWallet,
    TreasuryTransaction,
    WalletSummary,
)
from .service import TreasuryWalletService

__all__ = [
    "TransactionType",
    "TransactionStatus",
    "WalletStatus",
    "TreasuryWallet",
    "TreasuryTransaction",
    "WalletSummary",
    "TreasuryWalletService",
]
