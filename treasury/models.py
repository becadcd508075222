from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    DEBIT = "debit"
    CREDIT = "credit"
    SETTLEMENT = "settlement"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class DepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    reference: str = Field(..., min_length=1, max_length=128, description="Payment gateway reference")
    description: Optional[str] = Field(default=None, max_length=255)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": "5000.00",
            "reference": "T1234567890",
        }
    })


class DebitRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)
    challenge_id: Optional[int] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "amount": "2500.00",
            "description": "Funded Treasury side of challenge #42",
            "challenge_id": 42,
        }
    })


class CreditRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=255)
    challenge_id: Optional[int] = None
    match_id: Optional[int] = None


class SettlementRequest(BaseModel):
    match_id: int
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    challenge_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=255)


class StatusUpdateRequest(BaseModel):
    status: WalletStatus


class TreasuryWallet(BaseModel):
    id: int
    admin_id: str
    balance: Decimal
    total_deposited: Decimal
    total_used: Decimal
    total_earned: Decimal
    status: WalletStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TreasuryTransaction(BaseModel):
    id: int
    admin_id: str
    type: TransactionType
    amount: Decimal
    description: str
    reference: Optional[str] = None
    status: TransactionStatus
    balance_before: Decimal
    balance_after: Decimal
    related_challenge_id: Optional[int] = None
    related_match_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class WalletSummary(BaseModel):
    admin_id: str
    balance: Decimal
    total_deposited: Decimal
    total_used: Decimal
    total_earned: Decimal
    net_pnl: Decimal
    status: WalletStatus
    currency: str


class TransactionHistoryResponse(BaseModel):
    admin_id: str
    transactions: list[TreasuryTransaction]
    total_count: int
    current_balance: Decimal


class LedgerOperationResponse(BaseModel):
    wallet: TreasuryWallet
    transaction: TreasuryTransaction
    message: str


class LedgerAuditReport(BaseModel):
    admin_id: str
    consistent: bool
    transaction_count: int
    expected_balance: Decimal
    actual_balance: Decimal
    expected_total_deposited: Decimal
    actual_total_deposited: Decimal
    expected_total_used: Decimal
    actual_total_used: Decimal
    expected_total_earned: Decimal
    actual_total_earned: Decimal
    issues: list[str] = Field(default_factory=list)
