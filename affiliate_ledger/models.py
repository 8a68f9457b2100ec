from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value) -> Decimal:
    """Quantize to whole cents, rounding half up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class Package(str, Enum):
    NONE = "none"
    BASIC = "basic"
    PRO = "pro"


PACKAGE_RANK = {Package.NONE: 0, Package.BASIC: 1, Package.PRO: 2}


class EarningKind(str, Enum):
    DIRECT = "direct"
    TEAM = "team"


class EarningStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


WITHDRAWAL_TRANSITIONS = {
    WithdrawalStatus.PENDING: {WithdrawalStatus.PROCESSING, WithdrawalStatus.CANCELLED},
    WithdrawalStatus.PROCESSING: {WithdrawalStatus.COMPLETED, WithdrawalStatus.CANCELLED},
    WithdrawalStatus.COMPLETED: set(),
    WithdrawalStatus.CANCELLED: set(),
}


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class User(BaseModel):
    id: UUID
    referrer_id: Optional[UUID] = None
    package: Package = Package.NONE
    referral_code: str
    total_earnings: Decimal = Decimal("0.00")
    is_active: bool = True
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Purchase(BaseModel):
    id: str
    buyer_id: UUID
    package: Package
    amount: Decimal
    currency: str = "INR"
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, frozen=True)


class EarningRecord(BaseModel):
    id: UUID
    beneficiary_id: UUID
    source_purchase_id: str
    buyer_id: UUID
    kind: EarningKind
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    status: EarningStatus = EarningStatus.PENDING
    created_at: datetime
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_mark_paid(self) -> bool:
        return self.status == EarningStatus.PENDING


class WithdrawalRequest(BaseModel):
    id: UUID
    user_id: UUID
    amount: Decimal
    currency: str = "INR"
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    created_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    payout_reference: Optional[str] = None
    settlement_attempts: int = 0
    last_error: Optional[str] = None
    stuck: bool = False

    model_config = ConfigDict(from_attributes=True)

    def can_transition(self, target: WithdrawalStatus) -> bool:
        return target in WITHDRAWAL_TRANSITIONS[self.status]


class UserBalance(BaseModel):
    user_id: UUID
    currency: str
    available: Decimal
    pending_earnings: Decimal
    paid_earnings: Decimal
    reserved: Decimal
    withdrawn: Decimal
    last_transaction_at: Optional[datetime] = None


# Requests

class RegisterUserRequest(BaseModel):
    referral_code: Optional[str] = Field(default=None, description="Code of the referring user")
    user_id: Optional[UUID] = None


class SetParentRequest(BaseModel):
    child_id: UUID
    parent_id: UUID


class CreatePurchaseRequest(BaseModel):
    purchase_id: str = Field(..., min_length=1, description="Unique purchase id, used as the dedup key")
    buyer_id: UUID
    package: Package
    amount: Optional[Decimal] = Field(default=None, description="Defaults to the package price")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "purchase_id": "order_1700000000_pro",
            "buyer_id": "550e8400-e29b-41d4-a716-446655440000",
            "package": "pro",
            "amount": "2999.00",
        }
    })


class WithdrawalCreateRequest(BaseModel):
    user_id: UUID
    amount: Decimal


class DecisionRequest(BaseModel):
    outcome: Decision
    decided_by: Optional[str] = None


class MarkPaidRequest(BaseModel):
    earning_ids: list[UUID] = Field(..., min_length=1)


# Responses

class PurchaseResponse(BaseModel):
    purchase: Purchase
    earnings: list[EarningRecord]
    message: str


class EarningHistoryResponse(BaseModel):
    user_id: Optional[UUID] = None
    entries: list[EarningRecord]
    total_count: int


class WithdrawalHistoryResponse(BaseModel):
    user_id: Optional[UUID] = None
    entries: list[WithdrawalRequest]
    total_count: int


class UserListResponse(BaseModel):
    users: list[User]
    total_count: int


class TeamResponse(BaseModel):
    user_id: UUID
    direct: list[UUID]
    team: list[UUID]


class AdminStats(BaseModel):
    total_users: int
    active_users: int
    total_purchases: int
    total_sales: Decimal
    total_commissions: Decimal
    paid_commissions: Decimal
    pending_withdrawals: int
    pending_withdrawal_amount: Decimal
    stuck_withdrawals: int
    currency: str
