"""
Affiliate Ledger

This package provides:
- A referral forest with cycle-safe linking
- Tiered commissions (direct + team) recorded atomically, once per purchase
- An append-only earnings ledger with derived, never-negative balances
- Withdrawal lifecycle: pending → processing → completed / cancelled
- Read-only projections for dashboards and the admin console
"""

from .models import (
    Package,
    EarningKind,
    EarningStatus,
    WithdrawalStatus,
    Decision,
    User,
    Purchase,
    EarningRecord,
    WithdrawalRequest,
    UserBalance,
)
from .core import AffiliateLedger
from .commission import CommissionEngine, compute_commissions
from .referrals import ReferralGraph
from .service import LedgerService
from .withdrawals import WithdrawalProcessor, PayoutRail

__all__ = [
    "Package",
    "EarningKind",
    "EarningStatus",
    "WithdrawalStatus",
    "Decision",
    "User",
    "Purchase",
    "EarningRecord",
    "WithdrawalRequest",
    "UserBalance",
    "AffiliateLedger",
    "CommissionEngine",
    "compute_commissions",
    "ReferralGraph",
    "LedgerService",
    "WithdrawalProcessor",
    "PayoutRail",
]
