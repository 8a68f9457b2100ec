from decimal import Decimal
from typing import Optional
from uuid import UUID

from .models import (
    AdminStats,
    EarningHistoryResponse,
    EarningRecord,
    EarningStatus,
    TeamResponse,
    User,
    UserBalance,
    UserListResponse,
    WithdrawalHistoryResponse,
    WithdrawalRequest,
    WithdrawalStatus,
    money,
)
from .referrals import ReferralGraph
from .service import LedgerService
from .storage import InMemoryStorage


class QueryFacade:
    """Read-only projections for the dashboard and the admin console."""

    def __init__(self, storage: InMemoryStorage, ledger: LedgerService, graph: ReferralGraph):
        self.storage = storage
        self.ledger = ledger
        self.graph = graph

    def get_balance(self, user_id: UUID) -> UserBalance:
        return self.ledger.get_balance(user_id)

    def list_earnings(self, user_id: UUID, limit: int = 50, offset: int = 0) -> EarningHistoryResponse:
        self.graph.require_user(user_id)
        entries = self._earnings(lambda e: e["beneficiary_id"] == user_id)
        return EarningHistoryResponse(
            user_id=user_id, entries=entries[offset:offset + limit], total_count=len(entries)
        )

    def list_withdrawals(self, user_id: UUID, limit: int = 50, offset: int = 0) -> WithdrawalHistoryResponse:
        self.graph.require_user(user_id)
        entries = self._withdrawals(lambda w: w["user_id"] == user_id)
        return WithdrawalHistoryResponse(
            user_id=user_id, entries=entries[offset:offset + limit], total_count=len(entries)
        )

    def get_team(self, user_id: UUID) -> TeamResponse:
        direct = self.graph.get_children(user_id)
        team = [grandchild for child in direct for grandchild in self.graph.get_children(child)]
        return TeamResponse(user_id=user_id, direct=direct, team=team)

    # Admin views

    def list_all_withdrawals(
        self, status: Optional[WithdrawalStatus] = None, limit: int = 50, offset: int = 0
    ) -> WithdrawalHistoryResponse:
        entries = self._withdrawals(lambda w: status is None or w["status"] == status)
        return WithdrawalHistoryResponse(entries=entries[offset:offset + limit], total_count=len(entries))

    def list_stuck_withdrawals(self) -> list[WithdrawalRequest]:
        return self._withdrawals(
            lambda w: w["stuck"] and w["status"] == WithdrawalStatus.PROCESSING
        )

    def list_all_earnings(
        self, status: Optional[EarningStatus] = None, limit: int = 50, offset: int = 0
    ) -> EarningHistoryResponse:
        entries = self._earnings(lambda e: status is None or e["status"] == status)
        return EarningHistoryResponse(entries=entries[offset:offset + limit], total_count=len(entries))

    def list_users(self, limit: int = 50, offset: int = 0) -> UserListResponse:
        with self.storage.read():
            users = [User(**u) for u in self.storage.users.values()]
        users.sort(key=lambda u: u.created_at, reverse=True)
        return UserListResponse(users=users[offset:offset + limit], total_count=len(users))

    def admin_stats(self) -> AdminStats:
        with self.storage.read():
            users = list(self.storage.users.values())
            purchases = list(self.storage.purchases.values())
            earnings = list(self.storage.earnings.values())
            withdrawals = list(self.storage.withdrawals.values())

        pending = [w for w in withdrawals if w["status"] == WithdrawalStatus.PENDING]
        return AdminStats(
            total_users=len(users),
            active_users=sum(1 for u in users if u["is_active"]),
            total_purchases=len(purchases),
            total_sales=money(sum((p["amount"] for p in purchases), Decimal("0"))),
            total_commissions=money(sum((e["commission_amount"] for e in earnings), Decimal("0"))),
            paid_commissions=money(sum(
                (e["commission_amount"] for e in earnings if e["status"] == EarningStatus.PAID),
                Decimal("0"),
            )),
            pending_withdrawals=len(pending),
            pending_withdrawal_amount=money(sum((w["amount"] for w in pending), Decimal("0"))),
            stuck_withdrawals=sum(
                1 for w in withdrawals if w["stuck"] and w["status"] == WithdrawalStatus.PROCESSING
            ),
            currency=self.ledger.settings.CURRENCY,
        )

    def _earnings(self, predicate) -> list[EarningRecord]:
        with self.storage.read():
            entries = [EarningRecord(**e) for e in self.storage.earnings.values() if predicate(e)]
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries

    def _withdrawals(self, predicate) -> list[WithdrawalRequest]:
        with self.storage.read():
            entries = [WithdrawalRequest(**w) for w in self.storage.withdrawals.values() if predicate(w)]
        entries.sort(key=lambda w: w.created_at, reverse=True)
        return entries
