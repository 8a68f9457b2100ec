import logging
from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from .config import Settings
from .errors import (
    EarningNotFoundError,
    InvalidStateError,
    InvalidTransitionError,
    UserNotFoundError,
    WithdrawalNotFoundError,
)
from .models import (
    EarningRecord,
    EarningStatus,
    UserBalance,
    WithdrawalRequest,
    WithdrawalStatus,
    money,
    utcnow,
)
from .storage import InMemoryStorage, Transaction

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


class LedgerService:
    """Append-only record of earnings and withdrawals; balances are derived from it."""

    def __init__(self, storage: InMemoryStorage, settings: Settings):
        self.storage = storage
        self.settings = settings

    def record_earnings(
        self, records: list[EarningRecord], txn: Optional[Transaction] = None
    ) -> list[EarningRecord]:
        """Append ``records``; inside ``txn`` when given, else in a transaction of its own."""
        if txn is None:
            beneficiaries = {record.beneficiary_id for record in records}
            for beneficiary_id in beneficiaries:
                if beneficiary_id not in self.storage.users:
                    raise UserNotFoundError(f"User {beneficiary_id} not found")
            with self.storage.transaction(*beneficiaries) as own_txn:
                return self.record_earnings(records, own_txn)

        staged_purchases = {row["source_purchase_id"] for row in txn.staged("earnings")}
        seen: set[tuple[str, str]] = set()
        for record in records:
            key = (record.source_purchase_id, record.kind.value)
            if (
                record.source_purchase_id in self.storage.purchase_earnings
                or record.source_purchase_id in staged_purchases
                or key in seen
            ):
                logger.warning(
                    "Rejected repeated earnings for purchase %s", record.source_purchase_id,
                    extra={"purchase_id": record.source_purchase_id},
                )
                raise InvalidStateError(
                    f"Earnings for purchase {record.source_purchase_id} are already recorded"
                )
            if record.status != EarningStatus.PENDING:
                raise InvalidStateError(f"Earning {record.id} must be recorded as pending")
            if record.beneficiary_id not in self.storage.users:
                raise UserNotFoundError(f"User {record.beneficiary_id} not found")
            seen.add(key)

        for record in records:
            txn.insert("earnings", record.id, record.model_dump())
        return records

    def mark_paid(self, earning_ids: Iterable[UUID]) -> list[EarningRecord]:
        ids = list(dict.fromkeys(earning_ids))
        beneficiaries = {self.get_earning(earning_id).beneficiary_id for earning_id in ids}

        with self.storage.transaction(*beneficiaries) as txn:
            records = [self.get_earning(earning_id) for earning_id in ids]
            already_paid = [str(record.id) for record in records if not record.can_mark_paid()]
            if already_paid:
                logger.warning(
                    "Rejected mark-paid for settled earnings",
                    extra={"earning_ids": ",".join(already_paid)},
                )
                raise InvalidTransitionError(f"Earnings already paid: {', '.join(already_paid)}")

            now = utcnow()
            credited: dict[UUID, Decimal] = defaultdict(Decimal)
            for record in records:
                txn.update("earnings", record.id, status=EarningStatus.PAID, paid_at=now)
                credited[record.beneficiary_id] += record.commission_amount
            for user_id, amount in credited.items():
                total = self.storage.users[user_id]["total_earnings"] + amount
                txn.update("users", user_id, total_earnings=money(total))

        logger.info("Marked %d earnings paid", len(ids))
        return [self.get_earning(earning_id) for earning_id in ids]

    def get_balance(self, user_id: UUID) -> UserBalance:
        with self.storage.read():
            if user_id not in self.storage.users:
                raise UserNotFoundError(f"User {user_id} not found")
            earnings = [
                EarningRecord(**e) for e in self.storage.earnings.values()
                if e["beneficiary_id"] == user_id
            ]
            withdrawals = [
                WithdrawalRequest(**w) for w in self.storage.withdrawals.values()
                if w["user_id"] == user_id
            ]

        paid = sum((e.commission_amount for e in earnings if e.status == EarningStatus.PAID), ZERO)
        pending = sum((e.commission_amount for e in earnings if e.status == EarningStatus.PENDING), ZERO)
        reserved = sum(
            (w.amount for w in withdrawals
             if w.status in (WithdrawalStatus.PENDING, WithdrawalStatus.PROCESSING)),
            ZERO,
        )
        withdrawn = sum((w.amount for w in withdrawals if w.status == WithdrawalStatus.COMPLETED), ZERO)
        available = paid - reserved - withdrawn
        if available < 0:
            logger.error("Derived balance is negative: %s", available, extra={"user_id": user_id})
            raise InvalidStateError(f"Balance of user {user_id} is negative")

        timestamps = [e.paid_at or e.created_at for e in earnings]
        timestamps += [w.decided_at or w.created_at for w in withdrawals]

        return UserBalance(
            user_id=user_id,
            currency=self.settings.CURRENCY,
            available=money(available),
            pending_earnings=money(pending),
            paid_earnings=money(paid),
            reserved=money(reserved),
            withdrawn=money(withdrawn),
            last_transaction_at=max(timestamps) if timestamps else None,
        )

    def available_balance(self, user_id: UUID, exclude_withdrawal_id: Optional[UUID] = None) -> Decimal:
        """Paid earnings minus every non-cancelled withdrawal except ``exclude_withdrawal_id``."""
        with self.storage.read():
            paid = sum(
                (e["commission_amount"] for e in self.storage.earnings.values()
                 if e["beneficiary_id"] == user_id and e["status"] == EarningStatus.PAID),
                ZERO,
            )
            liabilities = sum(
                (w["amount"] for w in self.storage.withdrawals.values()
                 if w["user_id"] == user_id
                 and w["status"] != WithdrawalStatus.CANCELLED
                 and w["id"] != exclude_withdrawal_id),
                ZERO,
            )
        return money(paid - liabilities)

    def recompute_total_earnings(self, user_id: UUID) -> Decimal:
        if user_id not in self.storage.users:
            raise UserNotFoundError(f"User {user_id} not found")
        with self.storage.transaction(user_id) as txn:
            total = money(sum(
                (e["commission_amount"] for e in self.storage.earnings.values()
                 if e["beneficiary_id"] == user_id and e["status"] == EarningStatus.PAID),
                ZERO,
            ))
            txn.update("users", user_id, total_earnings=total)
        return total

    def get_earning(self, earning_id: UUID) -> EarningRecord:
        earning_data = self.storage.earnings.get(earning_id)
        if not earning_data:
            raise EarningNotFoundError(f"Earning {earning_id} not found")
        return EarningRecord(**earning_data)

    def get_withdrawal(self, withdrawal_id: UUID) -> WithdrawalRequest:
        withdrawal_data = self.storage.withdrawals.get(withdrawal_id)
        if not withdrawal_data:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return WithdrawalRequest(**withdrawal_data)
