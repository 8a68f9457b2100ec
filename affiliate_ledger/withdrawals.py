import logging
import random
import threading
import time
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID, uuid4

from .config import Settings
from .errors import (
    BelowMinimumError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidTransitionError,
    PayoutError,
    PayoutStuckError,
)
from .models import (
    Decision,
    WithdrawalRequest,
    WithdrawalStatus,
    money,
    utcnow,
)
from .service import LedgerService
from .storage import InMemoryStorage
from .users import UserRegistry

logger = logging.getLogger(__name__)


class PayoutRail:
    """Moves the money for an approved withdrawal.

    ``transfer`` returns the rail's reference for the transfer and raises
    ``PayoutError`` when an attempt fails and may be retried.
    """

    def transfer(self, withdrawal: WithdrawalRequest) -> str:
        raise NotImplementedError


class ImmediatePayoutRail(PayoutRail):
    """Settles synchronously; stands in until a real rail is wired in."""

    def transfer(self, withdrawal: WithdrawalRequest) -> str:
        return f"payout-{withdrawal.id.hex[:12]}"


class WithdrawalProcessor:
    def __init__(
        self,
        storage: InMemoryStorage,
        ledger: LedgerService,
        users: UserRegistry,
        settings: Settings,
        payout_rail: Optional[PayoutRail] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.storage = storage
        self.ledger = ledger
        self.users = users
        self.settings = settings
        self.payout_rail = payout_rail or ImmediatePayoutRail()
        self._sleep = sleep
        self._settling: set[UUID] = set()
        self._settling_lock = threading.Lock()

    def request_withdrawal(self, user_id: UUID, amount: Decimal) -> WithdrawalRequest:
        # validate the amount as given, before any rounding
        amount = Decimal(amount)
        if not amount.is_finite():
            raise InvalidAmountError(f"Withdrawal amount must be a finite number, got {amount}")
        if amount < self.settings.MIN_WITHDRAWAL_AMOUNT:
            raise BelowMinimumError(
                f"Minimum withdrawal is {self.settings.MIN_WITHDRAWAL_AMOUNT}, got {amount}"
            )
        if amount != money(amount):
            raise InvalidAmountError(f"Withdrawal amount {amount} has more than two decimal places")
        amount = money(amount)
        self.users.require_active(user_id)

        # The balance check and the insert share one lock scope, so two
        # requests from the same user cannot both spend the same balance.
        with self.storage.transaction(user_id) as txn:
            self.users.require_active(user_id)
            available = self.ledger.available_balance(user_id)
            if amount > available:
                raise InsufficientBalanceError(
                    f"Requested {amount} exceeds available balance {available}"
                )
            withdrawal = WithdrawalRequest(
                id=uuid4(),
                user_id=user_id,
                amount=amount,
                currency=self.settings.CURRENCY,
                created_at=utcnow(),
            )
            txn.insert("withdrawals", withdrawal.id, withdrawal.model_dump())

        logger.info(
            "Withdrawal of %s requested", amount,
            extra={"user_id": user_id, "withdrawal_id": withdrawal.id},
        )
        return withdrawal

    def decide(self, request_id: UUID, outcome: Decision, decided_by: Optional[str] = None) -> WithdrawalRequest:
        """Admin decision: approve settles the request, reject cancels it."""
        outcome = Decision(outcome)
        if outcome == Decision.REJECT:
            return self._reject(request_id, decided_by)
        return self._approve(request_id, decided_by)

    def retry_settlement(self, request_id: UUID) -> WithdrawalRequest:
        withdrawal = self.ledger.get_withdrawal(request_id)
        with self.storage.transaction(withdrawal.user_id):
            withdrawal = self.ledger.get_withdrawal(request_id)
            if withdrawal.status != WithdrawalStatus.PROCESSING:
                raise InvalidTransitionError(
                    f"Only processing withdrawals can be retried, {request_id} is {withdrawal.status.value}"
                )
            self._claim(request_id)
        logger.info("Retrying settlement", extra={"withdrawal_id": request_id})
        return self._settle(request_id)

    def _approve(self, request_id: UUID, decided_by: Optional[str]) -> WithdrawalRequest:
        withdrawal = self.ledger.get_withdrawal(request_id)
        with self.storage.transaction(withdrawal.user_id) as txn:
            withdrawal = self.ledger.get_withdrawal(request_id)
            self._check_transition(withdrawal, WithdrawalStatus.PROCESSING)
            available = self.ledger.available_balance(withdrawal.user_id, exclude_withdrawal_id=request_id)
            if withdrawal.amount > available:
                logger.warning(
                    "Approval refused: %s exceeds balance %s", withdrawal.amount, available,
                    extra={"withdrawal_id": request_id, "user_id": withdrawal.user_id},
                )
                raise InsufficientBalanceError(
                    f"Withdrawal {request_id} of {withdrawal.amount} exceeds balance {available}"
                )
            txn.update(
                "withdrawals", request_id,
                status=WithdrawalStatus.PROCESSING, decided_at=utcnow(), decided_by=decided_by,
            )
            self._claim(request_id)
        return self._settle(request_id)

    def _reject(self, request_id: UUID, decided_by: Optional[str]) -> WithdrawalRequest:
        withdrawal = self.ledger.get_withdrawal(request_id)
        with self.storage.transaction(withdrawal.user_id) as txn:
            withdrawal = self.ledger.get_withdrawal(request_id)
            with self._settling_lock:
                if request_id in self._settling:
                    logger.warning("Reject during settlement refused", extra={"withdrawal_id": request_id})
                    raise InvalidTransitionError(f"Withdrawal {request_id} is being settled")
            self._check_transition(withdrawal, WithdrawalStatus.CANCELLED)
            txn.update(
                "withdrawals", request_id,
                status=WithdrawalStatus.CANCELLED, decided_at=utcnow(), decided_by=decided_by, stuck=False,
            )
        logger.info(
            "Withdrawal rejected", extra={"withdrawal_id": request_id, "user_id": withdrawal.user_id}
        )
        return self.ledger.get_withdrawal(request_id)

    def _settle(self, request_id: UUID) -> WithdrawalRequest:
        try:
            withdrawal = self.ledger.get_withdrawal(request_id)
            attempts = withdrawal.settlement_attempts
            deadline = time.monotonic() + self.settings.PAYOUT_TIMEOUT_SECONDS
            last_error = None

            for attempt in range(1, self.settings.PAYOUT_MAX_ATTEMPTS + 1):
                attempts += 1
                try:
                    reference = self.payout_rail.transfer(withdrawal)
                except PayoutError as e:
                    last_error = str(e)
                    logger.warning(
                        "Payout attempt %d failed: %s", attempt, e, extra={"withdrawal_id": request_id}
                    )
                    delay = self._backoff_delay(attempt)
                    if attempt == self.settings.PAYOUT_MAX_ATTEMPTS or time.monotonic() + delay > deadline:
                        break
                    self._sleep(delay)
                    continue
                except Exception as e:
                    self._mark_stuck(withdrawal, attempts, f"{type(e).__name__}: {e}")
                    raise
                return self._complete(withdrawal, reference, attempts)

            self._mark_stuck(withdrawal, attempts, last_error)
            raise PayoutStuckError(
                f"Withdrawal {request_id} could not be settled after {attempts} attempts: {last_error}"
            )
        finally:
            with self._settling_lock:
                self._settling.discard(request_id)

    def _complete(self, withdrawal: WithdrawalRequest, reference: str, attempts: int) -> WithdrawalRequest:
        with self.storage.transaction(withdrawal.user_id) as txn:
            current = self.ledger.get_withdrawal(withdrawal.id)
            self._check_transition(current, WithdrawalStatus.COMPLETED)
            txn.update(
                "withdrawals", withdrawal.id,
                status=WithdrawalStatus.COMPLETED,
                payout_reference=reference,
                settlement_attempts=attempts,
                last_error=None,
                stuck=False,
            )
        logger.info(
            "Withdrawal settled with reference %s", reference,
            extra={"withdrawal_id": withdrawal.id, "user_id": withdrawal.user_id},
        )
        return self.ledger.get_withdrawal(withdrawal.id)

    def _mark_stuck(self, withdrawal: WithdrawalRequest, attempts: int, error: Optional[str]) -> None:
        with self.storage.transaction(withdrawal.user_id) as txn:
            txn.update(
                "withdrawals", withdrawal.id,
                settlement_attempts=attempts, last_error=error, stuck=True,
            )
        logger.error(
            "Withdrawal stuck in processing after %d attempts: %s", attempts, error,
            extra={"withdrawal_id": withdrawal.id, "user_id": withdrawal.user_id},
        )

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(
            self.settings.PAYOUT_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)),
            self.settings.PAYOUT_BACKOFF_MAX_SECONDS,
        )
        # +/-20% jitter
        return delay * random.uniform(0.8, 1.2)

    def _claim(self, request_id: UUID) -> None:
        with self._settling_lock:
            if request_id in self._settling:
                raise InvalidTransitionError(f"Withdrawal {request_id} is already being settled")
            self._settling.add(request_id)

    def _check_transition(self, withdrawal: WithdrawalRequest, target: WithdrawalStatus) -> None:
        if not withdrawal.can_transition(target):
            logger.warning(
                "Rejected transition %s -> %s", withdrawal.status.value, target.value,
                extra={"withdrawal_id": withdrawal.id},
            )
            raise InvalidTransitionError(
                f"Cannot move withdrawal {withdrawal.id} from {withdrawal.status.value} to {target.value}"
            )
