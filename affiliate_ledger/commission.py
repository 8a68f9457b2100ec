import logging
import threading
from decimal import Decimal
from uuid import UUID, uuid4

from .config import Settings
from .errors import (
    DuplicatePurchaseError,
    InvalidAmountError,
    LedgerValidationError,
)
from .models import (
    PACKAGE_RANK,
    CreatePurchaseRequest,
    EarningKind,
    EarningRecord,
    Package,
    Purchase,
    PurchaseResponse,
    money,
    utcnow,
)
from .referrals import ReferralGraph
from .service import LedgerService
from .storage import InMemoryStorage
from .users import UserRegistry

logger = logging.getLogger(__name__)

# Direct referrer plus one team tier.
COMMISSION_DEPTH = 2

MAX_CHAIN_ATTEMPTS = 5


class _ChainChanged(Exception):
    pass


def compute_commissions(
    purchase: Purchase, chain: list[tuple[UUID, Package]], settings: Settings
) -> list[EarningRecord]:
    """Earnings owed on ``purchase`` to ``chain``, the buyer's ancestors nearest-first.

    Depth 1 earns the direct rate. Depth 2 earns the team rate of its own
    package, and nothing when it never bought one. Deeper ancestors earn nothing.
    """
    records = []
    for depth, (beneficiary_id, package) in enumerate(chain[:COMMISSION_DEPTH], start=1):
        if depth == 1:
            kind, rate = EarningKind.DIRECT, settings.DIRECT_COMMISSION_RATE
        else:
            kind, rate = EarningKind.TEAM, settings.team_rate(package.value)
        if rate <= 0:
            continue
        records.append(EarningRecord(
            id=uuid4(),
            beneficiary_id=beneficiary_id,
            source_purchase_id=purchase.id,
            buyer_id=purchase.buyer_id,
            kind=kind,
            gross_amount=purchase.amount,
            commission_rate=rate,
            commission_amount=money(purchase.amount * rate),
            created_at=purchase.created_at,
        ))
    return records


class CommissionEngine:
    """Turns a purchase into its earnings, all-or-nothing and once per purchase id."""

    def __init__(
        self,
        storage: InMemoryStorage,
        graph: ReferralGraph,
        users: UserRegistry,
        ledger: LedgerService,
        settings: Settings,
    ):
        self.storage = storage
        self.graph = graph
        self.users = users
        self.ledger = ledger
        self.settings = settings
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def process_purchase(self, request: CreatePurchaseRequest) -> PurchaseResponse:
        amount = self._resolve_amount(request)
        self.users.require_active(request.buyer_id)
        self._claim(request.purchase_id)
        try:
            for _ in range(MAX_CHAIN_ATTEMPTS):
                try:
                    return self._apply(request, amount)
                except _ChainChanged:
                    logger.info(
                        "Referral chain changed while locking, retrying",
                        extra={"purchase_id": request.purchase_id},
                    )
            raise LedgerValidationError(
                f"Referral chain of {request.buyer_id} kept changing; purchase not recorded"
            )
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(request.purchase_id)

    def _apply(self, request: CreatePurchaseRequest, amount: Decimal) -> PurchaseResponse:
        buyer_id = request.buyer_id
        ancestors = self.graph.get_ancestors(buyer_id, COMMISSION_DEPTH)

        with self.storage.transaction(buyer_id, *ancestors) as txn:
            if self.graph.get_ancestors(buyer_id, COMMISSION_DEPTH) != ancestors:
                raise _ChainChanged()
            self._check_duplicate(request.purchase_id)
            buyer = self.users.require_active(buyer_id)

            purchase = Purchase(
                id=request.purchase_id,
                buyer_id=buyer_id,
                package=request.package,
                amount=amount,
                currency=self.settings.CURRENCY,
                created_at=utcnow(),
            )
            chain = [(user_id, self.users.get_user(user_id).package) for user_id in ancestors]
            records = compute_commissions(purchase, chain, self.settings)

            txn.insert("purchases", purchase.id, purchase.model_dump())
            if PACKAGE_RANK[request.package] > PACKAGE_RANK[buyer.package]:
                txn.update("users", buyer_id, package=request.package)
            self.ledger.record_earnings(records, txn)

        logger.info(
            "Recorded %s purchase of %s with %d earnings", purchase.package.value, purchase.amount, len(records),
            extra={"purchase_id": purchase.id, "user_id": buyer_id},
        )
        return PurchaseResponse(
            purchase=purchase,
            earnings=records,
            message="Purchase recorded successfully",
        )

    def _resolve_amount(self, request: CreatePurchaseRequest) -> Decimal:
        if request.package == Package.NONE:
            raise LedgerValidationError("A purchase must be for the basic or pro package")

        amount = request.amount
        if amount is None:
            amount = self.settings.PACKAGE_PRICES.get(request.package.value)
        if amount is None:
            raise InvalidAmountError(f"No price configured for package {request.package.value}")
        amount = money(amount)
        if amount <= 0:
            raise InvalidAmountError(f"Purchase amount must be positive, got {amount}")
        return amount

    def _claim(self, purchase_id: str) -> None:
        with self._in_flight_lock:
            if purchase_id in self._in_flight:
                self._reject_duplicate(purchase_id)
            self._check_duplicate(purchase_id)
            self._in_flight.add(purchase_id)

    def _check_duplicate(self, purchase_id: str) -> None:
        if purchase_id in self.storage.purchases:
            self._reject_duplicate(purchase_id)

    def _reject_duplicate(self, purchase_id: str) -> None:
        logger.warning("Rejected duplicate purchase", extra={"purchase_id": purchase_id})
        raise DuplicatePurchaseError(f"Purchase {purchase_id} has already been recorded")
