from decimal import Decimal
from uuid import uuid4

import pytest

from affiliate_ledger.config import Settings
from affiliate_ledger.core import AffiliateLedger
from affiliate_ledger.models import (
    CreatePurchaseRequest,
    EarningKind,
    EarningRecord,
    Package,
    money,
    utcnow,
)


@pytest.fixture
def settings():
    return Settings(
        ADMIN_TOKEN="test-admin-token",
        LOCK_TIMEOUT_SECONDS=2.0,
        PAYOUT_BACKOFF_BASE_SECONDS=0.0,
        PAYOUT_BACKOFF_MAX_SECONDS=0.0,
    )


@pytest.fixture
def system(settings):
    return AffiliateLedger(settings=settings, sleep=lambda _: None)


@pytest.fixture
def credit(system):
    """Give a user ledger earnings directly, paid unless told otherwise."""

    def _credit(user_id, amount, paid=True):
        record = EarningRecord(
            id=uuid4(),
            beneficiary_id=user_id,
            source_purchase_id=f"seed-{uuid4().hex}",
            buyer_id=user_id,
            kind=EarningKind.DIRECT,
            gross_amount=money(amount),
            commission_rate=Decimal("1"),
            commission_amount=money(amount),
            created_at=utcnow(),
        )
        system.ledger.record_earnings([record])
        if paid:
            system.ledger.mark_paid([record.id])
        return record

    return _credit


@pytest.fixture
def buy(system):
    """Record a purchase through the commission engine."""

    def _buy(buyer_id, package=Package.PRO, amount=None, purchase_id=None):
        return system.commissions.process_purchase(CreatePurchaseRequest(
            purchase_id=purchase_id or f"order-{uuid4().hex}",
            buyer_id=buyer_id,
            package=package,
            amount=amount,
        ))

    return _buy
