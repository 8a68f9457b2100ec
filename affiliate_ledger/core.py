import time
from typing import Callable, Optional

from .commission import CommissionEngine
from .config import Settings, get_settings
from .queries import QueryFacade
from .referrals import ReferralGraph
from .service import LedgerService
from .storage import InMemoryStorage
from .users import UserRegistry
from .withdrawals import PayoutRail, WithdrawalProcessor


class AffiliateLedger:
    """All ledger components wired around one storage."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[InMemoryStorage] = None,
        payout_rail: Optional[PayoutRail] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage(lock_timeout=self.settings.LOCK_TIMEOUT_SECONDS)
        self.graph = ReferralGraph(self.storage)
        self.users = UserRegistry(self.storage, self.graph)
        self.ledger = LedgerService(self.storage, self.settings)
        self.commissions = CommissionEngine(
            self.storage, self.graph, self.users, self.ledger, self.settings
        )
        self.withdrawals = WithdrawalProcessor(
            self.storage, self.ledger, self.users, self.settings, payout_rail=payout_rail, sleep=sleep
        )
        self.queries = QueryFacade(self.storage, self.ledger, self.graph)
