import logging
import secrets
import threading
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import (
    InactiveUserError,
    InvalidReferralCodeError,
    InvalidStateError,
    UserNotFoundError,
)
from .models import Package, User, utcnow
from .referrals import ReferralGraph
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class UserRegistry:
    def __init__(self, storage: InMemoryStorage, graph: ReferralGraph):
        self.storage = storage
        self.graph = graph
        self._register_lock = threading.Lock()

    def register(self, referral_code: Optional[str] = None, user_id: Optional[UUID] = None) -> User:
        """Create a user, optionally linked under the owner of ``referral_code``."""
        referrer_id = None
        if referral_code:
            referrer_id = self.storage.referral_index.get(referral_code)
            if referrer_id is None or not self.storage.users[referrer_id]["is_active"]:
                raise InvalidReferralCodeError(f"Unknown referral code {referral_code!r}")

        user_id = user_id or uuid4()
        with self._register_lock, self.storage.transaction(user_id) as txn:
            if user_id in self.storage.users:
                raise InvalidStateError(f"User {user_id} is already registered")
            txn.insert("users", user_id, {
                "id": user_id,
                "referrer_id": None,
                "package": Package.NONE,
                "referral_code": self._new_referral_code(user_id),
                "total_earnings": Decimal("0.00"),
                "is_active": True,
                "created_at": utcnow(),
            })
            if referrer_id is not None:
                self.graph.stage_edge(txn, user_id, referrer_id)
        logger.info("Registered user", extra={"user_id": user_id})
        return self.get_user(user_id)

    def get_user(self, user_id: UUID) -> User:
        user_data = self.storage.users.get(user_id)
        if not user_data:
            raise UserNotFoundError(f"User {user_id} not found")
        return User(**user_data)

    def get_by_referral_code(self, referral_code: str) -> User:
        user_id = self.storage.referral_index.get(referral_code)
        if user_id is None:
            raise UserNotFoundError(f"No user with referral code {referral_code!r}")
        return self.get_user(user_id)

    def require_active(self, user_id: UUID) -> User:
        user = self.get_user(user_id)
        if not user.is_active:
            raise InactiveUserError(f"User {user_id} is deactivated")
        return user

    def deactivate(self, user_id: UUID) -> User:
        self.get_user(user_id)
        with self.storage.transaction(user_id) as txn:
            txn.update("users", user_id, is_active=False)
        logger.info("Deactivated user", extra={"user_id": user_id})
        return self.get_user(user_id)

    def _new_referral_code(self, user_id: UUID) -> str:
        for _ in range(8):
            code = secrets.token_urlsafe(8).rstrip("=")
            if code not in self.storage.referral_index:
                return code
        # fallback (should never happen)
        return f"u{user_id.hex}"
