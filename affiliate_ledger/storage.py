import logging
import threading
from contextlib import contextmanager
from typing import Any, Hashable, Iterable, Iterator
from uuid import UUID

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)

TABLES = ("users", "parents", "purchases", "earnings", "withdrawals")


class UserLocks:
    """Per-user reentrant locks, created on first use."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: dict[UUID, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, user_id: UUID) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.RLock()
            return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    @contextmanager
    def hold(self, user_ids: Iterable[UUID]) -> Iterator[None]:
        # Stable order so overlapping transactions cannot deadlock.
        ordered = sorted(set(user_ids), key=str)
        acquired: list[threading.RLock] = []
        try:
            for user_id in ordered:
                lock = self._lock_for(user_id)
                if not lock.acquire(timeout=self.timeout):
                    logger.error("Lock wait timed out", extra={"user_id": user_id})
                    raise LockTimeoutError(f"Timed out waiting for lock on user {user_id}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


class Transaction:
    """Writes staged here become visible together on commit, or not at all."""

    def __init__(self, storage: "InMemoryStorage"):
        self.storage = storage
        self._ops: list[tuple[str, str, Hashable, Any]] = []
        self.committed = False

    def insert(self, table: str, key: Hashable, row: Any) -> None:
        self._ops.append(("insert", table, key, row))

    def update(self, table: str, key: Hashable, **changes: Any) -> None:
        self._ops.append(("update", table, key, changes))

    def staged(self, table: str) -> list[Any]:
        return [row for op, t, _, row in self._ops if op == "insert" and t == table]

    def commit(self) -> None:
        if self.committed:
            raise RuntimeError("transaction already committed")
        with self.storage.read():
            for op, table, key, data in self._ops:
                self.storage._apply(op, table, key, data)
        self.committed = True


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 5.0):
        self.users: dict[UUID, dict] = {}
        self.parents: dict[UUID, UUID] = {}
        self.purchases: dict[str, dict] = {}
        self.earnings: dict[UUID, dict] = {}
        self.withdrawals: dict[UUID, dict] = {}

        self.children: dict[UUID, list[UUID]] = {}
        self.referral_index: dict[str, UUID] = {}
        self.purchase_earnings: dict[str, list[UUID]] = {}

        self.user_locks = UserLocks(lock_timeout)
        self._commit_lock = threading.RLock()

    @contextmanager
    def read(self) -> Iterator["InMemoryStorage"]:
        with self._commit_lock:
            yield self

    @contextmanager
    def transaction(self, *user_ids: UUID) -> Iterator[Transaction]:
        with self.user_locks.hold(user_ids):
            txn = Transaction(self)
            yield txn
            txn.commit()

    def _apply(self, op: str, table: str, key: Hashable, data: Any) -> None:
        if table not in TABLES:
            raise KeyError(f"Unknown table {table}")
        rows = getattr(self, table)
        if op == "update":
            # rows are replaced, never mutated, so earlier readers keep a consistent copy
            rows[key] = {**rows[key], **data}
            return

        rows[key] = data
        if table == "users":
            self.referral_index[data["referral_code"]] = key
        elif table == "parents":
            self.children.setdefault(data, []).append(key)
        elif table == "earnings":
            self.purchase_earnings.setdefault(data["source_purchase_id"], []).append(key)
