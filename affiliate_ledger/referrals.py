import logging
import threading
from typing import Optional
from uuid import UUID

from .errors import AlreadyLinkedError, CycleError, UserNotFoundError
from .storage import InMemoryStorage, Transaction

logger = logging.getLogger(__name__)


class ReferralGraph:
    """Referral forest kept as a child -> parent index.

    Reads walk the index without locking. Writes hold the child's user lock
    and a graph-wide write lock, so the cycle check and the insert are one step.
    """

    def __init__(self, storage: InMemoryStorage):
        self.storage = storage
        self._write_lock = threading.Lock()

    def set_parent(self, child_id: UUID, parent_id: UUID) -> None:
        self.require_user(child_id)
        self.require_user(parent_id)
        if child_id == parent_id:
            logger.warning("Rejected self-referral", extra={"user_id": child_id})
            raise CycleError(f"User {child_id} cannot refer themselves")

        with self._write_lock, self.storage.transaction(child_id) as txn:
            existing = self.storage.parents.get(child_id)
            if existing is not None:
                logger.warning(
                    "Rejected second referrer %s (already linked to %s)", parent_id, existing,
                    extra={"user_id": child_id},
                )
                raise AlreadyLinkedError(f"User {child_id} is already referred by {existing}")
            if self._is_descendant(parent_id, child_id):
                logger.warning(
                    "Rejected referral edge that would create a cycle via %s", parent_id,
                    extra={"user_id": child_id},
                )
                raise CycleError(f"User {parent_id} is a descendant of {child_id}")

            self.stage_edge(txn, child_id, parent_id)

        logger.info("Linked referral edge to parent %s", parent_id, extra={"user_id": child_id})

    def stage_edge(self, txn: Transaction, child_id: UUID, parent_id: UUID) -> None:
        """Stage the edge child -> parent in ``txn``.

        Callers either hold the write lock after the cycle check, or stage the
        edge for a user created in the same transaction, which nobody can refer to yet.
        """
        txn.insert("parents", child_id, parent_id)
        txn.update("users", child_id, referrer_id=parent_id)

    def get_ancestors(self, user_id: UUID, max_depth: int) -> list[UUID]:
        """Ancestor ids nearest-first, at most ``max_depth`` of them."""
        if max_depth < 0:
            raise ValueError("max_depth must not be negative")
        self.require_user(user_id)

        ancestors: list[UUID] = []
        current = user_id
        while len(ancestors) < max_depth:
            parent = self.storage.parents.get(current)
            if parent is None:
                break
            ancestors.append(parent)
            current = parent
        return ancestors

    def get_parent(self, user_id: UUID) -> Optional[UUID]:
        self.require_user(user_id)
        return self.storage.parents.get(user_id)

    def get_children(self, user_id: UUID) -> list[UUID]:
        self.require_user(user_id)
        return list(self.storage.children.get(user_id, ()))

    def _is_descendant(self, candidate: UUID, root: UUID) -> bool:
        # Every walk ends within one step per edge since the graph is a forest.
        current = candidate
        for _ in range(len(self.storage.parents) + 1):
            if current == root:
                return True
            current = self.storage.parents.get(current)
            if current is None:
                return False
        raise CycleError(f"Referral chain above {candidate} does not terminate")

    def require_user(self, user_id: UUID) -> None:
        if user_id not in self.storage.users:
            raise UserNotFoundError(f"User {user_id} not found")
