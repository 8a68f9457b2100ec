"""
Tests for the referral forest and user registration.
"""

from uuid import uuid4

import pytest

from affiliate_ledger.errors import (
    AlreadyLinkedError,
    CycleError,
    InvalidReferralCodeError,
    InvalidStateError,
    LockTimeoutError,
    UserNotFoundError,
)


class TestSetParent:
    """Linking users into the referral forest."""

    def test_link_and_walk_ancestors(self, system):
        c = system.users.register().id
        b = system.users.register().id
        a = system.users.register().id

        system.graph.set_parent(b, c)
        system.graph.set_parent(a, b)

        assert system.graph.get_ancestors(a, 5) == [b, c]
        assert system.graph.get_parent(a) == b
        assert system.users.get_user(a).referrer_id == b

    def test_reverse_edge_is_a_cycle(self, system):
        """setParent(X, Y) then setParent(Y, X) must fail."""
        x = system.users.register().id
        y = system.users.register().id

        system.graph.set_parent(x, y)

        with pytest.raises(CycleError):
            system.graph.set_parent(y, x)
        assert system.graph.get_parent(y) is None

    def test_longer_cycle_is_rejected(self, system):
        a, b, c = (system.users.register().id for _ in range(3))
        system.graph.set_parent(a, b)
        system.graph.set_parent(b, c)

        with pytest.raises(CycleError):
            system.graph.set_parent(c, a)

    def test_self_referral_is_a_cycle(self, system):
        x = system.users.register().id
        with pytest.raises(CycleError):
            system.graph.set_parent(x, x)

    def test_second_parent_rejected(self, system):
        child, first, second = (system.users.register().id for _ in range(3))
        system.graph.set_parent(child, first)

        with pytest.raises(AlreadyLinkedError):
            system.graph.set_parent(child, second)
        assert system.graph.get_parent(child) == first

    def test_unknown_user_rejected(self, system):
        known = system.users.register().id
        with pytest.raises(UserNotFoundError):
            system.graph.set_parent(known, uuid4())


class TestGetAncestors:
    """Bounded ancestor walks."""

    def test_truncated_at_max_depth(self, system):
        ids = [system.users.register().id for _ in range(5)]
        for child, parent in zip(ids, ids[1:]):
            system.graph.set_parent(child, parent)

        assert system.graph.get_ancestors(ids[0], 2) == ids[1:3]
        assert system.graph.get_ancestors(ids[0], 0) == []

    def test_stops_at_root(self, system):
        root = system.users.register().id
        child = system.users.register().id
        system.graph.set_parent(child, root)

        assert system.graph.get_ancestors(child, 10) == [root]
        assert system.graph.get_ancestors(root, 10) == []

    def test_negative_depth_rejected(self, system):
        user = system.users.register().id
        with pytest.raises(ValueError):
            system.graph.get_ancestors(user, -1)


class TestRegistration:
    """User registration with referral codes."""

    def test_register_with_referral_code(self, system):
        referrer = system.users.register()
        referred = system.users.register(referral_code=referrer.referral_code)

        assert referred.referrer_id == referrer.id
        assert system.graph.get_children(referrer.id) == [referred.id]
        assert system.users.get_by_referral_code(referrer.referral_code).id == referrer.id

    def test_referral_codes_are_unique(self, system):
        codes = {system.users.register().referral_code for _ in range(50)}
        assert len(codes) == 50

    def test_unknown_code_rejected(self, system):
        with pytest.raises(InvalidReferralCodeError):
            system.users.register(referral_code="does-not-exist")

    def test_deactivated_referrer_code_rejected(self, system):
        referrer = system.users.register()
        system.users.deactivate(referrer.id)

        with pytest.raises(InvalidReferralCodeError):
            system.users.register(referral_code=referrer.referral_code)

    def test_duplicate_user_id_rejected(self, system):
        user_id = uuid4()
        system.users.register(user_id=user_id)
        with pytest.raises(InvalidStateError):
            system.users.register(user_id=user_id)

    def test_deactivate_keeps_user(self, system):
        user = system.users.register()
        deactivated = system.users.deactivate(user.id)

        assert deactivated.is_active is False
        assert system.users.get_user(user.id).referral_code == user.referral_code

    def test_failed_link_leaves_no_user(self, system, monkeypatch):
        referrer = system.users.register()
        user_id = uuid4()

        def fail(txn, child_id, parent_id):
            raise LockTimeoutError("simulated timeout")

        monkeypatch.setattr(system.graph, "stage_edge", fail)
        with pytest.raises(LockTimeoutError):
            system.users.register(referral_code=referrer.referral_code, user_id=user_id)

        assert user_id not in system.storage.users
        assert system.graph.get_children(referrer.id) == []

        monkeypatch.undo()
        retried = system.users.register(referral_code=referrer.referral_code, user_id=user_id)
        assert retried.referrer_id == referrer.id
        assert system.graph.get_ancestors(user_id, 1) == [referrer.id]
