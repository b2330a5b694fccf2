# tests/test_genealogy.py
"""
Tests for GenealogySnapshot.

Covers upline chains, descendant traversal, bottom-up team sums and the
corruption checks (cycles, orphans, duplicate referral codes).
"""
import logging
from decimal import Decimal

import pytest

from mlm_system.errors import DataIntegrityError
from mlm_system.utils.genealogy import GenealogyNode, GenealogySnapshot


def node(pid, sponsor=None, code=None, rank="starter", active=True):
    return GenealogyNode(
        participantID=pid,
        sponsorID=sponsor,
        referralCode=code or f"CODE{pid}",
        rank=rank,
        isActive=active,
    )


@pytest.fixture
def tree():
    """
        1
        ├─ 2
        │  ├─ 4
        │  │  └─ 6
        │  └─ 5 (inactive)
        └─ 3
    """
    return GenealogySnapshot([
        node(1),
        node(2, 1),
        node(3, 1),
        node(4, 2),
        node(5, 2, active=False),
        node(6, 4),
    ])


# =============================================================================
# TEST CLASS: Traversal
# =============================================================================

class TestTraversal:

    def test_upline_chain_ordered_from_sponsor(self, tree):
        assert tree.get_upline_chain(6) == [4, 2, 1]

    def test_upline_chain_respects_depth(self, tree):
        assert tree.get_upline_chain(6, max_depth=2) == [4, 2]

    def test_root_has_empty_chain(self, tree):
        assert tree.get_upline_chain(1) == []
        assert tree.is_root(1)

    def test_descendants_breadth_first(self, tree):
        assert tree.get_descendants(1) == [2, 3, 4, 5, 6]
        assert tree.get_descendants(6) == []

    def test_direct_referrals_active_only(self, tree):
        assert tree.count_direct_referrals(2) == 1
        assert tree.count_direct_referrals(2, active_only=False) == 2

    def test_depth_map(self, tree):
        assert tree.get_depth_map(1) == {2: 1, 3: 1, 4: 2, 5: 2, 6: 3}
        assert tree.get_depth_map(1, max_depth=1) == {2: 1, 3: 1}

    def test_team_size_bound(self):
        nodes = [node(1)] + [node(pid, 1) for pid in range(2, 12)]
        snapshot = GenealogySnapshot(nodes, max_team_size=5)

        assert len(snapshot.get_descendants(1)) == 5

    def test_sum_over_descendants_excludes_self(self, tree):
        values = {1: Decimal("1"), 2: Decimal("10"), 4: Decimal("100"), 6: Decimal("1000")}

        totals = tree.sum_over_descendants(values)

        assert totals[1] == Decimal("1110")
        assert totals[2] == Decimal("1100")
        assert totals[4] == Decimal("1000")
        assert totals[6] == Decimal("0")
        assert totals[3] == Decimal("0")

    def test_unknown_participant_raises_key_error(self, tree):
        with pytest.raises(KeyError):
            tree.get_node(99)


# =============================================================================
# TEST CLASS: Corruption
# =============================================================================

class TestCorruption:

    def test_clean_tree_reports_nothing(self, tree):
        assert tree.find_corruption() == {"cycles": [], "orphans": [], "duplicateCodes": {}}

    def test_cycle_detected_and_traversal_terminates(self, caplog):
        # 1 is a root; 2 → 3 → 4 → 2 is a loop hanging off nothing
        with caplog.at_level(logging.ERROR):
            snapshot = GenealogySnapshot([node(1), node(2, 4), node(3, 2), node(4, 3)])
            chain = snapshot.get_upline_chain(2, max_depth=50)

        assert chain == [4, 3]
        assert "Cycle detected in genealogy" in caplog.text
        report = snapshot.find_corruption()
        assert len(report["cycles"]) == 1
        assert sorted(report["cycles"][0]) == [2, 3, 4]

        for pid in (2, 3, 4):
            with pytest.raises(DataIntegrityError) as exc:
                snapshot.check_integrity(pid)
            assert exc.value.participantId == pid
        snapshot.check_integrity(1)

    def test_cycle_members_still_get_team_sums(self):
        snapshot = GenealogySnapshot([node(2, 3), node(3, 2)])

        totals = snapshot.sum_over_descendants({2: Decimal("5"), 3: Decimal("7")})

        assert totals[2] == Decimal("7")
        assert totals[3] == Decimal("5")

    def test_self_sponsorship_is_a_cycle(self):
        snapshot = GenealogySnapshot([node(1, 1)])

        assert snapshot.find_corruption()["cycles"] == [[1]]
        assert snapshot.is_corrupt(1)
        assert snapshot.get_upline_chain(1) == []

    def test_orphan_treated_as_root(self):
        snapshot = GenealogySnapshot([node(1), node(2, 77)])

        assert snapshot.find_corruption()["orphans"] == [2]
        assert snapshot.is_root(2)
        assert not snapshot.is_corrupt(2)

    def test_duplicate_codes_ignore_case_and_spaces(self):
        snapshot = GenealogySnapshot([
            node(1, code="ABC"),
            node(2, 1, code=" abc "),
            node(3, 1, code="XYZ"),
        ])

        assert snapshot.find_corruption()["duplicateCodes"] == {"ABC": [1, 2]}
        with pytest.raises(DataIntegrityError):
            snapshot.check_integrity(2)
        snapshot.check_integrity(3)


# =============================================================================
# TEST CLASS: Loading
# =============================================================================

class TestFromSession:

    def test_loads_participants(self, session, make_chain):
        top, middle, bottom = make_chain("gold", "silver", "starter")

        snapshot = GenealogySnapshot.from_session(session)

        assert len(snapshot) == 3
        assert snapshot.get_upline_chain(bottom.participantID) == [middle.participantID, top.participantID]
        assert snapshot.get_node(top.participantID).rank == "gold"
