# mlm_system/utils/genealogy.py
"""
Read-only genealogy snapshot.

The sponsorship tree is loaded once per run into an arena of nodes
(integer indices, parent pointer by index, children adjacency lists) and
never re-read while ranks are being updated. Every traversal is
depth/size-bounded and cycle-safe, so corrupted data cannot loop forever.
"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set
from decimal import Decimal
from sqlalchemy.orm import Session
import logging

from mlm_system.errors import DataIntegrityError

logger = logging.getLogger(__name__)

NO_PARENT = -1


@dataclass(frozen=True)
class GenealogyNode:
    """Immutable copy of the participant fields traversal needs."""
    participantID: int
    sponsorID: Optional[int]
    referralCode: str
    rank: str
    isActive: bool
    joinedAt: Optional[datetime] = None


class GenealogySnapshot:
    """
    Immutable, period-scoped view of the sponsorship forest.

    Usage:
        snapshot = GenealogySnapshot.from_session(session, max_depth=5)
        chain = snapshot.get_upline_chain(participant_id)
        team = snapshot.get_descendants(participant_id)
    """

    def __init__(
            self,
            nodes: Iterable[GenealogyNode],
            max_depth: int = 5,
            max_team_size: int = 100000
    ):
        self.max_depth = max_depth
        self.max_team_size = max_team_size

        self._nodes: List[GenealogyNode] = list(nodes)
        self._index: Dict[int, int] = {
            node.participantID: i for i, node in enumerate(self._nodes)
        }
        self._parent: List[int] = [NO_PARENT] * len(self._nodes)
        self._children: List[List[int]] = [[] for _ in self._nodes]

        self._orphans: Set[int] = set()
        self._corrupt: Dict[int, str] = {}
        self._cycles: List[List[int]] = []
        self._duplicate_codes: Dict[str, List[int]] = {}

        self._link_nodes()
        self._detect_cycles()
        self._detect_duplicate_codes()

    # ═══════════════════════════════════════════════════════════════════
    # CONSTRUCTION
    # ═══════════════════════════════════════════════════════════════════

    @classmethod
    def from_session(
            cls,
            session: Session,
            max_depth: int = 5,
            max_team_size: int = 100000
    ) -> "GenealogySnapshot":
        """Load all participants into a snapshot."""
        from models.participant import Participant

        rows = session.query(
            Participant.participantID,
            Participant.sponsorID,
            Participant.referralCode,
            Participant.rank,
            Participant.isActive,
            Participant.joinedAt,
        ).order_by(Participant.participantID).all()

        nodes = [
            GenealogyNode(
                participantID=row.participantID,
                sponsorID=row.sponsorID,
                referralCode=row.referralCode,
                rank=row.rank,
                isActive=bool(row.isActive),
                joinedAt=row.joinedAt,
            )
            for row in rows
        ]

        snapshot = cls(nodes, max_depth=max_depth, max_team_size=max_team_size)
        logger.info(
            f"Genealogy snapshot built: {len(nodes)} participants, "
            f"{len(snapshot._cycles)} cycles, {len(snapshot._orphans)} orphans"
        )
        return snapshot

    def _link_nodes(self):
        for i, node in enumerate(self._nodes):
            if node.sponsorID is None:
                continue

            if node.sponsorID == node.participantID:
                self._corrupt[node.participantID] = (
                    f"Participant {node.participantID} sponsors itself"
                )
                self._cycles.append([node.participantID])
                logger.error(f"Self-sponsorship detected for participant {node.participantID}")
                continue

            parent = self._index.get(node.sponsorID)
            if parent is None:
                self._orphans.add(node.participantID)
                logger.warning(
                    f"Sponsor {node.sponsorID} not found for participant "
                    f"{node.participantID}, treating as root"
                )
                continue

            self._parent[i] = parent
            self._children[parent].append(i)

    def _detect_cycles(self):
        """Mark every participant that sits on a sponsor cycle."""
        UNVISITED, ON_PATH, DONE = 0, 1, 2
        state = [UNVISITED] * len(self._nodes)

        for start in range(len(self._nodes)):
            if state[start] != UNVISITED:
                continue

            path = []
            position: Dict[int, int] = {}
            current = start

            while current != NO_PARENT and state[current] == UNVISITED:
                state[current] = ON_PATH
                position[current] = len(path)
                path.append(current)
                current = self._parent[current]

            if current != NO_PARENT and state[current] == ON_PATH:
                members = [self._nodes[i].participantID for i in path[position[current]:]]
                self._cycles.append(members)
                chain = " → ".join(str(m) for m in members + [members[0]])
                logger.error(f"Cycle detected in genealogy: {chain}")
                for member in members:
                    self._corrupt[member] = f"Cycle detected in genealogy: {chain}"

            for i in path:
                state[i] = DONE

    def _detect_duplicate_codes(self):
        """Referral codes must be unique ignoring case and surrounding spaces."""
        seen: Dict[str, List[int]] = {}
        for node in self._nodes:
            code = (node.referralCode or "").strip().upper()
            seen.setdefault(code, []).append(node.participantID)

        for code, owners in seen.items():
            if len(owners) < 2:
                continue
            self._duplicate_codes[code] = owners
            logger.error(f"Duplicate referral code {code!r} shared by participants {owners}")
            for owner in owners:
                self._corrupt.setdefault(
                    owner, f"Duplicate referral code {code!r} shared by participants {owners}"
                )

    # ═══════════════════════════════════════════════════════════════════
    # LOOKUPS
    # ═══════════════════════════════════════════════════════════════════

    def __contains__(self, participant_id: int) -> bool:
        return participant_id in self._index

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def participant_ids(self) -> List[int]:
        return [node.participantID for node in self._nodes]

    def get_node(self, participant_id: int) -> GenealogyNode:
        index = self._index.get(participant_id)
        if index is None:
            raise KeyError(f"Participant {participant_id} not in genealogy snapshot")
        return self._nodes[index]

    def get_sponsor_id(self, participant_id: int) -> Optional[int]:
        """Immediate sponsor inside the snapshot (None for roots and orphans)."""
        parent = self._parent[self._index[participant_id]]
        if parent == NO_PARENT:
            return None
        return self._nodes[parent].participantID

    def is_root(self, participant_id: int) -> bool:
        return self.get_sponsor_id(participant_id) is None

    def check_integrity(self, participant_id: int):
        """
        Raises:
            DataIntegrityError: If the participant is on a cycle or shares a referral code
        """
        reason = self._corrupt.get(participant_id)
        if reason:
            raise DataIntegrityError(reason, participantId=participant_id)

    def is_corrupt(self, participant_id: int) -> bool:
        return participant_id in self._corrupt

    # ═══════════════════════════════════════════════════════════════════
    # TRAVERSAL
    # ═══════════════════════════════════════════════════════════════════

    def get_upline_chain(self, participant_id: int, max_depth: Optional[int] = None) -> List[int]:
        """
        Ancestor ids ordered from immediate sponsor upward.

        Stops at the root, at max_depth, or on a revisited node (corruption:
        logged and truncated).
        """
        depth_limit = self.max_depth if max_depth is None else max_depth
        chain: List[int] = []
        visited = {self._index[participant_id]}
        current = self._parent[self._index[participant_id]]

        while current != NO_PARENT and len(chain) < depth_limit:
            if current in visited:
                logger.error(
                    f"Cycle hit while walking upline of participant {participant_id}, "
                    f"truncating at {len(chain)} levels"
                )
                break
            visited.add(current)
            chain.append(self._nodes[current].participantID)
            current = self._parent[current]

        return chain

    def get_children(self, participant_id: int) -> List[int]:
        return [self._nodes[i].participantID for i in self._children[self._index[participant_id]]]

    def count_direct_referrals(self, participant_id: int, active_only: bool = True) -> int:
        children = self._children[self._index[participant_id]]
        if not active_only:
            return len(children)
        return sum(1 for i in children if self._nodes[i].isActive)

    def get_descendants(self, participant_id: int) -> List[int]:
        """
        Full downline (excluding the participant), breadth-first.
        Bounded by max_team_size and cycle-safe.
        """
        root = self._index[participant_id]
        visited = {root}
        queue = deque(self._children[root])
        result: List[int] = []

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            if len(result) >= self.max_team_size:
                logger.warning(
                    f"Downline of participant {participant_id} exceeds "
                    f"{self.max_team_size} members, truncating"
                )
                break
            visited.add(current)
            result.append(self._nodes[current].participantID)
            queue.extend(self._children[current])

        return result

    def count_downline(self, participant_id: int) -> int:
        return len(self.get_descendants(participant_id))

    def get_depth_map(self, participant_id: int, max_depth: Optional[int] = None) -> Dict[int, int]:
        """Descendant id → level below participant (1 = direct referral)."""
        depth_limit = self.max_depth if max_depth is None else max_depth
        root = self._index[participant_id]
        visited = {root}
        frontier = list(self._children[root])
        depths: Dict[int, int] = {}
        level = 1

        while frontier and level <= depth_limit:
            next_frontier = []
            for current in frontier:
                if current in visited:
                    continue
                visited.add(current)
                depths[self._nodes[current].participantID] = level
                next_frontier.extend(self._children[current])
            frontier = next_frontier
            level += 1

        return depths

    def sum_over_descendants(self, values: Dict[int, Decimal]) -> Dict[int, Decimal]:
        """
        For every participant, sum values over its strict descendants.

        Uses one bottom-up pass for nodes reachable from a root; nodes only
        reachable through a cycle fall back to bounded per-node traversal.
        """
        totals = [Decimal("0")] * len(self._nodes)
        order: List[int] = []
        reached = set()

        queue = deque(i for i in range(len(self._nodes)) if self._parent[i] == NO_PARENT)
        while queue:
            current = queue.popleft()
            if current in reached:
                continue
            reached.add(current)
            order.append(current)
            queue.extend(self._children[current])

        for current in reversed(order):
            parent = self._parent[current]
            if parent != NO_PARENT:
                own = values.get(self._nodes[current].participantID, Decimal("0"))
                totals[parent] += totals[current] + own

        result = {
            self._nodes[i].participantID: totals[i] for i in order
        }

        for i, node in enumerate(self._nodes):
            if i in reached:
                continue
            result[node.participantID] = sum(
                (values.get(d, Decimal("0")) for d in self.get_descendants(node.participantID)),
                Decimal("0")
            )

        return result

    # ═══════════════════════════════════════════════════════════════════
    # VALIDATION
    # ═══════════════════════════════════════════════════════════════════

    def find_corruption(self) -> Dict[str, list]:
        """
        Summarize data problems found while building the snapshot.

        Returns:
            {"cycles": [[ids...]], "orphans": [ids], "duplicateCodes": {code: [ids]}}
        """
        return {
            "cycles": [list(cycle) for cycle in self._cycles],
            "orphans": sorted(self._orphans),
            "duplicateCodes": {code: list(ids) for code, ids in self._duplicate_codes.items()},
        }
