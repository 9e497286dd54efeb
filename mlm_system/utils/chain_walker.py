# mlm_system/utils/chain_walker.py
"""
Safe MLM chain walking utilities.
Prevents infinite loops and validates chain integrity.

Sponsor relations are read from the append-only SponsorBinding log, so
every walk can be evaluated "as of" any moment: the sponsor of a member
at T is its binding with the highest sequence and boundAt <= T.
"""
from datetime import datetime
from typing import Optional, Callable, Set, List, Dict, Iterable, Iterator, Tuple
from sqlalchemy.orm import Session
from sqlalchemy import func
import logging

from models.member import Member
from models.sponsor_binding import SponsorBinding
from mlm_system.errors import CycleDetected
from mlm_system.utils.time_machine import timeMachine

logger = logging.getLogger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CHUNK = 500


def chunked(ids: List[int], size: int = _IN_CHUNK) -> Iterator[List[int]]:
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


class ChainWalker:
    """
    Safe utilities for walking MLM upline/downline chains.
    Prevents infinite loops and validates chain integrity.
    """

    def __init__(self, session: Session):
        self.session = session

    # ============================================================
    # POINT-IN-TIME SPONSOR LOOKUPS
    # ============================================================

    def effective_sponsors(
            self,
            member_ids: Iterable[int],
            structure_type: int,
            at: Optional[datetime] = None
    ) -> Dict[int, int]:
        """
        Resolve sponsors of many members at one moment.

        Args:
            member_ids: Members to resolve
            structure_type: Structure to read
            at: Moment (defaults to now)

        Returns:
            Dict memberID -> sponsorID (members without a binding are absent)
        """
        at = at or timeMachine.now
        ids = sorted(set(member_ids))
        result: Dict[int, int] = {}

        for chunk in chunked(ids):
            bindings = self.session.query(SponsorBinding).filter(
                SponsorBinding.memberID.in_(chunk),
                SponsorBinding.structureType == int(structure_type),
                SponsorBinding.boundAt <= at
            ).order_by(SponsorBinding.memberID, SponsorBinding.sequence).all()

            # Later sequence overwrites earlier
            for binding in bindings:
                result[binding.memberID] = binding.sponsorID

        return result

    def get_sponsor_id(
            self,
            member_id: int,
            structure_type: int,
            at: Optional[datetime] = None
    ) -> Optional[int]:
        """Sponsor of one member at a moment, or None."""
        at = at or timeMachine.now
        binding = self.session.query(SponsorBinding).filter(
            SponsorBinding.memberID == member_id,
            SponsorBinding.structureType == int(structure_type),
            SponsorBinding.boundAt <= at
        ).order_by(SponsorBinding.sequence.desc()).first()

        return binding.sponsorID if binding else None

    def has_any_binding(self, member_id: int, structure_type: Optional[int] = None) -> bool:
        """Whether the member was ever bound to a sponsor."""
        query = self.session.query(SponsorBinding.bindingID).filter(
            SponsorBinding.memberID == member_id
        )
        if structure_type is not None:
            query = query.filter(SponsorBinding.structureType == int(structure_type))
        return query.first() is not None

    def children_of(
            self,
            sponsor_ids: Iterable[int],
            structure_type: int,
            at: Optional[datetime] = None
    ) -> Dict[int, List[int]]:
        """
        Direct referrals of several sponsors at a moment.

        A member that was once bound to a sponsor but later moved away by an
        admin override is not counted for the old sponsor.

        Returns:
            Dict sponsorID -> list of memberIDs
        """
        at = at or timeMachine.now
        sponsors = sorted(set(sponsor_ids))
        candidates: Set[int] = set()

        for chunk in chunked(sponsors):
            rows = self.session.query(SponsorBinding.memberID).filter(
                SponsorBinding.sponsorID.in_(chunk),
                SponsorBinding.structureType == int(structure_type),
                SponsorBinding.boundAt <= at
            ).distinct().all()
            candidates.update(row[0] for row in rows)

        children: Dict[int, List[int]] = {sponsor_id: [] for sponsor_id in sponsors}
        if not candidates:
            return children

        for member_id, sponsor_id in self.effective_sponsors(candidates, structure_type, at).items():
            if sponsor_id in children:
                children[sponsor_id].append(member_id)

        return children

    def count_direct_referrals_at_time(
            self,
            sponsor_id: int,
            structure_type: int,
            at: Optional[datetime] = None
    ) -> int:
        """
        Count direct referrals a sponsor had at a moment.

        Used for level unlocking, which must be judged at the time of the
        triggering event rather than at query time.
        """
        return len(self.children_of([sponsor_id], structure_type, at)[sponsor_id])

    # ============================================================
    # UPLINE
    # ============================================================

    def walk_upline(
            self,
            member_id: int,
            structure_type: int,
            callback: Callable[[int, int], bool],
            at: Optional[datetime] = None,
            max_depth: int = 50,
            strict: bool = False
    ) -> int:
        """
        Safely walk up the upline chain, calling callback for each ancestor.

        Args:
            member_id: Starting member
            structure_type: Structure to follow
            callback: Function(ancestor_id, level) -> continue_walking (bool)
            at: Moment of the walk (defaults to now)
            max_depth: Maximum depth to prevent runaway loops
            strict: Raise CycleDetected instead of stopping at a cycle

        Returns:
            Number of ancestors processed

        Example:
            def process_upline(ancestor_id, level):
                print(f"Level {level}: {ancestor_id}")
                return True  # Continue walking

            walker.walk_upline(member.memberID, StructureType.SUBSCRIPTION, process_upline)
        """
        at = at or timeMachine.now
        current_id = member_id
        level = 1
        processed = 0
        visited = {member_id}

        while level <= max_depth:
            sponsor_id = self.get_sponsor_id(current_id, structure_type, at)
            if sponsor_id is None:
                break

            # Check for cycles
            if sponsor_id in visited:
                logger.error(
                    f"Cycle detected in S{int(structure_type)} upline of member {member_id} "
                    f"at member {sponsor_id}"
                )
                if strict:
                    raise CycleDetected(
                        f"Upline of member {member_id} loops at {sponsor_id}",
                        member_id=member_id,
                        at_member=sponsor_id
                    )
                break

            visited.add(sponsor_id)

            should_continue = callback(sponsor_id, level)
            processed += 1

            if not should_continue:
                break

            current_id = sponsor_id
            level += 1

        return processed

    def get_upline_chain(
            self,
            member_id: int,
            structure_type: int,
            at: Optional[datetime] = None,
            max_depth: int = 50
    ) -> List[Tuple[int, int]]:
        """
        Get list of (ancestor_id, level) from immediate sponsor upwards.
        """
        chain = []

        def collect(ancestor_id, level):
            chain.append((ancestor_id, level))
            return True  # Continue

        self.walk_upline(member_id, structure_type, collect, at=at, max_depth=max_depth)
        return chain

    # ============================================================
    # DOWNLINE
    # ============================================================

    def walk_downline(
            self,
            root_id: int,
            structure_type: int,
            at: Optional[datetime] = None,
            max_depth: int = 50,
            strict: bool = False
    ) -> List[Tuple[int, int, int]]:
        """
        Breadth-first walk of the downline.

        Each level is ordered by member createdAt, then memberID, so the
        result is stable for pagination.

        Args:
            root_id: Root member
            structure_type: Structure to follow
            at: Moment of the walk (defaults to now)
            max_depth: Deepest level to return
            strict: Raise CycleDetected on a revisited member

        Returns:
            List of (member_id, parent_id, level), each member exactly once
        """
        at = at or timeMachine.now
        visited = {root_id}
        result: List[Tuple[int, int, int]] = []
        frontier = [root_id]
        level = 1

        while frontier and level <= max_depth:
            children = self.children_of(frontier, structure_type, at)

            pairs = []
            for parent_id in frontier:
                for child_id in children.get(parent_id, []):
                    if child_id in visited:
                        logger.error(
                            f"Cycle detected in S{int(structure_type)} downline of {root_id} "
                            f"at member {child_id}"
                        )
                        if strict:
                            raise CycleDetected(
                                f"Downline of member {root_id} revisits {child_id}",
                                member_id=root_id,
                                at_member=child_id
                            )
                        continue
                    visited.add(child_id)
                    pairs.append((child_id, parent_id))

            if not pairs:
                break

            created = self._created_at_map([child_id for child_id, _ in pairs])
            pairs.sort(key=lambda pair: (created.get(pair[0]) or datetime.min, pair[0]))

            result.extend((child_id, parent_id, level) for child_id, parent_id in pairs)
            frontier = [child_id for child_id, _ in pairs]
            level += 1

        return result

    def count_downline(
            self,
            member_id: int,
            structure_type: int,
            max_depth: int = 50
    ) -> int:
        """Count total number of members in downline."""
        return len(self.walk_downline(member_id, structure_type, max_depth=max_depth))

    # ============================================================
    # VALIDATION
    # ============================================================

    def would_create_cycle(
            self,
            member_id: int,
            sponsor_id: int,
            structure_type: int
    ) -> bool:
        """
        Check whether binding member under sponsor closes a loop,
        i.e. member is already an ancestor of sponsor (or the sponsor itself).
        """
        if member_id == sponsor_id:
            return True

        found = [False]

        def check(ancestor_id, level):
            if ancestor_id == member_id:
                found[0] = True
                return False
            return True

        self.walk_upline(sponsor_id, structure_type, check)
        return found[0]

    def find_cycles(self, structure_type: int) -> Set[int]:
        """
        Find all members whose current upline loops.

        Returns:
            Set of memberIDs sitting on a cycle
        """
        sponsors = self.effective_sponsors(
            [row[0] for row in self.session.query(SponsorBinding.memberID).filter(
                SponsorBinding.structureType == int(structure_type)
            ).distinct()],
            structure_type
        )

        on_cycle: Set[int] = set()
        for start in sponsors:
            path = []
            seen = set()
            current = start
            while current in sponsors and current not in seen:
                seen.add(current)
                path.append(current)
                current = sponsors[current]
            if current in seen:
                on_cycle.update(path[path.index(current):])

        if on_cycle:
            logger.warning(f"Found {len(on_cycle)} members on S{int(structure_type)} cycles: {on_cycle}")
        else:
            logger.info(f"No cycles found in S{int(structure_type)}")

        return on_cycle

    # ============================================================
    # INTERNAL
    # ============================================================

    def _created_at_map(self, member_ids: List[int]) -> Dict[int, datetime]:
        created = {}
        for chunk in chunked(sorted(set(member_ids))):
            rows = self.session.query(Member.memberID, Member.createdAt).filter(
                Member.memberID.in_(chunk)
            ).all()
            created.update({member_id: created_at for member_id, created_at in rows})
        return created

    def latest_sequence(self, member_id: int, structure_type: int) -> int:
        """Highest binding sequence of a member in a structure (0 if never bound)."""
        value = self.session.query(func.max(SponsorBinding.sequence)).filter(
            SponsorBinding.memberID == member_id,
            SponsorBinding.structureType == int(structure_type)
        ).scalar()
        return int(value or 0)
