"""
Proposal ranking for the Matcher.

Unlike hard constraints (binary Yes/No), ranking orders the valid proposals:
1. Earliest available start first (patients want the soonest visit).
2. Then the med tech whose work location is closest to the patient's home.
3. Then med tech identifier, so identical inputs always give identical output.
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from models import LocationPosition, Period


@dataclass(frozen=True)
class Proposal:
    """A candidate (med tech, period) pairing for a service request."""
    med_tech_id: str
    period: Period
    distance: Optional[float] = None  # None when either location is unknown


def straight_line_distance(a: Optional[LocationPosition], b: Optional[LocationPosition]) -> Optional[float]:
    """Euclidean distance over (latitude, longitude). None if either position is missing."""
    if a is None or b is None:
        return None
    return math.hypot(a.latitude - b.latitude, a.longitude - b.longitude)


class ProposalRanker:
    """
    Orders proposals deterministically.
    """

    @staticmethod
    def sort_key(proposal: Proposal) -> Tuple:
        # Unknown distance ranks after every known one
        distance = proposal.distance if proposal.distance is not None else math.inf
        return (proposal.period.start, distance, proposal.med_tech_id)

    def rank(self, proposals: List[Proposal]) -> List[Proposal]:
        return sorted(proposals, key=self.sort_key)
