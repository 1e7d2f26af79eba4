"""
The Matcher.

Turns a ServiceRequest into a ranked list of (med tech, period) proposals:
1. Filter: active med techs covering the patient's service area and every requested service.
2. Search: ask the Availability Index for free windows in the desired period or look-ahead horizon.
3. Rank: earliest start, then proximity, then identifier.

Reads are lock-free and may be stale; `BookingEngine.confirm` re-checks atomically.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional

from models import LocationPosition, MedTech, Patient, Period, RequestStatus, ServiceRequest
from .availability import AvailabilityIndex
from .clock import Clock, SystemClock
from .config import EngineSettings
from .errors import ConstraintViolation, InvalidScheduleError, ValidationError
from .scoring import Proposal, ProposalRanker, straight_line_distance
from .store import EntityKind, EntityStore

logger = logging.getLogger(__name__)


def check_request_bookable(request: ServiceRequest) -> None:
    """Only active requests naming at least one service can be matched or booked."""
    if request.status != RequestStatus.ACTIVE:
        raise ValidationError(ConstraintViolation(
            "ServiceRequest", "status", "request-active",
            f"request is '{request.status.value}', not 'active'", request.id
        ))
    if not request.service_ids:
        raise ValidationError(ConstraintViolation(
            "ServiceRequest", "service_ids", "services-required",
            "at least one HealthcareService must be requested", request.id
        ))


def ineligibility(med_tech: MedTech, patient: Patient, required: set) -> Optional[str]:
    """Returns the reason a med tech cannot serve this patient and these services, or None."""
    if not med_tech.active:
        return "inactive"
    if patient.service_area is not None and patient.service_area not in med_tech.service_areas:
        return f"does not serve {patient.service_area.value}"
    missing = required - set(med_tech.service_ids)
    if missing:
        return f"cannot perform {sorted(missing)}"
    return None


@dataclass
class MatchResult:
    """
    Ordered proposals for one request, plus why every other med tech was passed over.
    An empty result means "no capacity", not an error.
    """
    request_id: str
    proposals: List[Proposal] = field(default_factory=list)
    rejections: Dict[str, str] = field(default_factory=dict)

    def __iter__(self) -> Iterator[Proposal]:
        return iter(self.proposals)

    def __len__(self) -> int:
        return len(self.proposals)

    @property
    def best(self) -> Optional[Proposal]:
        return self.proposals[0] if self.proposals else None


class Matcher:
    """
    Finds eligible med techs for a service request and ranks their free slots.
    """

    def __init__(
        self,
        store: EntityStore,
        index: AvailabilityIndex,
        clock: Optional[Clock] = None,
        settings: Optional[EngineSettings] = None,
        ranker: Optional[ProposalRanker] = None
    ):
        self.store = store
        self.index = index
        self.clock = clock or SystemClock()
        self.settings = settings or EngineSettings()
        self.ranker = ranker or ProposalRanker()

    def match(
        self,
        request_id: str,
        desired_period: Optional[Period] = None,
        duration: Optional[timedelta] = None
    ) -> MatchResult:
        """
        Execute the matching pipeline.
        `desired_period` overrides the one stored on the request.
        """
        request: ServiceRequest = self.store.get(EntityKind.SERVICE_REQUEST, request_id)
        check_request_bookable(request)

        patient: Patient = self.store.get(EntityKind.PATIENT, request.patient_id)
        desired = desired_period or request.desired_period
        length = duration or (desired.duration if desired else timedelta(minutes=self.settings.DEFAULT_VISIT_MINUTES))

        # Proposal starts must fall in [lower, upper)
        now = self.clock.now()
        if desired:
            lower, upper = max(desired.start, now), desired.end
        else:
            lower, upper = now, now + timedelta(days=self.settings.LOOKAHEAD_DAYS)

        patient_position = self._position(patient.location_id)
        required = set(request.service_ids)
        result = MatchResult(request_id=request_id)

        for med_tech in sorted(self.store.list(EntityKind.MED_TECH), key=lambda m: m.id):
            # 1. Hard filters
            reason = ineligibility(med_tech, patient, required)
            if reason:
                logger.debug(f"Skipping {med_tech.id}: {reason}")
                result.rejections[med_tech.id] = reason
                continue

            # 2. Free slots
            try:
                slots = self._slots_for(med_tech.id, lower, upper, length)
            except InvalidScheduleError as e:
                logger.warning(f"Skipping {med_tech.id}: {e}")
                result.rejections[med_tech.id] = f"invalid schedule: {e.reason}"
                continue

            if not slots:
                result.rejections[med_tech.id] = "no free window"
                continue

            distance = straight_line_distance(patient_position, self._position(med_tech.work_location_id))
            result.proposals.extend(Proposal(med_tech.id, slot, distance) for slot in slots)

        # 3. Rank
        result.proposals = self.ranker.rank(result.proposals)
        logger.info(
            f"Matched request {request_id}: {len(result.proposals)} proposals, "
            f"{len(result.rejections)} med techs rejected"
        )
        return result

    def _slots_for(self, med_tech_id: str, lower: datetime, upper: datetime, length: timedelta) -> List[Period]:
        """Earliest fitting slot of every free window, capped per med tech."""
        slots = []
        for window in self.index.free_windows(med_tech_id):
            start = max(window.start, lower)
            if start >= upper:
                break
            if start + length <= window.end:
                slots.append(Period(start=start, end=start + length))
                if len(slots) >= self.settings.MAX_PROPOSALS_PER_MED_TECH:
                    break
        return slots

    def _position(self, location_id: Optional[str]) -> Optional[LocationPosition]:
        location = self.store.find(EntityKind.LOCATION, location_id)
        return location.position if location else None
