"""
Availability Index.

This module acts as the 'Memory' of the engine. For every med tech it keeps:
1. The schedulable windows (availabilities, validated against the outer schedule).
2. The free intervals left after subtracting occupying Appointments, ordered by start.
3. A re-entrant lock, so "is it free? then reserve it" is atomic per med tech.

Queries bisect the ordered free list, so `is_free` is O(log n).
"""

import logging
import threading
from bisect import bisect_right
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from models import MedTech, Period, OCCUPYING_STATUSES
from .errors import ConflictError, InvalidScheduleError
from .store import EntityKind, EntityStore

logger = logging.getLogger(__name__)

# (free intervals, their start times) - replaced as a whole, never mutated
FreeSnapshot = Tuple[Tuple[Period, ...], List[datetime]]


class LockRegistry:
    """Lazily created re-entrant locks, one per key."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield


def subtract(intervals: List[Period], taken: Period) -> List[Period]:
    """Remove `taken` from a sorted list of disjoint intervals."""
    result = []
    for interval in intervals:
        if not interval.overlaps(taken):
            result.append(interval)
            continue
        if interval.start < taken.start:
            result.append(Period(start=interval.start, end=taken.start))
        if taken.end < interval.end:
            result.append(Period(start=taken.end, end=interval.end))
    return result


def merge(intervals: List[Period]) -> List[Period]:
    """Sort intervals and coalesce the ones that overlap or touch."""
    merged: List[Period] = []
    for interval in sorted(intervals, key=lambda p: p.start):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = Period(start=last.start, end=interval.end)
            continue
        merged.append(interval)
    return merged


def schedulable_windows(med_tech: MedTech) -> List[Period]:
    """
    Validate a med tech's availability data and return its windows ordered by start.
    Raises InvalidScheduleError if a window leaves the schedule or two windows overlap.
    """
    schedule = med_tech.schedule
    if schedule.start >= schedule.end:
        raise InvalidScheduleError(med_tech.id, "schedule ends before it starts")

    windows = sorted(med_tech.availabilities, key=lambda p: p.start)
    previous: Optional[Period] = None
    for window in windows:
        if window.start >= window.end:
            raise InvalidScheduleError(med_tech.id, f"availability {window.start} - {window.end} is empty")
        if not schedule.contains(window):
            raise InvalidScheduleError(
                med_tech.id, f"availability {window.start} - {window.end} lies outside the schedule"
            )
        if previous is not None and previous.overlaps(window):
            raise InvalidScheduleError(
                med_tech.id, f"availabilities starting {previous.start} and {window.start} overlap"
            )
        previous = window
    return windows


class AvailabilityIndex:
    """
    Derived, in-memory view of who is free when.
    Built lazily per med tech from the Entity Store and kept current by reserve/release.
    """

    def __init__(self, store: EntityStore):
        self.store = store
        self._windows: Dict[str, List[Period]] = {}
        self._free: Dict[str, FreeSnapshot] = {}
        self._locks = LockRegistry()

    def lock(self, med_tech_id: str):
        """Per-med-tech mutual exclusion. Re-entrant, so callers may hold it across reserve()."""
        return self._locks.hold(med_tech_id)

    # --- Build ---

    def rebuild(self, med_tech_id: str) -> List[Period]:
        """Recompute free intervals = windows minus booked/arrived/fulfilled appointments."""
        with self.lock(med_tech_id):
            self._rebuild_locked(med_tech_id)
            return list(self._free[med_tech_id][0])

    def invalidate(self, med_tech_id: str) -> None:
        with self.lock(med_tech_id):
            self._free.pop(med_tech_id, None)
            self._windows.pop(med_tech_id, None)

    def _rebuild_locked(self, med_tech_id: str) -> None:
        med_tech = self.store.get(EntityKind.MED_TECH, med_tech_id)
        windows = schedulable_windows(med_tech)

        occupied = sorted(
            (a.period for a in self.store.list(EntityKind.APPOINTMENT)
             if a.med_tech_id == med_tech_id and a.status in OCCUPYING_STATUSES),
            key=lambda p: p.start
        )

        free = merge(windows)
        for period in occupied:
            free = subtract(free, period)

        self._windows[med_tech_id] = windows
        self._set_free(med_tech_id, free)
        logger.debug(f"Rebuilt availability for {med_tech_id}: {len(free)} free intervals, {len(occupied)} occupied")

    def _set_free(self, med_tech_id: str, free: List[Period]) -> None:
        self._free[med_tech_id] = (tuple(free), [p.start for p in free])

    def _snapshot(self, med_tech_id: str) -> FreeSnapshot:
        snapshot = self._free.get(med_tech_id)
        if snapshot is None:
            # Double-checked under the lock so a rebuild never overwrites an in-flight reservation
            with self.lock(med_tech_id):
                snapshot = self._free.get(med_tech_id)
                if snapshot is None:
                    self._rebuild_locked(med_tech_id)
                    snapshot = self._free[med_tech_id]
        return snapshot

    # --- Query Methods (lock-free, may be stale) ---

    def _containing(self, snapshot: FreeSnapshot, period: Period) -> int:
        free, starts = snapshot
        i = bisect_right(starts, period.start) - 1
        if i >= 0 and free[i].contains(period):
            return i
        return -1

    def is_free(self, med_tech_id: str, period: Period) -> bool:
        """True iff `period` lies entirely inside one free interval."""
        return self._containing(self._snapshot(med_tech_id), period) >= 0

    def free_windows(self, med_tech_id: str, within: Optional[Period] = None) -> List[Period]:
        """Free intervals (clipped to `within`, if given) ordered by start."""
        free, _ = self._snapshot(med_tech_id)
        if within is None:
            return list(free)
        clipped = (interval.intersection(within) for interval in free)
        return [p for p in clipped if p is not None]

    # --- Mutations (atomic per med tech) ---

    def reserve(self, med_tech_id: str, period: Period) -> None:
        """Mark `period` occupied. Raises ConflictError if any part of it is not free."""
        with self.lock(med_tech_id):
            snapshot = self._snapshot(med_tech_id)
            i = self._containing(snapshot, period)
            if i < 0:
                logger.warning(f"Reservation conflict for {med_tech_id} at {period.start} - {period.end}")
                raise ConflictError(med_tech_id, period)

            free = list(snapshot[0])
            window = free.pop(i)
            pieces = []
            if window.start < period.start:
                pieces.append(Period(start=window.start, end=period.start))
            if period.end < window.end:
                pieces.append(Period(start=period.end, end=window.end))
            free[i:i] = pieces
            self._set_free(med_tech_id, free)
            logger.debug(f"Reserved {med_tech_id} {period.start} - {period.end}")

    def release(self, med_tech_id: str, period: Period) -> None:
        """
        Return `period` to the free pool. Idempotent.
        Only the parts of `period` inside the med tech's windows become free.
        """
        with self.lock(med_tech_id):
            snapshot = self._snapshot(med_tech_id)
            pieces = [w.intersection(period) for w in self._windows[med_tech_id]]
            pieces = [p for p in pieces if p is not None]
            if not pieces:
                return
            self._set_free(med_tech_id, merge(list(snapshot[0]) + pieces))
            logger.debug(f"Released {med_tech_id} {period.start} - {period.end}")
