"""Conflict-aware greedy slot and room allocation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Iterable, Optional, Sequence

from ortools.sat.python import cp_model

from elms.domain.constraints import SchedulingPolicy, ValidationError, validate_scheduling_policy
from elms.domain.models import (
    ConflictRecord,
    ExamRequirement,
    Placement,
    Slot,
    Timetable,
    VenueRoom,
)
from elms.services.conflict_service import ConflictDetector, hard_conflicts
from elms.utils.logger import get_logger


logger = get_logger(__name__)


class SchedulingError(Exception):
    """Raised when requirements cannot be placed under the current policy."""

    def __init__(
        self,
        message: str,
        requirements: Optional[Sequence[ExamRequirement]] = None,
        conflicts: Optional[Sequence[ConflictRecord]] = None,
        failures: Optional[Sequence["SchedulingFailure"]] = None,
    ) -> None:
        super().__init__(message)
        self.requirements: list[ExamRequirement] = list(requirements or [])
        self.conflicts: list[ConflictRecord] = list(conflicts or [])
        self.failures: list[SchedulingFailure] = list(failures or [])


@dataclass(frozen=True)
class SchedulingFailure:
    requirement: ExamRequirement
    reason: str
    conflicts: tuple[ConflictRecord, ...] = ()


@dataclass(frozen=True)
class AllocationResult:
    timetable: Timetable
    failures: list[SchedulingFailure]

    @property
    def unplaced_course_ids(self) -> list[int]:
        return [failure.requirement.course_id for failure in self.failures]


def build_exam_calendar(
    start_date: date,
    end_date: date,
    windows: Sequence[tuple[time, time]],
    *,
    include_weekends: bool = False,
    holidays: Iterable[date] = (),
) -> list[Slot]:
    """Expand a date range and a per-day window pattern into slots."""
    skipped = set(holidays)
    slots: list[Slot] = []
    current = start_date
    while current <= end_date:
        if (include_weekends or current.weekday() < 5) and current not in skipped:
            for start_time, end_time in windows:
                slots.append(Slot(exam_date=current, start_time=start_time, end_time=end_time))
        current += timedelta(days=1)
    return slots


def sort_requirements(requirements: Iterable[ExamRequirement]) -> list[ExamRequirement]:
    """Largest, most-shared exams first; course id keeps the order stable."""
    return sorted(
        requirements,
        key=lambda item: (-item.expected_students, -len(item.program_ids), item.course_id),
    )


def pack_rooms_first_fit(
    free_rooms: Sequence[VenueRoom],
    seats_needed: int,
) -> Optional[tuple[VenueRoom, ...]]:
    """Pick the fewest free rooms that seat `seats_needed`.

    The smallest single room that fits wins. Otherwise rooms are taken
    largest-first until the remainder fits one room, which is then best-fit.
    """
    pool = sorted(
        (room for room in free_rooms if room.capacity > 0),
        key=lambda room: (-room.capacity, room.room_id),
    )
    remaining = max(seats_needed, 1)
    chosen: list[VenueRoom] = []
    while pool:
        fitting = [room for room in pool if room.capacity >= remaining]
        if fitting:
            best = min(fitting, key=lambda room: (room.capacity, room.room_id))
            chosen.append(best)
            return tuple(chosen)
        largest = pool.pop(0)
        chosen.append(largest)
        remaining -= largest.capacity
    return None


def pack_rooms_cp_sat(
    free_rooms: Sequence[VenueRoom],
    seats_needed: int,
    policy: SchedulingPolicy,
) -> Optional[tuple[VenueRoom, ...]]:
    """Exact packing: minimise room count, then seats left empty."""
    candidates = sorted(
        (room for room in free_rooms if room.capacity > 0),
        key=lambda room: (-room.capacity, room.room_id),
    )
    needed = max(seats_needed, 1)
    total_capacity = sum(room.capacity for room in candidates)
    if total_capacity < needed:
        return None

    model = cp_model.CpModel()
    chosen = {
        room.room_id: model.NewBoolVar(f"use_room_{room.room_id}")
        for room in candidates
    }
    model.Add(sum(room.capacity * chosen[room.room_id] for room in candidates) >= needed)

    room_weight = total_capacity + 1
    tie_scale = len(candidates) + 1
    model.Minimize(
        sum(
            ((room_weight + room.capacity) * tie_scale + rank) * chosen[room.room_id]
            for rank, room in enumerate(candidates)
        )
    )

    solver = cp_model.CpSolver()
    solver.parameters.max_time_in_seconds = float(policy.cp_sat_max_time_seconds)
    solver.parameters.num_workers = policy.cp_sat_workers
    status = solver.Solve(model)
    if status not in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        logger.warning(
            "Room packing solve failed | status=%s | seats_needed=%s",
            solver.StatusName(status),
            needed,
        )
        return None
    return tuple(room for room in candidates if solver.Value(chosen[room.room_id]) == 1)


class SlotAllocator:
    """Places exams chronologically into the first conflict-free slot."""

    def __init__(self, detector: Optional[ConflictDetector] = None) -> None:
        self._detector = detector or ConflictDetector()

    def _pack(
        self,
        free_rooms: Sequence[VenueRoom],
        seats_needed: int,
        policy: SchedulingPolicy,
    ) -> Optional[tuple[VenueRoom, ...]]:
        if policy.room_packing == "cp_sat":
            return pack_rooms_cp_sat(free_rooms, seats_needed, policy)
        return pack_rooms_first_fit(free_rooms, seats_needed)

    @staticmethod
    def _free_rooms(
        timetable: Timetable,
        venue_rooms: Sequence[VenueRoom],
        slot: Slot,
        duration_minutes: int,
    ) -> list[VenueRoom]:
        window_start = slot.start
        window_end = slot.start + timedelta(minutes=duration_minutes)
        busy = {
            room_id
            for placement in timetable.placements
            if placement.start < window_end and window_start < placement.end
            for room_id in placement.room_ids
        }
        return [room for room in venue_rooms if room.room_id not in busy]

    @staticmethod
    def _validate_inputs(
        requirements: Sequence[ExamRequirement],
        slots: Sequence[Slot],
        venue_rooms: Sequence[VenueRoom],
        timetable: Timetable,
    ) -> None:
        violations: list[str] = []
        seen_courses: set[int] = set()
        for requirement in requirements:
            if requirement.course_id in seen_courses:
                violations.append(f"course_id={requirement.course_id} is listed twice")
            seen_courses.add(requirement.course_id)
        seen_rooms: set[int] = set()
        for room in venue_rooms:
            if room.room_id in seen_rooms:
                violations.append(f"room_id={room.room_id} is listed twice")
            seen_rooms.add(room.room_id)
        for slot in slots:
            if not timetable.covers(slot):
                violations.append(
                    f"slot {slot.label} falls outside {timetable.start_date}..{timetable.end_date}"
                )
        if violations:
            raise ValidationError(
                f"Invalid allocation input: {'; '.join(violations)}",
                violations,
            )

    def allocate(
        self,
        requirements: Sequence[ExamRequirement],
        slots: Sequence[Slot],
        venue_rooms: Sequence[VenueRoom],
        policy: SchedulingPolicy,
        timetable: Optional[Timetable] = None,
    ) -> AllocationResult:
        validate_scheduling_policy(policy)
        if timetable is None:
            if not slots:
                raise ValidationError(
                    "Cannot derive a timetable window without slots",
                    ["slots must not be empty"],
                )
            timetable = Timetable(
                title="Draft exam timetable",
                semester=requirements[0].semester if requirements else 1,
                academic_year="",
                start_date=min(slot.exam_date for slot in slots),
                end_date=max(slot.exam_date for slot in slots),
                policy=policy,
            )
        timetable.ensure_mutable()
        self._validate_inputs(requirements, slots, venue_rooms, timetable)

        ordered_slots = sorted(set(slots))
        committed = list(timetable.placements)
        failures: list[SchedulingFailure] = []
        for requirement in sort_requirements(requirements):
            failure = self._place(requirement, ordered_slots, venue_rooms, policy, timetable)
            if failure is not None:
                failures.append(failure)
                if failure.conflicts and not policy.auto_resolve_conflicts:
                    timetable.placements[:] = committed
                    raise SchedulingError(
                        f"{requirement.course_code} conflicts in its first packable slot and "
                        "conflict auto-resolution is disabled; unplaceable: "
                        + "; ".join(f"{item.requirement.course_code} ({item.reason})" for item in failures),
                        requirements=[item.requirement for item in failures],
                        conflicts=failure.conflicts,
                        failures=failures,
                    )
                logger.warning(
                    "Requirement left unplaced | course=%s | reason=%s",
                    requirement.course_code,
                    failure.reason,
                )

        logger.info(
            "Allocation completed | placed=%s | failed=%s | slots=%s | rooms=%s",
            len(timetable.placements),
            len(failures),
            len(ordered_slots),
            len(venue_rooms),
        )
        return AllocationResult(timetable=timetable, failures=failures)

    def _place(
        self,
        requirement: ExamRequirement,
        ordered_slots: Sequence[Slot],
        venue_rooms: Sequence[VenueRoom],
        policy: SchedulingPolicy,
        timetable: Timetable,
    ) -> Optional[SchedulingFailure]:
        conflicted_slots = 0
        for slot in ordered_slots:
            if slot.duration_minutes < requirement.duration_minutes:
                continue
            free_rooms = self._free_rooms(timetable, venue_rooms, slot, requirement.duration_minutes)
            rooms = self._pack(free_rooms, requirement.expected_students, policy)
            if rooms is None:
                continue

            candidate = Placement(
                placement_id=timetable.next_placement_id(),
                requirement=requirement,
                slot=slot,
                rooms=rooms,
                duration_minutes=requirement.duration_minutes,
            )
            conflicts = hard_conflicts(
                self._detector.detect_for_candidate(candidate, timetable.placements, policy)
            )
            if not conflicts:
                timetable.add_placement(requirement, slot, rooms, requirement.duration_minutes)
                return None

            if not policy.auto_resolve_conflicts:
                return SchedulingFailure(
                    requirement=requirement,
                    reason=f"hard conflicts in {slot.label}",
                    conflicts=tuple(conflicts),
                )
            conflicted_slots += 1

        if conflicted_slots:
            reason = f"all {conflicted_slots} slots with free seats cause hard conflicts"
        else:
            reason = "no slot has enough free seats for the exam duration"
        return SchedulingFailure(requirement=requirement, reason=reason)
