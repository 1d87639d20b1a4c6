"""Domain models for exam timetabling."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Iterable, Optional

from elms.domain.constraints import (
    FrozenTimetableError,
    SchedulingPolicy,
    ValidationError,
    validate_exam_requirement,
    validate_placement_shape,
    validate_room_capacity,
    validate_slot_bounds,
    validate_window,
)


class InvigilatorRole(str, Enum):
    CHIEF_INVIGILATOR = "CHIEF_INVIGILATOR"
    INVIGILATOR = "INVIGILATOR"
    RELIEF_INVIGILATOR = "RELIEF_INVIGILATOR"


class ConflictKind(str, Enum):
    STUDENT_DOUBLE_BOOKING = "STUDENT_DOUBLE_BOOKING"
    ROOM_OVER_CAPACITY = "ROOM_OVER_CAPACITY"
    ROOM_DOUBLE_BOOKING = "ROOM_DOUBLE_BOOKING"
    INVIGILATOR_DOUBLE_BOOKING = "INVIGILATOR_DOUBLE_BOOKING"
    INVIGILATOR_UNDER_COVERAGE = "INVIGILATOR_UNDER_COVERAGE"
    INVIGILATOR_UNQUALIFIED = "INVIGILATOR_UNQUALIFIED"


class Severity(str, Enum):
    HARD = "HARD"
    SOFT = "SOFT"


class TimetableStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    APPROVED = "APPROVED"
    PUBLISHED = "PUBLISHED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


FROZEN_STATUSES = frozenset(
    {
        TimetableStatus.PUBLISHED,
        TimetableStatus.IN_PROGRESS,
        TimetableStatus.COMPLETED,
        TimetableStatus.ARCHIVED,
    }
)


@dataclass(frozen=True)
class ExamRequirement:
    course_id: int
    course_code: str
    level: int
    semester: int
    expected_students: int
    duration_minutes: int
    program_ids: tuple[int, ...]
    department_id: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "program_ids", tuple(sorted(set(self.program_ids))))
        validate_exam_requirement(
            course_code=self.course_code,
            level=self.level,
            semester=self.semester,
            expected_students=self.expected_students,
            duration_minutes=self.duration_minutes,
            program_ids=self.program_ids,
        )

    @property
    def cohorts(self) -> frozenset[tuple[int, int]]:
        """(program_id, level) pairs whose students all sit this exam."""
        return frozenset((program_id, self.level) for program_id in self.program_ids)


@dataclass(frozen=True, order=True)
class Slot:
    exam_date: date
    start_time: time
    end_time: time

    def __post_init__(self) -> None:
        validate_slot_bounds(self.start_time, self.end_time)

    @property
    def start(self) -> datetime:
        return datetime.combine(self.exam_date, self.start_time)

    @property
    def end(self) -> datetime:
        return datetime.combine(self.exam_date, self.end_time)

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def label(self) -> str:
        return f"{self.exam_date.isoformat()} {self.start_time:%H:%M}-{self.end_time:%H:%M}"


@dataclass(frozen=True)
class VenueRoom:
    room_id: int
    venue_id: int
    name: str
    capacity: int

    def __post_init__(self) -> None:
        validate_room_capacity(self.room_id, self.capacity)


@dataclass(frozen=True)
class Invigilator:
    staff_id: int
    name: str
    department_id: Optional[int]
    eligible_roles: frozenset[InvigilatorRole]

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "eligible_roles",
            frozenset(InvigilatorRole(role) for role in self.eligible_roles),
        )

    def is_eligible(self, role: InvigilatorRole) -> bool:
        return role in self.eligible_roles


@dataclass(frozen=True)
class InvigilatorAssignment:
    staff_id: int
    role: InvigilatorRole
    duty: str = ""


@dataclass
class Placement:
    placement_id: int
    requirement: ExamRequirement
    slot: Slot
    rooms: tuple[VenueRoom, ...]
    duration_minutes: int
    assignments: list[InvigilatorAssignment] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.rooms = tuple(self.rooms)
        validate_placement_shape(
            placement_id=self.placement_id,
            room_ids=[room.room_id for room in self.rooms],
            duration_minutes=self.duration_minutes,
        )

    @property
    def start(self) -> datetime:
        return self.slot.start

    @property
    def end(self) -> datetime:
        return self.slot.start + timedelta(minutes=self.duration_minutes)

    @property
    def capacity(self) -> int:
        return sum(room.capacity for room in self.rooms)

    @property
    def room_ids(self) -> tuple[int, ...]:
        return tuple(room.room_id for room in self.rooms)

    @property
    def venue_ids(self) -> tuple[int, ...]:
        return tuple(sorted({room.venue_id for room in self.rooms}))

    @property
    def staff_ids(self) -> tuple[int, ...]:
        return tuple(assignment.staff_id for assignment in self.assignments)

    def overlaps(self, other: "Placement") -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class ConflictRecord:
    kind: ConflictKind
    severity: Severity
    placement_ids: tuple[int, ...]
    message: str
    staff_ids: tuple[int, ...] = ()
    room_ids: tuple[int, ...] = ()

    @property
    def is_hard(self) -> bool:
        return self.severity is Severity.HARD

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "placement_ids": list(self.placement_ids),
            "staff_ids": list(self.staff_ids),
            "room_ids": list(self.room_ids),
            "message": self.message,
        }


@dataclass
class Timetable:
    """Aggregate root for one exam period.

    `revision` is the optimistic-lock counter bumped on every save; `version`
    and `previous_version_id` track the lineage of published corrections.
    """

    title: str
    semester: int
    academic_year: str
    start_date: date
    end_date: date
    policy: SchedulingPolicy = field(default_factory=SchedulingPolicy)
    timetable_id: Optional[int] = None
    status: TimetableStatus = TimetableStatus.DRAFT
    revision: int = 0
    version: int = 1
    previous_version_id: Optional[int] = None
    placements: list[Placement] = field(default_factory=list)
    staff: dict[int, Invigilator] = field(default_factory=dict)
    total_exams: int = 0
    total_conflicts: int = 0
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        validate_window(self.start_date, self.end_date)

    @property
    def is_frozen(self) -> bool:
        return self.status in FROZEN_STATUSES

    def ensure_mutable(self) -> None:
        if self.is_frozen:
            raise FrozenTimetableError(
                f"Timetable {self.timetable_id} is {self.status.value}; create a new version to edit it",
                ["published timetables are immutable"],
            )

    def covers(self, slot: Slot) -> bool:
        return self.start_date <= slot.exam_date <= self.end_date

    def next_placement_id(self) -> int:
        return max((placement.placement_id for placement in self.placements), default=0) + 1

    def get_placement(self, placement_id: int) -> Placement:
        for placement in self.placements:
            if placement.placement_id == placement_id:
                return placement
        raise ValidationError(
            f"Placement {placement_id} not found in timetable {self.timetable_id}",
            [f"unknown placement_id={placement_id}"],
        )

    def add_placement(
        self,
        requirement: ExamRequirement,
        slot: Slot,
        rooms: Iterable[VenueRoom],
        duration_minutes: Optional[int] = None,
    ) -> Placement:
        self.ensure_mutable()
        if not self.covers(slot):
            raise ValidationError(
                f"Slot {slot.label} is outside the timetable window",
                [f"slot {slot.label} falls outside {self.start_date}..{self.end_date}"],
            )
        placement = Placement(
            placement_id=self.next_placement_id(),
            requirement=requirement,
            slot=slot,
            rooms=tuple(rooms),
            duration_minutes=duration_minutes or requirement.duration_minutes,
        )
        self.placements.append(placement)
        return placement

    def move_placement(
        self,
        placement_id: int,
        slot: Optional[Slot] = None,
        rooms: Optional[Iterable[VenueRoom]] = None,
    ) -> Placement:
        """Swap in a new slot and/or room set; id and assignments are kept."""
        self.ensure_mutable()
        placement = self.get_placement(placement_id)
        if slot is not None and not self.covers(slot):
            raise ValidationError(
                f"Slot {slot.label} is outside the timetable window",
                [f"slot {slot.label} falls outside {self.start_date}..{self.end_date}"],
            )
        moved = replace(
            placement,
            slot=slot if slot is not None else placement.slot,
            rooms=tuple(rooms) if rooms is not None else placement.rooms,
        )
        self.placements[self.placements.index(placement)] = moved
        return moved

    def remove_placement(self, placement_id: int) -> Placement:
        self.ensure_mutable()
        placement = self.get_placement(placement_id)
        self.placements.remove(placement)
        return placement

    def add_assignment(self, placement_id: int, assignment: InvigilatorAssignment) -> None:
        self.ensure_mutable()
        placement = self.get_placement(placement_id)
        if assignment.staff_id in placement.staff_ids:
            raise ValidationError(
                f"Staff {assignment.staff_id} is already assigned to placement {placement_id}",
                ["a staff member can hold one assignment per placement"],
            )
        placement.assignments.append(assignment)

    def remove_assignment(self, placement_id: int, staff_id: int) -> InvigilatorAssignment:
        self.ensure_mutable()
        placement = self.get_placement(placement_id)
        for assignment in placement.assignments:
            if assignment.staff_id == staff_id:
                placement.assignments.remove(assignment)
                return assignment
        raise ValidationError(
            f"Staff {staff_id} is not assigned to placement {placement_id}",
            [f"unknown assignment staff_id={staff_id}"],
        )

    def register_staff(self, invigilators: Iterable[Invigilator]) -> None:
        for invigilator in invigilators:
            self.staff[invigilator.staff_id] = invigilator

    def chronological_placements(self) -> list[Placement]:
        return sorted(self.placements, key=lambda item: (item.start, item.placement_id))
