"""Domain-level validation rules and scheduling policy."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, time
from typing import Any, Iterable, Optional, Sequence


ROOM_PACKING_STRATEGIES = ("first_fit", "cp_sat")


class ValidationError(Exception):
    """Raised when domain input breaks an invariant.

    `violations` lists every broken invariant so callers can report all of
    them at once instead of the first one only.
    """

    def __init__(self, message: str, violations: Optional[Sequence[str]] = None) -> None:
        super().__init__(message)
        self.violations: list[str] = list(violations or [message])


class FrozenTimetableError(ValidationError):
    """Raised when a published timetable is mutated."""


@dataclass(frozen=True)
class SchedulingPolicy:
    allow_overlaps: bool = False
    auto_resolve_conflicts: bool = True
    students_per_invigilator: int = 60
    min_invigilators_per_venue: int = 1
    prefer_external_invigilators: bool = True
    room_packing: str = "first_fit"
    cp_sat_max_time_seconds: int = 5
    cp_sat_workers: int = 4


def validate_scheduling_policy(policy: SchedulingPolicy) -> None:
    violations: list[str] = []
    if policy.students_per_invigilator <= 0:
        violations.append("students_per_invigilator must be > 0")
    if policy.min_invigilators_per_venue < 0:
        violations.append("min_invigilators_per_venue must be >= 0")
    if policy.room_packing not in ROOM_PACKING_STRATEGIES:
        violations.append(
            f"room_packing must be one of {', '.join(ROOM_PACKING_STRATEGIES)}"
        )
    if policy.cp_sat_max_time_seconds <= 0:
        violations.append("cp_sat_max_time_seconds must be > 0")
    if policy.cp_sat_workers <= 0:
        violations.append("cp_sat_workers must be > 0")
    _raise_if_any("Invalid scheduling policy", violations)


def policy_from_settings(settings: Any, **overrides: Any) -> SchedulingPolicy:
    """Build a policy from settings defaults; `None` overrides are ignored."""
    policy = SchedulingPolicy(
        allow_overlaps=settings.allow_overlaps,
        auto_resolve_conflicts=settings.auto_resolve_conflicts,
        students_per_invigilator=settings.students_per_invigilator,
        min_invigilators_per_venue=settings.min_invigilators_per_venue,
        prefer_external_invigilators=settings.prefer_external_invigilators,
        room_packing=settings.room_packing_strategy,
        cp_sat_max_time_seconds=settings.cp_sat_max_time_seconds,
        cp_sat_workers=settings.cp_sat_workers,
    )
    explicit = {key: value for key, value in overrides.items() if value is not None}
    if explicit:
        policy = replace(policy, **explicit)
    validate_scheduling_policy(policy)
    return policy


def validate_exam_requirement(
    *,
    course_code: str,
    level: int,
    semester: int,
    expected_students: int,
    duration_minutes: int,
    program_ids: Iterable[int],
) -> None:
    violations: list[str] = []
    if not course_code.strip():
        violations.append("course_code must be non-empty")
    if level <= 0:
        violations.append("level must be > 0")
    if semester <= 0:
        violations.append("semester must be > 0")
    if expected_students < 0:
        violations.append("expected_students must be >= 0")
    if duration_minutes <= 0:
        violations.append("duration_minutes must be > 0")
    if not list(program_ids):
        violations.append("program_ids must contain at least one program")
    _raise_if_any(f"Invalid exam requirement {course_code!r}", violations)


def validate_slot_bounds(start_time: time, end_time: time) -> None:
    if end_time <= start_time:
        raise ValidationError(
            f"Invalid slot {start_time:%H:%M}-{end_time:%H:%M}",
            ["slot end must be after slot start"],
        )


def validate_room_capacity(room_id: int, capacity: int) -> None:
    if capacity < 0:
        raise ValidationError(
            f"Invalid room {room_id}",
            ["room capacity must be >= 0"],
        )


def validate_placement_shape(
    *,
    placement_id: int,
    room_ids: Sequence[int],
    duration_minutes: int,
) -> None:
    violations: list[str] = []
    if not room_ids:
        violations.append("placement must use at least one room")
    if len(set(room_ids)) != len(room_ids):
        violations.append("placement must not list a room twice")
    if duration_minutes <= 0:
        violations.append("placement duration must be > 0")
    _raise_if_any(f"Invalid placement {placement_id}", violations)


def validate_window(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise ValidationError(
            f"Invalid timetable window {start_date.isoformat()}..{end_date.isoformat()}",
            ["end_date must not be before start_date"],
        )


def parse_slot_pattern(pattern: Sequence[str]) -> list[tuple[time, time]]:
    """Parse `HH:MM-HH:MM` windows into validated time pairs."""
    windows: list[tuple[time, time]] = []
    violations: list[str] = []
    for raw in pattern:
        parts = raw.split("-")
        if len(parts) != 2:
            violations.append(f"slot window {raw!r} must follow HH:MM-HH:MM")
            continue
        try:
            start_time = time.fromisoformat(parts[0].strip())
            end_time = time.fromisoformat(parts[1].strip())
        except ValueError:
            violations.append(f"slot window {raw!r} must follow HH:MM-HH:MM")
            continue
        if end_time <= start_time:
            violations.append(f"slot window {raw!r} must end after it starts")
            continue
        windows.append((start_time, end_time))
    if not pattern:
        violations.append("slot pattern must contain at least one window")
    _raise_if_any("Invalid slot pattern", violations)
    return sorted(windows)


def _raise_if_any(message: str, violations: list[str]) -> None:
    if violations:
        raise ValidationError(f"{message}: {'; '.join(violations)}", violations)
