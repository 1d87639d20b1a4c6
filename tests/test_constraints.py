"""Tests for domain validation rules and scheduling policy construction."""

from __future__ import annotations

from dataclasses import replace
from datetime import date, time

import pytest

from elms.domain.constraints import (
    FrozenTimetableError,
    SchedulingPolicy,
    ValidationError,
    parse_slot_pattern,
    policy_from_settings,
    validate_scheduling_policy,
)
from elms.domain.models import (
    ExamRequirement,
    Invigilator,
    InvigilatorAssignment,
    InvigilatorRole,
    Placement,
    Slot,
    Timetable,
    TimetableStatus,
    VenueRoom,
)
from elms.utils.config import get_settings


def valid_policy(**overrides) -> SchedulingPolicy:
    """Return a valid baseline policy, optionally overriding fields."""
    return replace(SchedulingPolicy(), **overrides)


def _requirement(**overrides) -> ExamRequirement:
    defaults = {
        "course_id": 1,
        "course_code": "CSC101",
        "level": 100,
        "semester": 1,
        "expected_students": 40,
        "duration_minutes": 120,
        "program_ids": (1,),
    }
    defaults.update(overrides)
    return ExamRequirement(**defaults)


# --- SchedulingPolicy ---

def test_valid_policy_passes() -> None:
    validate_scheduling_policy(valid_policy())


@pytest.mark.parametrize(
    "overrides",
    [
        {"students_per_invigilator": 0},
        {"min_invigilators_per_venue": -1},
        {"room_packing": "random"},
        {"cp_sat_max_time_seconds": 0},
        {"cp_sat_workers": 0},
    ],
)
def test_invalid_policy_raises(overrides) -> None:
    with pytest.raises(ValidationError):
        validate_scheduling_policy(valid_policy(**overrides))


def test_policy_errors_report_every_violation() -> None:
    with pytest.raises(ValidationError) as excinfo:
        validate_scheduling_policy(valid_policy(students_per_invigilator=0, cp_sat_workers=0))
    assert len(excinfo.value.violations) == 2


def test_policy_from_settings_ignores_none_overrides() -> None:
    settings = replace(get_settings(), allow_overlaps=False, room_packing_strategy="first_fit")
    policy = policy_from_settings(settings, allow_overlaps=None, room_packing="cp_sat")
    assert policy.allow_overlaps is False
    assert policy.room_packing == "cp_sat"


# --- ExamRequirement ---

def test_requirement_normalises_program_ids() -> None:
    requirement = _requirement(program_ids=(3, 1, 3))
    assert requirement.program_ids == (1, 3)
    assert requirement.cohorts == frozenset({(1, 100), (3, 100)})


def test_requirement_without_programs_raises() -> None:
    with pytest.raises(ValidationError):
        _requirement(program_ids=())


def test_requirement_negative_students_raises() -> None:
    with pytest.raises(ValidationError):
        _requirement(expected_students=-1)


def test_requirement_zero_duration_raises() -> None:
    with pytest.raises(ValidationError):
        _requirement(duration_minutes=0)


# --- Slots, rooms, placements ---

def test_slot_end_must_follow_start() -> None:
    with pytest.raises(ValidationError):
        Slot(exam_date=date(2026, 5, 4), start_time=time(12, 0), end_time=time(9, 0))


def test_room_capacity_must_not_be_negative() -> None:
    with pytest.raises(ValidationError):
        VenueRoom(room_id=1, venue_id=1, name="Hall", capacity=-5)


def test_placement_requires_rooms() -> None:
    slot = Slot(exam_date=date(2026, 5, 4), start_time=time(9, 0), end_time=time(12, 0))
    with pytest.raises(ValidationError):
        Placement(
            placement_id=1,
            requirement=_requirement(),
            slot=slot,
            rooms=(),
            duration_minutes=120,
        )


def test_placement_end_uses_duration_not_slot_end() -> None:
    slot = Slot(exam_date=date(2026, 5, 4), start_time=time(9, 0), end_time=time(12, 0))
    placement = Placement(
        placement_id=1,
        requirement=_requirement(),
        slot=slot,
        rooms=(VenueRoom(room_id=1, venue_id=1, name="Hall", capacity=50),),
        duration_minutes=90,
    )
    assert placement.end.time() == time(10, 30)


# --- Slot pattern ---

def test_parse_slot_pattern_sorts_windows() -> None:
    windows = parse_slot_pattern(["14:00-17:00", "09:00-12:00"])
    assert windows == [(time(9, 0), time(12, 0)), (time(14, 0), time(17, 0))]


@pytest.mark.parametrize("pattern", [[], ["09:00"], ["12:00-09:00"], ["nine-twelve"]])
def test_parse_slot_pattern_rejects_malformed(pattern) -> None:
    with pytest.raises(ValidationError):
        parse_slot_pattern(pattern)


# --- Timetable ---

def test_timetable_window_must_be_ordered() -> None:
    with pytest.raises(ValidationError):
        Timetable(
            title="Bad",
            semester=1,
            academic_year="2025/2026",
            start_date=date(2026, 5, 8),
            end_date=date(2026, 5, 4),
        )


def test_add_placement_outside_window_raises() -> None:
    timetable = Timetable(
        title="Window",
        semester=1,
        academic_year="2025/2026",
        start_date=date(2026, 5, 4),
        end_date=date(2026, 5, 8),
    )
    slot = Slot(exam_date=date(2026, 5, 11), start_time=time(9, 0), end_time=time(12, 0))
    with pytest.raises(ValidationError):
        timetable.add_placement(
            _requirement(),
            slot,
            [VenueRoom(room_id=1, venue_id=1, name="Hall", capacity=50)],
        )


def test_published_timetable_rejects_edits() -> None:
    timetable = Timetable(
        title="Frozen",
        semester=1,
        academic_year="2025/2026",
        start_date=date(2026, 5, 4),
        end_date=date(2026, 5, 8),
    )
    slot = Slot(exam_date=date(2026, 5, 4), start_time=time(9, 0), end_time=time(12, 0))
    placement = timetable.add_placement(
        _requirement(),
        slot,
        [VenueRoom(room_id=1, venue_id=1, name="Hall", capacity=50)],
    )
    timetable.status = TimetableStatus.PUBLISHED

    with pytest.raises(FrozenTimetableError):
        timetable.add_assignment(
            placement.placement_id,
            InvigilatorAssignment(staff_id=1, role=InvigilatorRole.INVIGILATOR),
        )
    with pytest.raises(FrozenTimetableError):
        timetable.remove_placement(placement.placement_id)


def test_duplicate_assignment_in_one_placement_raises() -> None:
    timetable = Timetable(
        title="Dup",
        semester=1,
        academic_year="2025/2026",
        start_date=date(2026, 5, 4),
        end_date=date(2026, 5, 8),
    )
    slot = Slot(exam_date=date(2026, 5, 4), start_time=time(9, 0), end_time=time(12, 0))
    placement = timetable.add_placement(
        _requirement(),
        slot,
        [VenueRoom(room_id=1, venue_id=1, name="Hall", capacity=50)],
    )
    assignment = InvigilatorAssignment(staff_id=7, role=InvigilatorRole.INVIGILATOR)
    timetable.add_assignment(placement.placement_id, assignment)
    with pytest.raises(ValidationError):
        timetable.add_assignment(placement.placement_id, assignment)


def test_invigilator_roles_are_coerced_from_strings() -> None:
    invigilator = Invigilator(
        staff_id=1,
        name="Ama",
        department_id=None,
        eligible_roles=frozenset({"CHIEF_INVIGILATOR"}),
    )
    assert invigilator.is_eligible(InvigilatorRole.CHIEF_INVIGILATOR)
    assert not invigilator.is_eligible(InvigilatorRole.RELIEF_INVIGILATOR)
