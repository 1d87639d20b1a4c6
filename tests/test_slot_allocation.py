from __future__ import annotations

from datetime import date, time

import pytest

from elms.domain.constraints import SchedulingPolicy, ValidationError
from elms.domain.models import ExamRequirement, Slot, Timetable, VenueRoom
from elms.services.allocation_service import (
    SchedulingError,
    SlotAllocator,
    build_exam_calendar,
    pack_rooms_cp_sat,
    pack_rooms_first_fit,
    sort_requirements,
)
from elms.services.conflict_service import ConflictDetector, hard_conflicts


WINDOWS = [(time(9, 0), time(12, 0)), (time(14, 0), time(17, 0))]
MONDAY = date(2026, 5, 4)
FRIDAY = date(2026, 5, 8)


def _requirement(course_id: int, students: int, programs=(1,), duration: int = 180) -> ExamRequirement:
    return ExamRequirement(
        course_id=course_id,
        course_code=f"C{course_id}",
        level=100,
        semester=1,
        expected_students=students,
        duration_minutes=duration,
        program_ids=tuple(programs),
    )


def _rooms(*capacities: int) -> list[VenueRoom]:
    return [
        VenueRoom(room_id=index, venue_id=1, name=f"Room {index}", capacity=capacity)
        for index, capacity in enumerate(capacities, start=1)
    ]


def _week_slots() -> list[Slot]:
    return build_exam_calendar(MONDAY, FRIDAY, WINDOWS)


def test_three_exams_fit_one_venue_without_hard_conflicts() -> None:
    requirements = [
        _requirement(1, 50, programs=(1,)),
        _requirement(2, 120, programs=(2,)),
        _requirement(3, 30, programs=(3,)),
    ]
    result = SlotAllocator().allocate(requirements, _week_slots(), _rooms(100, 60, 40), SchedulingPolicy())
    timetable = result.timetable

    assert result.failures == []
    assert len(timetable.placements) == 3
    assert hard_conflicts(ConflictDetector().detect(timetable)) == []

    big = next(item for item in timetable.placements if item.requirement.course_id == 2)
    assert len(big.rooms) <= 2
    assert sorted(room.capacity for room in big.rooms) == [40, 100]
    for placement in timetable.placements:
        assert placement.requirement.expected_students <= placement.capacity


def test_shared_cohort_is_never_double_booked() -> None:
    requirements = [_requirement(course_id, 30, programs=(1,)) for course_id in range(1, 5)]
    result = SlotAllocator().allocate(requirements, _week_slots(), _rooms(100, 60), SchedulingPolicy())

    placements = result.timetable.placements
    assert len(placements) == 4
    for index, first in enumerate(placements):
        for second in placements[index + 1:]:
            assert not first.overlaps(second)


def test_allow_overlaps_packs_shared_cohort_into_same_slot() -> None:
    requirements = [_requirement(1, 30, programs=(1,)), _requirement(2, 30, programs=(1,))]
    result = SlotAllocator().allocate(
        requirements,
        _week_slots(),
        _rooms(40, 40),
        SchedulingPolicy(allow_overlaps=True),
    )

    first, second = result.timetable.placements
    assert first.slot == second.slot
    assert first.room_ids != second.room_ids


def test_unplaceable_requirement_is_reported_when_auto_resolving() -> None:
    result = SlotAllocator().allocate(
        [_requirement(1, 500)],
        _week_slots(),
        _rooms(100, 60, 40),
        SchedulingPolicy(),
    )
    assert result.unplaced_course_ids == [1]
    assert result.timetable.placements == []


def test_conflict_without_auto_resolve_raises_scheduling_error() -> None:
    single_slot = [Slot(exam_date=MONDAY, start_time=time(9, 0), end_time=time(12, 0))]
    requirements = [_requirement(1, 30, programs=(1,)), _requirement(2, 20, programs=(1,))]

    with pytest.raises(SchedulingError) as excinfo:
        SlotAllocator().allocate(
            requirements,
            single_slot + [Slot(exam_date=MONDAY, start_time=time(14, 0), end_time=time(17, 0))],
            _rooms(40, 40),
            SchedulingPolicy(auto_resolve_conflicts=False),
        )
    assert [item.course_id for item in excinfo.value.requirements] == [2]
    assert excinfo.value.conflicts


def test_fail_fast_error_lists_every_unplaceable_requirement_and_rolls_back() -> None:
    timetable = Timetable(
        title="One slot",
        semester=1,
        academic_year="2025/2026",
        start_date=MONDAY,
        end_date=MONDAY,
    )
    requirements = [
        _requirement(1, 500, programs=(9,)),
        _requirement(2, 40, programs=(1,)),
        _requirement(3, 30, programs=(1,)),
    ]

    with pytest.raises(SchedulingError) as excinfo:
        SlotAllocator().allocate(
            requirements,
            [Slot(exam_date=MONDAY, start_time=time(9, 0), end_time=time(12, 0))],
            _rooms(50, 50),
            SchedulingPolicy(auto_resolve_conflicts=False),
            timetable=timetable,
        )

    error = excinfo.value
    assert [item.course_id for item in error.requirements] == [1, 3]
    assert [failure.requirement.course_id for failure in error.failures] == [1, 3]
    assert "no slot has enough free seats" in error.failures[0].reason
    assert error.failures[1].conflicts == tuple(error.conflicts)
    assert "C1" in str(error) and "C3" in str(error)
    assert timetable.placements == []


def test_exam_longer_than_slot_skips_slot() -> None:
    slots = [
        Slot(exam_date=MONDAY, start_time=time(9, 0), end_time=time(11, 0)),
        Slot(exam_date=MONDAY, start_time=time(14, 0), end_time=time(17, 0)),
    ]
    result = SlotAllocator().allocate(
        [_requirement(1, 30, duration=180)],
        slots,
        _rooms(40),
        SchedulingPolicy(),
    )
    assert result.timetable.placements[0].slot.start_time == time(14, 0)


def test_duplicate_inputs_raise_validation_error() -> None:
    with pytest.raises(ValidationError):
        SlotAllocator().allocate(
            [_requirement(1, 30), _requirement(1, 30)],
            _week_slots(),
            _rooms(40),
            SchedulingPolicy(),
        )


def test_slots_outside_timetable_window_raise() -> None:
    timetable = Timetable(
        title="Short",
        semester=1,
        academic_year="2025/2026",
        start_date=MONDAY,
        end_date=MONDAY,
    )
    with pytest.raises(ValidationError):
        SlotAllocator().allocate(
            [_requirement(1, 30)],
            _week_slots(),
            _rooms(40),
            SchedulingPolicy(),
            timetable=timetable,
        )


def test_calendar_skips_weekends_and_holidays() -> None:
    slots = build_exam_calendar(
        date(2026, 5, 8),
        date(2026, 5, 12),
        WINDOWS,
        holidays=[date(2026, 5, 11)],
    )
    assert sorted({slot.exam_date for slot in slots}) == [date(2026, 5, 8), date(2026, 5, 12)]

    with_weekends = build_exam_calendar(date(2026, 5, 8), date(2026, 5, 10), WINDOWS, include_weekends=True)
    assert len(with_weekends) == 6


def test_requirements_sorted_largest_first() -> None:
    ordered = sort_requirements(
        [_requirement(3, 30), _requirement(1, 120), _requirement(2, 30, programs=(1, 2))]
    )
    assert [item.course_id for item in ordered] == [1, 2, 3]


def test_first_fit_prefers_smallest_single_room() -> None:
    rooms = _rooms(100, 60, 40)
    assert [room.capacity for room in pack_rooms_first_fit(rooms, 50)] == [60]
    assert [room.capacity for room in pack_rooms_first_fit(rooms, 120)] == [100, 40]
    assert pack_rooms_first_fit(rooms, 201) is None


def test_cp_sat_packing_minimises_rooms() -> None:
    rooms = _rooms(100, 60, 40, 30)
    chosen = pack_rooms_cp_sat(rooms, 120, SchedulingPolicy(room_packing="cp_sat", cp_sat_workers=1))
    assert chosen is not None
    assert len(chosen) == 2
    assert sum(room.capacity for room in chosen) == 130
