from __future__ import annotations

from datetime import date, datetime, time

import pytest

from elms.domain.constraints import FrozenTimetableError, SchedulingPolicy, ValidationError
from elms.domain.models import (
    ExamRequirement,
    Invigilator,
    InvigilatorAssignment,
    InvigilatorRole,
    Slot,
    Timetable,
    TimetableStatus,
    VenueRoom,
)
from elms.services.publishing_service import PublishError, TimetablePublisher, can_transition


MORNING = Slot(exam_date=date(2026, 5, 4), start_time=time(9, 0), end_time=time(12, 0))
NEXT_DAY = Slot(exam_date=date(2026, 5, 5), start_time=time(9, 0), end_time=time(12, 0))


def _requirement(course_id: int, students: int, programs=(1,)) -> ExamRequirement:
    return ExamRequirement(
        course_id=course_id,
        course_code=f"C{course_id}",
        level=100,
        semester=1,
        expected_students=students,
        duration_minutes=180,
        program_ids=tuple(programs),
    )


def _room(room_id: int, capacity: int) -> VenueRoom:
    return VenueRoom(room_id=room_id, venue_id=1, name=f"Room {room_id}", capacity=capacity)


def _clean_timetable() -> Timetable:
    timetable = Timetable(
        title="May exams",
        semester=1,
        academic_year="2025/2026",
        start_date=date(2026, 5, 4),
        end_date=date(2026, 5, 8),
        policy=SchedulingPolicy(min_invigilators_per_venue=0, students_per_invigilator=100),
        timetable_id=1,
    )
    timetable.register_staff(
        [
            Invigilator(
                staff_id=1,
                name="Ama",
                department_id=None,
                eligible_roles=frozenset({InvigilatorRole.INVIGILATOR}),
            )
        ]
    )
    for slot, course_id in ((MORNING, 1), (NEXT_DAY, 2)):
        placement = timetable.add_placement(_requirement(course_id, 40), slot, [_room(1, 50)])
        timetable.add_assignment(
            placement.placement_id,
            InvigilatorAssignment(staff_id=1, role=InvigilatorRole.INVIGILATOR),
        )
    return timetable


def test_publish_clean_timetable_succeeds() -> None:
    timetable = _clean_timetable()
    stamp = datetime(2026, 4, 20, 12, 0)

    TimetablePublisher().publish(timetable, now=stamp)

    assert timetable.status is TimetableStatus.PUBLISHED
    assert timetable.published_at == stamp
    assert timetable.total_exams == 2
    assert timetable.total_conflicts == 0
    with pytest.raises(FrozenTimetableError):
        timetable.remove_placement(1)


def test_publish_with_hard_conflict_fails_and_stays_draft() -> None:
    timetable = _clean_timetable()
    timetable.add_placement(_requirement(3, 40, programs=(1,)), MORNING, [_room(2, 50)])

    with pytest.raises(PublishError) as excinfo:
        TimetablePublisher().publish(timetable)

    assert excinfo.value.conflicts
    assert all(record.is_hard for record in excinfo.value.conflicts)
    assert timetable.status is TimetableStatus.DRAFT
    assert timetable.published_at is None


def test_publish_allows_soft_conflicts() -> None:
    timetable = _clean_timetable()
    timetable.policy = SchedulingPolicy(min_invigilators_per_venue=3)

    TimetablePublisher().publish(timetable)

    assert timetable.status is TimetableStatus.PUBLISHED
    assert timetable.total_conflicts == 2


def test_publish_requires_approval_when_configured() -> None:
    timetable = _clean_timetable()
    publisher = TimetablePublisher(require_approval=True)

    with pytest.raises(PublishError):
        publisher.publish(timetable)

    publisher.transition(timetable, TimetableStatus.PENDING_APPROVAL)
    publisher.transition(timetable, TimetableStatus.APPROVED)
    publisher.transition(timetable, TimetableStatus.PUBLISHED)
    assert timetable.status is TimetableStatus.PUBLISHED


def test_republishing_is_rejected() -> None:
    timetable = _clean_timetable()
    publisher = TimetablePublisher()
    publisher.publish(timetable)
    with pytest.raises(PublishError):
        publisher.publish(timetable)


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (TimetableStatus.DRAFT, TimetableStatus.PENDING_APPROVAL, True),
        (TimetableStatus.DRAFT, TimetableStatus.PUBLISHED, True),
        (TimetableStatus.PENDING_APPROVAL, TimetableStatus.DRAFT, True),
        (TimetableStatus.APPROVED, TimetableStatus.PENDING_APPROVAL, True),
        (TimetableStatus.APPROVED, TimetableStatus.DRAFT, False),
        (TimetableStatus.PUBLISHED, TimetableStatus.DRAFT, False),
        (TimetableStatus.DRAFT, TimetableStatus.ARCHIVED, False),
        (TimetableStatus.COMPLETED, TimetableStatus.ARCHIVED, True),
        (TimetableStatus.ARCHIVED, TimetableStatus.PUBLISHED, False),
    ],
)
def test_status_machine(current, target, allowed) -> None:
    assert can_transition(current, target) is allowed


def test_invalid_transition_raises_validation_error() -> None:
    timetable = _clean_timetable()
    with pytest.raises(ValidationError):
        TimetablePublisher().transition(timetable, TimetableStatus.ARCHIVED)


def test_create_revision_copies_placements_into_new_draft() -> None:
    timetable = _clean_timetable()
    publisher = TimetablePublisher()
    publisher.publish(timetable)

    revision = publisher.create_revision(timetable)

    assert revision.status is TimetableStatus.DRAFT
    assert revision.version == timetable.version + 1
    assert revision.previous_version_id == timetable.timetable_id
    assert revision.timetable_id is None
    assert [item.placement_id for item in revision.placements] == [1, 2]
    revision.remove_assignment(1, 1)
    assert timetable.placements[0].staff_ids == (1,)


def test_clock_moves_published_timetable_forward() -> None:
    timetable = _clean_timetable()
    publisher = TimetablePublisher(archive_delay_days=7)
    publisher.publish(timetable)

    assert publisher.advance_by_clock(timetable, datetime(2026, 5, 4, 8, 0)) == []
    assert publisher.advance_by_clock(timetable, datetime(2026, 5, 4, 9, 0)) == [
        TimetableStatus.IN_PROGRESS
    ]
    assert publisher.advance_by_clock(timetable, datetime(2026, 5, 5, 12, 0)) == [
        TimetableStatus.COMPLETED
    ]
    assert publisher.advance_by_clock(timetable, datetime(2026, 5, 12, 11, 59)) == []
    assert publisher.advance_by_clock(timetable, datetime(2026, 5, 12, 12, 0)) == [
        TimetableStatus.ARCHIVED
    ]


def test_clock_ignores_drafts() -> None:
    timetable = _clean_timetable()
    assert TimetablePublisher().advance_by_clock(timetable, datetime(2026, 6, 1)) == []
    assert timetable.status is TimetableStatus.DRAFT
