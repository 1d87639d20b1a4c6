"""Hard/soft conflict detection over timetable placements.

Every check is a pure function of the placements it receives; nothing here
is persisted. `ConflictDetector.detect` is the single entry point used by the
allocator, the invigilator matcher, the publisher and manual edits.
"""

from __future__ import annotations

import math
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterator, Mapping, Sequence

from elms.domain.constraints import SchedulingPolicy
from elms.domain.models import (
    ConflictKind,
    ConflictRecord,
    Invigilator,
    Placement,
    Severity,
    Timetable,
)
from elms.utils.logger import get_logger


logger = get_logger(__name__)

_SEVERITY_RANK = {Severity.HARD: 0, Severity.SOFT: 1}


def required_invigilators(placement: Placement, policy: SchedulingPolicy) -> int:
    """Minimum staff for a placement: a base per venue plus one per N students."""
    per_venue = policy.min_invigilators_per_venue * len(placement.venue_ids)
    per_students = math.ceil(
        placement.requirement.expected_students / policy.students_per_invigilator
    )
    return per_venue + per_students


def _overlapping_pairs(
    placements: Sequence[Placement],
) -> Iterator[tuple[Placement, Placement]]:
    ordered = sorted(placements, key=lambda item: (item.start, item.placement_id))
    for index, first in enumerate(ordered):
        for second in ordered[index + 1:]:
            if second.start >= first.end:
                break
            if first.placement_id < second.placement_id:
                yield first, second
            else:
                yield second, first


def detect_student_double_booking(
    placements: Sequence[Placement],
    severity: Severity = Severity.HARD,
) -> list[ConflictRecord]:
    records: list[ConflictRecord] = []
    for first, second in _overlapping_pairs(placements):
        shared = sorted(first.requirement.cohorts & second.requirement.cohorts)
        if not shared:
            continue
        cohorts = ", ".join(f"program {program_id} L{level}" for program_id, level in shared)
        records.append(
            ConflictRecord(
                kind=ConflictKind.STUDENT_DOUBLE_BOOKING,
                severity=severity,
                placement_ids=(first.placement_id, second.placement_id),
                message=(
                    f"{cohorts} sit {first.requirement.course_code} and "
                    f"{second.requirement.course_code} at overlapping times"
                ),
            )
        )
    return records


def detect_room_over_capacity(placements: Sequence[Placement]) -> list[ConflictRecord]:
    records: list[ConflictRecord] = []
    for placement in sorted(placements, key=lambda item: item.placement_id):
        expected = placement.requirement.expected_students
        if expected <= placement.capacity:
            continue
        records.append(
            ConflictRecord(
                kind=ConflictKind.ROOM_OVER_CAPACITY,
                severity=Severity.HARD,
                placement_ids=(placement.placement_id,),
                room_ids=placement.room_ids,
                message=(
                    f"{placement.requirement.course_code} needs {expected} seats "
                    f"but its rooms hold {placement.capacity}"
                ),
            )
        )
    return records


def detect_room_double_booking(placements: Sequence[Placement]) -> list[ConflictRecord]:
    records: list[ConflictRecord] = []
    for first, second in _overlapping_pairs(placements):
        shared = tuple(sorted(set(first.room_ids) & set(second.room_ids)))
        if not shared:
            continue
        records.append(
            ConflictRecord(
                kind=ConflictKind.ROOM_DOUBLE_BOOKING,
                severity=Severity.HARD,
                placement_ids=(first.placement_id, second.placement_id),
                room_ids=shared,
                message=(
                    f"Rooms {list(shared)} host {first.requirement.course_code} and "
                    f"{second.requirement.course_code} at overlapping times"
                ),
            )
        )
    return records


def detect_invigilator_double_booking(placements: Sequence[Placement]) -> list[ConflictRecord]:
    records: list[ConflictRecord] = []
    for first, second in _overlapping_pairs(placements):
        for staff_id in sorted(set(first.staff_ids) & set(second.staff_ids)):
            records.append(
                ConflictRecord(
                    kind=ConflictKind.INVIGILATOR_DOUBLE_BOOKING,
                    severity=Severity.HARD,
                    placement_ids=(first.placement_id, second.placement_id),
                    staff_ids=(staff_id,),
                    message=(
                        f"Staff {staff_id} invigilates {first.requirement.course_code} and "
                        f"{second.requirement.course_code} at overlapping times"
                    ),
                )
            )
    return records


def detect_invigilator_under_coverage(
    placements: Sequence[Placement],
    policy: SchedulingPolicy,
) -> list[ConflictRecord]:
    records: list[ConflictRecord] = []
    for placement in sorted(placements, key=lambda item: item.placement_id):
        required = required_invigilators(placement, policy)
        assigned = len(placement.assignments)
        if assigned >= required:
            continue
        records.append(
            ConflictRecord(
                kind=ConflictKind.INVIGILATOR_UNDER_COVERAGE,
                severity=Severity.SOFT,
                placement_ids=(placement.placement_id,),
                staff_ids=placement.staff_ids,
                message=(
                    f"{placement.requirement.course_code} has {assigned} of "
                    f"{required} required invigilators"
                ),
            )
        )
    return records


def detect_invigilator_unqualified(
    placements: Sequence[Placement],
    staff: Mapping[int, Invigilator],
) -> list[ConflictRecord]:
    records: list[ConflictRecord] = []
    for placement in sorted(placements, key=lambda item: item.placement_id):
        for assignment in placement.assignments:
            invigilator = staff.get(assignment.staff_id)
            if invigilator is None:
                reason = "is not in the staff directory"
            elif not invigilator.is_eligible(assignment.role):
                reason = f"is not eligible for {assignment.role.value}"
            else:
                continue
            records.append(
                ConflictRecord(
                    kind=ConflictKind.INVIGILATOR_UNQUALIFIED,
                    severity=Severity.HARD,
                    placement_ids=(placement.placement_id,),
                    staff_ids=(assignment.staff_id,),
                    message=(
                        f"Staff {assignment.staff_id} {reason} "
                        f"({placement.requirement.course_code})"
                    ),
                )
            )
    return records


def sort_conflicts(records: Sequence[ConflictRecord]) -> list[ConflictRecord]:
    """Order hard before soft, then by placement ids; ties keep check order."""
    return sorted(
        records,
        key=lambda record: (_SEVERITY_RANK[record.severity], record.placement_ids),
    )


def hard_conflicts(records: Sequence[ConflictRecord]) -> list[ConflictRecord]:
    return [record for record in records if record.is_hard]


def summarize_conflicts(records: Sequence[ConflictRecord]) -> dict[str, dict[str, int]]:
    by_severity = Counter(record.severity.value for record in records)
    by_kind = Counter(record.kind.value for record in records)
    return {
        "by_severity": {severity.value: by_severity.get(severity.value, 0) for severity in Severity},
        "by_kind": {kind.value: by_kind.get(kind.value, 0) for kind in ConflictKind},
    }


def refresh_counters(timetable: Timetable, records: Sequence[ConflictRecord]) -> None:
    """Re-derive the denormalised counters from current placements."""
    timetable.total_exams = len(timetable.placements)
    timetable.total_conflicts = len(records)


class ConflictDetector:
    """Runs every check over a timetable in a fixed order.

    With `workers > 1` the independent checks run on a thread pool; results
    are merged in check order before sorting, so the output is identical to
    a sequential run.
    """

    def __init__(self, workers: int = 1) -> None:
        self._workers = max(1, workers)

    def _checks(self, timetable: Timetable) -> list[Callable[[], list[ConflictRecord]]]:
        placements = list(timetable.placements)
        policy = timetable.policy
        student_severity = Severity.SOFT if policy.allow_overlaps else Severity.HARD
        return [
            lambda: detect_student_double_booking(placements, student_severity),
            lambda: detect_room_over_capacity(placements),
            lambda: detect_room_double_booking(placements),
            lambda: detect_invigilator_double_booking(placements),
            lambda: detect_invigilator_under_coverage(placements, policy),
            lambda: detect_invigilator_unqualified(placements, timetable.staff),
        ]

    def detect(self, timetable: Timetable) -> list[ConflictRecord]:
        checks = self._checks(timetable)
        if self._workers > 1:
            with ThreadPoolExecutor(max_workers=min(self._workers, len(checks))) as pool:
                batches = list(pool.map(lambda check: check(), checks))
        else:
            batches = [check() for check in checks]

        records = sort_conflicts([record for batch in batches for record in batch])
        logger.debug(
            "Conflict detection completed | timetable_id=%s | placements=%s | conflicts=%s",
            timetable.timetable_id,
            len(timetable.placements),
            len(records),
        )
        return records

    def detect_for_candidate(
        self,
        candidate: Placement,
        placements: Sequence[Placement],
        policy: SchedulingPolicy,
    ) -> list[ConflictRecord]:
        """Student, capacity and room checks limited to a candidate's time window."""
        neighbours = [
            placement
            for placement in placements
            if placement.placement_id != candidate.placement_id and placement.overlaps(candidate)
        ]
        scope = neighbours + [candidate]
        records: list[ConflictRecord] = []
        if not policy.allow_overlaps:
            records.extend(detect_student_double_booking(scope))
        records.extend(detect_room_over_capacity([candidate]))
        records.extend(detect_room_double_booking(scope))
        return sort_conflicts(
            [record for record in records if candidate.placement_id in record.placement_ids]
        )
