"""Automatic first-pass invigilator assignment."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from elms.domain.constraints import SchedulingPolicy, validate_scheduling_policy
from elms.domain.models import (
    Invigilator,
    InvigilatorAssignment,
    InvigilatorRole,
    Placement,
    Timetable,
)
from elms.services.conflict_service import required_invigilators
from elms.utils.logger import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class CoverageShortfall:
    placement_id: int
    course_code: str
    required: int
    assigned: int


@dataclass(frozen=True)
class AssignmentResult:
    timetable: Timetable
    shortfalls: list[CoverageShortfall]

    @property
    def assignments_made(self) -> int:
        return sum(len(placement.assignments) for placement in self.timetable.placements)


def describe_duty(role: InvigilatorRole, placement: Placement) -> str:
    rooms = ", ".join(room.name for room in placement.rooms)
    title = role.value.replace("_", " ").lower()
    return f"{title.capitalize()} for {placement.requirement.course_code} in {rooms}"


class InvigilatorMatcher:
    """Fills each placement up to its coverage minimum.

    Placements are visited chronologically. Candidates must be eligible for
    the seat's role and free for the placement's whole time range; among
    those, the least-loaded person wins, then (optionally) someone from
    outside the course's department, then the lowest staff id.
    """

    def _seat_roles(self, placement: Placement) -> tuple[InvigilatorRole, ...]:
        has_chief = any(
            assignment.role is InvigilatorRole.CHIEF_INVIGILATOR
            for assignment in placement.assignments
        )
        if has_chief:
            return (InvigilatorRole.INVIGILATOR,)
        return (InvigilatorRole.CHIEF_INVIGILATOR, InvigilatorRole.INVIGILATOR)

    @staticmethod
    def _is_free(
        invigilator: Invigilator,
        placement: Placement,
        busy: dict[int, list[Placement]],
    ) -> bool:
        if invigilator.staff_id in placement.staff_ids:
            return False
        return not any(placement.overlaps(other) for other in busy[invigilator.staff_id])

    def _rank(
        self,
        candidates: Iterable[Invigilator],
        placement: Placement,
        load: Counter,
        policy: SchedulingPolicy,
    ) -> list[Invigilator]:
        course_department = placement.requirement.department_id

        def same_department(invigilator: Invigilator) -> int:
            if not policy.prefer_external_invigilators or course_department is None:
                return 0
            return int(invigilator.department_id == course_department)

        return sorted(
            candidates,
            key=lambda item: (load[item.staff_id], same_department(item), item.staff_id),
        )

    def assign(
        self,
        timetable: Timetable,
        candidate_pool: Sequence[Invigilator],
        policy: Optional[SchedulingPolicy] = None,
    ) -> AssignmentResult:
        policy = policy or timetable.policy
        validate_scheduling_policy(policy)
        timetable.ensure_mutable()
        timetable.register_staff(candidate_pool)
        pool = sorted(
            {invigilator.staff_id: invigilator for invigilator in candidate_pool}.values(),
            key=lambda item: item.staff_id,
        )

        load: Counter = Counter()
        busy: dict[int, list[Placement]] = defaultdict(list)
        for placement in timetable.placements:
            for assignment in placement.assignments:
                load[assignment.staff_id] += 1
                busy[assignment.staff_id].append(placement)

        shortfalls: list[CoverageShortfall] = []
        for placement in timetable.chronological_placements():
            required = required_invigilators(placement, policy)
            while len(placement.assignments) < required:
                picked: tuple[Invigilator, InvigilatorRole] | None = None
                for role in self._seat_roles(placement):
                    eligible = [
                        invigilator
                        for invigilator in pool
                        if invigilator.is_eligible(role) and self._is_free(invigilator, placement, busy)
                    ]
                    if eligible:
                        picked = (self._rank(eligible, placement, load, policy)[0], role)
                        break
                if picked is None:
                    shortfalls.append(
                        CoverageShortfall(
                            placement_id=placement.placement_id,
                            course_code=placement.requirement.course_code,
                            required=required,
                            assigned=len(placement.assignments),
                        )
                    )
                    logger.warning(
                        "Invigilator shortfall | placement_id=%s | course=%s | assigned=%s | required=%s",
                        placement.placement_id,
                        placement.requirement.course_code,
                        len(placement.assignments),
                        required,
                    )
                    break

                invigilator, role = picked
                timetable.add_assignment(
                    placement.placement_id,
                    InvigilatorAssignment(
                        staff_id=invigilator.staff_id,
                        role=role,
                        duty=describe_duty(role, placement),
                    ),
                )
                load[invigilator.staff_id] += 1
                busy[invigilator.staff_id].append(placement)

        result = AssignmentResult(timetable=timetable, shortfalls=shortfalls)
        logger.info(
            "Invigilator matching completed | placements=%s | assignments=%s | shortfalls=%s",
            len(timetable.placements),
            result.assignments_made,
            len(shortfalls),
        )
        return result
