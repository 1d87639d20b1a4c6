"""Timetable orchestration: generate, edit, approve, publish, advance."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from threading import RLock
from typing import Any, Callable, Iterable, Optional, Sequence

from elms.domain.constraints import ValidationError, parse_slot_pattern, policy_from_settings
from elms.domain.models import (
    ConflictRecord,
    ExamRequirement,
    InvigilatorAssignment,
    InvigilatorRole,
    Slot,
    Timetable,
    TimetableStatus,
    VenueRoom,
)
from elms.repository.data_repository import (
    AuditEvent,
    ConcurrentModificationError,
    DataRepository,
    TimetableNotFoundError,
    TimetableSummary,
)
from elms.services.allocation_service import (
    SchedulingError,
    SchedulingFailure,
    SlotAllocator,
    build_exam_calendar,
)
from elms.services.conflict_service import (
    ConflictDetector,
    hard_conflicts,
    refresh_counters,
    summarize_conflicts,
)
from elms.services.invigilator_service import CoverageShortfall, InvigilatorMatcher, describe_duty
from elms.services.notification_service import (
    EventPublisher,
    EventType,
    SchedulingEvent,
    build_default_publisher,
)
from elms.services.publishing_service import TimetablePublisher
from elms.utils.config import Settings, get_settings
from elms.utils.logger import get_logger


logger = get_logger(__name__)


class EditRejectedError(SchedulingError):
    """Raised when a manual edit would introduce new hard conflicts."""


@dataclass(frozen=True)
class GenerationReport:
    timetable: Timetable
    failures: list[SchedulingFailure]
    shortfalls: list[CoverageShortfall]
    conflicts: list[ConflictRecord]


@dataclass(frozen=True)
class EditOutcome:
    timetable: Timetable
    conflicts: list[ConflictRecord]


class TimetableService:
    """Coordinates allocation, matching, publishing, persistence and events."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        detector: Optional[ConflictDetector] = None,
        allocator: Optional[SlotAllocator] = None,
        matcher: Optional[InvigilatorMatcher] = None,
        publisher: Optional[TimetablePublisher] = None,
        events: Optional[EventPublisher] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._detector = detector or ConflictDetector(
            workers=self._settings.conflict_detection_workers
        )
        self._allocator = allocator or SlotAllocator(detector=self._detector)
        self._matcher = matcher or InvigilatorMatcher()
        self._publisher = publisher or TimetablePublisher(
            detector=self._detector,
            require_approval=self._settings.publish_requires_approval,
            archive_delay_days=self._settings.archive_delay_days,
        )
        self._events = events or build_default_publisher(self._repository)
        self._lock = RLock()

    @property
    def settings(self) -> Settings:
        return self._settings

    def _emit(self, event_type: EventType, timetable_id: Optional[int], **detail: Any) -> None:
        self._events.emit(SchedulingEvent(event_type, timetable_id, detail))

    def _load(self, timetable_id: int) -> Timetable:
        timetable = self._repository.get_timetable(timetable_id)
        if timetable is None:
            raise TimetableNotFoundError(f"Timetable {timetable_id} not found")
        return timetable

    @staticmethod
    def _check_revision(timetable: Timetable, expected_revision: Optional[int]) -> int:
        if expected_revision is None:
            return timetable.revision
        if expected_revision != timetable.revision:
            raise ConcurrentModificationError(
                timetable.timetable_id or 0,
                expected_revision,
                timetable.revision,
            )
        return expected_revision

    def generate_timetable(
        self,
        *,
        title: str,
        semester: int,
        academic_year: str,
        start_date: date,
        end_date: date,
        holidays: Iterable[date] = (),
        venue_id: Optional[int] = None,
        requirements: Optional[Sequence[ExamRequirement]] = None,
        allow_overlaps: Optional[bool] = None,
        auto_resolve_conflicts: Optional[bool] = None,
        room_packing: Optional[str] = None,
    ) -> GenerationReport:
        policy = policy_from_settings(
            self._settings,
            allow_overlaps=allow_overlaps,
            auto_resolve_conflicts=auto_resolve_conflicts,
            room_packing=room_packing,
        )
        timetable = Timetable(
            title=title,
            semester=semester,
            academic_year=academic_year,
            start_date=start_date,
            end_date=end_date,
            policy=policy,
        )
        if requirements is None:
            requirements = self._repository.list_exam_requirements(semester)
        if not requirements:
            raise ValidationError(
                f"No exam requirements for semester {semester}",
                ["at least one exam requirement is needed"],
            )
        slots = build_exam_calendar(
            start_date,
            end_date,
            parse_slot_pattern(self._settings.slot_pattern),
            include_weekends=self._settings.include_weekends,
            holidays=holidays,
        )
        if not slots:
            raise ValidationError(
                f"No exam slots between {start_date.isoformat()} and {end_date.isoformat()}",
                ["the exam window has no usable days"],
            )
        rooms = self._repository.list_venue_rooms(venue_id)
        if not rooms:
            raise ValidationError("No rooms available for scheduling", ["room inventory is empty"])

        with self._lock:
            allocation = self._allocator.allocate(requirements, slots, rooms, policy, timetable)
            matching = self._matcher.assign(timetable, self._repository.list_invigilators(), policy)
            conflicts = self._detector.detect(timetable)
            refresh_counters(timetable, conflicts)
            self._repository.create_timetable(timetable)

        logger.info(
            "Timetable generated | timetable_id=%s | exams=%s | unplaced=%s | conflicts=%s",
            timetable.timetable_id,
            timetable.total_exams,
            len(allocation.failures),
            timetable.total_conflicts,
        )
        self._emit(
            EventType.TIMETABLE_GENERATED,
            timetable.timetable_id,
            total_exams=timetable.total_exams,
            total_conflicts=timetable.total_conflicts,
            unplaced_course_ids=allocation.unplaced_course_ids,
            shortfalls=len(matching.shortfalls),
        )
        return GenerationReport(
            timetable=timetable,
            failures=allocation.failures,
            shortfalls=matching.shortfalls,
            conflicts=conflicts,
        )

    def get_timetable(self, timetable_id: int) -> Timetable:
        return self._load(timetable_id)

    def list_timetables(self, status: Optional[TimetableStatus] = None) -> list[TimetableSummary]:
        return self._repository.list_timetables(status)

    def get_conflicts(self, timetable_id: int) -> list[ConflictRecord]:
        return self._detector.detect(self._load(timetable_id))

    def get_statistics(self, timetable_id: int) -> dict[str, Any]:
        timetable = self._load(timetable_id)
        conflicts = self._detector.detect(timetable)
        placements = timetable.placements

        exam_dates = {placement.slot.exam_date for placement in placements}
        venue_ids = {venue_id for placement in placements for venue_id in placement.venue_ids}
        room_ids = {room_id for placement in placements for room_id in placement.room_ids}
        seats = sum(placement.capacity for placement in placements)
        students = sum(placement.requirement.expected_students for placement in placements)
        total_exams = len(placements)

        return {
            "timetable_id": timetable.timetable_id,
            "status": timetable.status.value,
            "total_exams": total_exams,
            "unique_courses": len({placement.requirement.course_id for placement in placements}),
            "exam_days": len(exam_dates),
            "average_exams_per_day": round(total_exams / len(exam_dates), 2) if exam_dates else 0.0,
            "venues_used": len(venue_ids),
            "rooms_used": len(room_ids),
            "seats_allocated": seats,
            "total_students": students,
            "average_students_per_exam": round(students / total_exams, 2) if total_exams else 0.0,
            "seat_utilisation_rate": round(students / seats, 4) if seats else 0.0,
            "invigilator_assignments": sum(len(placement.assignments) for placement in placements),
            "total_conflicts": len(conflicts),
            "conflicts": summarize_conflicts(conflicts),
        }

    def _apply_edit(
        self,
        timetable: Timetable,
        expected_revision: int,
        description: str,
        edit: Callable[[], object],
    ) -> EditOutcome:
        before = set(hard_conflicts(self._detector.detect(timetable)))
        previous_total = timetable.total_conflicts
        edit()
        after = self._detector.detect(timetable)
        introduced = [record for record in hard_conflicts(after) if record not in before]
        if introduced:
            logger.warning(
                "Manual edit rejected | timetable_id=%s | edit=%s | new_hard_conflicts=%s",
                timetable.timetable_id,
                description,
                len(introduced),
            )
            raise EditRejectedError(
                f"{description} would introduce {len(introduced)} hard conflicts",
                conflicts=introduced,
            )
        refresh_counters(timetable, after)
        self._repository.save_timetable(timetable, expected_revision)
        if timetable.total_conflicts != previous_total:
            self._emit(
                EventType.CONFLICTS_CHANGED,
                timetable.timetable_id,
                previous=previous_total,
                current=timetable.total_conflicts,
            )
        return EditOutcome(timetable=timetable, conflicts=after)

    def add_invigilator(
        self,
        timetable_id: int,
        placement_id: int,
        staff_id: int,
        role: InvigilatorRole,
        expected_revision: int,
        duty: Optional[str] = None,
    ) -> EditOutcome:
        with self._lock:
            timetable = self._load(timetable_id)
            self._check_revision(timetable, expected_revision)
            timetable.ensure_mutable()
            invigilator = self._repository.get_invigilator(staff_id)
            if invigilator is None:
                raise ValidationError(
                    f"Staff {staff_id} not found",
                    [f"unknown staff_id={staff_id}"],
                )
            timetable.register_staff([invigilator])
            placement = timetable.get_placement(placement_id)
            assignment = InvigilatorAssignment(
                staff_id=staff_id,
                role=role,
                duty=duty or describe_duty(role, placement),
            )
            outcome = self._apply_edit(
                timetable,
                expected_revision,
                f"Assigning staff {staff_id} to placement {placement_id}",
                lambda: timetable.add_assignment(placement_id, assignment),
            )
        self._emit(
            EventType.INVIGILATOR_ADDED,
            timetable_id,
            placement_id=placement_id,
            staff_id=staff_id,
            role=role.value,
        )
        return outcome

    def remove_invigilator(
        self,
        timetable_id: int,
        placement_id: int,
        staff_id: int,
        expected_revision: int,
    ) -> EditOutcome:
        with self._lock:
            timetable = self._load(timetable_id)
            self._check_revision(timetable, expected_revision)
            timetable.ensure_mutable()
            outcome = self._apply_edit(
                timetable,
                expected_revision,
                f"Removing staff {staff_id} from placement {placement_id}",
                lambda: timetable.remove_assignment(placement_id, staff_id),
            )
        self._emit(
            EventType.INVIGILATOR_REMOVED,
            timetable_id,
            placement_id=placement_id,
            staff_id=staff_id,
        )
        return outcome

    def _resolve_rooms(self, room_ids: Sequence[int]) -> list[VenueRoom]:
        inventory = {room.room_id: room for room in self._repository.list_venue_rooms()}
        unknown = [room_id for room_id in room_ids if room_id not in inventory]
        if unknown:
            raise ValidationError(
                f"Unknown rooms {unknown}",
                [f"unknown room_id={room_id}" for room_id in unknown],
            )
        return [inventory[room_id] for room_id in room_ids]

    def add_placement(
        self,
        timetable_id: int,
        course_id: int,
        slot: Slot,
        room_ids: Sequence[int],
        expected_revision: int,
        duration_minutes: Optional[int] = None,
    ) -> EditOutcome:
        with self._lock:
            timetable = self._load(timetable_id)
            self._check_revision(timetable, expected_revision)
            timetable.ensure_mutable()
            if any(item.requirement.course_id == course_id for item in timetable.placements):
                raise ValidationError(
                    f"Course {course_id} is already placed in timetable {timetable_id}",
                    [f"course_id={course_id} already has a placement"],
                )
            requirement = next(
                (
                    item
                    for item in self._repository.list_exam_requirements(timetable.semester)
                    if item.course_id == course_id
                ),
                None,
            )
            if requirement is None:
                raise ValidationError(
                    f"Course {course_id} has no exam requirement for semester {timetable.semester}",
                    [f"unknown course_id={course_id}"],
                )
            rooms = self._resolve_rooms(room_ids)
            placement_id = timetable.next_placement_id()
            outcome = self._apply_edit(
                timetable,
                expected_revision,
                f"Placing {requirement.course_code} in {slot.label}",
                lambda: timetable.add_placement(requirement, slot, rooms, duration_minutes),
            )
        self._emit(
            EventType.PLACEMENT_ADDED,
            timetable_id,
            placement_id=placement_id,
            course_id=course_id,
            slot=slot.label,
            room_ids=list(room_ids),
        )
        return outcome

    def move_placement(
        self,
        timetable_id: int,
        placement_id: int,
        expected_revision: int,
        slot: Optional[Slot] = None,
        room_ids: Optional[Sequence[int]] = None,
    ) -> EditOutcome:
        """Reschedule a placement to another slot, other rooms, or both."""
        if slot is None and room_ids is None:
            raise ValidationError(
                f"Nothing to change for placement {placement_id}",
                ["a new slot or room set is required"],
            )
        with self._lock:
            timetable = self._load(timetable_id)
            self._check_revision(timetable, expected_revision)
            timetable.ensure_mutable()
            previous = timetable.get_placement(placement_id)
            rooms = self._resolve_rooms(room_ids) if room_ids is not None else None
            outcome = self._apply_edit(
                timetable,
                expected_revision,
                f"Moving placement {placement_id}",
                lambda: timetable.move_placement(placement_id, slot=slot, rooms=rooms),
            )
            moved = timetable.get_placement(placement_id)
        self._emit(
            EventType.PLACEMENT_MOVED,
            timetable_id,
            placement_id=placement_id,
            previous_slot=previous.slot.label,
            slot=moved.slot.label,
            previous_room_ids=list(previous.room_ids),
            room_ids=list(moved.room_ids),
        )
        return outcome

    def remove_placement(
        self,
        timetable_id: int,
        placement_id: int,
        expected_revision: int,
    ) -> EditOutcome:
        with self._lock:
            timetable = self._load(timetable_id)
            self._check_revision(timetable, expected_revision)
            timetable.ensure_mutable()
            removed = timetable.get_placement(placement_id)
            outcome = self._apply_edit(
                timetable,
                expected_revision,
                f"Removing placement {placement_id}",
                lambda: timetable.remove_placement(placement_id),
            )
        self._emit(
            EventType.PLACEMENT_REMOVED,
            timetable_id,
            placement_id=placement_id,
            course_id=removed.requirement.course_id,
        )
        return outcome

    def _change_status(
        self,
        timetable_id: int,
        target: TimetableStatus,
        expected_revision: Optional[int],
        now: Optional[datetime] = None,
        reason: Optional[str] = None,
    ) -> Timetable:
        with self._lock:
            timetable = self._load(timetable_id)
            revision = self._check_revision(timetable, expected_revision)
            previous = timetable.status
            self._publisher.transition(timetable, target, now=now)
            if reason is not None:
                timetable.rejection_reason = reason
            self._repository.save_timetable(timetable, revision)

        self._emit(
            EventType.STATUS_CHANGED,
            timetable_id,
            previous=previous.value,
            current=target.value,
            reason=reason,
        )
        if target is TimetableStatus.PUBLISHED:
            self._emit(
                EventType.TIMETABLE_PUBLISHED,
                timetable_id,
                version=timetable.version,
                total_exams=timetable.total_exams,
                total_conflicts=timetable.total_conflicts,
            )
        return timetable

    def submit_for_approval(
        self,
        timetable_id: int,
        expected_revision: Optional[int] = None,
    ) -> Timetable:
        timetable = self._load(timetable_id)
        if not timetable.placements:
            raise ValidationError(
                f"Timetable {timetable_id} has no exams to submit",
                ["timetable must contain at least one exam"],
            )
        return self._change_status(timetable_id, TimetableStatus.PENDING_APPROVAL, expected_revision)

    def approve(
        self,
        timetable_id: int,
        expected_revision: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Timetable:
        return self._change_status(timetable_id, TimetableStatus.APPROVED, expected_revision, now=now)

    def reject(
        self,
        timetable_id: int,
        reason: str,
        expected_revision: Optional[int] = None,
    ) -> Timetable:
        if not reason.strip():
            raise ValidationError("A rejection reason is required", ["reason must be non-empty"])
        timetable = self._load(timetable_id)
        if timetable.status is not TimetableStatus.PENDING_APPROVAL:
            raise ValidationError(
                f"Only pending timetables can be rejected, not {timetable.status.value}",
                ["status must be PENDING_APPROVAL"],
            )
        return self._change_status(
            timetable_id,
            TimetableStatus.DRAFT,
            expected_revision,
            reason=reason.strip(),
        )

    def request_revision(
        self,
        timetable_id: int,
        expected_revision: Optional[int] = None,
    ) -> Timetable:
        timetable = self._load(timetable_id)
        if timetable.status is not TimetableStatus.APPROVED:
            raise ValidationError(
                f"Only approved timetables can be sent back for revision, not {timetable.status.value}",
                ["status must be APPROVED"],
            )
        return self._change_status(timetable_id, TimetableStatus.PENDING_APPROVAL, expected_revision)

    def publish(
        self,
        timetable_id: int,
        expected_revision: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Timetable:
        return self._change_status(timetable_id, TimetableStatus.PUBLISHED, expected_revision, now=now)

    def archive(self, timetable_id: int, expected_revision: Optional[int] = None) -> Timetable:
        return self._change_status(timetable_id, TimetableStatus.ARCHIVED, expected_revision)

    def create_revision(self, timetable_id: int) -> Timetable:
        with self._lock:
            source = self._load(timetable_id)
            revision = self._publisher.create_revision(source)
            self._repository.create_timetable(revision)
        self._emit(
            EventType.REVISION_CREATED,
            revision.timetable_id,
            previous_version_id=timetable_id,
            version=revision.version,
        )
        return revision

    def advance_statuses(self, now: datetime) -> dict[int, list[str]]:
        """Apply clock-driven progression to every published timetable."""
        advanced: dict[int, list[str]] = {}
        live = (TimetableStatus.PUBLISHED, TimetableStatus.IN_PROGRESS, TimetableStatus.COMPLETED)
        with self._lock:
            candidates = [
                summary
                for summary in self._repository.list_timetables()
                if summary.status in {status.value for status in live}
            ]
            for summary in candidates:
                timetable = self._load(summary.timetable_id)
                previous = timetable.status
                entered = self._publisher.advance_by_clock(timetable, now)
                if not entered:
                    continue
                self._repository.save_timetable(timetable, summary.revision)
                advanced[summary.timetable_id] = [status.value for status in entered]
                self._emit(
                    EventType.STATUS_CHANGED,
                    summary.timetable_id,
                    previous=previous.value,
                    current=timetable.status.value,
                    reason="clock",
                )
        return advanced

    def list_audit_events(self, timetable_id: int) -> list[AuditEvent]:
        self._load(timetable_id)
        return self._repository.list_audit_events(timetable_id)
