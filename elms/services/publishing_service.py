"""Timetable lifecycle: approval states, publishing and revisions."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Optional, Sequence

from elms.domain.constraints import ValidationError
from elms.domain.models import (
    FROZEN_STATUSES,
    ConflictRecord,
    Timetable,
    TimetableStatus,
)
from elms.services.conflict_service import ConflictDetector, hard_conflicts, refresh_counters
from elms.utils.logger import get_logger


logger = get_logger(__name__)


class PublishError(Exception):
    """Raised when a timetable cannot be published; the draft stays editable."""

    def __init__(
        self,
        message: str,
        conflicts: Optional[Sequence[ConflictRecord]] = None,
    ) -> None:
        super().__init__(message)
        self.conflicts: list[ConflictRecord] = list(conflicts or [])


_FORWARD_ORDER = (
    TimetableStatus.DRAFT,
    TimetableStatus.PENDING_APPROVAL,
    TimetableStatus.APPROVED,
    TimetableStatus.PUBLISHED,
    TimetableStatus.IN_PROGRESS,
    TimetableStatus.COMPLETED,
)

_BACK_EDGES = frozenset(
    {
        (TimetableStatus.PENDING_APPROVAL, TimetableStatus.DRAFT),
        (TimetableStatus.APPROVED, TimetableStatus.PENDING_APPROVAL),
    }
)


def can_transition(current: TimetableStatus, target: TimetableStatus) -> bool:
    if current is target or current is TimetableStatus.ARCHIVED:
        return False
    if target is TimetableStatus.ARCHIVED:
        return current in FROZEN_STATUSES
    if (current, target) in _BACK_EDGES:
        return True
    return _FORWARD_ORDER.index(target) > _FORWARD_ORDER.index(current)


def validate_status_transition(current: TimetableStatus, target: TimetableStatus) -> None:
    if not can_transition(current, target):
        raise ValidationError(
            f"Invalid status transition from {current.value} to {target.value}",
            [f"{current.value} -> {target.value} is not permitted"],
        )


class TimetablePublisher:
    """Owns the status machine and the publish gate."""

    def __init__(
        self,
        detector: Optional[ConflictDetector] = None,
        require_approval: bool = False,
        archive_delay_days: int = 7,
    ) -> None:
        self._detector = detector or ConflictDetector()
        self._require_approval = require_approval
        self._archive_delay = timedelta(days=archive_delay_days)

    def transition(
        self,
        timetable: Timetable,
        target: TimetableStatus,
        now: Optional[datetime] = None,
    ) -> Timetable:
        if target is TimetableStatus.PUBLISHED:
            return self.publish(timetable, now=now)
        validate_status_transition(timetable.status, target)
        previous = timetable.status
        timetable.status = target
        if target is TimetableStatus.APPROVED:
            timetable.approved_at = now or datetime.now(timezone.utc)
            timetable.rejection_reason = None
        logger.info(
            "Timetable status changed | timetable_id=%s | from=%s | to=%s",
            timetable.timetable_id,
            previous.value,
            target.value,
        )
        return timetable

    def publish(self, timetable: Timetable, now: Optional[datetime] = None) -> Timetable:
        if self._require_approval and timetable.status is not TimetableStatus.APPROVED:
            raise PublishError(
                f"Timetable {timetable.timetable_id} must be approved before publishing"
            )
        if not can_transition(timetable.status, TimetableStatus.PUBLISHED):
            raise PublishError(
                f"Cannot publish timetable {timetable.timetable_id} from status {timetable.status.value}"
            )

        records = self._detector.detect(timetable)
        refresh_counters(timetable, records)
        blocking = hard_conflicts(records)
        if blocking:
            logger.warning(
                "Publish rejected | timetable_id=%s | hard_conflicts=%s",
                timetable.timetable_id,
                len(blocking),
            )
            raise PublishError(
                f"Cannot publish timetable {timetable.timetable_id} with "
                f"{len(blocking)} unresolved hard conflicts",
                conflicts=blocking,
            )

        timetable.status = TimetableStatus.PUBLISHED
        timetable.published_at = now or datetime.now(timezone.utc)
        logger.info(
            "Timetable published | timetable_id=%s | version=%s | exams=%s | conflicts=%s",
            timetable.timetable_id,
            timetable.version,
            timetable.total_exams,
            timetable.total_conflicts,
        )
        return timetable

    def create_revision(self, timetable: Timetable) -> Timetable:
        """Copy a timetable into a new editable draft that points back at it."""
        revision = Timetable(
            title=timetable.title,
            semester=timetable.semester,
            academic_year=timetable.academic_year,
            start_date=timetable.start_date,
            end_date=timetable.end_date,
            policy=timetable.policy,
            version=timetable.version + 1,
            previous_version_id=timetable.timetable_id,
            placements=copy.deepcopy(timetable.placements),
            staff=dict(timetable.staff),
        )
        refresh_counters(revision, self._detector.detect(revision))
        return revision

    def advance_by_clock(self, timetable: Timetable, now: datetime) -> list[TimetableStatus]:
        """Move published timetables along as their exams start and finish.

        `now` is wall-clock exam time (naive, like slot times). Returns the
        statuses entered, in order.
        """
        if not timetable.placements:
            return []
        first_start = min(placement.start for placement in timetable.placements)
        last_end = max(placement.end for placement in timetable.placements)

        entered: list[TimetableStatus] = []
        if timetable.status is TimetableStatus.PUBLISHED and now >= first_start:
            timetable.status = TimetableStatus.IN_PROGRESS
            entered.append(timetable.status)
        if timetable.status is TimetableStatus.IN_PROGRESS and now >= last_end:
            timetable.status = TimetableStatus.COMPLETED
            entered.append(timetable.status)
        if timetable.status is TimetableStatus.COMPLETED and now >= last_end + self._archive_delay:
            timetable.status = TimetableStatus.ARCHIVED
            entered.append(timetable.status)
        if entered:
            logger.info(
                "Timetable advanced by clock | timetable_id=%s | statuses=%s",
                timetable.timetable_id,
                [status.value for status in entered],
            )
        return entered
