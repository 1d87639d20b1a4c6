"""Controller layer for exam timetable endpoints."""

from __future__ import annotations

from datetime import date, datetime, time
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator, model_validator

from elms.controllers.dependencies import (
    get_auth_service,
    get_timetable_service,
    require_capability,
)
from elms.domain.constraints import FrozenTimetableError, ValidationError
from elms.domain.models import (
    ConflictRecord,
    ExamRequirement,
    InvigilatorRole,
    Slot,
    Timetable,
    TimetableStatus,
)
from elms.repository.data_repository import ConcurrentModificationError, TimetableNotFoundError
from elms.services.allocation_service import SchedulingError
from elms.services.auth_service import (
    AuthService,
    Capability,
    InvalidTokenError,
    TokenNotConfiguredError,
)
from elms.services.publishing_service import PublishError
from elms.services.timetable_service import TimetableService
from elms.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["timetables"])


class LoginRequest(BaseModel):
    token: str = Field(min_length=1)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: str


class RequirementPayload(BaseModel):
    course_id: int = Field(gt=0)
    course_code: str = Field(min_length=1)
    level: int = Field(gt=0)
    semester: int = Field(gt=0)
    expected_students: int = Field(ge=0)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    program_ids: list[int] = Field(min_length=1)
    department_id: Optional[int] = None


class GenerateRequest(BaseModel):
    title: str = Field(min_length=1)
    semester: int = Field(gt=0)
    academic_year: str = Field(min_length=1)
    start_date: date
    end_date: date
    holidays: list[date] = Field(default_factory=list)
    venue_id: Optional[int] = Field(default=None, gt=0)
    requirements: Optional[list[RequirementPayload]] = None
    allow_overlaps: Optional[bool] = None
    auto_resolve_conflicts: Optional[bool] = None
    room_packing: Optional[str] = Field(default=None, pattern=r"^(first_fit|cp_sat)$")

    @model_validator(mode="after")
    def validate_window(self) -> "GenerateRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class RoomOut(BaseModel):
    room_id: int
    venue_id: int
    name: str
    capacity: int


class AssignmentOut(BaseModel):
    staff_id: int
    role: str
    duty: str


class PlacementOut(BaseModel):
    placement_id: int
    course_id: int
    course_code: str
    level: int
    program_ids: list[int]
    expected_students: int
    exam_date: date
    start: datetime
    end: datetime
    duration_minutes: int
    rooms: list[RoomOut]
    assignments: list[AssignmentOut]


class TimetableOut(BaseModel):
    timetable_id: int
    title: str
    semester: int
    academic_year: str
    start_date: date
    end_date: date
    status: str
    revision: int
    version: int
    previous_version_id: Optional[int] = None
    total_exams: int = Field(ge=0)
    total_conflicts: int = Field(ge=0)
    rejection_reason: Optional[str] = None
    approved_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    placements: list[PlacementOut]


class ConflictOut(BaseModel):
    kind: str
    severity: str
    placement_ids: list[int]
    staff_ids: list[int]
    room_ids: list[int]
    message: str


class FailureOut(BaseModel):
    course_id: int
    course_code: str
    reason: str


class ShortfallOut(BaseModel):
    placement_id: int
    course_code: str
    required: int
    assigned: int


class GenerateResponse(BaseModel):
    timetable: TimetableOut
    failures: list[FailureOut]
    shortfalls: list[ShortfallOut]
    conflicts: list[ConflictOut]


class TimetableSummaryOut(BaseModel):
    timetable_id: int
    title: str
    semester: int
    academic_year: str
    status: str
    revision: int
    version: int
    previous_version_id: Optional[int] = None
    total_exams: int
    total_conflicts: int


class StatisticsResponse(BaseModel):
    timetable_id: int
    status: str
    total_exams: int = Field(ge=0)
    unique_courses: int = Field(ge=0)
    exam_days: int = Field(ge=0)
    average_exams_per_day: float = Field(ge=0.0)
    venues_used: int = Field(ge=0)
    rooms_used: int = Field(ge=0)
    seats_allocated: int = Field(ge=0)
    total_students: int = Field(ge=0)
    average_students_per_exam: float = Field(ge=0.0)
    seat_utilisation_rate: float = Field(ge=0.0)
    invigilator_assignments: int = Field(ge=0)
    total_conflicts: int = Field(ge=0)
    conflicts: dict[str, dict[str, int]]


class AddInvigilatorRequest(BaseModel):
    staff_id: int = Field(gt=0)
    role: InvigilatorRole = InvigilatorRole.INVIGILATOR
    expected_revision: int = Field(ge=1)
    duty: Optional[str] = None


class SlotPayload(BaseModel):
    exam_date: date
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def validate_bounds(self) -> "SlotPayload":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def to_slot(self) -> Slot:
        return Slot(exam_date=self.exam_date, start_time=self.start_time, end_time=self.end_time)


class AddPlacementRequest(BaseModel):
    course_id: int = Field(gt=0)
    slot: SlotPayload
    room_ids: list[int] = Field(min_length=1)
    duration_minutes: Optional[int] = Field(default=None, gt=0)
    expected_revision: int = Field(ge=1)


class MovePlacementRequest(BaseModel):
    slot: Optional[SlotPayload] = None
    room_ids: Optional[list[int]] = Field(default=None, min_length=1)
    expected_revision: int = Field(ge=1)

    @model_validator(mode="after")
    def validate_change(self) -> "MovePlacementRequest":
        if self.slot is None and self.room_ids is None:
            raise ValueError("slot or room_ids must be provided")
        return self


class EditResponse(BaseModel):
    timetable: TimetableOut
    conflicts: list[ConflictOut]


class StatusChangeRequest(BaseModel):
    expected_revision: Optional[int] = Field(default=None, ge=1)


class RejectRequest(StatusChangeRequest):
    reason: str = Field(min_length=1)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("reason must not be blank")
        return value.strip()


class AdvanceRequest(BaseModel):
    now: datetime


class AdvanceResponse(BaseModel):
    advanced: dict[int, list[str]]


class AuditEventOut(BaseModel):
    event_id: int
    event_type: str
    detail: dict[str, Any]
    created_at: str


def _timetable_out(timetable: Timetable) -> TimetableOut:
    return TimetableOut(
        timetable_id=timetable.timetable_id,
        title=timetable.title,
        semester=timetable.semester,
        academic_year=timetable.academic_year,
        start_date=timetable.start_date,
        end_date=timetable.end_date,
        status=timetable.status.value,
        revision=timetable.revision,
        version=timetable.version,
        previous_version_id=timetable.previous_version_id,
        total_exams=timetable.total_exams,
        total_conflicts=timetable.total_conflicts,
        rejection_reason=timetable.rejection_reason,
        approved_at=timetable.approved_at,
        published_at=timetable.published_at,
        placements=[
            PlacementOut(
                placement_id=placement.placement_id,
                course_id=placement.requirement.course_id,
                course_code=placement.requirement.course_code,
                level=placement.requirement.level,
                program_ids=list(placement.requirement.program_ids),
                expected_students=placement.requirement.expected_students,
                exam_date=placement.slot.exam_date,
                start=placement.start,
                end=placement.end,
                duration_minutes=placement.duration_minutes,
                rooms=[
                    RoomOut(
                        room_id=room.room_id,
                        venue_id=room.venue_id,
                        name=room.name,
                        capacity=room.capacity,
                    )
                    for room in placement.rooms
                ],
                assignments=[
                    AssignmentOut(
                        staff_id=assignment.staff_id,
                        role=assignment.role.value,
                        duty=assignment.duty,
                    )
                    for assignment in placement.assignments
                ],
            )
            for placement in timetable.chronological_placements()
        ],
    )


def _conflicts_out(records: list[ConflictRecord]) -> list[ConflictOut]:
    return [ConflictOut(**record.to_dict()) for record in records]


def _to_http_exception(exc: Exception, action: str) -> HTTPException:
    """Map service exceptions onto HTTP status codes."""
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, TimetableNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, (ConcurrentModificationError, FrozenTimetableError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PublishError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": str(exc),
                "conflicts": [record.to_dict() for record in exc.conflicts],
            },
        )
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(exc), "violations": exc.violations},
        )
    if isinstance(exc, SchedulingError):
        return HTTPException(
            status_code=422,
            detail={
                "message": str(exc),
                "course_ids": [requirement.course_id for requirement in exc.requirements],
                "reasons": {
                    failure.requirement.course_id: failure.reason for failure in exc.failures
                },
                "conflicts": [record.to_dict() for record in exc.conflicts],
            },
        )
    logger.exception("Unexpected failure | action=%s", action)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}",
    )


@router.post("/login", response_model=LoginResponse, status_code=status.HTTP_200_OK)
async def login(
    payload: LoginRequest,
    auth_service: AuthService = Depends(get_auth_service),
) -> LoginResponse:
    try:
        bearer, role = auth_service.login(payload.token)
        return LoginResponse(access_token=bearer, role=role.value)
    except (TokenNotConfiguredError, InvalidTokenError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected login failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to login",
        ) from exc


@router.post(
    "/timetables/generate",
    response_model=GenerateResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(Capability.GENERATE))],
)
async def generate_timetable(
    payload: GenerateRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> GenerateResponse:
    try:
        requirements = None
        if payload.requirements is not None:
            default_duration = service.settings.default_exam_duration_minutes
            requirements = [
                ExamRequirement(
                    course_id=item.course_id,
                    course_code=item.course_code,
                    level=item.level,
                    semester=item.semester,
                    expected_students=item.expected_students,
                    duration_minutes=item.duration_minutes or default_duration,
                    program_ids=tuple(item.program_ids),
                    department_id=item.department_id,
                )
                for item in payload.requirements
            ]
        report = service.generate_timetable(
            title=payload.title,
            semester=payload.semester,
            academic_year=payload.academic_year,
            start_date=payload.start_date,
            end_date=payload.end_date,
            holidays=payload.holidays,
            venue_id=payload.venue_id,
            requirements=requirements,
            allow_overlaps=payload.allow_overlaps,
            auto_resolve_conflicts=payload.auto_resolve_conflicts,
            room_packing=payload.room_packing,
        )
        return GenerateResponse(
            timetable=_timetable_out(report.timetable),
            failures=[
                FailureOut(
                    course_id=failure.requirement.course_id,
                    course_code=failure.requirement.course_code,
                    reason=failure.reason,
                )
                for failure in report.failures
            ],
            shortfalls=[
                ShortfallOut(
                    placement_id=shortfall.placement_id,
                    course_code=shortfall.course_code,
                    required=shortfall.required,
                    assigned=shortfall.assigned,
                )
                for shortfall in report.shortfalls
            ],
            conflicts=_conflicts_out(report.conflicts),
        )
    except Exception as exc:
        raise _to_http_exception(exc, "generate timetable") from exc


@router.get(
    "/timetables",
    response_model=list[TimetableSummaryOut],
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.VIEW))],
)
async def list_timetables(
    status_filter: Optional[TimetableStatus] = Query(default=None, alias="status"),
    service: TimetableService = Depends(get_timetable_service),
) -> list[TimetableSummaryOut]:
    try:
        return [
            TimetableSummaryOut(**summary.__dict__)
            for summary in service.list_timetables(status_filter)
        ]
    except Exception as exc:
        raise _to_http_exception(exc, "list timetables") from exc


@router.post(
    "/timetables/advance-statuses",
    response_model=AdvanceResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.ADVANCE))],
)
async def advance_statuses(
    payload: AdvanceRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> AdvanceResponse:
    try:
        # slot times are naive wall-clock times
        advanced = service.advance_statuses(payload.now.replace(tzinfo=None))
        return AdvanceResponse(advanced=advanced)
    except Exception as exc:
        raise _to_http_exception(exc, "advance timetable statuses") from exc


@router.get(
    "/timetables/{timetable_id}",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.VIEW))],
)
async def get_timetable(
    timetable_id: int,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(service.get_timetable(timetable_id))
    except Exception as exc:
        raise _to_http_exception(exc, "load timetable") from exc


@router.get(
    "/timetables/{timetable_id}/conflicts",
    response_model=list[ConflictOut],
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.VIEW))],
)
async def get_conflicts(
    timetable_id: int,
    service: TimetableService = Depends(get_timetable_service),
) -> list[ConflictOut]:
    try:
        return _conflicts_out(service.get_conflicts(timetable_id))
    except Exception as exc:
        raise _to_http_exception(exc, "detect conflicts") from exc


@router.get(
    "/timetables/{timetable_id}/statistics",
    response_model=StatisticsResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.VIEW))],
)
async def get_statistics(
    timetable_id: int,
    service: TimetableService = Depends(get_timetable_service),
) -> StatisticsResponse:
    try:
        return StatisticsResponse(**service.get_statistics(timetable_id))
    except Exception as exc:
        raise _to_http_exception(exc, "compute timetable statistics") from exc


@router.post(
    "/timetables/{timetable_id}/placements/{placement_id}/invigilators",
    response_model=EditResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.EDIT))],
)
async def add_invigilator(
    timetable_id: int,
    placement_id: int,
    payload: AddInvigilatorRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> EditResponse:
    try:
        outcome = service.add_invigilator(
            timetable_id,
            placement_id,
            payload.staff_id,
            payload.role,
            payload.expected_revision,
            duty=payload.duty,
        )
        return EditResponse(
            timetable=_timetable_out(outcome.timetable),
            conflicts=_conflicts_out(outcome.conflicts),
        )
    except Exception as exc:
        raise _to_http_exception(exc, "assign invigilator") from exc


@router.delete(
    "/timetables/{timetable_id}/placements/{placement_id}/invigilators/{staff_id}",
    response_model=EditResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.EDIT))],
)
async def remove_invigilator(
    timetable_id: int,
    placement_id: int,
    staff_id: int,
    expected_revision: int = Query(ge=1),
    service: TimetableService = Depends(get_timetable_service),
) -> EditResponse:
    try:
        outcome = service.remove_invigilator(
            timetable_id,
            placement_id,
            staff_id,
            expected_revision,
        )
        return EditResponse(
            timetable=_timetable_out(outcome.timetable),
            conflicts=_conflicts_out(outcome.conflicts),
        )
    except Exception as exc:
        raise _to_http_exception(exc, "remove invigilator") from exc


@router.post(
    "/timetables/{timetable_id}/placements",
    response_model=EditResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(Capability.EDIT))],
)
async def add_placement(
    timetable_id: int,
    payload: AddPlacementRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> EditResponse:
    try:
        outcome = service.add_placement(
            timetable_id,
            payload.course_id,
            payload.slot.to_slot(),
            payload.room_ids,
            payload.expected_revision,
            duration_minutes=payload.duration_minutes,
        )
        return EditResponse(
            timetable=_timetable_out(outcome.timetable),
            conflicts=_conflicts_out(outcome.conflicts),
        )
    except Exception as exc:
        raise _to_http_exception(exc, "add placement") from exc


@router.patch(
    "/timetables/{timetable_id}/placements/{placement_id}",
    response_model=EditResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.EDIT))],
)
async def move_placement(
    timetable_id: int,
    placement_id: int,
    payload: MovePlacementRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> EditResponse:
    try:
        outcome = service.move_placement(
            timetable_id,
            placement_id,
            payload.expected_revision,
            slot=payload.slot.to_slot() if payload.slot is not None else None,
            room_ids=payload.room_ids,
        )
        return EditResponse(
            timetable=_timetable_out(outcome.timetable),
            conflicts=_conflicts_out(outcome.conflicts),
        )
    except Exception as exc:
        raise _to_http_exception(exc, "move placement") from exc


@router.delete(
    "/timetables/{timetable_id}/placements/{placement_id}",
    response_model=EditResponse,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.EDIT))],
)
async def remove_placement(
    timetable_id: int,
    placement_id: int,
    expected_revision: int = Query(ge=1),
    service: TimetableService = Depends(get_timetable_service),
) -> EditResponse:
    try:
        outcome = service.remove_placement(timetable_id, placement_id, expected_revision)
        return EditResponse(
            timetable=_timetable_out(outcome.timetable),
            conflicts=_conflicts_out(outcome.conflicts),
        )
    except Exception as exc:
        raise _to_http_exception(exc, "remove placement") from exc


@router.post(
    "/timetables/{timetable_id}/submit",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.SUBMIT))],
)
async def submit_timetable(
    timetable_id: int,
    payload: StatusChangeRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(
            service.submit_for_approval(timetable_id, payload.expected_revision)
        )
    except Exception as exc:
        raise _to_http_exception(exc, "submit timetable") from exc


@router.post(
    "/timetables/{timetable_id}/approve",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.APPROVE))],
)
async def approve_timetable(
    timetable_id: int,
    payload: StatusChangeRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(service.approve(timetable_id, payload.expected_revision))
    except Exception as exc:
        raise _to_http_exception(exc, "approve timetable") from exc


@router.post(
    "/timetables/{timetable_id}/reject",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.APPROVE))],
)
async def reject_timetable(
    timetable_id: int,
    payload: RejectRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(
            service.reject(timetable_id, payload.reason, payload.expected_revision)
        )
    except Exception as exc:
        raise _to_http_exception(exc, "reject timetable") from exc


@router.post(
    "/timetables/{timetable_id}/request-revision",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.APPROVE))],
)
async def request_revision(
    timetable_id: int,
    payload: StatusChangeRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(service.request_revision(timetable_id, payload.expected_revision))
    except Exception as exc:
        raise _to_http_exception(exc, "request timetable revision") from exc


@router.post(
    "/timetables/{timetable_id}/publish",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.PUBLISH))],
)
async def publish_timetable(
    timetable_id: int,
    payload: StatusChangeRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(service.publish(timetable_id, payload.expected_revision))
    except Exception as exc:
        raise _to_http_exception(exc, "publish timetable") from exc


@router.post(
    "/timetables/{timetable_id}/revisions",
    response_model=TimetableOut,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_capability(Capability.EDIT))],
)
async def create_revision(
    timetable_id: int,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(service.create_revision(timetable_id))
    except Exception as exc:
        raise _to_http_exception(exc, "create timetable revision") from exc


@router.post(
    "/timetables/{timetable_id}/archive",
    response_model=TimetableOut,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.ARCHIVE))],
)
async def archive_timetable(
    timetable_id: int,
    payload: StatusChangeRequest,
    service: TimetableService = Depends(get_timetable_service),
) -> TimetableOut:
    try:
        return _timetable_out(service.archive(timetable_id, payload.expected_revision))
    except Exception as exc:
        raise _to_http_exception(exc, "archive timetable") from exc


@router.get(
    "/timetables/{timetable_id}/audit",
    response_model=list[AuditEventOut],
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_capability(Capability.VIEW))],
)
async def list_audit_events(
    timetable_id: int,
    service: TimetableService = Depends(get_timetable_service),
) -> list[AuditEventOut]:
    try:
        return [
            AuditEventOut(
                event_id=event.event_id,
                event_type=event.event_type,
                detail=event.detail,
                created_at=event.created_at,
            )
            for event in service.list_audit_events(timetable_id)
        ]
    except Exception as exc:
        raise _to_http_exception(exc, "load audit trail") from exc
