"""Runtime settings resolved from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_tuple(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    app_name: str
    app_version: str
    database_path: Path
    log_level: str

    admin_token: str | None
    officer_token: str | None
    viewer_token: str | None

    slot_pattern: tuple[str, ...]
    include_weekends: bool
    default_exam_duration_minutes: int

    allow_overlaps: bool
    auto_resolve_conflicts: bool
    students_per_invigilator: int
    min_invigilators_per_venue: int
    prefer_external_invigilators: bool

    room_packing_strategy: str
    cp_sat_max_time_seconds: int
    cp_sat_workers: int

    conflict_detection_workers: int
    publish_requires_approval: bool
    archive_delay_days: int
    seed_demo_data: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings once per process; tests derive variants via `replace`."""
    return Settings(
        app_name=_env_str("ELMS_APP_NAME", "ELMS Exam Scheduling Core"),
        app_version=_env_str("ELMS_APP_VERSION", "1.0.0"),
        database_path=Path(
            _env_str("ELMS_DATABASE_PATH", str(PROJECT_ROOT / "data" / "elms.db"))
        ),
        log_level=_env_str("ELMS_LOG_LEVEL", "INFO"),
        admin_token=os.getenv("ELMS_ADMIN_TOKEN") or None,
        officer_token=os.getenv("ELMS_OFFICER_TOKEN") or None,
        viewer_token=os.getenv("ELMS_VIEWER_TOKEN") or None,
        slot_pattern=_env_tuple("ELMS_SLOT_PATTERN", ("09:00-12:00", "14:00-17:00")),
        include_weekends=_env_bool("ELMS_INCLUDE_WEEKENDS", False),
        default_exam_duration_minutes=_env_int("ELMS_DEFAULT_EXAM_DURATION", 180),
        allow_overlaps=_env_bool("ELMS_ALLOW_OVERLAPS", False),
        auto_resolve_conflicts=_env_bool("ELMS_AUTO_RESOLVE_CONFLICTS", True),
        students_per_invigilator=_env_int("ELMS_STUDENTS_PER_INVIGILATOR", 60),
        min_invigilators_per_venue=_env_int("ELMS_MIN_INVIGILATORS_PER_VENUE", 1),
        prefer_external_invigilators=_env_bool("ELMS_PREFER_EXTERNAL_INVIGILATORS", True),
        room_packing_strategy=_env_str("ELMS_ROOM_PACKING", "first_fit"),
        cp_sat_max_time_seconds=_env_int("ELMS_CP_SAT_MAX_TIME_SECONDS", 5),
        cp_sat_workers=_env_int("ELMS_CP_SAT_WORKERS", 4),
        conflict_detection_workers=_env_int("ELMS_CONFLICT_DETECTION_WORKERS", 1),
        publish_requires_approval=_env_bool("ELMS_PUBLISH_REQUIRES_APPROVAL", False),
        archive_delay_days=_env_int("ELMS_ARCHIVE_DELAY_DAYS", 7),
        seed_demo_data=_env_bool("ELMS_SEED_DEMO_DATA", True),
    )
