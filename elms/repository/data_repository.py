"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from elms.domain.constraints import SchedulingPolicy
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
from elms.utils.config import Settings, get_settings
from elms.utils.logger import get_logger


logger = get_logger(__name__)


class TimetableNotFoundError(Exception):
    """Raised when a timetable id does not exist."""


class ConcurrentModificationError(Exception):
    """Raised when a write targets a stale timetable revision.

    Always retryable: reload the latest revision and reapply the edit.
    """

    def __init__(self, timetable_id: int, expected_revision: int, actual_revision: int) -> None:
        super().__init__(
            f"Timetable {timetable_id} is at revision {actual_revision}, "
            f"not {expected_revision}; reload and retry"
        )
        self.timetable_id = timetable_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision


@dataclass(frozen=True)
class TimetableSummary:
    timetable_id: int
    title: str
    semester: int
    academic_year: str
    status: str
    revision: int
    version: int
    previous_version_id: Optional[int]
    total_exams: int
    total_conflicts: int


@dataclass(frozen=True)
class AuditEvent:
    event_id: int
    timetable_id: Optional[int]
    event_type: str
    detail: dict[str, Any]
    created_at: str


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class DataRepository:
    """Encapsulates SQLite access so scheduling logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS Rooms (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        venue_id INTEGER NOT NULL,
                        name TEXT NOT NULL,
                        capacity INTEGER NOT NULL CHECK (capacity >= 0)
                    );

                    CREATE TABLE IF NOT EXISTS Staff (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL,
                        department_id INTEGER
                    );

                    CREATE TABLE IF NOT EXISTS StaffRoles (
                        staff_id INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        PRIMARY KEY (staff_id, role),
                        FOREIGN KEY (staff_id) REFERENCES Staff(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS ExamRequirements (
                        course_id INTEGER PRIMARY KEY,
                        course_code TEXT NOT NULL,
                        level INTEGER NOT NULL,
                        semester INTEGER NOT NULL,
                        expected_students INTEGER NOT NULL CHECK (expected_students >= 0),
                        duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
                        department_id INTEGER
                    );

                    CREATE TABLE IF NOT EXISTS RequirementPrograms (
                        course_id INTEGER NOT NULL,
                        program_id INTEGER NOT NULL,
                        PRIMARY KEY (course_id, program_id),
                        FOREIGN KEY (course_id) REFERENCES ExamRequirements(course_id)
                            ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS Timetables (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        title TEXT NOT NULL,
                        semester INTEGER NOT NULL,
                        academic_year TEXT NOT NULL,
                        start_date TEXT NOT NULL,
                        end_date TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'DRAFT',
                        revision INTEGER NOT NULL DEFAULT 1,
                        version INTEGER NOT NULL DEFAULT 1,
                        previous_version_id INTEGER,
                        total_exams INTEGER NOT NULL DEFAULT 0,
                        total_conflicts INTEGER NOT NULL DEFAULT 0,
                        allow_overlaps INTEGER NOT NULL,
                        auto_resolve_conflicts INTEGER NOT NULL,
                        students_per_invigilator INTEGER NOT NULL,
                        min_invigilators_per_venue INTEGER NOT NULL,
                        prefer_external_invigilators INTEGER NOT NULL,
                        room_packing TEXT NOT NULL,
                        cp_sat_max_time_seconds INTEGER NOT NULL,
                        cp_sat_workers INTEGER NOT NULL,
                        rejection_reason TEXT,
                        approved_at TEXT,
                        published_at TEXT,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (previous_version_id) REFERENCES Timetables(id)
                    );

                    CREATE TABLE IF NOT EXISTS Placements (
                        timetable_id INTEGER NOT NULL,
                        placement_id INTEGER NOT NULL,
                        course_id INTEGER NOT NULL,
                        course_code TEXT NOT NULL,
                        level INTEGER NOT NULL,
                        semester INTEGER NOT NULL,
                        expected_students INTEGER NOT NULL,
                        required_duration INTEGER NOT NULL,
                        department_id INTEGER,
                        exam_date TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL CHECK (duration_minutes > 0),
                        PRIMARY KEY (timetable_id, placement_id),
                        FOREIGN KEY (timetable_id) REFERENCES Timetables(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS PlacementPrograms (
                        timetable_id INTEGER NOT NULL,
                        placement_id INTEGER NOT NULL,
                        program_id INTEGER NOT NULL,
                        PRIMARY KEY (timetable_id, placement_id, program_id),
                        FOREIGN KEY (timetable_id, placement_id)
                            REFERENCES Placements(timetable_id, placement_id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS PlacementRooms (
                        timetable_id INTEGER NOT NULL,
                        placement_id INTEGER NOT NULL,
                        position INTEGER NOT NULL,
                        room_id INTEGER NOT NULL,
                        PRIMARY KEY (timetable_id, placement_id, room_id),
                        FOREIGN KEY (timetable_id, placement_id)
                            REFERENCES Placements(timetable_id, placement_id) ON DELETE CASCADE,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );

                    CREATE TABLE IF NOT EXISTS InvigilatorAssignments (
                        timetable_id INTEGER NOT NULL,
                        placement_id INTEGER NOT NULL,
                        position INTEGER NOT NULL,
                        staff_id INTEGER NOT NULL,
                        role TEXT NOT NULL,
                        duty TEXT NOT NULL DEFAULT '',
                        PRIMARY KEY (timetable_id, placement_id, staff_id),
                        FOREIGN KEY (timetable_id, placement_id)
                            REFERENCES Placements(timetable_id, placement_id) ON DELETE CASCADE,
                        FOREIGN KEY (staff_id) REFERENCES Staff(id)
                    );

                    CREATE TABLE IF NOT EXISTS AuditLog (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        timetable_id INTEGER,
                        event_type TEXT NOT NULL,
                        detail TEXT NOT NULL DEFAULT '{}',
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );

                    CREATE INDEX IF NOT EXISTS idx_requirements_semester
                    ON ExamRequirements(semester);

                    CREATE INDEX IF NOT EXISTS idx_assignments_staff
                    ON InvigilatorAssignments(staff_id);

                    CREATE INDEX IF NOT EXISTS idx_audit_timetable
                    ON AuditLog(timetable_id);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_data(self) -> None:
        """Seed a small deterministic institution only when tables are empty."""
        try:
            if self.list_venue_rooms():
                logger.info("Demo data already present; skipping seed")
                return

            rooms = [
                self.create_room(venue_id, name, capacity)
                for venue_id, name, capacity in (
                    (1, "Great Hall A", 100),
                    (1, "Great Hall B", 60),
                    (1, "Seminar Room 1", 40),
                    (2, "Science Block LT1", 120),
                    (2, "Science Block LT2", 80),
                )
            ]

            chief = InvigilatorRole.CHIEF_INVIGILATOR
            regular = InvigilatorRole.INVIGILATOR
            relief = InvigilatorRole.RELIEF_INVIGILATOR
            staff = [
                self.create_invigilator(name, department_id, roles)
                for name, department_id, roles in (
                    ("Ama Mensah", 1, (chief, regular)),
                    ("Kofi Boateng", 1, (regular,)),
                    ("Efua Owusu", 2, (chief, regular)),
                    ("Yaw Asante", 2, (regular, relief)),
                    ("Akosua Darko", 3, (regular,)),
                    ("Kwame Osei", 3, (chief, regular)),
                    ("Abena Adjei", None, (regular, relief)),
                    ("Kojo Appiah", None, (regular,)),
                )
            ]

            requirements = [
                (101, "CSC101", 100, 120, 180, 1, (1, 2)),
                (102, "CSC103", 100, 50, 120, 1, (1,)),
                (103, "MTH101", 100, 150, 180, 2, (1, 2, 3)),
                (104, "PHY101", 100, 30, 120, 3, (3,)),
                (201, "CSC201", 200, 90, 180, 1, (1,)),
                (202, "MTH201", 200, 70, 180, 2, (1, 3)),
            ]
            for course_id, code, level, students, duration, department_id, programs in requirements:
                self.create_exam_requirement(
                    ExamRequirement(
                        course_id=course_id,
                        course_code=code,
                        level=level,
                        semester=1,
                        expected_students=students,
                        duration_minutes=duration,
                        program_ids=programs,
                        department_id=department_id,
                    )
                )
            logger.info(
                "Demo seed completed | rooms=%s | staff=%s | requirements=%s",
                len(rooms),
                len(staff),
                len(requirements),
            )
        except sqlite3.Error as exc:
            raise RuntimeError(f"Demo data seeding failed: {exc}") from exc

    def create_room(self, venue_id: int, name: str, capacity: int) -> VenueRoom:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO Rooms (venue_id, name, capacity) VALUES (?, ?, ?);",
                (venue_id, name, capacity),
            )
            conn.commit()
            return VenueRoom(
                room_id=int(cursor.lastrowid),
                venue_id=venue_id,
                name=name,
                capacity=capacity,
            )

    def list_venue_rooms(self, venue_id: Optional[int] = None) -> list[VenueRoom]:
        """Return room inventory, optionally for one venue."""
        query = "SELECT id, venue_id, name, capacity FROM Rooms"
        params: tuple[Any, ...] = ()
        if venue_id is not None:
            query += " WHERE venue_id = ?"
            params = (venue_id,)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(query + " ORDER BY id ASC;", params)
            return [
                VenueRoom(
                    room_id=int(row["id"]),
                    venue_id=int(row["venue_id"]),
                    name=str(row["name"]),
                    capacity=int(row["capacity"]),
                )
                for row in cursor.fetchall()
            ]

    def create_invigilator(
        self,
        name: str,
        department_id: Optional[int],
        roles: Iterable[InvigilatorRole],
    ) -> Invigilator:
        eligible = frozenset(InvigilatorRole(role) for role in roles)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "INSERT INTO Staff (name, department_id) VALUES (?, ?);",
                (name, department_id),
            )
            staff_id = int(cursor.lastrowid)
            cursor.executemany(
                "INSERT INTO StaffRoles (staff_id, role) VALUES (?, ?);",
                [(staff_id, role.value) for role in sorted(eligible, key=lambda item: item.value)],
            )
            conn.commit()
        return Invigilator(
            staff_id=staff_id,
            name=name,
            department_id=department_id,
            eligible_roles=eligible,
        )

    def _load_staff(
        self,
        conn: sqlite3.Connection,
        staff_ids: Optional[Sequence[int]] = None,
    ) -> list[Invigilator]:
        cursor = conn.cursor()
        if staff_ids is None:
            cursor.execute("SELECT id, name, department_id FROM Staff ORDER BY id ASC;")
            cursor_roles = conn.execute("SELECT staff_id, role FROM StaffRoles;")
        else:
            if not staff_ids:
                return []
            placeholders = ",".join("?" for _ in staff_ids)
            cursor.execute(
                f"SELECT id, name, department_id FROM Staff WHERE id IN ({placeholders}) ORDER BY id ASC;",
                tuple(staff_ids),
            )
            cursor_roles = conn.execute(
                f"SELECT staff_id, role FROM StaffRoles WHERE staff_id IN ({placeholders});",
                tuple(staff_ids),
            )
        staff_rows = cursor.fetchall()
        roles: dict[int, set[InvigilatorRole]] = defaultdict(set)
        for row in cursor_roles.fetchall():
            roles[int(row["staff_id"])].add(InvigilatorRole(row["role"]))
        return [
            Invigilator(
                staff_id=int(row["id"]),
                name=str(row["name"]),
                department_id=(
                    int(row["department_id"]) if row["department_id"] is not None else None
                ),
                eligible_roles=frozenset(roles[int(row["id"])]),
            )
            for row in staff_rows
        ]

    def list_invigilators(self) -> list[Invigilator]:
        """Return the staff directory with eligibility flags."""
        with self._connect() as conn:
            return self._load_staff(conn)

    def get_invigilator(self, staff_id: int) -> Optional[Invigilator]:
        with self._connect() as conn:
            found = self._load_staff(conn, [staff_id])
        return found[0] if found else None

    def create_exam_requirement(self, requirement: ExamRequirement) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ExamRequirements (
                    course_id, course_code, level, semester,
                    expected_students, duration_minutes, department_id
                )
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    requirement.course_id,
                    requirement.course_code,
                    requirement.level,
                    requirement.semester,
                    requirement.expected_students,
                    requirement.duration_minutes,
                    requirement.department_id,
                ),
            )
            conn.executemany(
                "INSERT INTO RequirementPrograms (course_id, program_id) VALUES (?, ?);",
                [(requirement.course_id, program_id) for program_id in requirement.program_ids],
            )
            conn.commit()

    def list_exam_requirements(self, semester: int) -> list[ExamRequirement]:
        """Return exam requirements for a semester in course id order."""
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT er.course_id, er.course_code, er.level, er.semester,
                       er.expected_students, er.duration_minutes, er.department_id,
                       rp.program_id
                FROM ExamRequirements AS er
                INNER JOIN RequirementPrograms AS rp ON rp.course_id = er.course_id
                WHERE er.semester = ?
                ORDER BY er.course_id ASC, rp.program_id ASC;
                """,
                (semester,),
            )
            rows = cursor.fetchall()

        grouped: dict[int, list[sqlite3.Row]] = defaultdict(list)
        for row in rows:
            grouped[int(row["course_id"])].append(row)
        requirements: list[ExamRequirement] = []
        for course_id in sorted(grouped):
            first = grouped[course_id][0]
            requirements.append(
                ExamRequirement(
                    course_id=course_id,
                    course_code=str(first["course_code"]),
                    level=int(first["level"]),
                    semester=int(first["semester"]),
                    expected_students=int(first["expected_students"]),
                    duration_minutes=int(first["duration_minutes"]),
                    program_ids=tuple(int(row["program_id"]) for row in grouped[course_id]),
                    department_id=(
                        int(first["department_id"]) if first["department_id"] is not None else None
                    ),
                )
            )
        return requirements

    @staticmethod
    def _timetable_columns(timetable: Timetable) -> dict[str, Any]:
        policy = timetable.policy
        return {
            "title": timetable.title,
            "semester": timetable.semester,
            "academic_year": timetable.academic_year,
            "start_date": timetable.start_date.isoformat(),
            "end_date": timetable.end_date.isoformat(),
            "status": timetable.status.value,
            "version": timetable.version,
            "previous_version_id": timetable.previous_version_id,
            "total_exams": timetable.total_exams,
            "total_conflicts": timetable.total_conflicts,
            "allow_overlaps": int(policy.allow_overlaps),
            "auto_resolve_conflicts": int(policy.auto_resolve_conflicts),
            "students_per_invigilator": policy.students_per_invigilator,
            "min_invigilators_per_venue": policy.min_invigilators_per_venue,
            "prefer_external_invigilators": int(policy.prefer_external_invigilators),
            "room_packing": policy.room_packing,
            "cp_sat_max_time_seconds": policy.cp_sat_max_time_seconds,
            "cp_sat_workers": policy.cp_sat_workers,
            "rejection_reason": timetable.rejection_reason,
            "approved_at": _to_iso(timetable.approved_at),
            "published_at": _to_iso(timetable.published_at),
        }

    @staticmethod
    def _write_placements(
        conn: sqlite3.Connection,
        timetable_id: int,
        placements: Sequence[Placement],
    ) -> None:
        conn.execute("DELETE FROM Placements WHERE timetable_id = ?;", (timetable_id,))
        for placement in placements:
            requirement = placement.requirement
            conn.execute(
                """
                INSERT INTO Placements (
                    timetable_id, placement_id, course_id, course_code, level, semester,
                    expected_students, required_duration, department_id,
                    exam_date, start_time, end_time, duration_minutes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    timetable_id,
                    placement.placement_id,
                    requirement.course_id,
                    requirement.course_code,
                    requirement.level,
                    requirement.semester,
                    requirement.expected_students,
                    requirement.duration_minutes,
                    requirement.department_id,
                    placement.slot.exam_date.isoformat(),
                    placement.slot.start_time.isoformat(),
                    placement.slot.end_time.isoformat(),
                    placement.duration_minutes,
                ),
            )
            conn.executemany(
                """
                INSERT INTO PlacementPrograms (timetable_id, placement_id, program_id)
                VALUES (?, ?, ?);
                """,
                [
                    (timetable_id, placement.placement_id, program_id)
                    for program_id in requirement.program_ids
                ],
            )
            conn.executemany(
                """
                INSERT INTO PlacementRooms (timetable_id, placement_id, position, room_id)
                VALUES (?, ?, ?, ?);
                """,
                [
                    (timetable_id, placement.placement_id, position, room.room_id)
                    for position, room in enumerate(placement.rooms)
                ],
            )
            conn.executemany(
                """
                INSERT INTO InvigilatorAssignments (
                    timetable_id, placement_id, position, staff_id, role, duty
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        timetable_id,
                        placement.placement_id,
                        position,
                        assignment.staff_id,
                        assignment.role.value,
                        assignment.duty,
                    )
                    for position, assignment in enumerate(placement.assignments)
                ],
            )

    def create_timetable(self, timetable: Timetable) -> int:
        """Insert a new timetable at revision 1 and return its id."""
        columns = self._timetable_columns(timetable)
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"INSERT INTO Timetables ({names}, revision) VALUES ({placeholders}, 1);",
                tuple(columns.values()),
            )
            timetable_id = int(cursor.lastrowid)
            self._write_placements(conn, timetable_id, timetable.placements)
            conn.commit()
        timetable.timetable_id = timetable_id
        timetable.revision = 1
        logger.info(
            "Timetable created | timetable_id=%s | placements=%s",
            timetable_id,
            len(timetable.placements),
        )
        return timetable_id

    def save_timetable(self, timetable: Timetable, expected_revision: int) -> int:
        """Overwrite a timetable if it is still at `expected_revision`.

        Returns the new revision. A stale revision raises
        `ConcurrentModificationError` and leaves storage untouched.
        """
        if timetable.timetable_id is None:
            raise TimetableNotFoundError("Timetable has not been created yet")
        columns = self._timetable_columns(timetable)
        assignments = ", ".join(f"{name} = ?" for name in columns)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"""
                UPDATE Timetables
                SET {assignments}, revision = revision + 1
                WHERE id = ? AND revision = ?;
                """,
                (*columns.values(), timetable.timetable_id, expected_revision),
            )
            if cursor.rowcount == 0:
                cursor.execute(
                    "SELECT revision FROM Timetables WHERE id = ?;",
                    (timetable.timetable_id,),
                )
                row = cursor.fetchone()
                conn.rollback()
                if row is None:
                    raise TimetableNotFoundError(f"Timetable {timetable.timetable_id} not found")
                raise ConcurrentModificationError(
                    timetable.timetable_id,
                    expected_revision,
                    int(row["revision"]),
                )
            self._write_placements(conn, timetable.timetable_id, timetable.placements)
            conn.commit()
        timetable.revision = expected_revision + 1
        return timetable.revision

    def get_timetable(self, timetable_id: int) -> Optional[Timetable]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM Timetables WHERE id = ?;", (timetable_id,))
            header = cursor.fetchone()
            if header is None:
                return None

            programs: dict[int, list[int]] = defaultdict(list)
            for row in conn.execute(
                """
                SELECT placement_id, program_id FROM PlacementPrograms
                WHERE timetable_id = ? ORDER BY placement_id ASC, program_id ASC;
                """,
                (timetable_id,),
            ).fetchall():
                programs[int(row["placement_id"])].append(int(row["program_id"]))

            rooms: dict[int, list[VenueRoom]] = defaultdict(list)
            for row in conn.execute(
                """
                SELECT pr.placement_id, r.id, r.venue_id, r.name, r.capacity
                FROM PlacementRooms AS pr
                INNER JOIN Rooms AS r ON r.id = pr.room_id
                WHERE pr.timetable_id = ?
                ORDER BY pr.placement_id ASC, pr.position ASC;
                """,
                (timetable_id,),
            ).fetchall():
                rooms[int(row["placement_id"])].append(
                    VenueRoom(
                        room_id=int(row["id"]),
                        venue_id=int(row["venue_id"]),
                        name=str(row["name"]),
                        capacity=int(row["capacity"]),
                    )
                )

            assignments: dict[int, list[InvigilatorAssignment]] = defaultdict(list)
            for row in conn.execute(
                """
                SELECT placement_id, staff_id, role, duty FROM InvigilatorAssignments
                WHERE timetable_id = ? ORDER BY placement_id ASC, position ASC;
                """,
                (timetable_id,),
            ).fetchall():
                assignments[int(row["placement_id"])].append(
                    InvigilatorAssignment(
                        staff_id=int(row["staff_id"]),
                        role=InvigilatorRole(row["role"]),
                        duty=str(row["duty"]),
                    )
                )

            placements: list[Placement] = []
            for row in conn.execute(
                "SELECT * FROM Placements WHERE timetable_id = ? ORDER BY placement_id ASC;",
                (timetable_id,),
            ).fetchall():
                placement_id = int(row["placement_id"])
                requirement = ExamRequirement(
                    course_id=int(row["course_id"]),
                    course_code=str(row["course_code"]),
                    level=int(row["level"]),
                    semester=int(row["semester"]),
                    expected_students=int(row["expected_students"]),
                    duration_minutes=int(row["required_duration"]),
                    program_ids=tuple(programs[placement_id]),
                    department_id=(
                        int(row["department_id"]) if row["department_id"] is not None else None
                    ),
                )
                placements.append(
                    Placement(
                        placement_id=placement_id,
                        requirement=requirement,
                        slot=Slot(
                            exam_date=date.fromisoformat(row["exam_date"]),
                            start_time=time.fromisoformat(row["start_time"]),
                            end_time=time.fromisoformat(row["end_time"]),
                        ),
                        rooms=tuple(rooms[placement_id]),
                        duration_minutes=int(row["duration_minutes"]),
                        assignments=assignments[placement_id],
                    )
                )

            staff_ids = sorted(
                {assignment.staff_id for items in assignments.values() for assignment in items}
            )
            staff = self._load_staff(conn, staff_ids)

        return Timetable(
            timetable_id=int(header["id"]),
            title=str(header["title"]),
            semester=int(header["semester"]),
            academic_year=str(header["academic_year"]),
            start_date=date.fromisoformat(header["start_date"]),
            end_date=date.fromisoformat(header["end_date"]),
            policy=SchedulingPolicy(
                allow_overlaps=bool(header["allow_overlaps"]),
                auto_resolve_conflicts=bool(header["auto_resolve_conflicts"]),
                students_per_invigilator=int(header["students_per_invigilator"]),
                min_invigilators_per_venue=int(header["min_invigilators_per_venue"]),
                prefer_external_invigilators=bool(header["prefer_external_invigilators"]),
                room_packing=str(header["room_packing"]),
                cp_sat_max_time_seconds=int(header["cp_sat_max_time_seconds"]),
                cp_sat_workers=int(header["cp_sat_workers"]),
            ),
            status=TimetableStatus(header["status"]),
            revision=int(header["revision"]),
            version=int(header["version"]),
            previous_version_id=(
                int(header["previous_version_id"])
                if header["previous_version_id"] is not None
                else None
            ),
            placements=placements,
            staff={invigilator.staff_id: invigilator for invigilator in staff},
            total_exams=int(header["total_exams"]),
            total_conflicts=int(header["total_conflicts"]),
            rejection_reason=header["rejection_reason"],
            approved_at=_from_iso(header["approved_at"]),
            published_at=_from_iso(header["published_at"]),
        )

    def list_timetables(self, status: Optional[TimetableStatus] = None) -> list[TimetableSummary]:
        query = """
            SELECT id, title, semester, academic_year, status, revision, version,
                   previous_version_id, total_exams, total_conflicts
            FROM Timetables
        """
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(query + " ORDER BY id ASC;", params)
            return [
                TimetableSummary(
                    timetable_id=int(row["id"]),
                    title=str(row["title"]),
                    semester=int(row["semester"]),
                    academic_year=str(row["academic_year"]),
                    status=str(row["status"]),
                    revision=int(row["revision"]),
                    version=int(row["version"]),
                    previous_version_id=(
                        int(row["previous_version_id"])
                        if row["previous_version_id"] is not None
                        else None
                    ),
                    total_exams=int(row["total_exams"]),
                    total_conflicts=int(row["total_conflicts"]),
                )
                for row in cursor.fetchall()
            ]

    def record_audit_event(
        self,
        event_type: str,
        timetable_id: Optional[int],
        detail: dict[str, Any],
    ) -> None:
        """Persist a scheduling event for the audit trail."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO AuditLog (timetable_id, event_type, detail, created_at)
                VALUES (?, ?, ?, ?);
                """,
                (
                    timetable_id,
                    event_type,
                    json.dumps(detail, sort_keys=True, default=str),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            conn.commit()

    def list_audit_events(self, timetable_id: int) -> list[AuditEvent]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT id, timetable_id, event_type, detail, created_at
                FROM AuditLog
                WHERE timetable_id = ?
                ORDER BY id ASC;
                """,
                (timetable_id,),
            )
            return [
                AuditEvent(
                    event_id=int(row["id"]),
                    timetable_id=(
                        int(row["timetable_id"]) if row["timetable_id"] is not None else None
                    ),
                    event_type=str(row["event_type"]),
                    detail=json.loads(row["detail"]),
                    created_at=str(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]
