"""Role token authentication and capability checks."""

from __future__ import annotations

import secrets
from enum import Enum
from threading import Lock
from typing import Optional

from elms.utils.config import Settings, get_settings


class Role(str, Enum):
    ADMIN = "ADMIN"
    EXAMS_OFFICER = "EXAMS_OFFICER"
    VIEWER = "VIEWER"


class Capability(str, Enum):
    VIEW = "VIEW"
    GENERATE = "GENERATE"
    EDIT = "EDIT"
    SUBMIT = "SUBMIT"
    APPROVE = "APPROVE"
    PUBLISH = "PUBLISH"
    ARCHIVE = "ARCHIVE"
    ADVANCE = "ADVANCE"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.EXAMS_OFFICER: frozenset(
        {
            Capability.VIEW,
            Capability.GENERATE,
            Capability.EDIT,
            Capability.SUBMIT,
        }
    ),
    Role.VIEWER: frozenset({Capability.VIEW}),
}


class AuthenticationError(Exception):
    """Base authentication failure."""


class TokenNotConfiguredError(AuthenticationError):
    """Raised when no role token is configured."""


class InvalidTokenError(AuthenticationError):
    """Raised when provided token is invalid."""


class CapabilityDeniedError(AuthenticationError):
    """Raised when a role lacks the capability an operation needs."""


class AuthService:
    """Exchanges role tokens for bearer sessions and checks capabilities."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: dict[str, Role] = {}
        self._lock = Lock()

    def _role_tokens(self) -> list[tuple[Role, str]]:
        configured = [
            (Role.ADMIN, self._settings.admin_token),
            (Role.EXAMS_OFFICER, self._settings.officer_token),
            (Role.VIEWER, self._settings.viewer_token),
        ]
        return [(role, token) for role, token in configured if token]

    @property
    def auth_enabled(self) -> bool:
        return bool(self._role_tokens())

    def login(self, provided_token: str) -> tuple[str, Role]:
        tokens = self._role_tokens()
        if not tokens:
            raise TokenNotConfiguredError(
                "No role token is configured. Set ELMS_ADMIN_TOKEN in environment variables."
            )
        for role, expected in tokens:
            if secrets.compare_digest(provided_token, expected):
                session = secrets.token_urlsafe(32)
                with self._lock:
                    self._sessions[session] = role
                return session, role
        raise InvalidTokenError("Invalid role token")

    def validate_bearer_token(self, bearer_token: str) -> Role:
        if not self.auth_enabled:
            return Role.ADMIN
        with self._lock:
            for session, role in self._sessions.items():
                if secrets.compare_digest(bearer_token, session):
                    return role
        raise InvalidTokenError("Invalid bearer token. Login first.")

    @staticmethod
    def require(role: Role, capability: Capability) -> None:
        if capability not in ROLE_CAPABILITIES[role]:
            raise CapabilityDeniedError(
                f"Role {role.value} is not allowed to {capability.value.lower()} timetables"
            )
