from __future__ import annotations


class PlannerSyncError(Exception):
    """Base class for calendar sync failures."""


class AuthError(PlannerSyncError):
    pass


class ProtocolParseError(PlannerSyncError):
    pass


class EmptyResultError(PlannerSyncError):
    pass


class CreateConflict(PlannerSyncError):
    pass


class NotFoundError(PlannerSyncError):
    pass


class NetworkError(PlannerSyncError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
