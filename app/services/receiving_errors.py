from __future__ import annotations

from datetime import datetime


class ReceivingError(Exception):
    category = 'error'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ReceivingError, ValueError):
    category = 'not_found'


class ValidationError(ReceivingError, ValueError):
    category = 'validation'


class PreconditionFailedError(ReceivingError, ValueError):
    category = 'precondition_failed'


class VersionConflictError(ReceivingError, ValueError):
    category = 'version_conflict'

    def __init__(self, *, expected: int, actual: int):
        super().__init__(
            f'Session was modified by another request (expected version {expected}, current {actual}). Refresh and retry.'
        )
        self.expected = expected
        self.actual = actual


class LockConflictError(ReceivingError, PermissionError):
    category = 'lock_conflict'

    def __init__(self, *, locked_by: int | None, locked_at: datetime | None):
        super().__init__(f'Session is locked by another user (principal {locked_by})')
        self.locked_by = locked_by
        self.locked_at = locked_at
