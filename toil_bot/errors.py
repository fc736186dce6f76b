class TimesheetError(Exception):
    """Base exception for timesheet operations rejected by the service layer."""


class ValidationError(TimesheetError, ValueError):
    """Raised when command input or a settings update is invalid."""


class SessionNotFoundError(TimesheetError, LookupError):
    """Raised when a session id does not exist."""


class NoOpenSessionError(TimesheetError, LookupError):
    """Raised when clocking out with no open session."""
