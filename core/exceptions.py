"""Exception classes for the access control engine."""


class AccessControlError(Exception):
    """Base exception for the access control engine."""

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class StoreError(AccessControlError):
    """Raised when the role/permission store fails (I/O, timeout).

    The only error class a caller may retry.
    """
    pass


class ResolutionError(StoreError):
    """Raised when the store fails while resolving a subject's permissions."""
    pass


class AuditWriteError(AccessControlError):
    """Raised when an audit entry could not be persisted."""
    pass


class NotFoundError(AccessControlError):
    """Raised when an administrative operation references a missing entity."""
    pass


class AccessDeniedError(AccessControlError):
    """Raised by ``require_permission`` when a check is not granted."""

    def __init__(self, reason: str, reason_code=None, result=None):
        self.reason = reason
        self.reason_code = reason_code
        self.result = result
        super().__init__(reason or "Access denied")
