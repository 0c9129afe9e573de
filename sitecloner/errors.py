class ClonerError(Exception):
    """Base class for every error raised by the cloner."""


class InvalidInput(ClonerError):
    """Malformed or missing URL/options. No job is created."""


class EgressDenied(ClonerError):
    """Target URL blocked by the egress guard. No job is created."""


class NotFound(ClonerError):
    pass


class NotReady(ClonerError):
    pass


class CaptureFailure(ClonerError):
    """Navigation timeout, browser launch failure or other capture error."""


class PersistenceFailure(ClonerError):
    """Disk write or archive failure."""
