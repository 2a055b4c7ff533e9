"""
Error types raised by the tracker.

Every error derives from TrackerError so callers can catch tracker
failures without catching unrelated exceptions. Lookup and validation
errors also derive from the matching builtin (KeyError, ValueError).
"""


class TrackerError(Exception):
    """Base class for all tracker errors."""


class NotFoundError(TrackerError, KeyError):
    """Identity id is unknown, or was purged."""

    def __init__(self, identity_id):
        self.identity_id = identity_id
        super().__init__(f"Identity not found: {identity_id}")

    def __str__(self) -> str:
        return self.args[0]


class ProtectedError(TrackerError):
    """Operation would violate lock or name protection."""


class InvalidMergeError(TrackerError, ValueError):
    """Self-merge, or merge that would create a redirect cycle."""


class SessionClosedError(TrackerError):
    """Call on a session that has already been freed."""


class CollaboratorFailure(TrackerError):
    """The external face engine failed on detect, extract or match."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"Face engine {operation} failed: {message}")


class ParameterError(TrackerError, ValueError):
    """Unknown tracker parameter or invalid parameter value."""

    def __init__(self, message: str, name: str = None, position: int = None):
        self.name = name
        self.position = position
        super().__init__(message)
