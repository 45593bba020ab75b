class StorefrontError(Exception):
    """Base class for errors raised by the reservation and order core."""


class ValidationError(StorefrontError, ValueError):
    """Malformed input. Never retried, never partially applied."""


class InvalidStatusTransition(ValidationError):
    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class NotFound(StorefrontError, LookupError):
    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class StoreUnavailable(StorefrontError):
    """The backing store kept failing after all retry attempts."""
