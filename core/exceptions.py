"""Shared exception types for the cycle investment core."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when a price source returns data that cannot be used safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class CycleNotFoundError(LookupError):
    """Raised when an operation targets a cycle the store does not know."""

    def __init__(self, cycle_id: str):
        super().__init__(f"Cycle {cycle_id} not found")
        self.cycle_id = cycle_id


class CycleCompletedError(RuntimeError):
    """Raised when an iteration or completion is attempted on a completed cycle."""

    def __init__(self, cycle_id: str):
        super().__init__(f"Cycle {cycle_id} already completed")
        self.cycle_id = cycle_id


class StaleCycleVersionError(RuntimeError):
    """Raised by the cycle store when a save loses an optimistic version race."""

    def __init__(self, cycle_id: str, expected: int, actual: int):
        super().__init__(
            f"Cycle {cycle_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.cycle_id = cycle_id
        self.expected = expected
        self.actual = actual
