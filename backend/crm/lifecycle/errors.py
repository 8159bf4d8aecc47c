"""ATA CRM — Order lifecycle error taxonomy."""


class LifecycleError(ValueError):
    """Base class for every rejected lifecycle operation."""

    code = "LIFECYCLE_ERROR"


class PreconditionError(LifecycleError):
    """A transition was requested whose guard does not hold. Nothing is committed."""

    code = "INVALID_TRANSITION"


class TerminalStateError(LifecycleError):
    """The order is CANCELLED or COMPLETED and accepts no further transitions."""

    code = "ORDER_CLOSED"


class ConcurrentModificationError(LifecycleError):
    """The order changed between read and commit. The caller decides whether to retry."""

    code = "CONCURRENT_MODIFICATION"


class UnknownStageError(LifecycleError):
    """A stage or status value outside the catalog."""

    code = "UNKNOWN_STAGE"

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Unknown order stage: {value!r}")


class OrderNotFoundError(LifecycleError):
    code = "NOT_FOUND"


class DataConsistencyWarning(UserWarning):
    """Persisted order data contradicts itself. Logged, never fatal to reads."""
