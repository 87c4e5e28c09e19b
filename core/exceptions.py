"""Exception hierarchy for the event store."""


class EventStoreError(Exception):
    """Base exception for all event store errors."""


class StoreConnectionError(EventStoreError):
    """The backing store is unreachable."""


class QueryError(EventStoreError):
    """SQL execution failed.

    The message is prefixed with the operation that failed, e.g.
    ``"failed to insert event: <driver message>"``.
    """

    def __init__(self, operation: str, cause: object):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation}: {cause}")


class MigrationError(EventStoreError):
    """Schema migration failed or cannot be rolled back."""
