"""
Queue errors.

Every failure raised by a queue provider derives from QueueError so the host
engine can catch the whole family in one place. An empty queue is not an
error: dequeue returns the EMPTY sentinel instead.
"""


class QueueError(Exception):
    """Base class for queue provider failures."""


class InvalidWorkItemIdError(QueueError, ValueError):
    """Raised when a work-item id is missing or empty. No I/O has happened."""


class QueueConfigurationError(QueueError):
    """Raised when a queue type has no broker names or the target database is unknown."""


class QueueBootstrapError(QueueError):
    """Raised by start() when database creation or broker migration fails."""


class QueueUnavailableError(QueueError):
    """Raised when the broker cannot be reached or a statement fails mid-call."""


class DequeueCancelledError(QueueError):
    """Raised when a dequeue is aborted through its cancel signal."""
