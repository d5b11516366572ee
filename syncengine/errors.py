"""Exception types raised by the sync engine."""


class SyncError(Exception):
    """Base class for all sync engine failures."""


class InvalidBatchError(SyncError):
    """A submitted batch was rejected before any durable write.

    Callers should correct the batch and resubmit it.
    """


class InvalidActionError(InvalidBatchError):
    """A transaction carried an action other than create/update/delete."""

    def __init__(self, action: object):
        self.action = action
        super().__init__(f"Invalid action: {action}")


class PersistenceError(SyncError):
    """The underlying storage could not complete an operation.

    Retrying the same input later may succeed.
    """


class SerializationError(SyncError):
    """A batch or payload could not be encoded or decoded."""
