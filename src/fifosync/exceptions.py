class FifoError(Exception):
    """Base class for fifosync errors.
    """


class LockNotAcquired(FifoError):
    """Raised when a coordination lock cannot be acquired.
    """


class NoQueueError(FifoError):
    """Raised when a job is pushed without a destination queue.
    """


class NoClassError(FifoError):
    """Raised when a job is pushed without a job class.
    """


class MalformedEnvelope(FifoError):
    """Raised when a stored payload is not a valid job envelope.
    """
