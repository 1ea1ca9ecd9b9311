"""Error taxonomy shared by the store, the model gateway and the stream coordinator."""


class ChatEngineError(Exception):
    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotFoundError(ChatEngineError):
    status_code = 404
    code = "not_found"


class TurnInProgressError(ChatEngineError):
    status_code = 409
    code = "turn_in_progress"


class InvalidRequestError(ChatEngineError):
    status_code = 400
    code = "invalid_request"


class ModelUnavailableError(ChatEngineError):
    status_code = 503
    code = "model_unavailable"
    retryable = True


class RateLimitedError(ChatEngineError):
    status_code = 429
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str = "", retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransportClosedError(ChatEngineError):
    """The client went away or stopped reading. Not reported to the user."""

    status_code = 499
    code = "transport_closed"


class StorageError(ChatEngineError):
    """Persisting a message failed for a reason other than a missing record."""

    code = "storage_error"
