class UploadFailure(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RetryExhausted(RuntimeError):
    pass


class QueueEntryNotFound(KeyError):
    pass


class SessionNotFound(KeyError):
    pass


class InvalidQueueTransition(RuntimeError):
    pass


class UploaderUnavailable(RuntimeError):
    pass
