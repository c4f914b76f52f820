class SchedulingError(Exception):
    """A domain-level failure (no free time, slot taken, nothing to delete).

    Reported to the caller as ``{message, data: null}`` rather than as an HTTP
    error; the transaction that raised it is rolled back.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
