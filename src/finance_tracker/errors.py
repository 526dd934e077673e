class TrackerError(Exception):
    """Base class for errors raised by the finance tracker."""


class DuplicateTempIdError(TrackerError):
    def __init__(self, temp_id: str) -> None:
        super().__init__(f"Optimistic entry '{temp_id}' already exists")
        self.temp_id = temp_id


class UpstreamServiceError(TrackerError):
    """The transaction service rejected a call, failed, or did not answer in time."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.timed_out = timed_out


class ConverterError(TrackerError):
    """The document renderer failed, timed out, or produced no output."""


class IngestionError(TrackerError):
    """An upload could not be turned into transaction candidates."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
