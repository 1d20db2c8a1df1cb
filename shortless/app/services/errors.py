from datetime import datetime


class ShortlessError(Exception):
    pass


class ConfigurationError(ShortlessError):
    pass


class QuotaExhaustedError(ShortlessError):
    """
    The daily YouTube quota is spent. Callers should show a "try again after
    reset" message instead of retrying.
    """

    def __init__(self, reset_at: datetime | None = None):
        self.reset_at = reset_at
        if reset_at is not None:
            message = f"YouTube API quota exhausted until {reset_at.isoformat()}"
        else:
            message = "YouTube API quota exhausted"
        super().__init__(message)


class UpstreamError(ShortlessError):
    def __init__(self, message: str, endpoint: str | None = None, status_code: int | None = None):
        self.endpoint = endpoint
        self.status_code = status_code
        super().__init__(message)


class NotFoundError(ShortlessError):
    pass


class RemoteCacheError(ShortlessError):
    pass


class ProbeInconclusiveError(ShortlessError):
    pass
