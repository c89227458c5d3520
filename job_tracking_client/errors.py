from typing import Optional


class JobStoreError(Exception):
    """An HTTP error returned by the job store"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.retry_after = retry_after


class RateLimitedError(JobStoreError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status=429, retry_after=retry_after)


class ServiceUnavailableError(JobStoreError):
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, status=503, retry_after=retry_after)


class JobCreationError(Exception):
    """The create call failed or came back without a job id"""


class PollTimeoutError(TimeoutError):
    def __init__(self, timeout: float):
        super().__init__(f"Polling timed out after {timeout:g}s")
        self.timeout = timeout


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parses a Retry-After header given in seconds"""
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds > 0 else None


def error_status(exc: BaseException) -> Optional[int]:
    return getattr(exc, "status", None)


def error_retry_after(exc: BaseException) -> Optional[float]:
    """Server-suggested retry delay in seconds, from the error or its headers"""
    retry_after = getattr(exc, "retry_after", None)
    if retry_after:
        return float(retry_after)
    headers = getattr(exc, "headers", None) or {}
    return parse_retry_after(headers.get("Retry-After"))


def user_message(exc: BaseException, fallback: str) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message or fallback
