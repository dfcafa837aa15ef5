from typing import Any, Optional

from content_understanding_client.models import OperationError


class ContentUnderstandingError(Exception):
    """Base class for every failure raised by the client"""


class TransportError(ContentUnderstandingError):
    """The service could not be reached or stopped answering properly"""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class ValidationError(ContentUnderstandingError):
    """The service rejected a request before an operation existed"""

    def __init__(self, status_code: int, detail: str, url: str = ""):
        super().__init__(f"Request to {url} rejected with HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail
        self.url = url


class ProtocolError(ContentUnderstandingError):
    """A response violated the asynchronous-operation contract"""


class MalformedResponseError(ContentUnderstandingError):
    """A response body could not be parsed as JSON"""


class OperationFailedError(ContentUnderstandingError):
    def __init__(self, error: OperationError, operation_id: str = ""):
        super().__init__(
            f"Operation {operation_id} failed: [{error.code}] {error.message}"
        )
        self.error = error
        self.operation_id = operation_id

    @property
    def code(self) -> Any:
        return self.error.code

    @property
    def message(self) -> Any:
        return self.error.message


class OperationTimeoutError(ContentUnderstandingError, TimeoutError):
    def __init__(self, timeout_seconds: float, last_status: Optional[str], operation_id: str = ""):
        super().__init__(
            f"Operation {operation_id} did not complete within {timeout_seconds} seconds "
            f"(last status: {last_status})"
        )
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status
        self.operation_id = operation_id


class AuthError(ContentUnderstandingError):
    """The token provider failed to produce a token"""


class InvalidContentTypeError(ContentUnderstandingError):
    def __init__(self, expected: str, actual: Optional[str]):
        super().__init__(f"Expected content type {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
