"""Custom exception classes for the transfer client."""

from typing import List, Optional

from common.constants import RETRYABLE_STATUS_CODES


def is_retryable_status(status: int) -> bool:
    """Return True for 408, 425, 429 and every 5xx status."""
    return status in RETRYABLE_STATUS_CODES or 500 <= status <= 599


class FileFlowError(Exception):
    """
    Base exception class for all transfer errors.
    """
    pass


class TransientNetworkError(FileFlowError):
    """
    Raised for failures that are worth retrying (timeouts, resets, 5xx).
    """
    retryable = True


class RequestTimeoutError(TransientNetworkError):
    """
    Raised when a request exceeds its deadline.
    """
    pass


class NetworkError(TransientNetworkError):
    """
    Raised when the connection to the server fails or is reset.
    """
    pass


class HttpStatusError(FileFlowError):
    """
    Raised when the server answers with a non-2xx status.
    """

    def __init__(
        self,
        status: int,
        message: Optional[str] = None,
        retryable: Optional[bool] = None,
        response=None,
    ):
        self.status = status
        self.retryable = is_retryable_status(status) if retryable is None else retryable
        self.response = response
        super().__init__(message or f"Request failed with status {status}")


class ProtocolError(FileFlowError):
    """
    Raised when a response or message does not follow the wire protocol
    (malformed Content-Range, missing metadata, application failure code).
    """
    retryable = False


class ApplicationError(ProtocolError):
    """
    Raised when the response body carries a failure code.
    """

    def __init__(self, status: int, code: Optional[int], message: Optional[str] = None):
        self.status = status
        self.code = code
        super().__init__(message or f"Server rejected request (status={status}, code={code})")


class IntegrityError(FileFlowError):
    """
    Raised when received data does not add up to the declared file.
    """
    pass


class IncompleteTransferError(IntegrityError):
    """
    Raised when byte ranges leave a gap or overlap.
    """

    def __init__(self, file_name: str, expected_offset: int, actual_offset: int):
        self.file_name = file_name
        self.expected_offset = expected_offset
        self.actual_offset = actual_offset
        super().__init__(
            f"Incomplete transfer for '{file_name}': expected offset "
            f"{expected_offset}, got {actual_offset}"
        )


class SizeMismatchError(IntegrityError):
    """
    Raised when the assembled size differs from the declared size.
    """

    def __init__(self, file_name: str, expected: int, actual: int):
        self.file_name = file_name
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Size mismatch for '{file_name}': expected {expected} bytes, got {actual}"
        )


class PeerSessionError(FileFlowError):
    """
    Raised when a peer session fails in a way that is not a controlled fallback.
    """
    pass


class AggregateTransferError(FileFlowError):
    """
    Raised after a scheduler run in which some units failed.
    """

    def __init__(self, failed: int, total: int, errors: Optional[List[BaseException]] = None):
        self.failed = failed
        self.total = total
        self.errors = errors or []
        super().__init__(f"Some tasks failed. Total failed: {failed} of {total}")
