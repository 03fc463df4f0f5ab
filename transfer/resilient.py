"""HTTP requests with deadlines, failure classification and backoff retries."""

import asyncio
import json
import random
import re
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Tuple, TypeVar

import httpx

from common.constants import (
    APP_SUCCESS_CODE,
    BACKOFF_BASE_SECONDS,
    BACKOFF_JITTER_SECONDS,
    BACKOFF_MAX_SECONDS,
    CHUNK_MAX_RETRIES,
    CHUNK_REQUEST_TIMEOUT_SECONDS,
    CONTENT_RANGE_PATTERN,
    DEFAULT_MAX_RETRIES,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    STATUS_REQUEST_TIMEOUT_SECONDS,
)
from common.exceptions import (
    ApplicationError,
    HttpStatusError,
    NetworkError,
    ProtocolError,
    RequestTimeoutError,
    is_retryable_status,
)
from common.logging_config import get_logger
from common.types import ChunkDescriptor

logger = get_logger(__name__)

T = TypeVar("T")

RetryHook = Callable[[int, BaseException], None]

_CONTENT_RANGE_RE = re.compile(CONTENT_RANGE_PATTERN)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attempt budget and backoff schedule for one logical request.

    delay(attempt) = min(base_delay * 2 ** (attempt - 1), max_delay)
                     + uniform(0, jitter)
    """
    max_attempts: int = DEFAULT_MAX_RETRIES + 1
    base_delay: float = BACKOFF_BASE_SECONDS
    max_delay: float = BACKOFF_MAX_SECONDS
    jitter: float = BACKOFF_JITTER_SECONDS
    timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS
    retry_on_status: Callable[[int], bool] = is_retryable_status

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def backoff(self, attempt: int) -> float:
        """Delay before the next attempt, without jitter."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def delay(self, attempt: int) -> float:
        return self.backoff(attempt) + random.uniform(0, self.jitter)

    def with_overrides(self, **changes: Any) -> 'RetryPolicy':
        return replace(self, **changes)


DEFAULT_POLICY = RetryPolicy()
STATUS_POLICY = RetryPolicy(timeout=STATUS_REQUEST_TIMEOUT_SECONDS)
CHUNK_POLICY = RetryPolicy(
    max_attempts=CHUNK_MAX_RETRIES + 1,
    timeout=CHUNK_REQUEST_TIMEOUT_SECONDS,
)


@dataclass
class DownloadedRange:
    """One range response from the relay server."""
    start: int
    end: int
    total: int
    name: Optional[str]
    data: bytes


def parse_content_range(header: Optional[str]) -> Tuple[int, int, int]:
    """
    Parse ``bytes start-end/total``.

    Raises:
        ProtocolError: If the header is missing or malformed
    """
    if not header:
        raise ProtocolError("Invalid Content-Range: header missing")
    match = _CONTENT_RANGE_RE.search(header)
    if not match:
        raise ProtocolError(f"Invalid Content-Range: {header!r}")
    start, end, total = (int(group) for group in match.groups())
    return start, end, total


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str,
    on_retry: Optional[RetryHook] = None,
) -> T:
    """
    Run ``operation`` until it succeeds or a non-retryable error occurs.

    An error is retried when it has a truthy ``retryable`` attribute and
    attempts remain. The last error is raised once attempts run out.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not getattr(e, "retryable", False):
                logger.debug(f"Non-retryable failure: {description} error={e}")
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    f"Retries exhausted ({attempt}/{policy.max_attempts}): {description} error={e}"
                )
                raise
            delay = policy.delay(attempt)
            logger.warning(
                f"Transient failure (attempt {attempt}/{policy.max_attempts}): "
                f"{description} error={type(e).__name__}: {e}, retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(delay)


async def send_with_deadline(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    timeout: float,
    **kwargs: Any,
) -> httpx.Response:
    """
    Issue one request that must complete within ``timeout`` seconds.

    Raises:
        RequestTimeoutError: On deadline expiry or an httpx timeout
        NetworkError: On connection failures and resets
    """
    try:
        return await asyncio.wait_for(
            client.request(method, url, timeout=timeout, **kwargs),
            timeout=timeout,
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise RequestTimeoutError(f"{method} {url} timed out after {timeout}s") from e
    except httpx.TransportError as e:
        raise NetworkError(f"{method} {url} failed: {type(e).__name__}: {e}") from e


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: RetryPolicy = DEFAULT_POLICY,
    on_retry: Optional[RetryHook] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Make an HTTP request, retrying timeouts, network errors and retryable statuses.

    Args:
        client: Shared httpx client
        method: HTTP method
        url: Absolute URL or path relative to the client's base_url
        policy: Attempt budget, deadline and backoff
        on_retry: Optional hook called as ``(attempt, error)`` before each backoff
        **kwargs: Passed through to httpx

    Returns:
        The first response that is 2xx or carries a non-retryable status

    Raises:
        RequestTimeoutError: If the last attempt timed out
        NetworkError: If the last attempt failed to connect
        HttpStatusError: If the last attempt returned a retryable status
    """
    async def attempt() -> httpx.Response:
        response = await send_with_deadline(client, method, url, policy.timeout, **kwargs)
        if response.is_success or not policy.retry_on_status(response.status_code):
            if not response.is_success:
                logger.warning(f"Client error: {method} {url} status={response.status_code}")
            return response
        raise HttpStatusError(response.status_code, retryable=True, response=response)

    return await retry_async(attempt, policy, f"{method} {url}", on_retry)


async def request_json_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: RetryPolicy = DEFAULT_POLICY,
    on_retry: Optional[RetryHook] = None,
    **kwargs: Any,
) -> Tuple[Optional[Any], httpx.Response]:
    """
    Like request_with_retry, but also decode the JSON body.

    A body that fails to parse is reported as ``None`` data, not an error.
    """
    response = await request_with_retry(client, method, url, policy, on_retry, **kwargs)
    try:
        data = response.json()
    except ValueError:
        data = None
    return data, response


async def upload_chunk(
    client: httpx.AsyncClient,
    url: str,
    descriptor: ChunkDescriptor,
    filename: str,
    data: bytes,
    policy: RetryPolicy = CHUNK_POLICY,
    on_retry: Optional[RetryHook] = None,
) -> int:
    """
    Upload one byte range as multipart ``info`` + ``file``.

    The body must carry ``code == 200``. A failure code is retried only
    when the HTTP status is itself retryable; network errors and timeouts
    are always retried.

    Returns:
        Number of bytes accepted by the server
    """
    info = json.dumps({
        "filename": filename,
        "start": descriptor.start,
        "end": descriptor.end,
        "total": descriptor.total,
    })

    async def attempt() -> int:
        response = await send_with_deadline(
            client,
            "POST",
            url,
            policy.timeout,
            data={"info": info},
            files={"file": (filename, data, "application/octet-stream")},
        )
        try:
            body = response.json()
        except ValueError:
            body = None

        if body is None:
            if not response.is_success:
                raise HttpStatusError(
                    response.status_code,
                    f"Upload failed for chunk {descriptor.index + 1} with status {response.status_code}",
                    retryable=policy.retry_on_status(response.status_code),
                    response=response,
                )
            return len(data)

        code = body.get("code") if isinstance(body, dict) else None
        if not response.is_success or code != APP_SUCCESS_CODE:
            message = body.get("message") if isinstance(body, dict) else None
            error = ApplicationError(
                response.status_code,
                code,
                message or f"Upload failed for chunk {descriptor.index + 1} with status {response.status_code}",
            )
            error.retryable = policy.retry_on_status(response.status_code)
            raise error
        return len(data)

    description = f"upload chunk {descriptor.index + 1} [{descriptor.start}-{descriptor.end}/{descriptor.total}]"
    return await retry_async(attempt, policy, description, on_retry)


async def download_chunk(
    client: httpx.AsyncClient,
    url: str,
    params: Optional[dict] = None,
    policy: RetryPolicy = CHUNK_POLICY,
    on_retry: Optional[RetryHook] = None,
) -> DownloadedRange:
    """
    Download one range; the response must carry a valid Content-Range.

    Raises:
        ProtocolError: If Content-Range is missing or malformed (not retried)
        HttpStatusError: On a non-2xx status once retries are exhausted
    """
    async def attempt() -> DownloadedRange:
        response = await send_with_deadline(client, "GET", url, policy.timeout, params=params)
        if not response.is_success:
            raise HttpStatusError(
                response.status_code,
                f"Download failed with status {response.status_code}",
                retryable=policy.retry_on_status(response.status_code),
                response=response,
            )

        start, end, total = parse_content_range(response.headers.get("Content-Range"))
        return DownloadedRange(
            start=start,
            end=end,
            total=total,
            name=response.headers.get("Content-Name"),
            data=response.content,
        )

    start = (params or {}).get("start")
    return await retry_async(attempt, policy, f"download chunk at {start}", on_retry)
