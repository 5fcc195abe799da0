"""HTTP fetching with per-attempt timeouts, linear backoff and conditional requests."""

import asyncio
import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Raised for a non-2xx response."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


@dataclass
class FetchMetadata:
    """Fetch bookkeeping stored on a document for conditional re-fetches."""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    status: Optional[int] = None
    checked_at: Optional[datetime] = None

    def __post_init__(self):
        if self.checked_at is None:
            self.checked_at = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['checked_at'] = self.checked_at.isoformat() if self.checked_at else None
        return data


@dataclass
class FetchResult:
    """Outcome of a single successful (or not-modified) fetch."""
    url: str
    status: int
    text: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    not_modified: bool = False

    def metadata(self) -> FetchMetadata:
        return FetchMetadata(etag=self.etag, last_modified=self.last_modified, status=self.status)


def build_conditional_headers(conditions: Optional[Dict[str, Optional[str]]]) -> Dict[str, str]:
    """Translate stored etag/last-modified into request headers."""
    headers: Dict[str, str] = {}
    if not conditions:
        return headers
    if conditions.get("etag"):
        headers["If-None-Match"] = conditions["etag"]
    if conditions.get("last_modified"):
        headers["If-Modified-Since"] = conditions["last_modified"]
    return headers


async def fetch_with_retry(
    session: aiohttp.ClientSession,
    url: str,
    timeout_ms: int,
    retries: int,
    backoff_ms: int,
    user_agent: Optional[str] = None,
    conditions: Optional[Dict[str, Optional[str]]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> FetchResult:
    """GET a URL, retrying on network errors and non-2xx responses.

    Each attempt is bounded by ``timeout_ms``. Between attempts the call sleeps
    ``backoff_ms * attempt_number`` milliseconds. A 304 returns a not-modified
    result with no body.

    Raises:
        FetchError, aiohttp.ClientError, asyncio.TimeoutError: the last error
            once ``retries`` additional attempts are exhausted
    """
    headers = build_conditional_headers(conditions)
    if user_agent:
        headers["User-Agent"] = user_agent

    last_error: Optional[BaseException] = None

    for attempt in range(retries + 1):
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
        try:
            async with session.get(url, headers=headers, timeout=timeout) as response:
                etag = response.headers.get("ETag")
                last_modified = response.headers.get("Last-Modified")

                if response.status == 304:
                    return FetchResult(
                        url=url,
                        status=304,
                        etag=etag,
                        last_modified=last_modified,
                        not_modified=True,
                    )

                if not 200 <= response.status < 300:
                    raise FetchError(f"HTTP {response.status} for {url}", status=response.status)

                text = await response.text()
                return FetchResult(
                    url=url,
                    status=response.status,
                    text=text,
                    etag=etag,
                    last_modified=last_modified,
                )
        except (FetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            last_error = e
            logger.debug(f"Fetch attempt {attempt + 1} failed for {url}: {e}")
            if attempt < retries:
                await sleep(backoff_ms * (attempt + 1) / 1000)

    if last_error is None:
        raise FetchError(f"failed_to_fetch {url}")
    raise last_error
