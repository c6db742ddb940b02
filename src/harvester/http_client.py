from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

import requests
from requests import exceptions as req_exc

from . import __version__
from .content import HTML_CONTENT_TYPES, is_allowed_content_type, media_type
from .models import FailureKind

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024

ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class FetchSettings:
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 30.0
    max_redirects: int = 5
    max_bytes: int = DEFAULT_MAX_BYTES
    allowed_content_types: tuple[str, ...] = HTML_CONTENT_TYPES
    user_agent: str = f"harvester/{__version__}"
    # Transient failures only: connection errors, timeouts, 5xx.
    max_retries: int = 1
    retry_backoff_s: float = 0.5
    chunk_size: int = 64 * 1024

    @property
    def timeout(self) -> tuple[float, float]:
        return (self.connect_timeout_s, self.read_timeout_s)


class FetchError(Exception):
    def __init__(
        self,
        kind: FailureKind,
        message: str,
        *,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.kind in (FailureKind.NETWORK, FailureKind.TIMEOUT):
            return True
        return (
            self.kind is FailureKind.HTTP_STATUS
            and self.status_code is not None
            and self.status_code >= 500
        )


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    headers: dict[str, str]
    body: bytes
    redirect_count: int = 0

    @property
    def content_type(self) -> str | None:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return None


def _classify_request_exception(url: str, e: req_exc.RequestException) -> FetchError:
    # ConnectTimeout is both a Timeout and a ConnectionError; check Timeout first.
    if isinstance(e, req_exc.TooManyRedirects):
        return FetchError(FailureKind.OTHER, f"Too many redirects for {url}")
    if isinstance(e, req_exc.Timeout):
        return FetchError(FailureKind.TIMEOUT, f"Timed out fetching {url}: {e}")
    if isinstance(e, (req_exc.InvalidURL, req_exc.MissingSchema, req_exc.InvalidSchema)):
        return FetchError(FailureKind.OTHER, f"Invalid URL {url}: {e}")
    return FetchError(FailureKind.NETWORK, f"Failed to fetch {url}: {e}")


class HttpClient:
    """Single-page HTML fetcher on top of a `requests.Session`."""

    def __init__(
        self,
        session: requests.Session,
        *,
        settings: FetchSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session = session
        self._settings = settings or FetchSettings()
        self._sleep = sleep
        self._session.max_redirects = self._settings.max_redirects

    @property
    def settings(self) -> FetchSettings:
        return self._settings

    def get(
        self,
        url: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> FetchResult:
        """Fetch one HTML page.

        Raises FetchError carrying the failure kind. Transient failures are
        retried `settings.max_retries` times.
        """

        attempts = self._settings.max_retries + 1
        for attempt in range(attempts):
            try:
                return self._get_once(url, on_progress=on_progress)
            except FetchError as e:
                if not e.retryable or attempt + 1 >= attempts:
                    raise
                logger.info(
                    "Retrying %s after %s (attempt %d of %d)",
                    url,
                    e.kind.value,
                    attempt + 2,
                    attempts,
                )
                self._sleep(self._settings.retry_backoff_s * (2**attempt))
        raise AssertionError("unreachable")

    def _get_once(self, url: str, *, on_progress: ProgressCallback | None) -> FetchResult:
        s = self._settings
        headers = {
            "User-Agent": s.user_agent,
            "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.1",
        }
        logger.debug("GET %s", url)
        try:
            resp = self._session.get(url, timeout=s.timeout, headers=headers, stream=True)
        except req_exc.RequestException as e:
            raise _classify_request_exception(url, e) from e

        with resp:
            status = int(resp.status_code)
            if not 200 <= status < 300:
                raise FetchError(
                    FailureKind.HTTP_STATUS,
                    f"HTTP {status} for {url}",
                    status_code=status,
                )

            content_type = resp.headers.get("Content-Type")
            if media_type(content_type) and not is_allowed_content_type(
                content_type, allowed=s.allowed_content_types
            ):
                raise FetchError(
                    FailureKind.UNSUPPORTED_CONTENT_TYPE,
                    f"Unsupported content type {media_type(content_type)!r} for {url}",
                )

            declared = resp.headers.get("Content-Length")
            if declared and declared.isdigit() and int(declared) > s.max_bytes:
                raise FetchError(
                    FailureKind.TOO_LARGE,
                    f"Declared size {declared} exceeds {s.max_bytes} bytes for {url}",
                )

            chunks: list[bytes] = []
            total = 0
            try:
                for chunk in resp.iter_content(chunk_size=s.chunk_size):
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > s.max_bytes:
                        raise FetchError(
                            FailureKind.TOO_LARGE,
                            f"Body exceeds {s.max_bytes} bytes for {url}",
                        )
                    chunks.append(chunk)
                    if on_progress is not None:
                        on_progress(total)
            except req_exc.RequestException as e:
                raise _classify_request_exception(url, e) from e

            body = b"".join(chunks)
            if not media_type(content_type) and not is_allowed_content_type(
                None, body_head=body[:2048], allowed=s.allowed_content_types
            ):
                raise FetchError(
                    FailureKind.UNSUPPORTED_CONTENT_TYPE,
                    f"No Content-Type and body does not look like HTML for {url}",
                )

            return FetchResult(
                url=url,
                final_url=str(resp.url),
                status_code=status,
                headers={k: str(v) for k, v in resp.headers.items()},
                body=body,
                redirect_count=len(resp.history),
            )
