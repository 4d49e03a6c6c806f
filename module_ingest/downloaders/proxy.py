"""Module proxy client for fetching module version zips.

This module provides the ModuleProxyClient class for downloading module
zips from a module proxy (``{base}/{module}/@v/{version}.zip``) with retry
and backoff. Outcomes are reported as FetchResult values carrying an
HTTP-style status code so they can be recorded directly as attempt
statuses.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

import requests

from ..core.errors import ModuleIngestError
from ..utils.logging import get_logger

DEFAULT_PROXY_URL = "https://proxy.golang.org"

# Default configuration
DEFAULT_CHUNK_SIZE = 1024 * 1024  # 1MB
DEFAULT_TIMEOUT = 30  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_DOWNLOAD_SIZE = 500 * 1024 * 1024  # compressed zip bytes
INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0

STATUS_TOO_LARGE = 413
STATUS_BAD_GATEWAY = 502  # transport failure talking to the proxy

USER_AGENT = "module-ingest/0.1"


@dataclass
class FetchResult:
    """Result of fetching one module version zip.

    Attributes:
        status_code: HTTP status of the fetch, or a synthesized status for
            failures without a response (502 transport, 413 too large).
        content: Zip payload on success, None otherwise.
        error: Error message on failure, None on success.
    """

    status_code: int
    content: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return 200 <= self.status_code < 300 and self.content is not None


class ProxyError(ModuleIngestError):
    """Base exception for module proxy errors."""

    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProxyNotFoundError(ProxyError):
    """The proxy does not have the module version (404/410)."""

    pass


class ProxyTooLargeError(ProxyError):
    """The zip is larger than the allowed download size."""

    def __init__(self, message: str) -> None:
        super().__init__(message, STATUS_TOO_LARGE)


class ProxyRetryableError(ProxyError):
    """Transient proxy failure (429 or 5xx)."""

    def __init__(self, message: str, status_code: int, retry_after: Optional[int] = None) -> None:
        """Initialize with optional retry-after value.

        Args:
            message: Error message.
            status_code: HTTP status of the response.
            retry_after: Seconds to wait before retrying (from Retry-After header).
        """
        super().__init__(message, status_code)
        self.retry_after = retry_after


def _escape(value: str, what: str) -> str:
    if not value:
        raise ValueError(f"{what} cannot be empty")
    escaped = []
    for c in value:
        if c == "!":
            raise ValueError(f"{what} contains '!': {value!r}")
        if "A" <= c <= "Z":
            escaped.append("!" + c.lower())
        else:
            escaped.append(c)
    return "".join(escaped)


def escape_module_path(module_path: str) -> str:
    """Escape a module path for use in proxy URLs.

    Upper-case letters are replaced by "!" followed by the lower-case
    letter, so paths stay unique on case-insensitive file systems.

    Examples:
        >>> escape_module_path("github.com/Azure/azure-sdk-for-go")
        'github.com/!azure/azure-sdk-for-go'
    """
    return _escape(module_path, "module path")


def escape_version(version: str) -> str:
    """Escape a version for use in proxy URLs."""
    return _escape(version, "version")


class ModuleProxyClient:
    """Downloads module zips from a module proxy.

    Attributes:
        base_url: Proxy base URL without trailing slash.
        timeout: Request timeout in seconds.
        max_retries: Maximum number of attempts per download.
        max_download_size: Largest accepted zip size in bytes.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_PROXY_URL,
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        max_download_size: int = DEFAULT_MAX_DOWNLOAD_SIZE,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        """Initialize the proxy client.

        Args:
            base_url: Module proxy base URL.
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts for transient failures.
            max_download_size: Largest accepted zip size in bytes.
            chunk_size: Size of chunks for streaming downloads.
            session: Optional requests session. A new one is created if None.
            logger: Optional logger instance. If None, uses default logger.
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.max_download_size = max_download_size
        self.chunk_size = chunk_size
        self._session = session or requests.Session()
        self._logger = logger or get_logger("downloaders.proxy")

    def zip_url(self, module_path: str, version: str) -> str:
        """Build the zip URL for a module version."""
        return f"{self.base_url}/{escape_module_path(module_path)}/@v/{escape_version(version)}.zip"

    def _get_headers(self, additional: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if additional:
            headers.update(additional)
        return headers

    def _calculate_backoff(self, attempt: int, retry_after: Optional[int] = None) -> float:
        """Calculate backoff time with exponential increase.

        Args:
            attempt: Current attempt number (0-indexed).
            retry_after: Optional Retry-After value from server.

        Returns:
            Seconds to wait before next retry.
        """
        if retry_after is not None:
            return float(min(retry_after, MAX_BACKOFF_SECONDS))

        backoff = INITIAL_BACKOFF_SECONDS * (BACKOFF_MULTIPLIER ** attempt)
        return min(backoff, MAX_BACKOFF_SECONDS)

    def _handle_response_error(self, response: requests.Response, context: str) -> None:
        """Raise the matching ProxyError for an error response.

        Raises:
            ProxyNotFoundError: For 404/410 responses.
            ProxyRetryableError: For 429 and 5xx responses.
            ProxyError: For other error responses.
        """
        if response.ok:
            return

        status_code = response.status_code
        error_message = (response.text or "").strip()[:200] or f"HTTP {status_code}"

        if status_code in (404, 410):
            raise ProxyNotFoundError(f"{context}: not found: {error_message}", status_code)

        if status_code == 429 or status_code >= 500:
            retry_after = None
            if "Retry-After" in response.headers:
                try:
                    retry_after = int(response.headers["Retry-After"])
                except ValueError:
                    pass
            raise ProxyRetryableError(
                f"{context}: HTTP {status_code}: {error_message}",
                status_code,
                retry_after=retry_after,
            )

        raise ProxyError(f"{context}: HTTP {status_code}: {error_message}", status_code)

    def _read_body(self, response: requests.Response, context: str) -> bytes:
        """Read a streamed response body, refusing oversized payloads.

        Raises:
            ProxyTooLargeError: If the declared or streamed size exceeds
                max_download_size.
        """
        declared = response.headers.get("Content-Length")
        if declared is not None and declared.isdigit() and int(declared) > self.max_download_size:
            raise ProxyTooLargeError(
                f"{context}: zip size {declared} exceeds limit {self.max_download_size}"
            )

        buf = bytearray()
        for chunk in response.iter_content(chunk_size=self.chunk_size):
            if not chunk:
                continue
            buf.extend(chunk)
            if len(buf) > self.max_download_size:
                raise ProxyTooLargeError(
                    f"{context}: zip exceeds limit {self.max_download_size} while streaming"
                )
        return bytes(buf)

    def download_zip(self, module_path: str, version: str) -> FetchResult:
        """Download the zip of one module version.

        Transient failures (429, 5xx, connection errors) are retried with
        exponential backoff. HTTP failures are reported in the result, not
        raised.

        Args:
            module_path: Module path.
            version: Module version.

        Returns:
            FetchResult with the payload or the failure status.
        """
        context = f"{module_path}@{version}"
        url = self.zip_url(module_path, version)
        self._logger.debug(f"Fetching {url}")

        last_status = STATUS_BAD_GATEWAY
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            retry_after = None
            try:
                response = self._session.get(
                    url,
                    headers=self._get_headers(),
                    timeout=self.timeout,
                    stream=True,
                )
                try:
                    self._handle_response_error(response, context)
                    content = self._read_body(response, context)
                finally:
                    response.close()

                self._logger.debug(f"Fetched {context}: {len(content):,} bytes")
                return FetchResult(status_code=response.status_code, content=content)

            except (ProxyNotFoundError, ProxyTooLargeError) as e:
                # Don't retry missing or oversized zips
                self._logger.info(str(e))
                return FetchResult(status_code=e.status_code, error=str(e))

            except ProxyRetryableError as e:
                last_status, last_error, retry_after = e.status_code, e, e.retry_after

            except ProxyError as e:
                self._logger.warning(str(e))
                return FetchResult(status_code=e.status_code, error=str(e))

            except requests.exceptions.RequestException as e:
                last_status, last_error = STATUS_BAD_GATEWAY, e

            if attempt < self.max_retries - 1:
                backoff = self._calculate_backoff(attempt, retry_after)
                self._logger.warning(
                    f"Fetch of {context} failed (attempt {attempt + 1}/{self.max_retries}): "
                    f"{last_error}. Retrying in {backoff:.1f}s..."
                )
                time.sleep(backoff)

        error_msg = f"Failed to fetch {context} after {self.max_retries} attempts: {last_error}"
        self._logger.error(error_msg)
        return FetchResult(status_code=last_status, error=error_msg)

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()

    def __repr__(self) -> str:
        return f"ModuleProxyClient(base_url={self.base_url!r})"
