"""
Fetch backends for the `read_web_url` tool.

This module provides:
- FetchResult: The outcome of one fetch (body or error text, never both)
- CurlFetcher: Runs `curl -sSL --fail` as a child process and recovers the
  HTTP status from a per-invocation sentinel trailer on stdout
- HttpxFetcher: Same contract on top of httpx, with the status read out-of-band
- create_fetcher: Backend selection from FetchConfig

Both backends enforce the output ceiling, never retry, and never log or echo
the fetched body: logs carry the target URL, status code, and byte count only,
and error text is built from the backend's diagnostics rather than the body.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import httpx

from mcp_web_reader.errors import (
    ResourceExhaustedError,
    ToolError,
    UnavailableError,
)
from mcp_web_reader.logging import get_logger

if TYPE_CHECKING:
    from mcp_web_reader.config import FetchConfig

logger = get_logger(__name__)

# =============================================================================
# Constants
# =============================================================================

UNKNOWN_STATUS = "000"

# Trailer layout: <<<MCP_HTTP_STATUS:<nonce>:<code>>>>
STATUS_SENTINEL = "<<<MCP_HTTP_STATUS:"
SENTINEL_CLOSE = ">>>"

# Bytes reserved above the body ceiling for the trailer itself
TRAILER_ALLOWANCE = 128

_READ_CHUNK = 64 * 1024


@dataclass(frozen=True)
class FetchResult:
    """
    Outcome of a single fetch.

    Attributes:
        body: Retrieved body on success, human-readable error text on failure.
        error: True when `body` holds error text.
        status: Three-digit HTTP status, or "000" when unknown.
    """

    body: str
    error: bool
    status: str = UNKNOWN_STATUS


class Fetcher(Protocol):
    """Interface shared by the fetch backends."""

    name: str

    async def fetch(self, final_url: str) -> FetchResult: ...


def split_status_trailer(output: bytes, marker: bytes) -> tuple[bytes, str]:
    """
    Split captured stdout into body and status code.

    The split happens on the last occurrence of `marker`. When the marker is
    missing (the process died before writing it) the whole output is the body
    and the status is unknown.

    Args:
        output: Raw stdout bytes.
        marker: Sentinel prefix including the per-invocation nonce.

    Returns:
        Tuple of (body bytes, status string).

    Example:
        >>> split_status_trailer(b"hello<<<MCP_HTTP_STATUS:ab:200>>>", b"<<<MCP_HTTP_STATUS:ab:")
        (b'hello', '200')
    """
    body, found, tail = output.rpartition(marker)
    if not found:
        return output, UNKNOWN_STATUS

    code, closed, _ = tail.partition(SENTINEL_CLOSE.encode("ascii"))
    status = code.decode("ascii", errors="replace")
    if not closed or not status.isdigit():
        return body, UNKNOWN_STATUS
    return body, status.zfill(3)


class _BaseFetcher:
    """Result shaping and logging shared by both backends."""

    name = "base"
    error_label = "fetch"

    def __init__(self, max_output_bytes: int) -> None:
        self.max_output_bytes = max_output_bytes

    def _overflow_error(self) -> ResourceExhaustedError:
        return ResourceExhaustedError(
            f"output exceeded {self.max_output_bytes} bytes",
            details={"max_output_bytes": self.max_output_bytes},
        )

    def _log_start(self, final_url: str) -> None:
        logger.info("Fetching URL", extra={"url": final_url, "backend": self.name})

    def _success(self, final_url: str, status: str, body: bytes) -> FetchResult:
        logger.info(
            "Fetch completed",
            extra={
                "url": final_url,
                "backend": self.name,
                "status": status,
                "bytes": len(body),
            },
        )
        return FetchResult(
            body=body.decode("utf-8", errors="replace"),
            error=False,
            status=status,
        )

    def _failure(self, final_url: str, status: str, diagnostic: str) -> FetchResult:
        logger.warning(
            "Fetch failed",
            extra={
                "url": final_url,
                "backend": self.name,
                "status": status,
                "error": diagnostic,
            },
        )
        return FetchResult(
            body=f"{self.error_label} error for {final_url}: {diagnostic}",
            error=True,
            status=status,
        )


# =============================================================================
# curl backend
# =============================================================================


class CurlFetcher(_BaseFetcher):
    """
    Fetch backend that shells out to curl.

    Each call runs exactly one `curl -sSL --fail` process. A write-out trailer
    with a random nonce is appended to stdout so the status code can be
    separated from the body without a second channel; the nonce keeps a body
    that happens to contain the sentinel text from being mistaken for it.

    Example:
        >>> fetcher = CurlFetcher()
        >>> result = await fetcher.fetch("https://example.com")
    """

    name = "curl"
    error_label = "curl"

    def __init__(
        self,
        curl_path: str = "curl",
        max_output_bytes: int = 25 * 1024 * 1024,
        timeout_seconds: float | None = None,
    ) -> None:
        super().__init__(max_output_bytes)
        self.curl_path = curl_path
        self.timeout_seconds = timeout_seconds

    def build_command(self, final_url: str, write_out: str) -> list[str]:
        """Build the curl argument vector for one fetch."""
        command = [self.curl_path, "-sSL", "--fail", "-w", write_out]
        if self.timeout_seconds is not None:
            command += ["--max-time", f"{self.timeout_seconds:g}"]
        command += ["--url", final_url]
        return command

    async def fetch(self, final_url: str) -> FetchResult:
        """
        Fetch a URL with curl.

        Args:
            final_url: Prefix-resolved URL.

        Returns:
            FetchResult with the body on success, or
            "curl error for <url>: <stderr>" on failure.
        """
        self._log_start(final_url)

        marker = f"{STATUS_SENTINEL}{secrets.token_hex(8)}:"
        write_out = f"{marker}%{{http_code}}{SENTINEL_CLOSE}"
        command = self.build_command(final_url, write_out)

        try:
            returncode, stdout, stderr = await self._run(command)
        except ToolError as e:
            return self._failure(final_url, UNKNOWN_STATUS, e.message)

        body, status = split_status_trailer(stdout, marker.encode("ascii"))

        if returncode != 0:
            diagnostic = stderr.decode("utf-8", errors="replace").strip()
            if not diagnostic:
                diagnostic = f"curl exited with status {returncode}"
            return self._failure(final_url, status, diagnostic)

        if len(body) > self.max_output_bytes:
            return self._failure(final_url, status, self._overflow_error().message)

        return self._success(final_url, status, body)

    async def _run(self, command: list[str]) -> tuple[int, bytes, bytes]:
        """
        Run curl and capture its output under the size ceiling.

        Returns:
            Tuple of (return_code, stdout, stderr).

        Raises:
            UnavailableError: If the curl executable cannot be started.
            ResourceExhaustedError: If stdout exceeds the ceiling; the process
                is killed.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise UnavailableError(
                f"{self.curl_path} could not be executed: {exc.strerror or exc}",
                details={"curl_path": self.curl_path},
            ) from exc

        stdout_pipe, stderr_pipe = proc.stdout, proc.stderr
        if stdout_pipe is None or stderr_pipe is None:
            if proc.returncode is None:
                proc.kill()
            await proc.wait()
            raise UnavailableError(
                f"{self.curl_path} started without output pipes",
                details={"curl_path": self.curl_path},
            )

        limit = self.max_output_bytes + TRAILER_ALLOWANCE
        stderr_task = asyncio.ensure_future(stderr_pipe.read())
        stdout = bytearray()
        overflow = False

        try:
            while True:
                chunk = await stdout_pipe.read(_READ_CHUNK)
                if not chunk:
                    break
                stdout.extend(chunk)
                if len(stdout) > limit:
                    overflow = True
                    proc.kill()
                    break
            stderr = await stderr_task
            returncode = await proc.wait()
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        if overflow:
            raise self._overflow_error()

        return returncode, bytes(stdout), stderr


# =============================================================================
# httpx backend
# =============================================================================


class HttpxFetcher(_BaseFetcher):
    """
    Fetch backend using httpx.

    The status code comes from the response object, so no trailer is needed.
    Redirects are followed and a status >= 400 is reported as an error
    without reading the error page.
    """

    name = "httpx"

    def __init__(
        self,
        max_output_bytes: int = 25 * 1024 * 1024,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(max_output_bytes)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def fetch(self, final_url: str) -> FetchResult:
        """Fetch a URL with httpx; same result contract as CurlFetcher."""
        self._log_start(final_url)

        status = UNKNOWN_STATUS
        body = bytearray()
        try:
            async with httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
            ) as client:
                async with client.stream("GET", final_url) as response:
                    status = f"{response.status_code:03d}"
                    if response.is_error:
                        raise UnavailableError(
                            f"The requested URL returned error: {response.status_code}",
                            details={"status": response.status_code},
                        )
                    async for chunk in response.aiter_bytes():
                        body.extend(chunk)
                        if len(body) > self.max_output_bytes:
                            raise self._overflow_error()
        except ToolError as e:
            return self._failure(final_url, status, e.message)
        except httpx.HTTPError as e:
            return self._failure(final_url, status, str(e) or type(e).__name__)

        return self._success(final_url, status, bytes(body))


def create_fetcher(config: FetchConfig) -> Fetcher:
    """
    Build the fetch backend selected in configuration.

    Args:
        config: FetchConfig section of the application config.

    Returns:
        A CurlFetcher or HttpxFetcher.
    """
    if config.backend == "httpx":
        return HttpxFetcher(
            max_output_bytes=config.max_output_bytes,
            timeout_seconds=config.timeout_seconds,
        )
    return CurlFetcher(
        curl_path=config.curl_path,
        max_output_bytes=config.max_output_bytes,
        timeout_seconds=config.timeout_seconds,
    )
