"""
Pytest configuration and shared fixtures for the MCP Web URL Reader tests.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

from mcp_web_reader.fetcher import FetchResult

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# Stand-in for the curl executable. Behaviour is driven by FAKE_CURL_*
# environment variables; the argument vector is written to FAKE_CURL_ARGS.
FAKE_CURL_SCRIPT = """#!{python}
import json
import os
import sys

args = sys.argv[1:]
if os.environ.get("FAKE_CURL_ARGS"):
    with open(os.environ["FAKE_CURL_ARGS"], "w") as f:
        json.dump(args, f)

write_out = args[args.index("-w") + 1] if "-w" in args else ""
status = os.environ.get("FAKE_CURL_STATUS", "200")
body = os.environ.get("FAKE_CURL_BODY", "").encode() * int(os.environ.get("FAKE_CURL_REPEAT", "1"))
trailer = write_out.replace("%{{http_code}}", status).encode()

if os.environ.get("FAKE_CURL_CRASH"):
    sys.stdout.buffer.write(body)
    sys.stdout.flush()
    sys.stderr.write("curl: (56) Recv failure: Connection reset by peer\\n")
    sys.exit(56)

if int(status) >= 400 and "--fail" in args:
    sys.stderr.write("curl: (22) The requested URL returned error: " + status + "\\n")
    sys.stdout.buffer.write(trailer)
    sys.exit(22)

sys.stdout.buffer.write(body)
sys.stdout.buffer.write(trailer)
"""


@pytest.fixture
def fake_curl(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Install an executable fake curl and return its path."""
    script = tmp_path / "fake-curl"
    script.write_text(FAKE_CURL_SCRIPT.format(python=sys.executable))
    script.chmod(0o755)
    for name in ("FAKE_CURL_BODY", "FAKE_CURL_STATUS", "FAKE_CURL_REPEAT", "FAKE_CURL_CRASH"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FAKE_CURL_ARGS", str(tmp_path / "args.json"))
    return script


class RecordingFetcher:
    """In-memory fetch backend that records every target URL."""

    name = "recording"

    def __init__(self, body: str = "hello", *, error: bool = False, status: str = "200") -> None:
        self.body = body
        self.error = error
        self.status = status
        self.urls: list[str] = []

    async def fetch(self, final_url: str) -> FetchResult:
        self.urls.append(final_url)
        return FetchResult(body=self.body, error=self.error, status=self.status)


@pytest.fixture
def recording_fetcher() -> RecordingFetcher:
    """A fetch backend returning "hello" with status 200."""
    return RecordingFetcher()


def initialize_message(request_id: int | str = 1, **params: Any) -> dict[str, Any]:
    """Build an `initialize` request."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": "2025-06-18",
            "capabilities": {},
            "clientInfo": {"name": "pytest", "version": "1.0"},
            **params,
        },
    }


def call_message(url: Any, request_id: int | str = 2) -> dict[str, Any]:
    """Build a `tools/call` request for read_web_url."""
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "tools/call",
        "params": {"name": "read_web_url", "arguments": {"url": url}},
    }
