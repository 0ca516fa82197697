"""
HTTP tool for calling external APIs and fetching pages.
"""

import json
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog
from bs4 import BeautifulSoup

from .base import BaseTool, ToolResult

logger = structlog.get_logger()

MAX_RESPONSE_BYTES = 5 * 1024 * 1024
MAX_TEXT_CHARS = 10000


def html_to_text(html: str) -> tuple[str, str]:
    """Reduce an HTML page to (title, readable text)."""
    soup = BeautifulSoup(html, "html.parser")

    for element in soup(["script", "style", "nav", "footer", "header", "aside"]):
        element.decompose()

    title = soup.title.string if soup.title and soup.title.string else ""

    main_content = soup.find("main") or soup.find("article") or soup.find("body")
    if main_content:
        text = main_content.get_text(separator="\n", strip=True)
    else:
        text = soup.get_text(separator="\n", strip=True)

    text = "\n".join(line.strip() for line in text.split("\n") if line.strip())
    return title, text[:MAX_TEXT_CHARS]


class HttpTool(BaseTool):
    """Makes HTTP requests on behalf of the agent."""

    methods = ["GET", "POST", "PUT", "DELETE", "PATCH"]

    def __init__(self, timeout: float = 30.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport

    @property
    def name(self) -> str:
        return "http"

    @property
    def description(self) -> str:
        return (
            "Make HTTP requests to external APIs or web pages. Supports GET, POST, PUT, "
            "DELETE and PATCH with headers and a body. HTML pages are returned as text."
        )

    @property
    def parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "method": {
                    "type": "string",
                    "description": "HTTP method",
                    "enum": self.methods,
                },
                "url": {
                    "type": "string",
                    "description": "Full URL to request",
                },
                "headers": {
                    "type": "object",
                    "description": "Request headers",
                },
                "body": {
                    "type": "string",
                    "description": "Request body (usually a JSON string)",
                },
            },
            "required": ["method", "url"],
        }

    async def execute(
        self,
        method: str,
        url: str,
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> ToolResult:
        method = method.upper()
        if method not in self.methods:
            return ToolResult(success=False, output=f"Unsupported method: {method}", error="Invalid method")

        if urlparse(url).scheme not in ("http", "https"):
            return ToolResult(
                success=False,
                output="Only HTTP and HTTPS protocols are allowed",
                error="Invalid protocol",
            )

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            ) as client:
                response = await client.request(method, url, headers=headers, content=body)
        except httpx.TimeoutException:
            logger.warning("HTTP tool timeout", url=url)
            return ToolResult(
                success=False,
                output=f"Request timeout after {self.timeout} seconds",
                error="Timeout",
            )
        except httpx.HTTPError as e:
            logger.error("HTTP tool error", url=url, error=str(e))
            return ToolResult(success=False, output=f"HTTP request failed: {e}", error=str(e))

        if len(response.content) > MAX_RESPONSE_BYTES:
            return ToolResult(
                success=False,
                output=f"Response too large ({len(response.content)} bytes, max {MAX_RESPONSE_BYTES})",
                error="Response size exceeded",
            )

        content_type = response.headers.get("content-type", "")
        data: dict[str, Any] = {
            "status": response.status_code,
            "headers": dict(response.headers),
        }

        if "html" in content_type:
            title, text = html_to_text(response.text)
            data["title"] = title
            data["body"] = text
            output = f"Title: {title}\n\n{text}" if title else text
        else:
            try:
                data["body"] = response.json()
                output = json.dumps(data["body"], indent=2)[:MAX_TEXT_CHARS]
            except ValueError:
                data["body"] = response.text
                output = response.text[:MAX_TEXT_CHARS]

        if response.is_success:
            return ToolResult(success=True, output=output, data=data)

        return ToolResult(
            success=False,
            output=f"Request failed ({response.status_code} {response.reason_phrase})\n{output}",
            data=data,
            error=f"HTTP {response.status_code}",
        )
