"""network_request tool: fetch an HTML page and return it as Markdown."""

import logging
import urllib.error
import urllib.parse
import urllib.request

from .report import ToolExecutionError
from .tools import ToolInputSchema, ToolProperty, require

logger = logging.getLogger(__name__)

MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # 5 MB raw download cap
MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB converted output cap (same as read_file)
REQUEST_TIMEOUT = 30

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}


def _decode_response(data: bytes, content_type: str | None) -> str:
    """Decode response bytes to string, using charset from Content-Type or falling back."""
    charset = None
    if content_type:
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                charset = part.split("=", 1)[1].strip().strip("\"'")
                break

    for encoding in [charset, "utf-8"]:
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue

    # latin-1 never fails
    return data.decode("latin-1")


def _truncate(output: str) -> str:
    encoded = output.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return output
    truncated = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return (
        truncated
        + f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes, total was {len(encoded)} bytes]"
    )


def fetch_html_as_markdown(url: str, timeout: int = REQUEST_TIMEOUT) -> str:
    """Fetch an HTML page and convert it to Markdown.

    Returns "Error: ..." strings for unsupported URLs and content types.
    Raises ToolExecutionError for HTTP and transport failures.
    """
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return (
            f"Error: Unsupported URL scheme {parsed.scheme!r}. "
            "Only http and https URLs are supported."
        )
    if not parsed.hostname:
        return f"Error: Could not parse hostname from URL: {url}"

    logger.debug("Making network request to: %s", url)
    req = urllib.request.Request(url, headers=HEADERS)
    try:
        resp = urllib.request.urlopen(req, timeout=timeout)
    except urllib.error.HTTPError as e:
        raise ToolExecutionError(f"HTTP {e.code} {e.reason} for {url}") from e
    except urllib.error.URLError as e:
        reason = str(e.reason)
        if "timed out" in reason.lower():
            raise ToolExecutionError(f"request timed out after {timeout} seconds") from e
        raise ToolExecutionError(f"could not connect to {parsed.hostname}: {reason}") from e
    except TimeoutError as e:
        raise ToolExecutionError(f"request timed out after {timeout} seconds") from e
    except OSError as e:
        raise ToolExecutionError(f"could not connect to {parsed.hostname}: {e}") from e

    try:
        content_type = resp.headers.get("Content-Type")
        if not content_type or "text/html" not in content_type.lower():
            logger.debug("Unsupported content type: %s", content_type)
            return (
                f"Error: Unsupported content type: {content_type}. "
                "This tool can only process HTML content."
            )
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except TimeoutError as e:
            raise ToolExecutionError(f"request timed out after {timeout} seconds") from e
        except OSError as e:
            raise ToolExecutionError(f"failed to read response: {e}") from e
        if len(data) > MAX_RESPONSE_SIZE:
            return f"Error: Response too large (limit is {MAX_RESPONSE_SIZE} bytes)"
        body = _decode_response(data, content_type)
    finally:
        resp.close()

    from html_to_markdown import convert

    try:
        markdown = convert(body)
    except Exception as e:
        raise ToolExecutionError(f"failed to convert HTML to Markdown: {e}") from e
    logger.debug("Converted HTML to Markdown, content length: %d", len(markdown))
    return _truncate(markdown)


class NetworkRequestTool:
    name = "network_request"
    description = (
        "Makes a network request to a given URL and returns the content. "
        "If the content is HTML, it will be converted to Markdown format. "
        "This tool is useful for fetching web content in a readable format. "
        "Only HTML content is supported - other content types will result in an error."
    )
    input_schema = ToolInputSchema(
        properties={
            "url": ToolProperty(
                "string",
                "The URL to make the request to. Must be a valid HTTP or HTTPS URL.",
            ),
        },
        required=("url",),
    )

    def __init__(self, timeout: int = REQUEST_TIMEOUT):
        self.timeout = timeout

    def execute(self, parameters: dict[str, str]) -> str:
        return fetch_html_as_markdown(require(parameters, "url"), timeout=self.timeout)
