"""Tests for fetch.py: network_request tool."""

import http.client
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from ferry.fetch import (
    HEADERS,
    MAX_OUTPUT_BYTES,
    MAX_RESPONSE_SIZE,
    NetworkRequestTool,
    _decode_response,
    _truncate,
    fetch_html_as_markdown,
)
from ferry.report import MissingParameterError, ToolExecutionError


def _make_response(body: bytes, content_type: str | None = "text/html; charset=utf-8"):
    """Create a mock HTTP response."""
    resp = MagicMock()
    resp.read.return_value = body
    resp.headers = http.client.HTTPMessage()
    if content_type is not None:
        resp.headers["Content-Type"] = content_type
    return resp


# =========================================================================
# Helpers
# =========================================================================


class TestDecodeResponse:
    def test_charset_from_header(self):
        assert _decode_response("café".encode("latin-1"), "text/html; charset=ISO-8859-1") == "café"

    def test_utf8_default(self):
        assert _decode_response("café".encode("utf-8"), "text/html") == "café"

    def test_quoted_charset(self):
        assert _decode_response(b"abc", 'text/html; charset="utf-8"') == "abc"

    def test_unknown_charset_falls_back(self):
        assert _decode_response(b"abc", "text/html; charset=bogus") == "abc"

    def test_latin1_last_resort(self):
        assert _decode_response(b"\xff\xfe", None) == "\xff\xfe"


class TestTruncate:
    def test_short_unchanged(self):
        assert _truncate("hello") == "hello"

    def test_long_truncated(self):
        result = _truncate("a" * (MAX_OUTPUT_BYTES + 10))
        assert result.startswith("a" * 100)
        assert "[content truncated" in result


# =========================================================================
# fetch_html_as_markdown
# =========================================================================


class TestFetchHtmlAsMarkdown:
    @patch("ferry.fetch.urllib.request.urlopen")
    def test_html_converted(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(
            b"<html><body><h1>Title</h1><p>Paragraph</p></body></html>"
        )
        result = fetch_html_as_markdown("https://example.com")
        assert "Title" in result
        assert "Paragraph" in result
        assert "<h1>" not in result

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_sends_browser_headers_and_timeout(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(b"<p>x</p>")
        with patch("html_to_markdown.convert", return_value="x"):
            fetch_html_as_markdown("https://example.com/page", timeout=7)
        req = mock_urlopen.call_args.args[0]
        assert req.full_url == "https://example.com/page"
        assert req.get_header("User-agent") == HEADERS["User-Agent"]
        assert mock_urlopen.call_args.kwargs["timeout"] == 7

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_non_html_content_type(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(b"{}", "application/json")
        result = fetch_html_as_markdown("https://example.com/api")
        assert result == (
            "Error: Unsupported content type: application/json. "
            "This tool can only process HTML content."
        )

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_missing_content_type(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(b"data", None)
        result = fetch_html_as_markdown("https://example.com")
        assert result.startswith("Error: Unsupported content type: None")

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_response_too_large(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(b"x" * (MAX_RESPONSE_SIZE + 1))
        result = fetch_html_as_markdown("https://example.com")
        assert result.startswith("Error: Response too large")

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_response_closed(self, mock_urlopen):
        resp = _make_response(b"{}", "application/json")
        mock_urlopen.return_value = resp
        fetch_html_as_markdown("https://example.com")
        resp.close.assert_called_once()

    def test_unsupported_scheme(self):
        result = fetch_html_as_markdown("ftp://example.com/file")
        assert result.startswith("Error: Unsupported URL scheme 'ftp'")

    def test_missing_host(self):
        result = fetch_html_as_markdown("http:///path")
        assert result.startswith("Error: Could not parse hostname")

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_http_error_raises(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.HTTPError(
            "https://example.com", 404, "Not Found", http.client.HTTPMessage(), None
        )
        with pytest.raises(ToolExecutionError, match="HTTP 404 Not Found"):
            fetch_html_as_markdown("https://example.com")

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_connection_error_raises(self, mock_urlopen):
        mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
        with pytest.raises(ToolExecutionError, match="could not connect to example.com"):
            fetch_html_as_markdown("https://example.com")

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_timeout_raises(self, mock_urlopen):
        mock_urlopen.side_effect = TimeoutError()
        with pytest.raises(ToolExecutionError, match="timed out after 30 seconds"):
            fetch_html_as_markdown("https://example.com")

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_conversion_failure_raises(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(b"<p>x</p>")
        with patch("html_to_markdown.convert", side_effect=RuntimeError("bad markup")):
            with pytest.raises(ToolExecutionError, match="bad markup"):
                fetch_html_as_markdown("https://example.com")


class TestNetworkRequestTool:
    def test_requires_url(self):
        with pytest.raises(MissingParameterError, match="url parameter is required"):
            NetworkRequestTool().execute({})

    @patch("ferry.fetch.urllib.request.urlopen")
    def test_uses_configured_timeout(self, mock_urlopen):
        mock_urlopen.return_value = _make_response(b"<p>hi</p>")
        with patch("html_to_markdown.convert", return_value="hi"):
            result = NetworkRequestTool(timeout=3).execute({"url": "http://example.com"})
        assert result == "hi"
        assert mock_urlopen.call_args.kwargs["timeout"] == 3
