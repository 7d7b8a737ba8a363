"""HTTP client for the hosted model's messages endpoint."""

import json
import logging
import urllib.error
import urllib.request
from dataclasses import dataclass

from .messages import (
    ContentBlock,
    ToolResultBlock,
    ToolUseBlock,
    Transcript,
    block_from_wire,
)
from .report import ModelRequestError
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MODEL = "claude-3-5-sonnet-20240620"
DEFAULT_MAX_TOKENS = 4096
DEFAULT_TIMEOUT = 30
API_VERSION = "2023-06-01"


@dataclass
class ModelResponse:
    id: str
    role: str
    model: str
    content: list[ContentBlock]
    stop_reason: str | None = None


def parse_response(data) -> ModelResponse:
    """Validate a decoded response body. Raises ModelRequestError when malformed."""
    if not isinstance(data, dict):
        raise ModelRequestError(
            f"invalid response from model endpoint: expected an object, got {type(data).__name__}"
        )
    response_id = data.get("id")
    if not isinstance(response_id, str):
        raise ModelRequestError("invalid response from model endpoint: missing 'id'")
    raw_content = data.get("content")
    if not isinstance(raw_content, list):
        raise ModelRequestError(
            "invalid response from model endpoint: 'content' must be a list"
        )
    try:
        content = [block_from_wire(b) for b in raw_content]
    except ValueError as e:
        raise ModelRequestError(f"invalid response from model endpoint: {e}") from e
    if any(isinstance(b, ToolResultBlock) for b in content):
        raise ModelRequestError(
            "invalid response from model endpoint: assistant content contains a tool_result block"
        )
    ids = [b.id for b in content if isinstance(b, ToolUseBlock)]
    if len(set(ids)) != len(ids):
        raise ModelRequestError(
            f"invalid response from model endpoint: repeated tool_use ids {ids}"
        )
    return ModelResponse(
        id=response_id,
        role=data.get("role", "assistant"),
        model=data.get("model", ""),
        content=content,
        stop_reason=data.get("stop_reason"),
    )


def _error_detail(body: bytes) -> str:
    text = body.decode("utf-8", errors="replace").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text[:500]
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict) and err.get("message"):
        kind = err.get("type")
        return f"{kind}: {err['message']}" if kind else str(err["message"])
    return text[:500]


class ModelClient:
    """Sends the transcript and tool catalogue to the model and parses the reply.

    send_turn() appends the assistant message to the transcript on success
    and leaves it untouched on failure.
    """

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout = timeout

    def build_request(
        self, transcript: Transcript, registry: ToolRegistry | None, system: str
    ) -> dict:
        body: dict = {
            "model": self.model,
            "messages": transcript.to_wire(),
            "max_tokens": self.max_tokens,
        }
        if registry is not None and len(registry):
            body["tools"] = registry.to_wire()
        body["system"] = system
        return body

    def encode_request(
        self, transcript: Transcript, registry: ToolRegistry | None, system: str
    ) -> bytes:
        body = self.build_request(transcript, registry, system)
        return json.dumps(body, ensure_ascii=False).encode("utf-8")

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
        }

    def _post(self, payload: bytes) -> dict:
        req = urllib.request.Request(
            self.base_url, data=payload, headers=self.headers(), method="POST"
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            detail = _error_detail(e.read())
            raise ModelRequestError(
                f"model request failed with HTTP {e.code}: {detail}", status=e.code
            ) from e
        except urllib.error.URLError as e:
            reason = str(e.reason)
            if "timed out" in reason.lower():
                raise ModelRequestError(
                    f"model request timed out after {self.timeout} seconds"
                ) from e
            raise ModelRequestError(f"could not reach model endpoint: {reason}") from e
        except TimeoutError as e:
            raise ModelRequestError(
                f"model request timed out after {self.timeout} seconds"
            ) from e
        except OSError as e:
            raise ModelRequestError(f"could not reach model endpoint: {e}") from e

        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ModelRequestError(f"invalid JSON from model endpoint: {e}") from e

    def send_turn(
        self, transcript: Transcript, registry: ToolRegistry | None, system: str
    ) -> ModelResponse:
        payload = self.encode_request(transcript, registry, system)
        logger.debug(
            "Sending %d messages to %s (model=%s)",
            len(transcript),
            self.base_url,
            self.model,
        )
        response = parse_response(self._post(payload))
        logger.debug(
            "Received response %s with %d content blocks",
            response.id,
            len(response.content),
        )
        if response.content:
            transcript.append_assistant(response.content)
        else:
            logger.debug("Response %s has no content, not added to history", response.id)
        return response
