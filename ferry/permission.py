"""Interactive confirmation before a tool runs (safe mode)."""

import logging

from . import fmt

logger = logging.getLogger(__name__)

AFFIRMATIVE = frozenset({"y", "yes"})


class PermissionGate:
    """Asks the operator to approve each tool call.

    confirm() blocks the whole agent loop until a line is read. Anything
    other than y/yes (case-insensitive) is a denial, including an empty
    line and end of input.
    """

    def __init__(self, read_line=input):
        self._read_line = read_line

    def confirm(self, tool_name: str, description: str, parameters: dict[str, str]) -> bool:
        fmt.permission_request(tool_name, description, parameters)
        try:
            answer = self._read_line(f"Allow {tool_name} to run? [y/N] ")
        except EOFError:
            answer = ""
        granted = answer.strip().lower() in AFFIRMATIVE
        logger.debug("Permission for %s: %s", tool_name, "granted" if granted else "denied")
        return granted
