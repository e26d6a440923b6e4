"""Recognition of spoken execution instructions."""

from __future__ import annotations

import re
from typing import Optional

_COMMAND_PATTERNS = (
    re.compile(r"^(?:kaia|caia)[\s,]+(?:execute|executa|roda|rodá|abre|run)\b\s*:?\s*(.+)", re.IGNORECASE),
    re.compile(r"^(?:execute|executa|roda|run)\s*:?\s+(.+)", re.IGNORECASE),
    re.compile(r"^abre\s+(?:o\s+|a\s+)?(.+)", re.IGNORECASE),
)


def extract_command(text: str) -> Optional[str]:
    """Return the shell command inside an execution instruction, if any.

    >>> extract_command("Kaia execute: dir")
    'dir'
    >>> extract_command("what time is it") is None
    True
    """
    candidate = text.strip()
    for pattern in _COMMAND_PATTERNS:
        match = pattern.match(candidate)
        if match:
            command = match.group(1).strip().rstrip(".")
            return command or None
    return None
