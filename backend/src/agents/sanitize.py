"""
Text cleanup for structured storage.

PostgreSQL rejects NUL bytes in TEXT and JSONB values, and other C0 control
characters corrupt JSON payloads produced from PDF extraction. Everything
written to agent_jobs / script_chunks passes through sanitize_for_storage.
"""

import re
from typing import Any

# C0 controls except tab (\x09), newline (\x0A) and carriage return (\x0D)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F]")

_EXCESS_BLANK_LINES = re.compile(r"\n{4,}")


def strip_control_chars(value: str) -> str:
    return _CONTROL_CHARS.sub("", value)


def sanitize_for_storage(value: Any) -> Any:
    """
    Recursively remove control characters from strings in a JSON-like value.

    Dict keys are cleaned too. Non-string scalars pass through unchanged.
    """
    if isinstance(value, str):
        return strip_control_chars(value)
    if isinstance(value, dict):
        return {
            sanitize_for_storage(k) if isinstance(k, str) else k: sanitize_for_storage(v)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_for_storage(v) for v in value]
    return value


def normalize_script_text(text: str) -> str:
    """
    Normalize extracted script text before chunking.

    - Removes control characters
    - Normalizes line endings to \\n
    - Collapses runs of 4+ newlines to 3
    - Strips trailing whitespace from each line and the whole text
    """
    text = strip_control_chars(text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _EXCESS_BLANK_LINES.sub("\n\n\n", text)
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return text.strip()
