"""Privacy helpers for log output: PII redaction and short session ids."""

import logging
import re

REDACTED = "[REDACTED]"

_REDACTION_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"),  # e-mail
    re.compile(r"Bearer\s+[a-zA-Z0-9._-]+", re.IGNORECASE),
    re.compile(r"ya29\.[a-zA-Z0-9._-]+"),  # OAuth access token
    re.compile(r"UC[a-zA-Z0-9_-]{22}"),  # channel id
]


def redact(text: str) -> str:
    """Replace anything that looks like personal data with [REDACTED]."""
    for pattern in _REDACTION_PATTERNS:
        text = pattern.sub(REDACTED, text)
    return text


def short_id(session_id: str) -> str:
    """Session ids are logged truncated, never in full."""
    return f"{session_id[:8]}..."


class RedactingFilter(logging.Filter):
    """Rewrites each record's rendered message through redact().

    Attach to handlers so every logger in the process is covered.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True
