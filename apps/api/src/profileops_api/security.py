from __future__ import annotations

import re
from collections.abc import Iterable

_SENSITIVE_ASSIGNMENT_RE = re.compile(
    r"(?i)\b(api[_-]?key|access[_-]?token|token|password|passwd|secret|recovery[_-]?code)\b(\s*[:=]\s*)([^\s,;]+)"
)
_SENSITIVE_QUERY_RE = re.compile(
    r"(?i)([?&](?:api[_-]?key|access[_-]?token|token|password|secret)=)([^&\s]+)"
)
_SENSITIVE_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)([^\s,;\"']+)")

MAX_ERROR_MESSAGE_LENGTH = 500


def redact_sensitive_text(value: str | None, *, secrets: Iterable[str | None] = ()) -> str | None:
    if value is None:
        return None

    redacted = value
    for secret in secrets:
        if secret:
            redacted = redacted.replace(secret, "[REDACTED]")
    redacted = _SENSITIVE_ASSIGNMENT_RE.sub(r"\1\2[REDACTED]", redacted)
    redacted = _SENSITIVE_QUERY_RE.sub(r"\1[REDACTED]", redacted)
    redacted = _SENSITIVE_BEARER_RE.sub(r"\1[REDACTED]", redacted)
    return redacted


def error_message_for_store(value: str, *, secrets: Iterable[str | None] = ()) -> str:
    """Redacted, single-line, length-capped message suitable for ``error_message``."""
    redacted = redact_sensitive_text(value, secrets=secrets) or ""
    flattened = " ".join(redacted.split())
    if len(flattened) > MAX_ERROR_MESSAGE_LENGTH:
        flattened = flattened[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return flattened or "unknown provider error"
