# /lingoflow/utils/security.py

import re
from typing import Iterable, Optional

# Secret redaction for anything that can end up in an error string, an event
# payload or a log line. Provider keys are request-scoped and must never leak.

REDACTED = "[API_KEY_HIDDEN]"

_BEARER_RE = re.compile(r"Bearer\s+[A-Za-z0-9._\-]{8,}")
_SK_KEY_RE = re.compile(r"sk-[A-Za-z0-9_\-]{20,}")


def redact_secrets(message: Optional[str], secrets: Iterable[Optional[str]] = ()) -> Optional[str]:
    """
    Replaces every known secret (case-insensitive) and every key-shaped
    substring in `message` with a placeholder.
    """
    if not message:
        return message

    sanitized = message
    for secret in secrets:
        if secret:
            sanitized = re.sub(re.escape(secret), REDACTED, sanitized, flags=re.IGNORECASE)

    sanitized = _BEARER_RE.sub(f"Bearer {REDACTED}", sanitized)
    sanitized = _SK_KEY_RE.sub(REDACTED, sanitized)
    return sanitized
