"""Root logger configuration and secret redaction.

:func:`configure_logging` installs a single stderr handler, either plain
text or :class:`JSONFormatter`, and attaches :class:`RedactingFilter` so
that tenant API keys, Stripe keys, bearer tokens, and passwords embedded in
connection URIs never reach log output even if a caller slips one into a
message or an exception.
"""

from __future__ import annotations

import logging
import re
import sys

from provisioner.config import Settings
from provisioner.telemetry.json_formatter import JSONFormatter

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_REDACTED = "[REDACTED]"

# Order matters: URI passwords are rewritten in place, the rest are replaced whole.
_URI_PASSWORD_RE = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)(?P<user>[^:/@\s]+):(?P<password>[^@\s]+)@")
_SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b[a-z]{2,8}_[a-f0-9]{64}\b"),
    re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]{8,}\b"),
    re.compile(r"\bwhsec_[A-Za-z0-9]{8,}\b"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/=-]{8,}"),
)


def redact(text: str) -> str:
    """Return *text* with credentials masked."""
    text = _URI_PASSWORD_RE.sub(lambda m: f"{m.group('scheme')}{m.group('user')}:{_REDACTED}@", text)
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub(_REDACTED, text)
    return text


class RedactingFilter(logging.Filter):
    """Mask secrets in the rendered message of every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


def configure_logging(settings: Settings) -> None:
    """Install the provisioner's log handler on the root logger.

    Safe to call more than once; previously installed handlers are replaced.
    """
    handler = logging.StreamHandler(sys.stderr)
    if settings.structured_logging:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT))
    handler.addFilter(RedactingFilter())

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(settings.log_level)

    # httpx logs every request URL at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
