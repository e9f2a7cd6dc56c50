"""JSON log formatter for log aggregation.

Emits each log record as a single-line JSON object that downstream
aggregators can index without regex parsing.

Activate by setting ``PROVISIONER_STRUCTURED_LOGGING=true``.

Output schema per line::

    {
        "timestamp": "2026-10-19T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "provisioner.orchestrator",
        "message": "Job ... reached HEALTHY",
        "job_id": "...",              // present when passed via ``extra``
        "workspace_id": "...",        // present when passed via ``extra``
        "handles": [ ... ],           // present on rollback records
        "exc_info": "Traceback ..."   // present only on exceptions
    }
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

# Attributes copied from ``extra={...}`` into the JSON payload when present.
_CONTEXT_FIELDS: tuple[str, ...] = ("job_id", "workspace_id", "stage", "reason", "handles")


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        """Render *record* as a single JSON line."""
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=str, ensure_ascii=False)
