import json
import logging
import re
from datetime import datetime, timezone

# Values made only of these characters are written without quotes
_BARE_VALUE = re.compile(r"^[A-Za-z0-9\-._/@^+:,;()'%!*~&?#\[\]]+$")


def format_value(value):
    if value is None:
        value = ""
    elif not isinstance(value, str):
        value = str(value)
    if _BARE_VALUE.match(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    escaped = escaped.replace("\n", "\\n").replace("\r", "\\r")
    return f'"{escaped}"'


def format_fields(fields):
    """Render a mapping as space separated key=value pairs."""
    return " ".join(f"{key}={format_value(value)}" for key, value in fields.items())


def _timestamp(record):
    created = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return created.isoformat(timespec="milliseconds")


class LogfmtFormatter(logging.Formatter):
    """
    Text output. Violation records already carry a key=value message; any
    other record gets its message quoted under "message".
    """

    def format(self, record: logging.LogRecord) -> str:
        prefix = format_fields(
            {
                "timestamp": _timestamp(record),
                "level": record.levelname.lower(),
            }
        )
        if hasattr(record, "csp_fields"):
            line = f"{prefix} {record.getMessage()}"
        else:
            line = f"{prefix} {format_fields({'message': record.getMessage()})}"
        if record.exc_info:
            line = f"{line} {format_fields({'error': self.formatException(record.exc_info)})}"
        return line


class JSONFormatter(logging.Formatter):
    """One JSON object per line, violation fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _timestamp(record),
            "level": record.levelname.lower(),
            "message": getattr(record, "csp_message", None) or record.getMessage(),
        }
        payload.update(getattr(record, "csp_fields", {}))
        if record.exc_info:
            payload["error"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)

