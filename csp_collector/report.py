import json
from dataclasses import dataclass, field
from typing import Optional, Union

# Wire name -> attribute name for the string fields of a CSP report body
STRING_FIELDS = {
    "document-uri": "document_uri",
    "referrer": "referrer",
    "blocked-uri": "blocked_uri",
    "violated-directive": "violated_directive",
    "effective-directive": "effective_directive",
    "original-policy": "original_policy",
    "disposition": "disposition",
    "script-sample": "script_sample",
    "source-file": "source_file",
}

INTEGER_FIELDS = {
    "line-number": "line_number",
    "column-number": "column_number",
}


class DecodeError(ValueError):
    """Raised when a request body is not a ``{"csp-report": {...}}`` document."""

    def __init__(self, message, error=None):
        super().__init__(message)
        self.error = error


@dataclass(frozen=True)
class ReportBody:
    document_uri: str = ""
    referrer: str = ""
    blocked_uri: str = ""
    violated_directive: str = ""
    effective_directive: str = ""
    original_policy: str = ""
    disposition: str = ""
    script_sample: str = ""
    source_file: str = ""
    line_number: Optional[int] = None
    column_number: Optional[int] = None
    # Browsers send this either as a string or as a number
    status_code: Union[str, int, None] = None


@dataclass(frozen=True)
class ViolationReport:
    body: ReportBody = field(default_factory=ReportBody)


def _string_value(value):
    if value is None:
        return ""
    if not isinstance(value, str):
        return str(value)
    return value


def _integer_value(value):
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _status_code_value(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def decode_report(raw):
    """
    Decode a raw request body into a ViolationReport.
    Raises DecodeError for anything that is not a JSON object holding a
    "csp-report" object.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"report body is not valid UTF-8: {e}", e) from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid JSON in report body: {e}", e) from e
    except RecursionError as e:
        raise DecodeError("report body is nested too deeply", e) from e

    if not isinstance(data, dict):
        raise DecodeError(f"expected a JSON object, got {type(data).__name__}")

    report = data.get("csp-report")
    if not isinstance(report, dict):
        raise DecodeError("report body has no 'csp-report' object")

    values = {
        attr: _string_value(report.get(key)) for key, attr in STRING_FIELDS.items()
    }
    values.update(
        {attr: _integer_value(report.get(key)) for key, attr in INTEGER_FIELDS.items()}
    )
    values["status_code"] = _status_code_value(report.get("status-code"))

    return ViolationReport(body=ReportBody(**values))
