import logging

from django.http import HttpResponse, HttpResponseBadRequest
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt

from .conf import DEFAULT_MAX_FIELD_LENGTH, HandlerConfig
from .logfmt import format_fields
from .metadata import extract_metadata
from .report import DecodeError, decode_report
from .validators import (
    InvalidDocumentURIError,
    InvalidResourceError,
    truncate_client_ip,
    truncate_query_string_fragment,
    validate_violation,
)

logger = logging.getLogger(__name__)

LOG_OUTPUT_MESSAGE = "Received CSP violation"

# Fields that may carry query strings or fragments of the reporting page
TRUNCATED_FIELDS = ("document_uri", "referrer", "blocked_uri")


def get_client_ip(request):
    """
    Get the client IP address from the request.
    Handles X-Forwarded-For header for proxied requests.
    """
    x_forwarded_for = request.META.get("HTTP_X_FORWARDED_FOR")
    if x_forwarded_for:
        # Take the first IP in the chain
        ip = x_forwarded_for.split(",")[0].strip()
    else:
        ip = request.META.get("REMOTE_ADDR")
    return ip


def sanitize_string_field(value, max_length=DEFAULT_MAX_FIELD_LENGTH):
    """Limit the length of a string before it is logged."""
    if isinstance(value, str):
        return value[:max_length]
    return value


@method_decorator(csrf_exempt, name="dispatch")
class ViolationReportView(View):
    """
    Receives a single CSP violation report and logs it.

    Only POST is routed to a handler; every other method, OPTIONS
    included, gets a 405 from View.dispatch.
    """

    http_method_names = ["post"]

    # Injected through as_view(); see urls.py
    config = HandlerConfig()
    logger = logger

    def post(self, request, *args, **kwargs):
        config = self.config

        content_length = request.META.get("CONTENT_LENGTH")
        try:
            content_length = int(content_length) if content_length else 0
        except ValueError:
            content_length = 0
        if content_length > config.max_report_size:
            self.logger.warning(f"CSP report too large: {content_length} bytes")
            return HttpResponseBadRequest("Report too large")

        body = request.body
        if len(body) > config.max_report_size:
            self.logger.warning(f"CSP report too large: {len(body)} bytes")
            return HttpResponseBadRequest("Report too large")

        try:
            report = decode_report(body)
        except DecodeError as e:
            self.logger.warning(f"Unable to decode CSP report: {e}")
            return HttpResponseBadRequest("Invalid CSP report")

        try:
            validate_violation(report, config)
        except (InvalidResourceError, InvalidDocumentURIError) as e:
            # Browsers can't act on the response, so the report is still
            # acknowledged
            self.logger.debug(f"Ignoring CSP report: {e}")
            return HttpResponse(status=200)

        fields = self.get_log_fields(request, report)
        self.logger.info(
            "%s",
            format_fields({"message": LOG_OUTPUT_MESSAGE, **fields}),
            extra={"csp_message": LOG_OUTPUT_MESSAGE, "csp_fields": fields},
        )
        return HttpResponse(status=200)

    def get_log_fields(self, request, report):
        config = self.config
        body = report.body

        fields = {
            "document_uri": body.document_uri,
            "referrer": body.referrer,
            "blocked_uri": body.blocked_uri,
            "violated_directive": body.violated_directive,
            "effective_directive": body.effective_directive,
            "original_policy": body.original_policy,
            "disposition": body.disposition,
            "script_sample": body.script_sample,
            "source_file": body.source_file,
            "line_number": body.line_number,
            "column_number": body.column_number,
            "status_code": body.status_code,
        }

        if config.truncate_query_string_fragment:
            for name in TRUNCATED_FIELDS:
                fields[name] = truncate_query_string_fragment(fields[name])

        fields["metadata"] = extract_metadata(request.GET, config.metadata_object)
        fields["path"] = request.path

        if config.log_client_ip or config.log_truncated_client_ip:
            client_ip = get_client_ip(request) or ""
            if config.log_truncated_client_ip:
                client_ip = truncate_client_ip(client_ip)
            fields["client_ip"] = client_ip

        return {
            name: sanitize_string_field(value, config.max_field_length)
            for name, value in fields.items()
        }


@csrf_exempt
def health_check_view(request):
    return HttpResponse(status=200)
