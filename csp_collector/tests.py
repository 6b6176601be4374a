import io
import json
import logging
import os
import tempfile

from django.core.exceptions import ImproperlyConfigured
from django.http import QueryDict
from django.test import RequestFactory, SimpleTestCase, override_settings
from django.urls import reverse

from .conf import (
    DEFAULT_IGNORED_BLOCKED_URIS,
    HandlerConfig,
    load_blocked_uris,
    trim_empty_and_comments,
)
from .logfmt import JSONFormatter, LogfmtFormatter, format_fields
from .metadata import extract_metadata
from .report import DecodeError, ReportBody, ViolationReport, decode_report
from .validators import (
    InvalidDocumentURIError,
    InvalidResourceError,
    truncate_client_ip,
    truncate_query_string_fragment,
    validate_violation,
)
from .views import ViolationReportView, get_client_ip


def make_report(**fields):
    return ViolationReport(body=ReportBody(**fields))


class LogSink:
    """In-memory logger handed to the view instead of the module logger."""

    def __init__(self, name):
        self.stream = io.StringIO()
        self.logger = logging.getLogger(f"csp_collector.test_sink.{name}")
        self.logger.handlers = []
        handler = logging.StreamHandler(self.stream)
        handler.setFormatter(LogfmtFormatter())
        self.logger.addHandler(handler)
        self.logger.setLevel(logging.INFO)
        self.logger.propagate = False

    def getvalue(self):
        return self.stream.getvalue()


class ReportDecoderTests(SimpleTestCase):
    def test_decode_full_report(self):
        raw = json.dumps(
            {
                "csp-report": {
                    "document-uri": "https://example.com/page",
                    "referrer": "https://example.com/",
                    "violated-directive": "script-src 'self'",
                    "effective-directive": "script-src",
                    "original-policy": "script-src 'self'; report-uri /csp/",
                    "blocked-uri": "https://evil.com/malicious.js",
                    "status-code": 200,
                    "line-number": 42,
                    "unknown-field": "ignored",
                }
            }
        ).encode()

        report = decode_report(raw)

        self.assertEqual(report.body.document_uri, "https://example.com/page")
        self.assertEqual(report.body.blocked_uri, "https://evil.com/malicious.js")
        self.assertEqual(report.body.violated_directive, "script-src 'self'")
        self.assertEqual(report.body.effective_directive, "script-src")
        self.assertEqual(report.body.line_number, 42)
        self.assertEqual(report.body.status_code, 200)

    def test_status_code_as_string_or_number(self):
        for status_code in ("200", 200):
            with self.subTest(status_code=type(status_code).__name__):
                raw = json.dumps({"csp-report": {"status-code": status_code}})
                report = decode_report(raw)
                self.assertEqual(report.body.status_code, status_code)

    def test_null_and_missing_fields_become_empty(self):
        report = decode_report('{"csp-report": {"blocked-uri": null}}')
        self.assertEqual(report.body.blocked_uri, "")
        self.assertEqual(report.body.document_uri, "")
        self.assertIsNone(report.body.status_code)

    def test_truncated_json(self):
        with self.assertRaises(DecodeError) as cm:
            decode_report(b'{"csp-report": {"document-uri": ')
        self.assertIsInstance(cm.exception.error, json.JSONDecodeError)

    def test_wrong_top_level_shape(self):
        for raw in ("[]", '"csp-report"', "{}", '{"csp-report": []}'):
            with self.subTest(raw=raw):
                with self.assertRaises(DecodeError):
                    decode_report(raw)

    def test_deeply_nested_body(self):
        with self.assertRaises(DecodeError) as cm:
            decode_report("[" * 50000 + "]" * 50000)
        self.assertIsInstance(cm.exception.error, RecursionError)

    def test_non_ascii_digits_in_line_number(self):
        report = decode_report(
            '{"csp-report": {"line-number": "\u00b2", "column-number": "7"}}'
        )
        self.assertIsNone(report.body.line_number)
        self.assertEqual(report.body.column_number, 7)

    def test_invalid_utf8(self):
        with self.assertRaises(DecodeError):
            decode_report(b"\xff\xfe{}")

    def test_report_is_immutable(self):
        report = decode_report('{"csp-report": {}}')
        with self.assertRaises(AttributeError):
            report.body.blocked_uri = "changed"


class FilterListTests(SimpleTestCase):
    def test_trim_empty_and_comments(self):
        block_list = [
            "resource://",
            "",
            "# comment",
            "chrome-extension://",
            "",
        ]
        self.assertEqual(
            trim_empty_and_comments(block_list),
            ["resource://", "chrome-extension://"],
        )

    def test_whitespace_only_and_indented_comments(self):
        block_list = ["   ", "  # indented comment", "  opera://  "]
        self.assertEqual(trim_empty_and_comments(block_list), ["opera://"])

    def test_load_blocked_uris(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "filter.txt")
            with open(path, "w", encoding="utf-8") as f:
                f.write("# extensions\nmoz-extension://\n\nlocalhost\n")
            self.assertEqual(
                load_blocked_uris(path), ("moz-extension://", "localhost")
            )

    def test_load_missing_filter_file(self):
        with self.assertRaises(ImproperlyConfigured):
            load_blocked_uris("/nonexistent/csp-filter.txt")


class HandlerConfigTests(SimpleTestCase):
    def test_defaults(self):
        config = HandlerConfig.from_settings()
        self.assertEqual(config.blocked_uris, DEFAULT_IGNORED_BLOCKED_URIS)
        self.assertFalse(config.truncate_query_string_fragment)
        self.assertFalse(config.metadata_object)
        self.assertFalse(config.log_client_ip)

    @override_settings(
        CSP_COLLECTOR_TRUNCATE_QUERY_FRAGMENT=True,
        CSP_COLLECTOR_QUERY_PARAMS_METADATA=True,
        CSP_COLLECTOR_LOG_CLIENT_IP=True,
        CSP_COLLECTOR_MAX_REPORT_SIZE=512,
    )
    def test_toggles_from_settings(self):
        config = HandlerConfig.from_settings()
        self.assertTrue(config.truncate_query_string_fragment)
        self.assertTrue(config.metadata_object)
        self.assertTrue(config.log_client_ip)
        self.assertEqual(config.max_report_size, 512)

    @override_settings(CSP_COLLECTOR_BLOCKED_URIS=["# only these", "opera://", ""])
    def test_blocked_uris_override(self):
        self.assertEqual(HandlerConfig.from_settings().blocked_uris, ("opera://",))

    def test_filter_file_setting(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "filter.txt")
            with open(path, "w", encoding="utf-8") as f:
                f.write("resource://\n# comment\nchrome-extension://\n")
            with self.settings(CSP_COLLECTOR_FILTER_FILE=path):
                config = HandlerConfig.from_settings()
        self.assertEqual(config.blocked_uris, ("resource://", "chrome-extension://"))

    @override_settings(
        CSP_COLLECTOR_FILTER_FILE="/tmp/filter.txt",
        CSP_COLLECTOR_BLOCKED_URIS=["opera://"],
    )
    def test_filter_file_and_list_are_exclusive(self):
        with self.assertRaises(ImproperlyConfigured):
            HandlerConfig.from_settings()

    @override_settings(CSP_COLLECTOR_BLOCKED_URIS="opera://")
    def test_blocked_uris_string_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            HandlerConfig.from_settings()

    @override_settings(CSP_COLLECTOR_MAX_REPORT_SIZE=0)
    def test_non_positive_limits_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            HandlerConfig.from_settings()


class ValidateViolationTests(SimpleTestCase):
    def setUp(self):
        self.config = HandlerConfig()

    def test_invalid_blocked_uris(self):
        for blocked_uri in DEFAULT_IGNORED_BLOCKED_URIS:
            with self.subTest(blocked_uri=blocked_uri):
                report = make_report(
                    document_uri="https://example.com", blocked_uri=blocked_uri
                )
                with self.assertRaises(InvalidResourceError) as cm:
                    validate_violation(report, self.config)
                self.assertEqual(
                    str(cm.exception),
                    f"blocked URI ('{blocked_uri}') is an invalid resource",
                )
                self.assertEqual(cm.exception.uri, blocked_uri)

    def test_noise_entries_match_as_prefix(self):
        report = make_report(
            document_uri="https://example.com",
            blocked_uri="chrome-extension://abcdef/content.js",
        )
        with self.assertRaises(InvalidResourceError):
            validate_violation(report, self.config)

    def test_valid_blocked_uri(self):
        report = make_report(
            document_uri="https://example.com",
            blocked_uri="https://google.com/example.css",
        )
        self.assertIsNone(validate_violation(report, self.config))

    def test_non_http_document_uri(self):
        report = make_report(blocked_uri="http://example.com/", document_uri="about")
        with self.assertRaises(InvalidDocumentURIError) as cm:
            validate_violation(report, self.config)
        self.assertEqual(str(cm.exception), "document URI ('about') is invalid")

    def test_other_schemes_rejected(self):
        for document_uri in ("ftp://example.com/", "https://", "example.com/page"):
            with self.subTest(document_uri=document_uri):
                report = make_report(document_uri=document_uri)
                with self.assertRaises(InvalidDocumentURIError):
                    validate_violation(report, self.config)

    def test_empty_document_uri_accepted(self):
        report = make_report(blocked_uri="https://google.com/example.css")
        self.assertIsNone(validate_violation(report, self.config))

    def test_custom_blocked_uris(self):
        config = HandlerConfig(blocked_uris=("https://cdn.example.com/",))
        report = make_report(blocked_uri="resource://whatever")
        self.assertIsNone(validate_violation(report, config))

        report = make_report(blocked_uri="https://cdn.example.com/app.js")
        with self.assertRaises(InvalidResourceError):
            validate_violation(report, config)


class TruncateTests(SimpleTestCase):
    def test_truncate_query_string_fragment(self):
        cases = [
            ("http://localhost.com/?test#anchor", "http://localhost.com/"),
            ("http://example.invalid", "http://example.invalid"),
            ("http://example.invalid#a", "http://example.invalid"),
            ("http://example.invalid?a", "http://example.invalid"),
            ("http://example.invalid#b?a", "http://example.invalid"),
        ]
        for original, expected in cases:
            with self.subTest(original=original):
                truncated = truncate_query_string_fragment(original)
                self.assertEqual(truncated, expected)
                self.assertEqual(truncate_query_string_fragment(truncated), truncated)

    def test_truncate_client_ip(self):
        self.assertEqual(truncate_client_ip("203.0.113.77"), "203.0.113.0")
        self.assertEqual(
            truncate_client_ip("2001:db8:abcd:12:1:2:3:4"), "2001:db8:abcd:12::"
        )
        self.assertEqual(truncate_client_ip("not-an-ip"), "not-an-ip")


class MetadataTests(SimpleTestCase):
    def test_first_pair_only(self):
        self.assertEqual(
            extract_metadata(QueryDict("metadata=value0&metadata=value1")),
            "metadata=value0",
        )

    def test_object_sorted_by_key(self):
        self.assertEqual(
            extract_metadata(QueryDict("c=d&a=b&a=z"), metadata_object=True),
            "a=b c=d",
        )

    def test_empty_query_string(self):
        self.assertEqual(extract_metadata(QueryDict()), "")
        self.assertEqual(extract_metadata(QueryDict(), metadata_object=True), "")

    def test_percent_encoded_and_empty_keys(self):
        query = QueryDict("=novalue&site=shop%20front&caf%C3%A9=1")
        self.assertEqual(extract_metadata(query), "site=shop front")
        self.assertEqual(
            extract_metadata(query, metadata_object=True), "café=1 site=shop front"
        )

    def test_blank_values_kept(self):
        self.assertEqual(
            extract_metadata(QueryDict("flag&a="), metadata_object=True), "a= flag="
        )


class LogFormattingTests(SimpleTestCase):
    def test_format_fields(self):
        line = format_fields(
            {"path": "/deep/link", "metadata": "a=b c=d", "empty": "", "code": 200}
        )
        self.assertEqual(line, 'path=/deep/link metadata="a=b c=d" empty="" code=200')

    def test_quotes_are_escaped(self):
        self.assertEqual(
            format_fields({"policy": "script-src \"x\""}),
            'policy="script-src \\"x\\""',
        )

    def test_logfmt_formatter(self):
        record = logging.makeLogRecord(
            {
                "levelname": "INFO",
                "msg": "message=hello path=/",
                "csp_fields": {"path": "/"},
            }
        )
        output = LogfmtFormatter().format(record)
        self.assertIn("level=info message=hello path=/", output)
        self.assertTrue(output.startswith("timestamp="))

    def test_logfmt_formatter_plain_record(self):
        record = logging.makeLogRecord({"levelname": "WARNING", "msg": "too large"})
        self.assertIn('message="too large"', LogfmtFormatter().format(record))

    def test_json_formatter(self):
        record = logging.makeLogRecord(
            {
                "levelname": "INFO",
                "msg": "ignored",
                "csp_message": "Received CSP violation",
                "csp_fields": {"path": "/deep/link", "status_code": "200"},
            }
        )
        payload = json.loads(JSONFormatter().format(record))
        self.assertEqual(payload["message"], "Received CSP violation")
        self.assertEqual(payload["level"], "info")
        self.assertEqual(payload["path"], "/deep/link")
        self.assertEqual(payload["status_code"], "200")


class ViolationReportViewTests(SimpleTestCase):
    def setUp(self):
        self.factory = RequestFactory()
        self.payload = json.dumps(
            {
                "csp-report": {
                    "document-uri": "http://example.com",
                    "blocked-uri": "http://example.com",
                }
            }
        )

    def post(self, url, data=None, view=None, **extra):
        request = self.factory.post(
            url,
            data=self.payload if data is None else data,
            content_type="application/csp-report",
            **extra,
        )
        view = view or ViolationReportView.as_view()
        return view(request)

    def test_disallowed_methods(self):
        view = ViolationReportView.as_view()
        for method in ("get", "delete", "put", "trace", "patch", "options", "head"):
            for url in ("/", "/blah"):
                with self.subTest(method=method, url=url):
                    request = getattr(self.factory, method)(url)
                    with self.assertNoLogs("csp_collector", level="DEBUG"):
                        response = view(request)
                    self.assertEqual(response.status_code, 405)

    def test_metadata(self):
        for repeats in (1, 2):
            with self.subTest(repeats=repeats):
                sink = LogSink(f"metadata{repeats}")
                view = ViolationReportView.as_view(logger=sink.logger)
                url = "/?" + "".join(f"metadata=value{i}&" for i in range(repeats))

                response = self.post(url, view=view)

                self.assertEqual(response.status_code, 200)
                output = sink.getvalue()
                self.assertIn("metadata=value0", output)
                self.assertNotIn("metadata=value1", output)

    def test_metadata_object(self):
        sink = LogSink("metadata_object")
        view = ViolationReportView.as_view(
            config=HandlerConfig(metadata_object=True), logger=sink.logger
        )

        response = self.post("/path?c=d&a=b", view=view)

        self.assertEqual(response.status_code, 200)
        self.assertIn('metadata="a=b c=d"', sink.getvalue())

    def test_multiple_type_status_code(self):
        for status_code in ("200", 200):
            with self.subTest(status_code=type(status_code).__name__):
                payload = json.dumps(
                    {
                        "csp-report": {
                            "document-uri": "https://example.com",
                            "status-code": status_code,
                        }
                    }
                )
                with self.assertLogs("csp_collector", level="INFO") as cm:
                    response = self.post("/", data=payload)
                self.assertEqual(response.status_code, 200)
                self.assertIn("status_code=200", cm.output[0])

    def test_logs_path(self):
        with self.assertLogs("csp_collector", level="INFO") as cm:
            response = self.post("/deep/link?metadata=x#ignored")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(cm.records), 1)
        self.assertIn("path=/deep/link ", cm.output[0] + " ")
        self.assertEqual(cm.records[0].csp_fields["path"], "/deep/link")

    def test_logged_fields(self):
        payload = json.dumps(
            {
                "csp-report": {
                    "document-uri": "https://example.com/page",
                    "referrer": "https://example.com/",
                    "violated-directive": "script-src 'self'",
                    "effective-directive": "script-src",
                    "original-policy": "script-src 'self'; report-uri /csp/",
                    "blocked-uri": "https://evil.com/malicious.js",
                }
            }
        )
        with self.assertLogs("csp_collector", level="INFO") as cm:
            self.post("/", data=payload)
        fields = cm.records[0].csp_fields
        self.assertEqual(fields["document_uri"], "https://example.com/page")
        self.assertEqual(fields["blocked_uri"], "https://evil.com/malicious.js")
        self.assertEqual(fields["violated_directive"], "script-src 'self'")
        self.assertEqual(fields["effective_directive"], "script-src")
        self.assertEqual(fields["metadata"], "")
        self.assertNotIn("client_ip", fields)

    def test_malformed_body(self):
        for data in (
            "not valid json",
            '{"csp-report": ',
            "[]",
            "[" * 50000 + "]" * 50000,
        ):
            with self.subTest(data=data[:20]):
                with self.assertLogs("csp_collector", level="DEBUG") as cm:
                    response = self.post("/", data=data)
                self.assertEqual(response.status_code, 400)
                self.assertEqual([r.levelname for r in cm.records], ["WARNING"])
                self.assertFalse(hasattr(cm.records[0], "csp_fields"))

    def test_unparseable_line_number(self):
        payload = json.dumps(
            {
                "csp-report": {
                    "document-uri": "https://example.com",
                    "line-number": "\u00b2",
                }
            }
        )
        with self.assertLogs("csp_collector", level="INFO") as cm:
            response = self.post("/", data=payload)
        self.assertEqual(response.status_code, 200)
        self.assertIsNone(cm.records[0].csp_fields["line_number"])

    def test_non_ascii_query_string(self):
        with self.assertLogs("csp_collector", level="INFO") as cm:
            response = self.post("/?site=caf\u00e9&ref=x")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(cm.records[0].csp_fields["metadata"], "site=caf\u00e9")

    def test_noise_report_not_logged(self):
        payload = json.dumps(
            {
                "csp-report": {
                    "document-uri": "https://example.com",
                    "blocked-uri": "chrome-extension://abcdef",
                }
            }
        )
        with self.assertLogs("csp_collector", level="DEBUG") as cm:
            response = self.post("/", data=payload)
        self.assertEqual(response.status_code, 200)
        self.assertEqual([r.levelname for r in cm.records], ["DEBUG"])
        self.assertIn("is an invalid resource", cm.output[0])

    def test_invalid_document_uri_not_logged(self):
        payload = json.dumps({"csp-report": {"document-uri": "about"}})
        with self.assertNoLogs("csp_collector", level="INFO"):
            response = self.post("/", data=payload)
        self.assertEqual(response.status_code, 200)

    def test_truncate_query_string_fragment(self):
        payload = json.dumps(
            {
                "csp-report": {
                    "document-uri": "https://example.com/page?token=secret#top",
                    "referrer": "https://example.com/?q=1",
                    "blocked-uri": "https://cdn.example.com/a.js?v=2",
                }
            }
        )
        view = ViolationReportView.as_view(
            config=HandlerConfig(truncate_query_string_fragment=True)
        )
        with self.assertLogs("csp_collector", level="INFO") as cm:
            self.post("/", data=payload, view=view)
        fields = cm.records[0].csp_fields
        self.assertEqual(fields["document_uri"], "https://example.com/page")
        self.assertEqual(fields["referrer"], "https://example.com/")
        self.assertEqual(fields["blocked_uri"], "https://cdn.example.com/a.js")
        self.assertNotIn("secret", cm.output[0])

    def test_client_ip(self):
        view = ViolationReportView.as_view(config=HandlerConfig(log_client_ip=True))
        with self.assertLogs("csp_collector", level="INFO") as cm:
            self.post("/", view=view, HTTP_X_FORWARDED_FOR="203.0.113.7, 10.0.0.1")
        self.assertEqual(cm.records[0].csp_fields["client_ip"], "203.0.113.7")

    def test_truncated_client_ip(self):
        view = ViolationReportView.as_view(
            config=HandlerConfig(log_truncated_client_ip=True)
        )
        with self.assertLogs("csp_collector", level="INFO") as cm:
            self.post("/", view=view, REMOTE_ADDR="198.51.100.23")
        self.assertEqual(cm.records[0].csp_fields["client_ip"], "198.51.100.0")

    def test_get_client_ip(self):
        request = self.factory.post("/", REMOTE_ADDR="192.168.1.100")
        self.assertEqual(get_client_ip(request), "192.168.1.100")

    def test_report_too_large(self):
        view = ViolationReportView.as_view(config=HandlerConfig(max_report_size=10))
        with self.assertLogs("csp_collector", level="WARNING") as cm:
            response = self.post("/", view=view)
        self.assertEqual(response.status_code, 400)
        self.assertIn("CSP report too large", cm.output[0])

    def test_long_fields_are_cut(self):
        payload = json.dumps(
            {
                "csp-report": {
                    "document-uri": "https://example.com/" + "x" * 100,
                    "blocked-uri": "https://evil.com/",
                }
            }
        )
        view = ViolationReportView.as_view(config=HandlerConfig(max_field_length=30))
        with self.assertLogs("csp_collector", level="INFO") as cm:
            self.post("/", data=payload, view=view)
        self.assertEqual(len(cm.records[0].csp_fields["document_uri"]), 30)


class URLTests(SimpleTestCase):
    def test_report_endpoint(self):
        payload = {
            "csp-report": {
                "document-uri": "https://example.com/",
                "blocked-uri": "https://evil.com/malicious.js",
            }
        }
        with self.assertLogs("csp_collector", level="INFO"):
            response = self.client.post(
                "/?site=shop",
                data=json.dumps(payload),
                content_type="application/csp-report",
            )
        self.assertEqual(response.status_code, 200)

    def test_report_endpoint_rejects_get(self):
        response = self.client.get("/")
        self.assertEqual(response.status_code, 405)

    def test_report_on_nested_path(self):
        payload = {"csp-report": {"document-uri": "https://example.com/"}}
        with self.assertLogs("csp_collector", level="INFO") as cm:
            response = self.client.post(
                "/deep/link?metadata=x",
                data=json.dumps(payload),
                content_type="application/csp-report",
            )
        self.assertEqual(response.status_code, 200)
        self.assertIn("path=/deep/link", cm.output[0])

    def test_health_check(self):
        self.assertEqual(reverse("csp_health_check"), "/_healthcheck/")
        response = self.client.get(reverse("csp_health_check"))
        self.assertEqual(response.status_code, 200)
