"""
Unit tests for DocumentFetcher.

HTTP downloads run against ``httpx.MockTransport``; bucket/key downloads use
an in-memory S3 stand-in that raises real botocore ``ClientError``s.
"""
from __future__ import annotations

from dataclasses import replace

import httpx
import pytest
from botocore.exceptions import EndpointConnectionError, ReadTimeoutError

from pdf_converter.errors import (
    DocumentTooLarge,
    DownloadTimeout,
    FetchError,
    InvalidDocumentFormat,
    SourceAccessDenied,
    SourceNotFound,
    UpstreamError,
)
from pdf_converter.fetcher import USER_AGENT, DocumentFetcher
from pdf_converter.models import BucketKey, SignedUrl, TemporaryCredentials

from tests.helpers import SOURCE_URL, FakeS3, client_error

CREDENTIALS = TemporaryCredentials("ASIAEXAMPLEKEY1234", "secret-access-key", "session-token-value")


class _Recorder:
    def __init__(self, respond):
        self.respond = respond
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def _fetcher(settings, transport=None, s3=None) -> DocumentFetcher:
    return DocumentFetcher(
        settings,
        s3_clients=(lambda credentials: s3) if s3 is not None else None,
        transport=transport,
        sleep=lambda _: None,
    )


# --- signed URLs --------------------------------------------------------------


def test_downloads_pdf_from_signed_url(settings, pdf_bytes, tmp_path):
    recorder = _Recorder(
        lambda request: httpx.Response(200, content=pdf_bytes, headers={"Content-Type": "application/pdf"})
    )
    destination = tmp_path / "source.pdf"

    document = _fetcher(settings, httpx.MockTransport(recorder)).fetch(SignedUrl(SOURCE_URL), None, destination)

    assert document.path == destination
    assert document.size == len(pdf_bytes)
    assert document.content_type == "application/pdf"
    assert destination.read_bytes() == pdf_bytes
    assert recorder.requests[0].headers["User-Agent"] == USER_AGENT


def test_content_type_is_not_trusted(settings, tmp_path):
    recorder = _Recorder(
        lambda request: httpx.Response(200, content=b"<html>login</html>", headers={"Content-Type": "application/pdf"})
    )
    destination = tmp_path / "source.pdf"

    with pytest.raises(InvalidDocumentFormat) as exc_info:
        _fetcher(settings, httpx.MockTransport(recorder)).fetch(SignedUrl(SOURCE_URL), None, destination)

    assert exc_info.value.status_code == 422
    assert not destination.exists()
    assert len(recorder.requests) == 1


def test_pdf_magic_is_accepted_whatever_the_content_type(settings, pdf_bytes, tmp_path):
    recorder = _Recorder(
        lambda request: httpx.Response(200, content=pdf_bytes, headers={"Content-Type": "binary/octet-stream"})
    )

    document = _fetcher(settings, httpx.MockTransport(recorder)).fetch(
        SignedUrl(SOURCE_URL), None, tmp_path / "source.pdf"
    )

    assert document.size == len(pdf_bytes)


def test_declared_length_over_limit_is_rejected(settings, pdf_bytes, tmp_path):
    settings = replace(settings, max_pdf_bytes=100)
    recorder = _Recorder(lambda request: httpx.Response(200, content=pdf_bytes))

    with pytest.raises(DocumentTooLarge):
        _fetcher(settings, httpx.MockTransport(recorder)).fetch(SignedUrl(SOURCE_URL), None, tmp_path / "source.pdf")


def test_streamed_body_over_limit_is_rejected(settings, tmp_path):
    settings = replace(settings, max_pdf_bytes=100)
    chunks = [b"%PDF-1.7\n", b"x" * 64, b"x" * 64]
    recorder = _Recorder(lambda request: httpx.Response(200, content=iter(chunks)))
    destination = tmp_path / "source.pdf"

    with pytest.raises(DocumentTooLarge) as exc_info:
        _fetcher(settings, httpx.MockTransport(recorder)).fetch(SignedUrl(SOURCE_URL), None, destination)

    assert exc_info.value.status_code == 400
    assert not destination.exists()


@pytest.mark.parametrize(
    "status, error, attempts",
    [
        (403, SourceAccessDenied, 1),
        (401, SourceAccessDenied, 1),
        (404, SourceNotFound, 1),
        (400, FetchError, 1),
        (503, UpstreamError, 3),
    ],
)
def test_http_errors_are_classified(settings, tmp_path, status, error, attempts):
    recorder = _Recorder(lambda request: httpx.Response(status, content=b"<Error/>"))

    with pytest.raises(error):
        _fetcher(settings, httpx.MockTransport(recorder)).fetch(SignedUrl(SOURCE_URL), None, tmp_path / "source.pdf")

    assert len(recorder.requests) == attempts


def test_timeouts_are_retried_then_reported(settings, tmp_path):
    def respond(request):
        raise httpx.ReadTimeout("timed out", request=request)

    recorder = _Recorder(respond)

    with pytest.raises(DownloadTimeout) as exc_info:
        _fetcher(settings, httpx.MockTransport(recorder)).fetch(SignedUrl(SOURCE_URL), None, tmp_path / "source.pdf")

    assert exc_info.value.status_code == 504
    assert len(recorder.requests) == settings.retry_max_attempts


def test_transient_failure_recovers_on_retry(settings, pdf_bytes, tmp_path):
    responses = [httpx.Response(500), httpx.Response(200, content=pdf_bytes)]
    recorder = _Recorder(lambda request: responses.pop(0))

    document = _fetcher(settings, httpx.MockTransport(recorder)).fetch(
        SignedUrl(SOURCE_URL), None, tmp_path / "source.pdf"
    )

    assert document.size == len(pdf_bytes)
    assert len(recorder.requests) == 2


def test_redirects_are_followed(settings, pdf_bytes, tmp_path):
    def respond(request):
        if request.url.path == "/docs/report.pdf":
            return httpx.Response(307, headers={"Location": "https://mirror.s3.amazonaws.com/report.pdf"})
        return httpx.Response(200, content=pdf_bytes)

    recorder = _Recorder(respond)

    document = _fetcher(settings, httpx.MockTransport(recorder)).fetch(
        SignedUrl(SOURCE_URL), None, tmp_path / "source.pdf"
    )

    assert document.size == len(pdf_bytes)
    assert [r.url.host for r in recorder.requests] == ["source-bucket.s3.us-east-1.amazonaws.com", "mirror.s3.amazonaws.com"]


# --- bucket/key ---------------------------------------------------------------


def test_downloads_pdf_from_bucket(settings, pdf_bytes, tmp_path):
    s3 = FakeS3(objects={("source-bucket", "docs/report.pdf"): pdf_bytes})

    document = _fetcher(settings, s3=s3).fetch(
        BucketKey("source-bucket", "docs/report.pdf"), CREDENTIALS, tmp_path / "source.pdf"
    )

    assert document.size == len(pdf_bytes)
    assert document.content_type == "application/pdf"
    assert s3.bodies[0].closed


def test_bucket_source_requires_credentials(settings, tmp_path):
    with pytest.raises(FetchError, match="credentials"):
        _fetcher(settings, s3=FakeS3()).fetch(BucketKey("source-bucket", "doc.pdf"), None, tmp_path / "source.pdf")


@pytest.mark.parametrize(
    "exc, error, attempts",
    [
        (client_error("NoSuchKey", 404), SourceNotFound, 1),
        (client_error("AccessDenied", 403), SourceAccessDenied, 1),
        (client_error("ExpiredToken", 400), SourceAccessDenied, 1),
        (client_error("SlowDown", 503), UpstreamError, 3),
        (client_error("InvalidRequest", 400), FetchError, 1),
        (ReadTimeoutError(endpoint_url="https://s3.amazonaws.com"), DownloadTimeout, 3),
        (EndpointConnectionError(endpoint_url="https://s3.amazonaws.com"), UpstreamError, 3),
    ],
)
def test_object_store_errors_are_classified(settings, tmp_path, exc, error, attempts):
    s3 = FakeS3(errors=[exc] * 3)

    with pytest.raises(error):
        _fetcher(settings, s3=s3).fetch(BucketKey("source-bucket", "doc.pdf"), CREDENTIALS, tmp_path / "source.pdf")

    assert s3.get_calls == attempts


def test_object_without_pdf_header_is_rejected(settings, tmp_path):
    s3 = FakeS3(objects={("source-bucket", "doc.pdf"): b"PK\x03\x04 zip archive"})

    with pytest.raises(InvalidDocumentFormat):
        _fetcher(settings, s3=s3).fetch(BucketKey("source-bucket", "doc.pdf"), CREDENTIALS, tmp_path / "source.pdf")

    assert s3.bodies[0].closed
