import time
from functools import partial
from pathlib import Path
from typing import Callable, Iterable

import httpx
from aws_lambda_powertools import Logger, Tracer
from botocore.exceptions import ClientError

from .config import Settings
from .errors import (
    DocumentTooLarge,
    DownloadTimeout,
    FetchError,
    InvalidDocumentFormat,
    SourceAccessDenied,
    SourceNotFound,
    UpstreamError,
)
from .models import BucketKey, FetchedDocument, SignedUrl, Source, TemporaryCredentials
from .retry import with_retry
from .sanitize import sanitize_url
from .storage import (
    CONNECTION_ERRORS,
    TIMEOUT_ERRORS,
    S3ClientFactory,
    is_access_denied,
    is_not_found,
    is_transient,
)

logger = Logger(child=True)
tracer = Tracer()

PDF_MAGIC = b"%PDF-"
USER_AGENT = "PDF-Converter-Service/1.0"
MAX_REDIRECTS = 5
CHUNK_SIZE = 64 * 1024


def _content_length(value) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class DocumentFetcher:
    """Downloads the source PDF into the request's working directory."""

    def __init__(
        self,
        settings: Settings,
        s3_clients: Callable[[TemporaryCredentials], object] | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._s3_clients = s3_clients or S3ClientFactory(settings, timeout=settings.download_timeout_seconds)
        self._transport = transport
        self._sleep = sleep

    @tracer.capture_method(capture_response=False)
    def fetch(self, source: Source, credentials: TemporaryCredentials | None, destination: Path) -> FetchedDocument:
        if isinstance(source, SignedUrl):
            logger.info("Downloading PDF", extra={"source": sanitize_url(source.url)})
            operation = partial(self._fetch_url, source.url, destination)
        elif isinstance(source, BucketKey):
            if credentials is None:
                raise FetchError("Temporary credentials are required for bucket/key sources")
            logger.info("Downloading PDF", extra={"bucket": source.bucket, "key": source.key})
            operation = partial(self._fetch_object, source, credentials, destination)
        else:
            raise FetchError(f"Unsupported source type: {type(source).__name__}")

        document = with_retry(
            operation,
            max_attempts=self._settings.retry_max_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            sleep=self._sleep,
            description="PDF download",
        )
        logger.info("PDF downloaded", extra={"size": document.size, "content_type": document.content_type})
        return document

    def _write_stream(self, chunks: Iterable[bytes], destination: Path, declared_length: int | None) -> int:
        limit = self._settings.max_pdf_bytes
        if declared_length is not None and declared_length > limit:
            raise DocumentTooLarge(f"Source document is {declared_length} bytes, exceeding the limit of {limit} bytes")

        total = 0
        head = b""
        try:
            with destination.open("wb") as fh:
                for chunk in chunks:
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > limit:
                        raise DocumentTooLarge(f"Source document exceeds the limit of {limit} bytes")
                    if len(head) < len(PDF_MAGIC):
                        head += chunk[: len(PDF_MAGIC) - len(head)]
                        if len(head) == len(PDF_MAGIC) and head != PDF_MAGIC:
                            raise InvalidDocumentFormat("Invalid PDF content: missing PDF header")
                    fh.write(chunk)
            if head != PDF_MAGIC:
                raise InvalidDocumentFormat("Invalid PDF content: missing PDF header")
        except Exception:
            destination.unlink(missing_ok=True)
            raise
        return total

    def _check_status(self, status_code: int) -> None:
        if 200 <= status_code < 300:
            return
        if status_code in (401, 403):
            raise SourceAccessDenied("Access denied to source document; the URL may be expired or invalid")
        if status_code == 404:
            raise SourceNotFound("Source document not found")
        if status_code == 429 or status_code >= 500:
            raise UpstreamError(f"Source returned HTTP {status_code}")
        raise FetchError(f"Source returned HTTP {status_code}")

    def _fetch_url(self, url: str, destination: Path) -> FetchedDocument:
        timeout = self._settings.download_timeout_seconds
        try:
            with httpx.Client(
                timeout=httpx.Timeout(timeout),
                follow_redirects=True,
                max_redirects=MAX_REDIRECTS,
                headers={"User-Agent": USER_AGENT},
                transport=self._transport,
            ) as client:
                with client.stream("GET", url) as response:
                    self._check_status(response.status_code)
                    size = self._write_stream(
                        response.iter_bytes(CHUNK_SIZE),
                        destination,
                        _content_length(response.headers.get("content-length")),
                    )
                    content_type = response.headers.get("content-type", "application/octet-stream")
        except httpx.TimeoutException as exc:
            raise DownloadTimeout(f"Timed out downloading source document after {timeout:g}s") from exc
        except httpx.TooManyRedirects as exc:
            raise FetchError(f"Too many redirects (max {MAX_REDIRECTS})") from exc
        except httpx.TransportError as exc:
            raise UpstreamError("Could not connect to source") from exc

        return FetchedDocument(path=destination, size=size, content_type=content_type)

    def _fetch_object(self, source: BucketKey, credentials: TemporaryCredentials, destination: Path) -> FetchedDocument:
        client = self._s3_clients(credentials)
        timeout = self._settings.download_timeout_seconds
        try:
            response = client.get_object(Bucket=source.bucket, Key=source.key)
            body = response["Body"]
            try:
                size = self._write_stream(
                    body.iter_chunks(CHUNK_SIZE),
                    destination,
                    _content_length(response.get("ContentLength")),
                )
            finally:
                body.close()
        except ClientError as exc:
            if is_not_found(exc):
                raise SourceNotFound("Source document not found") from exc
            if is_access_denied(exc):
                raise SourceAccessDenied("Access denied to source document") from exc
            if is_transient(exc):
                raise UpstreamError("Object store is unavailable") from exc
            raise FetchError("Object store rejected the request") from exc
        except TIMEOUT_ERRORS as exc:
            raise DownloadTimeout(f"Timed out downloading source document after {timeout:g}s") from exc
        except CONNECTION_ERRORS as exc:
            raise UpstreamError("Could not connect to object store") from exc

        content_type = response.get("ContentType") or "application/octet-stream"
        return FetchedDocument(path=destination, size=size, content_type=content_type)
