"""Shared builders for the pdf_converter tests."""
from __future__ import annotations

from pathlib import Path

import fitz  # type: ignore
from botocore.exceptions import ClientError

from pdf_converter.models import RenderedPage

SIGNED_QUERY = (
    "X-Amz-Algorithm=AWS4-HMAC-SHA256"
    "&X-Amz-Credential=ASIAEXAMPLEKEY1234%2F20250101%2Fus-east-1%2Fs3%2Faws4_request"
    "&X-Amz-Signature=deadbeefcafe"
)
SOURCE_URL = f"https://source-bucket.s3.us-east-1.amazonaws.com/docs/report.pdf?{SIGNED_QUERY}"
DESTINATION_URL = f"https://dest-bucket.s3.us-east-1.amazonaws.com/output/?{SIGNED_QUERY}"


def make_pdf(pages: int = 2, width: float = 612, height: float = 792) -> bytes:
    """Build a real PDF with `pages` labelled pages."""
    doc = fitz.open()
    for index in range(pages):
        page = doc.new_page(width=width, height=height)
        page.insert_text((72, 72), f"Page {index + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def make_pages(tmp_path: Path, count: int, key_format: str = "job-1-{n}.png") -> list[RenderedPage]:
    pages = []
    for n in range(1, count + 1):
        path = tmp_path / f"page-{n}.png"
        path.write_bytes(f"png-bytes-{n}".encode())
        pages.append(RenderedPage(page_number=n, path=path, key=key_format.format(n=n), width=10, height=10))
    return pages


def client_error(code: str, status: int, operation: str = "GetObject") -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeBody:
    def __init__(self, data: bytes):
        self._data = data
        self.closed = False

    def iter_chunks(self, chunk_size: int = 1024):
        for start in range(0, len(self._data), chunk_size):
            yield self._data[start : start + chunk_size]

    def close(self):
        self.closed = True


class FakeS3:
    """In-memory stand-in for the handful of S3 client calls the pipeline makes."""

    def __init__(self, objects: dict | None = None, errors: list | None = None):
        self.objects = dict(objects or {})
        self.errors = list(errors or [])
        self.bodies: list[FakeBody] = []
        self.puts: list[dict] = []
        self.get_calls = 0

    def _maybe_fail(self):
        if self.errors:
            raise self.errors.pop(0)

    def get_object(self, Bucket, Key):
        self.get_calls += 1
        self._maybe_fail()
        if (Bucket, Key) not in self.objects:
            raise client_error("NoSuchKey", 404)
        data = self.objects[(Bucket, Key)]
        body = FakeBody(data)
        self.bodies.append(body)
        return {"Body": body, "ContentLength": len(data), "ContentType": "application/pdf"}

    def put_object(self, **kwargs):
        self._maybe_fail()
        self.puts.append(kwargs)
        return {"ETag": '"etag"'}
