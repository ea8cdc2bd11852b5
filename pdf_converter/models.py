from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Union
from urllib.parse import urlsplit, urlunsplit

IMAGE_FORMAT = "png"
IMAGE_CONTENT_TYPE = "image/png"


@dataclass(frozen=True)
class SignedUrl:
    url: str

    def object_key(self, unique_id: str, page_number: int) -> str:
        return f"{unique_id}-{page_number}.{IMAGE_FORMAT}"

    def object_url(self, key: str) -> str:
        """Return the upload URL for ``key``: the key appended to the URL path, query kept."""
        parts = urlsplit(self.url)
        path = parts.path if parts.path.endswith("/") else f"{parts.path}/"
        return urlunsplit((parts.scheme, parts.netloc, f"{path}{key}", parts.query, ""))

    def location(self, key: str) -> str:
        parts = urlsplit(self.object_url(key))
        return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


@dataclass(frozen=True)
class BucketKey:
    bucket: str
    key: str


@dataclass(frozen=True)
class BucketPrefix:
    bucket: str
    prefix: str

    def object_key(self, unique_id: str, page_number: int) -> str:
        return f"{self.prefix}page-{page_number}.{IMAGE_FORMAT}"

    def location(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"


Source = Union[SignedUrl, BucketKey]
Destination = Union[SignedUrl, BucketPrefix]


@dataclass(frozen=True)
class TemporaryCredentials:
    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: str = field(repr=False)


@dataclass(frozen=True)
class ConversionRequest:
    unique_id: str
    source: Source
    destination: Destination
    credentials: TemporaryCredentials | None = None
    webhook: str | None = None

    @property
    def uses_signed_urls(self) -> bool:
        return isinstance(self.source, SignedUrl)


@dataclass(frozen=True)
class FetchedDocument:
    path: Path
    size: int
    content_type: str


@dataclass(frozen=True)
class RenderedPage:
    page_number: int
    path: Path
    key: str
    width: int
    height: int


@dataclass(frozen=True)
class RenderOutput:
    pages: list[RenderedPage]
    page_count: int
    dpi: int


@dataclass(frozen=True)
class ConversionResult:
    unique_id: str
    images: list[str]
    page_count: int
    elapsed_ms: int
    dpi: int

    @property
    def metadata(self) -> dict[str, Any]:
        return {
            "pdf_page_count": self.page_count,
            "conversion_dpi": self.dpi,
            "image_format": IMAGE_FORMAT,
        }

    def to_body(self) -> dict[str, Any]:
        return {
            "message": "PDF conversion and upload completed",
            "images": list(self.images),
            "unique_id": self.unique_id,
            "status": "completed",
            "pages_converted": self.page_count,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class AuthContext:
    subject: str | None
    permissions: tuple[str, ...]
    expires_at: int | None
    claims: Mapping[str, Any] = field(default_factory=dict, repr=False)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions
