import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from functools import partial
from typing import Callable

import httpx
from aws_lambda_powertools import Logger, Tracer
from botocore.exceptions import ClientError

from .config import Settings
from .errors import DestinationAccessDenied, PublishError
from .models import (
    IMAGE_CONTENT_TYPE,
    BucketPrefix,
    Destination,
    RenderedPage,
    SignedUrl,
    TemporaryCredentials,
)
from .retry import with_retry
from .storage import (
    CONNECTION_ERRORS,
    TIMEOUT_ERRORS,
    S3ClientFactory,
    is_access_denied,
    is_transient,
)

logger = Logger(child=True)
tracer = Tracer()


class ResultPublisher:
    """Uploads rendered pages concurrently and returns their locations in page order.

    Any page that still fails after its retries fails the whole publish.
    Pages already uploaded at that point are left in place.
    """

    def __init__(
        self,
        settings: Settings,
        s3_clients: Callable[[TemporaryCredentials], object] | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._settings = settings
        self._s3_clients = s3_clients or S3ClientFactory(settings, timeout=settings.upload_timeout_seconds)
        self._transport = transport
        self._sleep = sleep

    @tracer.capture_method(capture_response=False)
    def publish(
        self,
        pages: list[RenderedPage],
        destination: Destination,
        credentials: TemporaryCredentials | None = None,
    ) -> list[str]:
        if not pages:
            return []

        if isinstance(destination, SignedUrl):
            with httpx.Client(
                timeout=httpx.Timeout(self._settings.upload_timeout_seconds),
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                return self._upload_all(pages, partial(self._put_url, client, destination))

        if isinstance(destination, BucketPrefix):
            if credentials is None:
                raise PublishError("Temporary credentials are required for bucket/prefix destinations")
            client = self._s3_clients(credentials)
            return self._upload_all(pages, partial(self._put_object, client, destination))

        raise PublishError(f"Unsupported destination type: {type(destination).__name__}")

    def _upload_all(self, pages: list[RenderedPage], upload: Callable[[RenderedPage, bytes], str]) -> list[str]:
        locations: list[str | None] = [None] * len(pages)
        workers = min(self._settings.worker_pool_size, len(pages))
        logger.info(f"Starting upload of {len(pages)} images", extra={"workers": workers})

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload") as executor:
            futures = {executor.submit(self._upload_page, upload, page): index for index, page in enumerate(pages)}
            try:
                for future in as_completed(futures):
                    locations[futures[future]] = future.result()
            except Exception:
                for future in futures:
                    future.cancel()
                raise

        logger.info(f"Uploaded {len(locations)} images")
        return [location for location in locations if location is not None]

    def _upload_page(self, upload: Callable[[RenderedPage, bytes], str], page: RenderedPage) -> str:
        data = page.path.read_bytes()
        location = with_retry(
            partial(upload, page, data),
            max_attempts=self._settings.retry_max_attempts,
            base_delay=self._settings.retry_base_delay_seconds,
            sleep=self._sleep,
            description=f"upload of page {page.page_number}",
        )
        logger.info(f"Uploaded image: {page.key}")
        return location

    def _put_url(self, client: httpx.Client, destination: SignedUrl, page: RenderedPage, data: bytes) -> str:
        number = page.page_number
        try:
            response = client.put(
                destination.object_url(page.key),
                content=data,
                headers={"Content-Type": IMAGE_CONTENT_TYPE},
            )
        except httpx.TimeoutException as exc:
            raise PublishError(f"Timed out uploading page {number}", number, retryable=True) from exc
        except httpx.TransportError as exc:
            raise PublishError(f"Could not connect to destination for page {number}", number, retryable=True) from exc

        status = response.status_code
        if 200 <= status < 300:
            return destination.location(page.key)
        if status in (401, 403):
            raise DestinationAccessDenied(
                f"Access denied uploading page {number}; the URL may be expired or invalid", number
            )
        if status == 429 or status >= 500:
            raise PublishError(f"Destination returned HTTP {status} for page {number}", number, retryable=True)
        raise PublishError(f"Destination returned HTTP {status} for page {number}", number)

    def _put_object(self, client, destination: BucketPrefix, page: RenderedPage, data: bytes) -> str:
        number = page.page_number
        try:
            client.put_object(
                Bucket=destination.bucket,
                Key=page.key,
                Body=data,
                ContentType=IMAGE_CONTENT_TYPE,
            )
        except ClientError as exc:
            if is_access_denied(exc):
                raise DestinationAccessDenied(f"Access denied uploading page {number}", number) from exc
            if is_transient(exc):
                raise PublishError(f"Object store unavailable for page {number}", number, retryable=True) from exc
            raise PublishError(f"Object store rejected page {number}", number) from exc
        except TIMEOUT_ERRORS as exc:
            raise PublishError(f"Timed out uploading page {number}", number, retryable=True) from exc
        except CONNECTION_ERRORS as exc:
            raise PublishError(f"Could not connect to object store for page {number}", number, retryable=True) from exc

        return destination.location(page.key)
