"""Conversion pipeline: fetch, render, publish, then notify.

Each stage raises a ``ConversionError`` subclass on failure, which ends the
pipeline. All local artifacts live in one temporary directory per request and
are removed on every exit path. The webhook is dispatched in the background for
both outcomes and never affects the result.
"""

import tempfile
import time
from pathlib import Path
from typing import Any, Callable

from aws_lambda_powertools import Logger, Tracer

from .config import Settings
from .errors import ConversionError, PublishError
from .fetcher import DocumentFetcher
from .models import ConversionRequest, ConversionResult
from .notifier import WebhookNotifier
from .publisher import ResultPublisher
from .renderer import PageRenderer
from .sanitize import sanitize_credentials

logger = Logger(child=True)
tracer = Tracer()


def failure_payload(request: ConversionRequest, exc: Exception, processing_time_ms: int) -> dict[str, Any]:
    if isinstance(exc, ConversionError):
        message, stage = exc.public_message(), exc.stage
    else:
        message, stage = "Internal server error", "processing"
    return {
        "unique_id": request.unique_id,
        "status": "failed",
        "error": message,
        "details": {"stage": stage, "error_type": type(exc).__name__},
        "processing_time_ms": processing_time_ms,
    }


def success_payload(result: ConversionResult) -> dict[str, Any]:
    return {**result.to_body(), "processing_time_ms": result.elapsed_ms}


class ConversionService:
    def __init__(
        self,
        fetcher: DocumentFetcher,
        renderer: PageRenderer,
        publisher: ResultPublisher,
        notifier: WebhookNotifier,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetcher = fetcher
        self._renderer = renderer
        self._publisher = publisher
        self._notifier = notifier
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConversionService":
        return cls(
            fetcher=DocumentFetcher(settings),
            renderer=PageRenderer(settings),
            publisher=ResultPublisher(settings),
            notifier=WebhookNotifier(settings),
        )

    def wait_for_notifications(self, timeout: float) -> bool:
        """Block until background webhook deliveries finish or ``timeout`` elapses."""
        return self._notifier.drain(timeout)

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    @tracer.capture_method(capture_response=False)
    def process(self, request: ConversionRequest) -> ConversionResult:
        started = self._clock()
        logger.append_keys(unique_id=request.unique_id)
        logger.info(
            "Processing conversion request",
            extra={
                "mode": "signed_url" if request.uses_signed_urls else "bucket_key",
                "credentials": sanitize_credentials(request.credentials),
                "webhook": bool(request.webhook),
            },
        )

        try:
            result = self._convert(request, started)
        except Exception as exc:
            self._notifier.dispatch(request.webhook, failure_payload(request, exc, self._elapsed_ms(started)))
            raise

        logger.info(
            "Conversion completed",
            extra={"pages_converted": result.page_count, "elapsed_ms": result.elapsed_ms},
        )
        self._notifier.dispatch(request.webhook, success_payload(result))
        return result

    def _convert(self, request: ConversionRequest, started: float) -> ConversionResult:
        with tempfile.TemporaryDirectory(prefix=f"pdf-converter-{request.unique_id}-") as workdir:
            workdir = Path(workdir)
            document = self._fetcher.fetch(request.source, request.credentials, workdir / "source.pdf")
            output = self._renderer.render(document.path, workdir, request)
            images = self._publisher.publish(output.pages, request.destination, request.credentials)

        if len(images) != output.page_count:
            raise PublishError(f"Uploaded {len(images)} images for {output.page_count} pages")

        return ConversionResult(
            unique_id=request.unique_id,
            images=images,
            page_count=output.page_count,
            elapsed_ms=self._elapsed_ms(started),
            dpi=output.dpi,
        )
