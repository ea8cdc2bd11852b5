import time
from pathlib import Path
from typing import Callable

import fitz  # type: ignore
from aws_lambda_powertools import Logger, Tracer

from .config import Settings
from .errors import ConversionTimeout, PageRenderError, RenderError, TooManyPages
from .models import ConversionRequest, RenderedPage, RenderOutput

logger = Logger(child=True)
tracer = Tracer()

PDF_BASE_DPI = 72


class PageRenderer:
    """Rasterizes every page of a PDF to PNG, all or nothing.

    Pages are rendered one at a time in page order: a PyMuPDF document must
    not be shared across threads.
    """

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.monotonic):
        self._settings = settings
        self._clock = clock

    @tracer.capture_method(capture_response=False)
    def render(self, document_path: Path, output_dir: Path, request: ConversionRequest) -> RenderOutput:
        dpi = self._settings.conversion_dpi
        max_pages = self._settings.max_pages

        try:
            pdf_document = fitz.open(document_path, filetype="pdf")
        except Exception as exc:
            raise RenderError("Unable to open PDF document") from exc

        try:
            if pdf_document.needs_pass:
                raise RenderError("PDF document is password protected")

            page_count = pdf_document.page_count
            if page_count == 0:
                raise RenderError("PDF has no pages")
            if page_count > max_pages:
                raise TooManyPages(f"PDF has {page_count} pages, exceeding maximum of {max_pages}")

            logger.info(f"Starting conversion of {page_count} pages at {dpi} DPI")

            deadline = self._clock() + self._settings.render_timeout_seconds
            matrix = fitz.Matrix(dpi / PDF_BASE_DPI, dpi / PDF_BASE_DPI)
            pages = []
            for page_index in range(page_count):
                pages.append(self._render_page(pdf_document, page_index, matrix, output_dir, request))
                logger.debug(f"Converted page {page_index + 1}/{page_count}")
                # Checked after every page, the last one included.
                if self._clock() > deadline:
                    raise ConversionTimeout(
                        f"Rendering exceeded {self._settings.render_timeout_seconds:g}s "
                        f"after {page_index + 1} of {page_count} pages"
                    )
        finally:
            pdf_document.close()

        return RenderOutput(pages=pages, page_count=page_count, dpi=dpi)

    def _render_page(self, pdf_document, page_index: int, matrix, output_dir: Path, request: ConversionRequest) -> RenderedPage:
        page_number = page_index + 1
        image_path = output_dir / f"page-{page_number}.png"

        try:
            page = pdf_document[page_index]
            pix = page.get_pixmap(matrix=matrix)
            image_path.write_bytes(pix.pil_tobytes(format="PNG", compress_level=self._settings.png_compression))
        except Exception as exc:
            logger.exception(f"Failed to render page {page_number}")
            raise PageRenderError(f"Failed to render page {page_number}", page_number) from exc

        return RenderedPage(
            page_number=page_number,
            path=image_path,
            key=request.destination.object_key(request.unique_id, page_number),
            width=pix.width,
            height=pix.height,
        )
