"""
Pytest configuration shared by the pdf_converter test suite.

Powertools reads its settings from the environment at import time, so the
defaults below are exported before any pdf_converter module is imported.
"""
from __future__ import annotations

import os

os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "pdf-converter")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "PdfConverter")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")

from dataclasses import dataclass

import pytest

from pdf_converter.config import Settings

from tests.helpers import make_pdf


@pytest.fixture
def settings() -> Settings:
    return Settings(
        conversion_dpi=72,
        retry_base_delay_seconds=0,
        max_pages=5,
        worker_pool_size=3,
    )


@pytest.fixture
def pdf_bytes() -> bytes:
    return make_pdf(2)


@dataclass
class _LambdaContext:
    function_name: str = "pdf-converter"
    memory_limit_in_mb: int = 1024
    invoked_function_arn: str = "arn:aws:lambda:us-east-1:123456789012:function:pdf-converter"
    aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"


@pytest.fixture
def lambda_context() -> _LambdaContext:
    return _LambdaContext()
