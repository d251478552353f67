"""
Pytest configuration and shared fixtures.
"""
import asyncio
import os
import sys
from typing import Dict, List, Optional

import pytest

# Add project root to path for imports
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from labsupply.errors import ExtractionError
from labsupply.models import ExtractedFields, ImageUpload

# Smallest valid PNG header; extraction is mocked so the payload only needs to be non-empty
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def make_upload(name: str = "box.png", data: bytes = PNG_BYTES, media_type: str = "image/png") -> ImageUpload:
    return ImageUpload(filename=name, data=data, media_type=media_type)


def make_fields(name: str = "Assay Kit", ref: Optional[str] = "REF-1", lot: Optional[str] = "L100",
                expires: Optional[str] = "2026-12-31") -> ExtractedFields:
    return ExtractedFields(productName=name, refNumber=ref, lotNumber=lot, expirationDate=expires)


class FakeExtractor:
    """
    Scriptable async extractor for controller tests.

    - records the order in which images are started and finished
    - tracks the peak number of concurrent calls
    - ``failures`` maps file name -> exception to raise
    - ``gates`` maps file name -> asyncio.Event the call waits on
    - ``on_start`` is called synchronously with the file name when a call begins
    """

    def __init__(self, delay: float = 0.0, failures: Optional[Dict[str, Exception]] = None):
        self.delay = delay
        self.failures = failures or {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.started: List[str] = []
        self.finished: List[str] = []
        self.active = 0
        self.peak = 0
        self.on_start = None

    async def __call__(self, upload: ImageUpload) -> ExtractedFields:
        self.started.append(upload.filename)
        if self.on_start is not None:
            self.on_start(upload.filename)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            gate = self.gates.get(upload.filename)
            if gate is not None:
                await gate.wait()
            await asyncio.sleep(self.delay)
            if upload.filename in self.failures:
                raise self.failures[upload.filename]
            return make_fields(name=f"Product {upload.filename}")
        finally:
            self.active -= 1
            self.finished.append(upload.filename)


@pytest.fixture
def upload():
    return make_upload()


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


@pytest.fixture
def malformed_error():
    return ExtractionError("Service returned malformed JSON: 'oops'", filename="bad.png")


@pytest.fixture
def mock_openai_response():
    """Mock OpenAI API response structure."""
    class MockUsage:
        def __init__(self):
            self.prompt_tokens = 100
            self.completion_tokens = 50
            self.total_tokens = 150

    class MockMessage:
        def __init__(self, content):
            self.content = content
            self.refusal = None

    class MockChoice:
        def __init__(self, content):
            self.message = MockMessage(content)

    class MockResponse:
        def __init__(self, content='{"productName": "Kit", "refNumber": null, "lotNumber": "A1", "expirationDate": null}'):
            self.choices = [MockChoice(content)]
            self.usage = MockUsage()

    return MockResponse
