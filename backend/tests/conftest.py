"""Pytest fixtures for bill extractor tests."""

import io
import struct
import zlib
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image

from app.services.document_fetcher import DocumentFetcher
from app.services.llm_extractor import EXTRACTION_TOOL_NAME


@pytest.fixture
def pdf_bytes():
    """Bytes that look like a PDF and clear the minimum size check."""
    return b"%PDF-1.4\n" + b"0" * 500


@pytest.fixture
def png_bytes():
    """A real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (64, 64), "white").save(buffer, format="PNG")
    return buffer.getvalue()


def _png_chunk(kind, payload):
    return (
        struct.pack(">I", len(payload))
        + kind
        + payload
        + struct.pack(">I", zlib.crc32(kind + payload) & 0xFFFFFFFF)
    )


@pytest.fixture
def huge_png_bytes():
    """A tiny file whose PNG header claims 30000x30000 pixels."""
    header = struct.pack(">IIBBBBB", 30000, 30000, 8, 2, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + _png_chunk(b"IHDR", header)
        + _png_chunk(b"IDAT", zlib.compress(b"\x00" * 64))
        + _png_chunk(b"IEND", b"")
    )


@pytest.fixture
def real_pdf_bytes():
    """A real single-page PDF."""
    buffer = io.BytesIO()
    Image.new("RGB", (200, 100), "white").save(buffer, format="PDF")
    return buffer.getvalue()


@pytest.fixture
def make_fetcher():
    """Build a DocumentFetcher whose HTTP traffic goes to a handler function."""
    def _make(handler, **kwargs):
        client = httpx.Client(transport=httpx.MockTransport(handler), follow_redirects=True)
        return DocumentFetcher(client=client, **kwargs)
    return _make


@pytest.fixture
def extraction_payload():
    """What the model returns through the extraction tool."""
    return {
        "is_success": True,
        "token_usage": {"total_tokens": 0, "input_tokens": 0, "output_tokens": 0},
        "data": {
            "pagewise_line_items": [
                {
                    "page_no": "1",
                    "page_type": "Bill Detail",
                    "bill_items": [
                        {"item_name": "Consultation Charges", "item_amount": 800.0, "item_rate": 800.0, "item_quantity": 1.0},
                        {"item_name": "CBC Test", "item_amount": 350.0, "item_rate": 0.0, "item_quantity": 0.0},
                    ],
                },
                {
                    "page_no": "2",
                    "page_type": "Pharmacy",
                    "bill_items": [
                        {"item_name": "Paracetamol 500mg", "item_amount": 42.5, "item_rate": 4.25, "item_quantity": 10.0},
                    ],
                },
            ],
            "total_item_count": 3,
        },
    }


class FakeMessages:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.response


class FakeAnthropicClient:
    """Stands in for anthropic.Anthropic; records messages.create calls."""

    def __init__(self, response=None, error=None):
        self.messages = FakeMessages(response=response, error=error)


def make_message(payload, input_tokens=1200, output_tokens=300):
    return SimpleNamespace(
        content=[SimpleNamespace(type="tool_use", name=EXTRACTION_TOOL_NAME, input=payload)],
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
        stop_reason="tool_use",
    )


@pytest.fixture
def fake_client(extraction_payload):
    return FakeAnthropicClient(response=make_message(extraction_payload))
