"""Tests for bill_extractor.py - fetch and extract orchestration."""

import base64

import httpx
import pytest

from app import config
from app.services import document_fetcher, llm_extractor
from app.services.bill_extractor import extract_bill_data, extract_uploaded_bill
from app.services.exceptions import ConfigurationError, FetchExhausted, InvalidDocumentReference
from app.services.llm_extractor import LLMExtractor


@pytest.fixture(autouse=True)
def document_blocks_for_pdfs(monkeypatch):
    monkeypatch.setattr(config, "RENDER_PDF_PAGES", False)


class TestExtractBillData:
    """Tests for extract_bill_data."""

    def test_url_flows_to_model(self, make_fetcher, fake_client, pdf_bytes):
        """The downloaded bytes are what the model receives."""
        fetcher = make_fetcher(lambda request: httpx.Response(
            200, content=pdf_bytes, headers={"content-type": "application/pdf"}
        ))

        result = extract_bill_data(
            "https://bills.example.com/bill.pdf",
            fetcher=fetcher,
            extractor=LLMExtractor(client=fake_client),
        )

        assert result.data.total_item_count == 3
        document_block = fake_client.messages.calls[0]["messages"][0]["content"][0]
        assert document_block["source"]["data"] == base64.b64encode(pdf_bytes).decode()

    def test_data_uri_skips_network(self, make_fetcher, fake_client, png_bytes):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        encoded = base64.b64encode(png_bytes).decode()
        result = extract_bill_data(
            f"data:image/png;base64,{encoded}",
            fetcher=make_fetcher(handler),
            extractor=LLMExtractor(client=fake_client),
        )

        assert calls == []
        assert result.is_success is True
        image_block = fake_client.messages.calls[0]["messages"][0]["content"][0]
        assert image_block["source"]["media_type"] == "image/png"

    def test_fetch_failure_skips_model(self, make_fetcher, fake_client):
        fetcher = make_fetcher(lambda request: httpx.Response(404))

        with pytest.raises(FetchExhausted):
            extract_bill_data(
                "https://bills.example.com/bill.pdf",
                fetcher=fetcher,
                extractor=LLMExtractor(client=fake_client),
            )

        assert fake_client.messages.calls == []

    def test_invalid_reference(self, fake_client):
        with pytest.raises(InvalidDocumentReference):
            extract_bill_data("file:///etc/passwd", extractor=LLMExtractor(client=fake_client))

    def test_missing_api_key_fails_before_fetch(self, monkeypatch, make_fetcher):
        """Configuration is checked before any download."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        monkeypatch.setattr(config, "ANTHROPIC_API_KEY", None)
        monkeypatch.setattr(llm_extractor, "_llm_extractor", None)

        with pytest.raises(ConfigurationError):
            extract_bill_data("https://bills.example.com/bill.pdf", fetcher=make_fetcher(handler))

        assert calls == []


class TestExtractUploadedBill:
    def test_upload_uses_declared_type(self, monkeypatch, make_fetcher, fake_client, png_bytes):
        monkeypatch.setattr(document_fetcher, "_document_fetcher", make_fetcher(lambda r: httpx.Response(500)))

        result = extract_uploaded_bill(png_bytes, "image/png", extractor=LLMExtractor(client=fake_client))

        assert result.data.total_item_count == 3
        image_block = fake_client.messages.calls[0]["messages"][0]["content"][0]
        assert image_block["source"]["media_type"] == "image/png"
