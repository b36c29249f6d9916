"""
LLM-based bill extraction using Claude's vision and PDF document support.

The fetched document is sent to Claude together with the extraction prompt.
The model is forced to answer through a tool whose input schema is the bill
extraction schema, so the answer always arrives as JSON in that shape.
"""

import io
import json
import base64
import logging
import threading
from typing import Any, Dict, List, Optional

import anthropic
import pdfplumber
from PIL import Image
from pydantic import ValidationError

from app import config
from app.schemas.bills import BillExtractionResponse, TokenUsage
from app.services.document_fetcher import GenerativePart
from app.services.exceptions import (
    ConfigurationError,
    UnsupportedDocumentType,
    UpstreamModelError,
)

logger = logging.getLogger(__name__)

# Image types Claude accepts as-is; other image/* types get transcoded to PNG
SUPPORTED_IMAGE_TYPES = {"image/jpeg", "image/png", "image/gif", "image/webp"}

EXTRACTION_TOOL_NAME = "record_bill_line_items"

EXTRACTION_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "is_success": {"type": "boolean", "description": "Set to true if extraction is successful"},
        "token_usage": {
            "type": "object",
            "properties": {
                "total_tokens": {"type": "integer"},
                "input_tokens": {"type": "integer"},
                "output_tokens": {"type": "integer"},
            },
            "required": ["total_tokens", "input_tokens", "output_tokens"],
        },
        "data": {
            "type": "object",
            "properties": {
                "pagewise_line_items": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "page_no": {"type": "string"},
                            "page_type": {
                                "type": "string",
                                "enum": ["Bill Detail", "Final Bill", "Pharmacy"],
                            },
                            "bill_items": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "properties": {
                                        "item_name": {"type": "string", "description": "Exactly as mentioned in the bill"},
                                        "item_amount": {"type": "number", "description": "Net Amount of the item post discounts"},
                                        "item_rate": {"type": "number", "description": "Exactly as mentioned, 0.0 if not present"},
                                        "item_quantity": {"type": "number", "description": "Exactly as mentioned, 0.0 if not present"},
                                    },
                                    "required": ["item_name", "item_amount", "item_rate", "item_quantity"],
                                },
                            },
                        },
                        "required": ["page_no", "page_type", "bill_items"],
                    },
                },
                "total_item_count": {"type": "integer", "description": "Count of items across all pages"},
            },
            "required": ["pagewise_line_items", "total_item_count"],
        },
    },
    "required": ["is_success", "token_usage", "data"],
}


EXTRACTION_PROMPT = """Role: Senior Financial Auditor.
Task: Extract line items from the medical bill document and record them with the
record_bill_line_items tool, following its schema exactly.

### DATA ACCURACY RULES (HIGHEST PRIORITY):
1. **Rate & Quantity**:
   - IF a specific "Rate" or "Quantity" column exists and has a value, use it.
   - IF the column is empty, missing, or contains "-", **YOU MUST RETURN 0.0**.
   - **NEVER** calculate Rate = Amount / Quantity.
   - **NEVER** assume Quantity = 1 if not explicitly written.

2. **Item Name**:
   - Extract the full description.
   - **CLEANING**: Remove dates (e.g., "12/11/2025") from the start of the description unless the description is ONLY a date.

3. **Item Amount (Crucial)**:
   - This must be the **Net Payable Amount** for that specific line item.
   - **Handling Multiple Amount Columns**:
     - If "Amount" = 0 but "Company Amount" > 0, use "Company Amount" (Insurance Bill).
     - If "Gross" and "Net" exist, use "Net".
     - If "Billed" and "Allowed" exist, use "Allowed".

### EXCLUSION RULES (PREVENT DOUBLE COUNTING):
- **IGNORE** any row that is a summation: "Total", "Sub Total", "Net Amount", "Grand Total", "Total Bill", "Balance", "Due", "Carry Forward".
- **IGNORE** category headers that don't have a distinct price on the same line (e.g. "Pharmacy Charges" header followed by list of drugs -> Ignore the header).

### PAGE TYPES:
- "Pharmacy": Lists of drugs, batches, expiry.
- "Final Bill": Summary of charges by category (e.g. "Room Rent", "Consultation", "Lab").
- "Bill Detail": Chronological or detailed list of services/tests.

Number pages starting from "1" in document order.
Analyze the table structure deeply before extracting."""


def pdf_page_to_base64(page, resolution: int) -> str:
    """Convert a pdfplumber page to a base64-encoded PNG image."""
    img = page.to_image(resolution=resolution)

    # Some PDFs render to RGBA or palette images
    pil_image = img.original
    if pil_image.mode != "RGB":
        pil_image = pil_image.convert("RGB")

    buffer = io.BytesIO()
    pil_image.save(buffer, format="PNG", optimize=True)
    return base64.standard_b64encode(buffer.getvalue()).decode("utf-8")


def render_pdf_pages(data: bytes, max_pages: int, resolution: int) -> List[str]:
    """Render the first `max_pages` pages of a PDF to base64 PNG images."""
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        page_count = len(pdf.pages)
        if page_count > max_pages:
            logger.warning(f"PDF has {page_count} pages, only the first {max_pages} will be sent")
        logger.info(f"Rendering {min(page_count, max_pages)} PDF pages at {resolution} DPI")
        return [pdf_page_to_base64(page, resolution) for page in pdf.pages[:max_pages]]


def transcode_to_png(data: bytes) -> bytes:
    """Re-encode an image Claude cannot read (TIFF, BMP, ...) as RGB PNG."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.mode != "RGB":
                img = img.convert("RGB")
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
            return buffer.getvalue()
    except (OSError, Image.DecompressionBombError) as e:
        raise UnsupportedDocumentType(f"Could not decode image: {e}") from e


def _image_block(media_type: str, data: str) -> Dict[str, Any]:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": media_type, "data": data},
    }


def build_content_blocks(part: GenerativePart, render_pages: Optional[bool] = None) -> List[Dict[str, Any]]:
    """
    Build the message content blocks for a document.

    Args:
        part: The fetched document
        render_pages: Render PDFs page by page instead of sending a document
            block (defaults to config.RENDER_PDF_PAGES)

    Returns:
        Content blocks to place before the extraction prompt
    """
    if render_pages is None:
        render_pages = config.RENDER_PDF_PAGES

    mime_type = part.mime_type

    if mime_type in SUPPORTED_IMAGE_TYPES:
        return [_image_block(mime_type, part.to_base64())]

    if mime_type.startswith("image/"):
        logger.info(f"Transcoding {mime_type} to PNG")
        png = transcode_to_png(part.data)
        return [_image_block("image/png", base64.standard_b64encode(png).decode("utf-8"))]

    if mime_type == "application/pdf":
        if not render_pages:
            return [{
                "type": "document",
                "source": {"type": "base64", "media_type": "application/pdf", "data": part.to_base64()},
            }]

        blocks = []
        for page_num, image_data in enumerate(
            render_pdf_pages(part.data, config.MAX_PDF_PAGES, config.PDF_RENDER_RESOLUTION), start=1
        ):
            blocks.append({"type": "text", "text": f"Page {page_num}:"})
            blocks.append(_image_block("image/png", image_data))
        if not blocks:
            raise UnsupportedDocumentType("PDF has no pages")
        return blocks

    raise UnsupportedDocumentType(f"Unsupported document type: {mime_type}")


class LLMExtractor:
    """Sends a document to Claude and returns the validated extraction."""

    def __init__(
        self,
        client: Optional["anthropic.Anthropic"] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ):
        if client is None:
            api_key = api_key or config.ANTHROPIC_API_KEY
            if not api_key:
                raise ConfigurationError("Server misconfiguration: ANTHROPIC_API_KEY missing")
            client = anthropic.Anthropic(api_key=api_key)

        self.client = client
        self.model = model or config.ANTHROPIC_MODEL
        self.max_tokens = max_tokens or config.MAX_OUTPUT_TOKENS

    def extract(self, part: GenerativePart) -> BillExtractionResponse:
        """
        Extract line items from a document.

        Raises:
            UnsupportedDocumentType: the document cannot be shown to the model
            UpstreamModelError: the API call failed or the answer is unusable
        """
        content = build_content_blocks(part)
        content.append({"type": "text", "text": EXTRACTION_PROMPT})

        logger.info(f"Sending {part.mime_type} document ({len(part.data)} bytes) to {self.model}")
        message = self._call_model(content)

        payload = self._tool_input(message)
        usage = self._token_usage(message)
        result = self._build_response(payload, usage)

        for page in result.data.pagewise_line_items:
            logger.info(
                f"Page {page.page_no} ({page.page_type.value}): "
                f"{len(page.bill_items)} items, subtotal {page.subtotal():.2f}"
            )
        logger.info(
            f"Extraction complete: {result.data.total_item_count} items, "
            f"{usage.total_tokens} tokens"
        )
        return result

    def _call_model(self, content: List[Dict[str, Any]]):
        try:
            return self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=0.0,
                tools=[{
                    "name": EXTRACTION_TOOL_NAME,
                    "description": "Record the line items extracted from the medical bill.",
                    "input_schema": EXTRACTION_SCHEMA,
                }],
                tool_choice={"type": "tool", "name": EXTRACTION_TOOL_NAME},
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise UpstreamModelError(f"Model request failed: {e}") from e

    def _tool_input(self, message) -> Dict[str, Any]:
        for block in message.content:
            if getattr(block, "type", None) == "tool_use" and block.name == EXTRACTION_TOOL_NAME:
                payload = dict(block.input)
                # Nested objects occasionally come back JSON-encoded
                if isinstance(payload.get("data"), str):
                    try:
                        payload["data"] = json.loads(payload["data"])
                    except json.JSONDecodeError as e:
                        raise UpstreamModelError(f"Failed to parse model response: {e}") from e
                return payload

        logger.error(f"No {EXTRACTION_TOOL_NAME} call in model response (stop_reason={getattr(message, 'stop_reason', None)})")
        raise UpstreamModelError("No data returned from the model")

    def _token_usage(self, message) -> TokenUsage:
        usage = getattr(message, "usage", None)
        if usage is None:
            return TokenUsage()
        input_tokens = getattr(usage, "input_tokens", None) or 0
        output_tokens = getattr(usage, "output_tokens", None) or 0
        return TokenUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )

    def _build_response(self, payload: Dict[str, Any], usage: TokenUsage) -> BillExtractionResponse:
        # Token counts always come from the API, never from the model's own JSON
        payload["token_usage"] = usage.model_dump()
        payload.setdefault("is_success", True)

        try:
            result = BillExtractionResponse.model_validate(payload)
        except ValidationError as e:
            logger.error(f"Model response did not match the extraction schema: {e}")
            raise UpstreamModelError(f"Model response did not match the extraction schema: {e}") from e

        counted = result.data.count_items()
        if result.data.total_item_count != counted:
            logger.warning(
                f"Model reported total_item_count={result.data.total_item_count} "
                f"but returned {counted} items; using {counted}"
            )
            result.data.total_item_count = counted

        return result


# Singleton instance
_llm_extractor: Optional[LLMExtractor] = None
_llm_extractor_lock = threading.Lock()


def get_llm_extractor() -> LLMExtractor:
    """
    Get the singleton LLM extractor.

    Raises:
        ConfigurationError: ANTHROPIC_API_KEY is not set
    """
    global _llm_extractor
    if _llm_extractor is None:
        with _llm_extractor_lock:
            if _llm_extractor is None:
                _llm_extractor = LLMExtractor()
    return _llm_extractor


def is_llm_extraction_available() -> bool:
    """Check if LLM extraction is available (API key set)."""
    return bool(config.ANTHROPIC_API_KEY)
