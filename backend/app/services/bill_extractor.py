import logging
from typing import Optional

from app.schemas.bills import BillExtractionResponse
from app.services.document_fetcher import (
    DocumentFetcher,
    DocumentReference,
    EmbeddedDocument,
    get_document_fetcher,
    parse_document_reference,
)
from app.services.llm_extractor import LLMExtractor, get_llm_extractor

logger = logging.getLogger(__name__)


def extract_from_reference(
    reference: DocumentReference,
    fetcher: Optional[DocumentFetcher] = None,
    extractor: Optional[LLMExtractor] = None,
) -> BillExtractionResponse:
    """
    Fetch a document and extract its line items.

    The extractor is resolved before fetching so a missing API key fails
    without touching the network.
    """
    extractor = extractor or get_llm_extractor()
    fetcher = fetcher or get_document_fetcher()

    part = fetcher.fetch(reference)
    return extractor.extract(part)


def extract_bill_data(
    document: str,
    fetcher: Optional[DocumentFetcher] = None,
    extractor: Optional[LLMExtractor] = None,
) -> BillExtractionResponse:
    """Extract line items from a document URL or data URI."""
    reference = parse_document_reference(document)
    if isinstance(reference, EmbeddedDocument):
        logger.info(f"Processing embedded document ({len(reference.data)} bytes)")
    else:
        logger.info(f"Processing document URL: {reference.url}")
    return extract_from_reference(reference, fetcher=fetcher, extractor=extractor)


def extract_uploaded_bill(
    data: bytes,
    mime_type: Optional[str],
    fetcher: Optional[DocumentFetcher] = None,
    extractor: Optional[LLMExtractor] = None,
) -> BillExtractionResponse:
    """Extract line items from uploaded file bytes."""
    logger.info(f"Processing uploaded document ({len(data)} bytes, {mime_type})")
    reference = EmbeddedDocument(data=data, mime_type=mime_type)
    return extract_from_reference(reference, fetcher=fetcher, extractor=extractor)
