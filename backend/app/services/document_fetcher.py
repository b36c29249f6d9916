"""
Resilient document fetcher.

Turns a document reference (a remote URL or an embedded payload) into a
GenerativePart: the raw bytes plus MIME type handed to the extraction model.

Remote documents are retrieved through an ordered chain of strategies:
1. Direct download (only method that guarantees untouched bytes)
2. Image proxy (images only; re-encodes to JPEG, so never used for PDFs)
3-5. Generic forwarding proxies, in order of historical reliability

Strategies run strictly one after another and the first one that returns a
plausible document wins. HTML bodies and tiny bodies count as failures, since
most proxies answer errors with a 200 and an HTML page.
"""

import io
import base64
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union
from urllib.parse import quote, unquote_to_bytes, urlparse

import httpx
from PIL import Image

from app import config
from app.services.exceptions import FetchExhausted, InvalidDocumentReference

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/pdf"
GENERIC_MIME_TYPE = "application/octet-stream"

# Content types that say nothing about the document
GENERIC_CONTENT_TYPES = {
    "",
    "application/octet-stream",
    "binary/octet-stream",
    "application/x-www-form-urlencoded",
}

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")

EXTENSION_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".pdf": "application/pdf",
}


@dataclass(frozen=True)
class RemoteDocument:
    """A document that has to be downloaded."""
    url: str


@dataclass(frozen=True)
class EmbeddedDocument:
    """A document whose bytes the caller already holds (upload or data URI)."""
    data: bytes
    mime_type: Optional[str] = None


DocumentReference = Union[RemoteDocument, EmbeddedDocument]


@dataclass(frozen=True)
class GenerativePart:
    """Normalized payload submitted to the extraction model."""
    data: bytes
    mime_type: str

    def to_base64(self) -> str:
        return base64.standard_b64encode(self.data).decode("utf-8")


Retriever = Callable[[httpx.Client, str], httpx.Response]


def _always(url: str) -> bool:
    return True


@dataclass(frozen=True)
class FetchStrategy:
    """A named way of retrieving a URL, with an applicability predicate."""
    name: str
    retrieve: Retriever
    applies_to: Callable[[str], bool] = _always


class StrategyFailure(Exception):
    """A single retrieval attempt failed. Never leaves the fetcher."""


def _url_path(url: str) -> str:
    return urlparse(url).path.lower()


def looks_like_image_url(url: str) -> bool:
    """True when the URL path ends with a common image extension."""
    return _url_path(url).endswith(IMAGE_EXTENSIONS)


def infer_mime_type_from_url(url: str) -> str:
    """Guess the MIME type from the URL path extension, defaulting to PDF."""
    path = _url_path(url)
    for extension, mime_type in EXTENSION_MIME_TYPES.items():
        if path.endswith(extension):
            return mime_type
    return DEFAULT_MIME_TYPE


def _normalize_content_type(content_type: Optional[str]) -> str:
    if not content_type:
        return ""
    return content_type.split(";")[0].strip().lower()


def resolve_mime_type(url: str, content_type: Optional[str]) -> str:
    """
    Pick the MIME type for a downloaded document.

    The response's declared type wins unless it is generic (octet-stream and
    friends) or missing, in which case the URL extension decides.
    """
    mime_type = _normalize_content_type(content_type)
    if mime_type in GENERIC_CONTENT_TYPES:
        return infer_mime_type_from_url(url)
    return mime_type


def sniff_mime_type(data: bytes) -> Optional[str]:
    """Detect PDFs by magic bytes and images by whatever Pillow can open."""
    if data.startswith(b"%PDF-"):
        return "application/pdf"
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.get_format_mimetype()
    except (OSError, Image.DecompressionBombError):
        return None


def _get(build_url: Callable[[str], str]) -> Retriever:
    """Build a retriever that GETs a URL derived from the document URL."""
    def retrieve(client: httpx.Client, url: str) -> httpx.Response:
        return client.get(build_url(url))
    return retrieve


def _encoded(url: str) -> str:
    return quote(url, safe="")


DEFAULT_STRATEGIES: Tuple[FetchStrategy, ...] = (
    FetchStrategy("Direct", _get(lambda url: url)),
    FetchStrategy(
        "WeServ",
        _get(lambda url: f"https://images.weserv.nl/?url={_encoded(url)}&output=jpg&we&il"),
        applies_to=looks_like_image_url,
    ),
    FetchStrategy("CorsProxy.io", _get(lambda url: f"https://corsproxy.io/?{_encoded(url)}")),
    FetchStrategy("AllOrigins", _get(lambda url: f"https://api.allorigins.win/raw?url={_encoded(url)}")),
    FetchStrategy("ThingProxy", _get(lambda url: f"https://thingproxy.freeboard.io/fetch/{url}")),
)


def parse_document_reference(document: str) -> DocumentReference:
    """
    Turn the `document` string of an API request into a DocumentReference.

    Accepts http(s) URLs and RFC 2397 data URIs
    (``data:[<mime>][;base64],<payload>``).
    """
    document = (document or "").strip()
    if not document:
        raise InvalidDocumentReference("No document URL provided")

    if document[:5].lower() == "data:":
        return _parse_data_uri(document)

    parsed = urlparse(document)
    if parsed.scheme.lower() in ("http", "https") and parsed.netloc:
        return RemoteDocument(url=document)

    raise InvalidDocumentReference(f"Unsupported document reference: {document[:80]}")


def _parse_data_uri(uri: str) -> EmbeddedDocument:
    header, separator, payload = uri[5:].partition(",")
    if not separator:
        raise InvalidDocumentReference("Malformed data URI: missing ',' separator")

    params = header.split(";")
    mime_type = params[0].strip().lower() or None
    is_base64 = any(p.strip().lower() == "base64" for p in params[1:])

    if is_base64:
        try:
            data = base64.b64decode("".join(payload.split()), validate=True)
        except ValueError as e:
            raise InvalidDocumentReference(f"Invalid base64 payload in data URI: {e}") from e
    else:
        data = unquote_to_bytes(payload)

    if not data:
        raise InvalidDocumentReference("Data URI has an empty payload")

    return EmbeddedDocument(data=data, mime_type=mime_type)


class DocumentFetcher:
    """Fetches documents through an ordered, injectable strategy chain."""

    def __init__(
        self,
        strategies: Optional[Sequence[FetchStrategy]] = None,
        client: Optional[httpx.Client] = None,
        timeout: Optional[float] = None,
        min_bytes: Optional[int] = None,
    ):
        self.strategies = tuple(strategies) if strategies is not None else DEFAULT_STRATEGIES
        self.min_bytes = config.MIN_DOCUMENT_BYTES if min_bytes is None else min_bytes
        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=timeout or config.FETCH_TIMEOUT_SECONDS,
            follow_redirects=True,
        )

    def fetch(self, reference: DocumentReference) -> GenerativePart:
        """
        Produce a GenerativePart for a document reference.

        Embedded documents never touch the network. Remote documents go
        through the strategy chain.

        Raises:
            FetchExhausted: every applicable strategy failed
        """
        if isinstance(reference, EmbeddedDocument):
            return self._from_embedded(reference)
        return self._from_url(reference.url)

    def applicable_strategies(self, url: str) -> List[FetchStrategy]:
        return [s for s in self.strategies if s.applies_to(url)]

    def _from_embedded(self, reference: EmbeddedDocument) -> GenerativePart:
        mime_type = _normalize_content_type(reference.mime_type)
        if mime_type in GENERIC_CONTENT_TYPES:
            mime_type = sniff_mime_type(reference.data) or GENERIC_MIME_TYPE
        logger.info(f"Using embedded document ({len(reference.data)} bytes, {mime_type})")
        return GenerativePart(data=reference.data, mime_type=mime_type)

    def _from_url(self, url: str) -> GenerativePart:
        failures: List[Tuple[str, str]] = []

        for strategy in self.applicable_strategies(url):
            logger.info(f"Attempting fetch via {strategy.name}...")
            try:
                part = self._attempt(strategy, url)
            except StrategyFailure as e:
                logger.warning(f"Strategy '{strategy.name}' failed: {e}")
                failures.append((strategy.name, str(e)))
                continue

            logger.info(f"Success fetching via {strategy.name} ({len(part.data)} bytes, {part.mime_type})")
            return part

        raise FetchExhausted(failures)

    def _attempt(self, strategy: FetchStrategy, url: str) -> GenerativePart:
        try:
            response = strategy.retrieve(self.client, url)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise StrategyFailure(f"{type(e).__name__}: {e}") from e

        if not response.is_success:
            raise StrategyFailure(f"HTTP {response.status_code}: {response.reason_phrase}")

        content_type = response.headers.get("content-type", "")
        if "text/html" in content_type.lower():
            raise StrategyFailure("Received HTML instead of binary data (likely an error page)")

        body = response.content
        if len(body) < self.min_bytes:
            raise StrategyFailure(f"Body too small ({len(body)} bytes)")

        return GenerativePart(data=body, mime_type=resolve_mime_type(url, content_type))

    def close(self):
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            self.client.close()

    def __del__(self):
        """Clean up HTTP client."""
        if hasattr(self, "client"):
            self.close()


# Singleton instance
_document_fetcher: Optional[DocumentFetcher] = None
_document_fetcher_lock = threading.Lock()


def get_document_fetcher() -> DocumentFetcher:
    """Get the singleton document fetcher instance."""
    global _document_fetcher
    if _document_fetcher is None:
        with _document_fetcher_lock:
            if _document_fetcher is None:
                _document_fetcher = DocumentFetcher()
    return _document_fetcher
