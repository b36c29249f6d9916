"""Errors raised by the extraction services and translated by the API routes."""

from typing import List, Tuple


class BillExtractionError(Exception):
    """Base class for every failure surfaced to API callers."""


class InvalidDocumentReference(BillExtractionError, ValueError):
    """The document string is neither an http(s) URL nor a valid data URI."""


class FetchExhausted(BillExtractionError):
    """Every applicable fetch strategy failed."""

    def __init__(self, failures: List[Tuple[str, str]]):
        self.failures = list(failures)
        details = "\n".join(f"{name}: {reason}" for name, reason in self.failures)
        super().__init__(
            f"Failed to fetch document. Tried {len(self.failures)} methods.\nDetails:\n{details}"
        )


class UnsupportedDocumentType(BillExtractionError):
    """The document bytes are of a type the model cannot read."""


class ConfigurationError(BillExtractionError):
    """Required configuration (the model API key) is missing."""


class UpstreamModelError(BillExtractionError):
    """The hosted model call failed or returned an unusable answer."""
