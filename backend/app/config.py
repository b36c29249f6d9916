"""Environment-driven settings for the bill extraction service."""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# --- Model API ---
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
MAX_OUTPUT_TOKENS = int(os.getenv("MAX_OUTPUT_TOKENS", 8192))

# --- Document fetching ---
FETCH_TIMEOUT_SECONDS = float(os.getenv("FETCH_TIMEOUT_SECONDS", 30.0))
MIN_DOCUMENT_BYTES = int(os.getenv("MIN_DOCUMENT_BYTES", 100))

# --- PDF handling ---
# When enabled, PDFs are rendered page by page to PNG instead of being sent as a document block
RENDER_PDF_PAGES = _env_bool("RENDER_PDF_PAGES")
MAX_PDF_PAGES = int(os.getenv("MAX_PDF_PAGES", 20))
PDF_RENDER_RESOLUTION = int(os.getenv("PDF_RENDER_RESOLUTION", 150))

# --- Server ---
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = int(os.getenv("PORT", 8000))
