import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app import config
from app.api.routes import extract, upload
from app.api.routes.extract import error_response
from app.services.llm_extractor import is_llm_extraction_available

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Bill Extractor API",
    description="Extracts pagewise line items from medical bills with a multimodal LLM",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register API routes
app.include_router(extract.router, tags=["extract"])
app.include_router(upload.router, tags=["upload"])


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Answer malformed request bodies with the same envelope as other errors."""
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        detail = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        detail = "malformed request"
    logger.warning(f"Rejected request to {request.url.path}: {detail}")
    return error_response(400, f"Invalid request: {detail}")


if not is_llm_extraction_available():
    logger.warning("ANTHROPIC_API_KEY not set, extraction requests will fail until it is configured")


@app.get("/")
async def root():
    return {
        "message": "Bill Extractor API",
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/health")
async def health_check():
    return {"status": "ok", "type": "Web Service"}


if __name__ == "__main__":
    uvicorn.run("app.main:app", host="0.0.0.0", port=config.PORT)
