import logging
from fastapi import APIRouter, UploadFile, File
from starlette.concurrency import run_in_threadpool

from app.api.routes.extract import error_response
from app.schemas.bills import BillExtractionResponse, ErrorResponse
from app.services.bill_extractor import extract_uploaded_bill
from app.services.exceptions import BillExtractionError

logger = logging.getLogger(__name__)

router = APIRouter()

ACCEPTED_CONTENT_TYPES = {"application/pdf", "image/png", "image/jpeg", "image/jpg"}


@router.post(
    "/extract-bill-data/upload",
    response_model=BillExtractionResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def extract_uploaded(file: UploadFile = File(...)):
    """Extract line items from an uploaded PDF, PNG or JPEG bill."""
    content_type = (file.content_type or "").split(";")[0].strip().lower()
    if content_type not in ACCEPTED_CONTENT_TYPES:
        return error_response(400, "Invalid file type. Please upload PDF, PNG, or JPEG.")

    content = await file.read()
    if not content:
        return error_response(400, "Uploaded file is empty")

    if content_type == "image/jpg":
        content_type = "image/jpeg"

    try:
        return await run_in_threadpool(extract_uploaded_bill, content, content_type)
    except BillExtractionError as e:
        logger.error(f"Extraction failed for upload {file.filename}: {e}")
        return error_response(500, str(e))
    except Exception as e:
        logger.error(f"Unexpected error during extraction of {file.filename}: {e}", exc_info=True)
        return error_response(500, str(e))
