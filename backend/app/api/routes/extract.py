import logging
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.schemas.bills import BillExtractionResponse, ErrorResponse, ExtractBillRequest
from app.services.bill_extractor import extract_bill_data
from app.services.exceptions import BillExtractionError, InvalidDocumentReference

logger = logging.getLogger(__name__)

router = APIRouter()


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
    )


@router.post(
    "/extract-bill-data",
    response_model=BillExtractionResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
def extract_bill(request: ExtractBillRequest):
    """Extract line items from a bill given as a URL or data URI."""
    if not request.document or not request.document.strip():
        return error_response(400, "No document URL provided")

    try:
        return extract_bill_data(request.document)
    except InvalidDocumentReference as e:
        return error_response(400, str(e))
    except BillExtractionError as e:
        logger.error(f"Extraction failed: {e}")
        return error_response(500, str(e))
    except Exception as e:
        logger.error(f"Unexpected error during extraction: {e}", exc_info=True)
        return error_response(500, str(e))
