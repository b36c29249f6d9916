"""Request and response schemas for medical bill line-item extraction."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class PageType(str, Enum):
    BILL_DETAIL = "Bill Detail"
    FINAL_BILL = "Final Bill"
    PHARMACY = "Pharmacy"


class BillItem(BaseModel):
    """A single charge line on a bill page."""

    item_name: str = Field(..., description="Exactly as mentioned in the bill")
    item_amount: float = Field(..., description="Net amount of the item post discounts")
    item_rate: float = Field(0.0, description="Exactly as mentioned, 0.0 if not present")
    item_quantity: float = Field(0.0, description="Exactly as mentioned, 0.0 if not present")


class PageLineItems(BaseModel):
    page_no: str
    page_type: PageType
    bill_items: List[BillItem] = Field(default_factory=list)

    @field_validator("page_no", mode="before")
    @classmethod
    def _page_no_as_string(cls, value):
        # The model sometimes answers with a bare number
        if isinstance(value, (int, float)):
            return str(int(value))
        return value

    def subtotal(self) -> float:
        return round(sum(item.item_amount for item in self.bill_items), 2)


class TokenUsage(BaseModel):
    total_tokens: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class ExtractionData(BaseModel):
    pagewise_line_items: List[PageLineItems] = Field(default_factory=list)
    total_item_count: int = 0

    def count_items(self) -> int:
        return sum(len(page.bill_items) for page in self.pagewise_line_items)


class BillExtractionResponse(BaseModel):
    is_success: bool
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    data: ExtractionData


class ExtractBillRequest(BaseModel):
    # A missing document is answered with a 400 by the route
    document: Optional[str] = Field(None, description="Document URL or data URI")


class ErrorResponse(BaseModel):
    is_success: bool = False
    error: str
