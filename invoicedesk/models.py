"""Pydantic models for extraction payloads, stored invoices and outcomes"""
from enum import Enum
from typing import Any, List, Optional
from datetime import datetime

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    INVALID = "invalid"
    PROCESSED = "processed"


class ProcessingState(str, Enum):
    RECEIVED = "received"
    EXTRACTING = "extracting"
    PARSED = "parsed"
    VALIDATING = "validating"
    ACCEPTED = "accepted"
    PERSISTED = "persisted"
    REJECTED = "rejected"
    PARSE_ERROR = "parse_error"
    TIMED_OUT = "timed_out"
    EXTRACTION_FAILED = "extraction_failed"
    PERSISTENCE_FAILED = "persistence_failed"


TERMINAL_STATES = frozenset({
    ProcessingState.PERSISTED,
    ProcessingState.REJECTED,
    ProcessingState.PARSE_ERROR,
    ProcessingState.TIMED_OUT,
    ProcessingState.EXTRACTION_FAILED,
    ProcessingState.PERSISTENCE_FAILED,
})


# Shapes emitted by the extraction model. Keys are camelCase on the wire and
# every field is optional so that the validation gate can name what is missing.

class ExtractedLineItem(BaseModel):
    class Config:
        coerce_numbers_to_str = True

    description: Optional[str] = None
    quantity: Optional[float] = None
    unitPrice: Optional[float] = None
    totalPrice: Optional[float] = None
    taxRate: Optional[float] = None  # percent, e.g. 20 for 20%
    taxAmount: Optional[float] = None
    sku: Optional[str] = None
    category: Optional[str] = None


class ExtractedInvoice(BaseModel):
    class Config:
        coerce_numbers_to_str = True

    invoiceNumber: Optional[str] = None
    issueDate: Optional[str] = None
    dueDate: Optional[str] = None
    totalAmount: Optional[float] = None
    currency: Optional[str] = None
    customerName: Optional[str] = None
    customerAddress: Optional[str] = None
    customerContact: Optional[str] = None
    customerTaxId: Optional[str] = None
    vendorName: Optional[str] = None
    vendorAddress: Optional[str] = None
    vendorContact: Optional[str] = None
    vendorTaxId: Optional[str] = None
    paymentTerms: Optional[str] = None
    notes: Optional[str] = None
    lineItems: List[ExtractedLineItem] = []

    @field_validator("lineItems", mode="before")
    @classmethod
    def _null_line_items(cls, value: Any) -> Any:
        return [] if value is None else value


class ModelVerdict(BaseModel):
    status: str
    errors: List[str] = []

    @field_validator("errors", mode="before")
    @classmethod
    def _stringify_errors(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [item if isinstance(item, str) else str(item) for item in value]
        return value


class ExtractionResult(BaseModel):
    validation: ModelVerdict
    data: Optional[ExtractedInvoice] = None

    @property
    def declared_valid(self) -> bool:
        return self.validation.status.strip().lower() == "valid"


# Normalized and persisted shapes. Attributes are snake_case, JSON is camelCase.

class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class NormalizedLineItem(CamelModel):
    description: str
    quantity: int
    unit_price: int
    total_price: int
    tax_rate: Optional[int] = None  # basis points
    tax_amount: Optional[int] = None
    sku: Optional[str] = None
    category: Optional[str] = None


class NormalizedInvoice(CamelModel):
    invoice_number: str
    issue_date: datetime
    due_date: datetime
    total_amount: int
    currency: str = "USD"
    customer_name: str
    customer_address: Optional[str] = None
    customer_contact: Optional[str] = None
    customer_tax_id: Optional[str] = None
    vendor_name: str
    vendor_address: Optional[str] = None
    vendor_contact: Optional[str] = None
    vendor_tax_id: Optional[str] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    original_file_url: Optional[str] = None
    line_items: List[NormalizedLineItem] = []


class Invoice(CamelModel):
    id: str
    created_at: datetime
    invoice_number: str
    issue_date: datetime
    due_date: datetime
    total_amount: int
    currency: str = "USD"
    status: InvoiceStatus = InvoiceStatus.PENDING
    customer_name: str
    customer_address: Optional[str] = None
    customer_contact: Optional[str] = None
    customer_tax_id: Optional[str] = None
    vendor_name: str
    vendor_address: Optional[str] = None
    vendor_contact: Optional[str] = None
    vendor_tax_id: Optional[str] = None
    payment_terms: Optional[str] = None
    notes: Optional[str] = None
    original_file_url: Optional[str] = None
    processing_errors: Optional[List[str]] = None


class InvoiceLineItem(CamelModel):
    id: str
    invoice_id: str
    description: str
    quantity: int
    unit_price: int
    total_price: int
    tax_rate: Optional[int] = None
    tax_amount: Optional[int] = None
    sku: Optional[str] = None
    category: Optional[str] = None


class InvoiceWithLineItems(Invoice):
    line_items: List[InvoiceLineItem] = []


class StatusUpdate(CamelModel):
    status: InvoiceStatus
    errors: Optional[List[str]] = None


class ProcessingOutcome(CamelModel):
    state: ProcessingState
    message: str
    invoice_id: Optional[str] = None
    reasons: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
