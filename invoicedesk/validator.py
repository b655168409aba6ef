"""Accept/reject decision over a parsed extraction result.

The extraction model's own verdict is authoritative. Local checks cover
required fields, date ordering and amount sanity. The line-item arithmetic
check only warns.
"""
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .errors import InvalidAmount
from .models import (
    ExtractedInvoice,
    ExtractedLineItem,
    ExtractionResult,
    NormalizedInvoice,
    NormalizedLineItem,
)
from .money import MAX_STORED_INTEGER, to_basis_points, to_minor_units


logger = logging.getLogger(__name__)

UNKNOWN_VALIDATION_ERROR = "Unknown validation error"
DEFAULT_CURRENCY = "USD"
LINE_TOTAL_TOLERANCE = 1  # minor units

REQUIRED_FIELDS = [
    ("invoiceNumber", "invoice number"),
    ("issueDate", "issue date"),
    ("dueDate", "due date"),
    ("totalAmount", "total amount"),
    ("customerName", "customer name"),
    ("vendorName", "vendor name"),
]

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_DATETIME_ADAPTER = TypeAdapter(datetime)


class Accepted(BaseModel):
    invoice: NormalizedInvoice
    warnings: List[str] = Field(default_factory=list)


class Rejected(BaseModel):
    reasons: List[str]


Decision = Union[Accepted, Rejected]


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 date or timestamp into an aware UTC datetime.

    Raises:
        ValidationError: if the value is not a date or timestamp
    """
    parsed = _DATETIME_ADAPTER.validate_python(value.strip())
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _missing_fields(data: ExtractedInvoice) -> List[str]:
    return [
        f"Missing required field: {label}"
        for attr, label in REQUIRED_FIELDS
        if _is_blank(getattr(data, attr))
    ]


def _parse_dates(data: ExtractedInvoice) -> Tuple[Optional[datetime], Optional[datetime], List[str]]:
    reasons = []
    issue_date = due_date = None
    try:
        issue_date = parse_timestamp(data.issueDate)
    except ValidationError:
        reasons.append(f"Invalid issue date: {data.issueDate}")
    try:
        due_date = parse_timestamp(data.dueDate)
    except ValidationError:
        reasons.append(f"Invalid due date: {data.dueDate}")
    return issue_date, due_date, reasons


def _normalize_line_item(
    position: int,
    item: ExtractedLineItem,
    reasons: List[str],
    warnings: List[str],
) -> Optional[NormalizedLineItem]:
    label = f"Line item {position}"
    start = len(reasons)

    if _is_blank(item.description):
        reasons.append(f"{label} is missing a description")

    quantity = None
    if item.quantity is None:
        reasons.append(f"{label} is missing a quantity")
    elif item.quantity <= 0 or not float(item.quantity).is_integer():
        reasons.append(f"{label} has an invalid quantity: {item.quantity}")
    elif item.quantity > MAX_STORED_INTEGER:
        reasons.append(f"{label} has an out-of-range quantity: {item.quantity}")
    else:
        quantity = int(item.quantity)

    amounts = {}
    for attr, field_label in (
        ("unitPrice", "unit price"),
        ("totalPrice", "total price"),
        ("taxAmount", "tax amount"),
    ):
        value = getattr(item, attr)
        if value is None:
            if attr != "taxAmount":
                reasons.append(f"{label} is missing a {field_label}")
            continue
        try:
            amounts[attr] = to_minor_units(value)
        except InvalidAmount:
            reasons.append(f"{label} has an invalid {field_label}: {value}")
            continue
        if amounts[attr] > MAX_STORED_INTEGER:
            reasons.append(f"{label} has an out-of-range {field_label}: {value}")

    tax_rate = None
    if item.taxRate is not None:
        try:
            tax_rate = to_basis_points(item.taxRate)
        except InvalidAmount:
            reasons.append(f"{label} has an invalid tax rate: {item.taxRate}")
        else:
            if tax_rate > MAX_STORED_INTEGER:
                reasons.append(f"{label} has an out-of-range tax rate: {item.taxRate}")

    if len(reasons) > start:
        return None

    expected = quantity * amounts["unitPrice"]
    if abs(expected - amounts["totalPrice"]) > LINE_TOTAL_TOLERANCE:
        warning = (
            f"{label} total {amounts['totalPrice']} does not match "
            f"quantity x unit price {expected}"
        )
        logger.warning(warning)
        warnings.append(warning)

    return NormalizedLineItem(
        description=item.description.strip(),
        quantity=quantity,
        unit_price=amounts["unitPrice"],
        total_price=amounts["totalPrice"],
        tax_rate=tax_rate,
        tax_amount=amounts.get("taxAmount"),
        sku=item.sku,
        category=item.category,
    )


def evaluate(result: ExtractionResult) -> Decision:
    """
    Decide whether an extraction result may be persisted.

    Checks run in order and stop at the first failing stage; all reasons
    found within that stage are reported. Errors the model listed alongside
    a valid verdict are appended to the reasons of a rejection, or returned
    as warnings of an acceptance.

    Args:
        result: Parsed extraction result

    Returns:
        Accepted with the normalized invoice, or Rejected with reasons
    """
    model_errors = [error for error in result.validation.errors if error.strip()]
    if not result.declared_valid or result.data is None:
        return Rejected(reasons=model_errors or [UNKNOWN_VALIDATION_ERROR])

    decision = _check_invoice(result.data)
    if isinstance(decision, Rejected):
        decision.reasons.extend(e for e in model_errors if e not in decision.reasons)
    else:
        for error in model_errors:
            logger.warning("Model reported an error on a valid invoice: %s", error)
        decision.warnings.extend(model_errors)
    return decision


def _check_invoice(data: ExtractedInvoice) -> Decision:
    missing = _missing_fields(data)
    if missing:
        return Rejected(reasons=missing)

    issue_date, due_date, date_errors = _parse_dates(data)
    if date_errors:
        return Rejected(reasons=date_errors)
    if due_date < issue_date:
        return Rejected(reasons=["Due date is before issue date"])

    if data.totalAmount < 0:
        return Rejected(reasons=["Total amount must not be negative"])
    try:
        total_amount = to_minor_units(data.totalAmount)
    except InvalidAmount:
        return Rejected(reasons=[f"Invalid total amount: {data.totalAmount}"])
    if total_amount > MAX_STORED_INTEGER:
        return Rejected(reasons=[f"Total amount is out of range: {data.totalAmount}"])

    currency = (data.currency or DEFAULT_CURRENCY).strip().upper()
    if not _CURRENCY_RE.match(currency):
        return Rejected(reasons=[f"Invalid currency code: {data.currency}"])

    reasons: List[str] = []
    warnings: List[str] = []
    line_items = []
    for position, item in enumerate(data.lineItems, start=1):
        normalized = _normalize_line_item(position, item, reasons, warnings)
        if normalized is not None:
            line_items.append(normalized)
    if reasons:
        return Rejected(reasons=reasons)

    invoice = NormalizedInvoice(
        invoice_number=data.invoiceNumber.strip(),
        issue_date=issue_date,
        due_date=due_date,
        total_amount=total_amount,
        currency=currency,
        customer_name=data.customerName.strip(),
        customer_address=data.customerAddress,
        customer_contact=data.customerContact,
        customer_tax_id=data.customerTaxId,
        vendor_name=data.vendorName.strip(),
        vendor_address=data.vendorAddress,
        vendor_contact=data.vendorContact,
        vendor_tax_id=data.vendorTaxId,
        payment_terms=data.paymentTerms,
        notes=data.notes,
        line_items=line_items,
    )
    return Accepted(invoice=invoice, warnings=warnings)
