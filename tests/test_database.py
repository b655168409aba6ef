"""Tests for database module"""
import json
import pytest
import uuid
from invoicedesk.database import (
    save_invoice,
    get_invoice_by_id,
    get_invoice_line_items,
    update_invoice_status,
    delete_invoice,
    list_invoices,
)
from invoicedesk.errors import NotFoundError, PersistenceError
from invoicedesk.models import (
    ExtractionResult,
    InvoiceStatus,
    NormalizedLineItem,
)
from invoicedesk.validator import evaluate


@pytest.fixture
def normalized_invoice(sample_invoice_data):
    """Normalized invoice as accepted by the validation gate"""
    decision = evaluate(ExtractionResult.model_validate({
        "validation": {"status": "valid"},
        "data": sample_invoice_data,
    }))
    return decision.invoice


def count_rows(conn, table):
    return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


def test_save_invoice(temp_db, normalized_invoice):
    """Test saving invoice to database"""
    saved = save_invoice(temp_db, normalized_invoice)

    uuid.UUID(saved.id)
    assert saved.status == InvoiceStatus.VALIDATED
    assert saved.created_at.tzinfo is not None
    assert saved.total_amount == 150000
    assert saved.processing_errors is None
    assert count_rows(temp_db, "invoices") == 1
    assert count_rows(temp_db, "invoice_line_items") == 2


def test_saved_invoice_round_trip(temp_db, normalized_invoice):
    """Test stored data equals submitted data apart from generated fields"""
    saved = save_invoice(temp_db, normalized_invoice)

    invoice = get_invoice_by_id(temp_db, saved.id)
    assert invoice.model_dump() == saved.model_dump()
    assert invoice.model_dump(exclude={"id", "created_at", "status", "processing_errors"}) == \
        normalized_invoice.model_dump(exclude={"line_items"})

    line_items = get_invoice_line_items(temp_db, saved.id)
    assert [
        item.model_dump(exclude={"id", "invoice_id"}) for item in line_items
    ] == [item.model_dump() for item in normalized_invoice.line_items]
    assert all(item.invoice_id == saved.id for item in line_items)


def test_line_items_keep_insertion_order(temp_db, normalized_invoice):
    items = [
        NormalizedLineItem(description=f"Item {i}", quantity=1, unit_price=100, total_price=100)
        for i in range(10)
    ]
    saved = save_invoice(temp_db, normalized_invoice.model_copy(update={"line_items": items}))

    descriptions = [item.description for item in get_invoice_line_items(temp_db, saved.id)]
    assert descriptions == [f"Item {i}" for i in range(10)]


def test_each_save_creates_new_invoice(temp_db, normalized_invoice):
    """Test re-uploading the same invoice creates an independent row"""
    first = save_invoice(temp_db, normalized_invoice)
    second = save_invoice(temp_db, normalized_invoice)

    assert first.id != second.id
    assert count_rows(temp_db, "invoices") == 2


def test_save_invoice_is_atomic(temp_db, normalized_invoice):
    """Test a failing line item insert leaves no rows behind"""
    broken = NormalizedLineItem.model_construct(
        description=None, quantity=1, unit_price=100, total_price=100,
        tax_rate=None, tax_amount=None, sku=None, category=None,
    )
    data = normalized_invoice.model_copy(
        update={"line_items": [normalized_invoice.line_items[0], broken]}
    )

    with pytest.raises(PersistenceError):
        save_invoice(temp_db, data)

    assert count_rows(temp_db, "invoices") == 0
    assert count_rows(temp_db, "invoice_line_items") == 0


def test_get_invoice_not_found(temp_db):
    """Test retrieving non-existent invoice"""
    assert get_invoice_by_id(temp_db, "non-existent-id") is None
    assert get_invoice_line_items(temp_db, "non-existent-id") == []


def test_update_invoice_status_invalid_stores_errors(temp_db, normalized_invoice):
    saved = save_invoice(temp_db, normalized_invoice)

    update_invoice_status(temp_db, saved.id, InvoiceStatus.INVALID, ["Duplicate invoice number"])

    invoice = get_invoice_by_id(temp_db, saved.id)
    assert invoice.status == InvoiceStatus.INVALID
    assert invoice.processing_errors == ["Duplicate invoice number"]
    raw = temp_db.execute(
        "SELECT processing_errors FROM invoices WHERE id = ?", [saved.id]
    ).fetchone()[0]
    assert json.loads(raw) == ["Duplicate invoice number"]


def test_update_invoice_status_clears_stale_errors(temp_db, normalized_invoice):
    """Test errors are dropped once the invoice leaves the invalid status"""
    saved = save_invoice(temp_db, normalized_invoice)
    update_invoice_status(temp_db, saved.id, InvoiceStatus.INVALID, ["Wrong total"])

    update_invoice_status(temp_db, saved.id, "processed", ["ignored"])

    invoice = get_invoice_by_id(temp_db, saved.id)
    assert invoice.status == InvoiceStatus.PROCESSED
    assert invoice.processing_errors is None


def test_update_invoice_status_not_found(temp_db):
    with pytest.raises(NotFoundError):
        update_invoice_status(temp_db, "missing", InvoiceStatus.PROCESSED)


def test_delete_invoice_cascades(temp_db, normalized_invoice):
    """Test deleting an invoice removes its line items"""
    kept = save_invoice(temp_db, normalized_invoice)
    removed = save_invoice(temp_db, normalized_invoice)

    delete_invoice(temp_db, removed.id)

    assert get_invoice_by_id(temp_db, removed.id) is None
    assert get_invoice_line_items(temp_db, removed.id) == []
    assert get_invoice_by_id(temp_db, kept.id) is not None
    assert len(get_invoice_line_items(temp_db, kept.id)) == 2


def test_delete_invoice_not_found(temp_db):
    with pytest.raises(NotFoundError):
        delete_invoice(temp_db, "missing")


def test_list_invoices(temp_db, normalized_invoice):
    """Test listing invoices with filters"""
    for i in range(5):
        vendor = "Test Vendor Inc." if i % 2 == 0 else "Other Supplies"
        save_invoice(temp_db, normalized_invoice.model_copy(
            update={"invoice_number": f"INV-{i:03d}", "vendor_name": vendor}
        ))

    invoices, total = list_invoices(temp_db)
    assert total == 5
    assert len(invoices) == 5

    # Test pagination
    invoices, total = list_invoices(temp_db, offset=2, limit=2)
    assert total == 5
    assert len(invoices) == 2

    # Test vendor filter
    invoices, total = list_invoices(temp_db, vendor="test vendor")
    assert total == 3
    assert all(invoice.vendor_name == "Test Vendor Inc." for invoice in invoices)

    # Test status filter
    update_invoice_status(temp_db, invoices[0].id, InvoiceStatus.PROCESSED)
    invoices, total = list_invoices(temp_db, status="processed")
    assert total == 1


def test_storage_failure_raises_persistence_error(temp_db, normalized_invoice):
    temp_db.execute("DROP TABLE invoice_line_items")

    with pytest.raises(PersistenceError):
        save_invoice(temp_db, normalized_invoice)
    with pytest.raises(PersistenceError):
        get_invoice_line_items(temp_db, "any")

    assert count_rows(temp_db, "invoices") == 0
