"""DuckDB persistence for accepted invoices and their line items"""
import os
import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, List, Tuple
from pathlib import Path

import duckdb

from .errors import NotFoundError, PersistenceError
from .models import (
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    NormalizedInvoice,
)


logger = logging.getLogger(__name__)

DB_PATH = Path(os.getenv("INVOICEDESK_DB_PATH", "invoices.duckdb"))

INVOICE_COLUMNS = [
    "id", "created_at", "invoice_number", "issue_date", "due_date",
    "total_amount", "currency", "status",
    "customer_name", "customer_address", "customer_contact", "customer_tax_id",
    "vendor_name", "vendor_address", "vendor_contact", "vendor_tax_id",
    "payment_terms", "notes", "original_file_url", "processing_errors",
]

LINE_ITEM_COLUMNS = [
    "id", "invoice_id", "description", "quantity", "unit_price",
    "total_price", "tax_rate", "tax_amount", "sku", "category",
]


def init_database(db_path=None) -> duckdb.DuckDBPyConnection:
    """Initialize database and create tables if they don't exist"""
    conn = duckdb.connect(str(db_path if db_path is not None else DB_PATH))

    conn.execute("""
        CREATE TABLE IF NOT EXISTS invoices (
            id VARCHAR PRIMARY KEY,
            created_at TIMESTAMP NOT NULL,
            invoice_number VARCHAR NOT NULL,
            issue_date TIMESTAMP NOT NULL,
            due_date TIMESTAMP NOT NULL,
            total_amount BIGINT NOT NULL CHECK (total_amount >= 0),
            currency VARCHAR NOT NULL DEFAULT 'USD',
            status VARCHAR NOT NULL DEFAULT 'pending',
            customer_name VARCHAR NOT NULL,
            customer_address VARCHAR,
            customer_contact VARCHAR,
            customer_tax_id VARCHAR,
            vendor_name VARCHAR NOT NULL,
            vendor_address VARCHAR,
            vendor_contact VARCHAR,
            vendor_tax_id VARCHAR,
            payment_terms VARCHAR,
            notes VARCHAR,
            original_file_url VARCHAR,
            processing_errors JSON
        )
    """)

    # Line items are written and deleted only together with their invoice;
    # DuckDB has no ON DELETE CASCADE, so there is no FOREIGN KEY clause.
    conn.execute("""
        CREATE TABLE IF NOT EXISTS invoice_line_items (
            id VARCHAR PRIMARY KEY,
            invoice_id VARCHAR NOT NULL,
            position INTEGER NOT NULL,
            description VARCHAR NOT NULL,
            quantity BIGINT NOT NULL,
            unit_price BIGINT NOT NULL,
            total_price BIGINT NOT NULL,
            tax_rate BIGINT,
            tax_amount BIGINT,
            sku VARCHAR,
            category VARCHAR
        )
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_line_items_invoice ON invoice_line_items(invoice_id)
    """)

    # Create index on created_at for listing newest first
    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_invoices_created_at ON invoices(created_at)
    """)

    return conn


def _to_db_timestamp(value: datetime) -> datetime:
    # TIMESTAMP columns hold naive UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db_timestamp(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def _row_to_invoice(row) -> Invoice:
    record = dict(zip(INVOICE_COLUMNS, row))
    for key in ("created_at", "issue_date", "due_date"):
        record[key] = _from_db_timestamp(record[key])
    errors = record["processing_errors"]
    record["processing_errors"] = json.loads(errors) if errors else None
    return Invoice(**record)


def _row_to_line_item(row) -> InvoiceLineItem:
    return InvoiceLineItem(**dict(zip(LINE_ITEM_COLUMNS, row)))


def save_invoice(conn: duckdb.DuckDBPyConnection, data: NormalizedInvoice) -> Invoice:
    """
    Persist an accepted invoice with its line items in one transaction.

    Runs on its own cursor so concurrent saves get separate transactions.

    Args:
        conn: Database connection
        data: Normalized invoice from the validation gate

    Returns:
        The stored Invoice

    Raises:
        PersistenceError: if any insert fails; nothing is left committed
    """
    invoice = Invoice(
        id=str(uuid.uuid4()),
        created_at=datetime.now(timezone.utc),
        status=InvoiceStatus.VALIDATED,
        **data.model_dump(exclude={"line_items"}),
    )

    cursor = conn.cursor()
    try:
        cursor.begin()
        try:
            cursor.execute(f"""
                INSERT INTO invoices ({", ".join(INVOICE_COLUMNS)})
                VALUES ({", ".join(["?"] * len(INVOICE_COLUMNS))})
            """, [
                invoice.id,
                _to_db_timestamp(invoice.created_at),
                invoice.invoice_number,
                _to_db_timestamp(invoice.issue_date),
                _to_db_timestamp(invoice.due_date),
                invoice.total_amount,
                invoice.currency,
                invoice.status.value,
                invoice.customer_name,
                invoice.customer_address,
                invoice.customer_contact,
                invoice.customer_tax_id,
                invoice.vendor_name,
                invoice.vendor_address,
                invoice.vendor_contact,
                invoice.vendor_tax_id,
                invoice.payment_terms,
                invoice.notes,
                invoice.original_file_url,
                None,
            ])

            for position, item in enumerate(data.line_items):
                cursor.execute("""
                    INSERT INTO invoice_line_items (
                        id, invoice_id, position, description, quantity,
                        unit_price, total_price, tax_rate, tax_amount, sku, category
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, [
                    str(uuid.uuid4()),
                    invoice.id,
                    position,
                    item.description,
                    item.quantity,
                    item.unit_price,
                    item.total_price,
                    item.tax_rate,
                    item.tax_amount,
                    item.sku,
                    item.category,
                ])

            cursor.commit()
        except duckdb.Error as e:
            cursor.rollback()
            logger.exception("Failed to save invoice %s", data.invoice_number)
            raise PersistenceError("Failed to save invoice data") from e
    finally:
        cursor.close()

    logger.info(
        "Saved invoice %s (%s) with %d line items",
        invoice.id, invoice.invoice_number, len(data.line_items),
    )
    return invoice


def get_invoice_by_id(conn: duckdb.DuckDBPyConnection, invoice_id: str) -> Optional[Invoice]:
    """Get invoice by ID, or None when it does not exist"""
    try:
        row = conn.execute(f"""
            SELECT {", ".join(INVOICE_COLUMNS)} FROM invoices WHERE id = ?
        """, [invoice_id]).fetchone()
    except duckdb.Error as e:
        logger.exception("Failed to get invoice %s", invoice_id)
        raise PersistenceError("Failed to retrieve invoice data") from e

    if not row:
        return None
    return _row_to_invoice(row)


def get_invoice_line_items(conn: duckdb.DuckDBPyConnection, invoice_id: str) -> List[InvoiceLineItem]:
    """Get line items of an invoice in insertion order"""
    try:
        rows = conn.execute(f"""
            SELECT {", ".join(LINE_ITEM_COLUMNS)}
            FROM invoice_line_items
            WHERE invoice_id = ?
            ORDER BY position
        """, [invoice_id]).fetchall()
    except duckdb.Error as e:
        logger.exception("Failed to get line items for invoice %s", invoice_id)
        raise PersistenceError("Failed to retrieve invoice line items") from e

    return [_row_to_line_item(row) for row in rows]


def update_invoice_status(
    conn: duckdb.DuckDBPyConnection,
    invoice_id: str,
    status: InvoiceStatus,
    errors: Optional[List[str]] = None
) -> None:
    """
    Set the status of an invoice.

    Errors are stored only for the invalid status; any other status clears them.

    Raises:
        NotFoundError: if the invoice does not exist
        PersistenceError: on storage failure
    """
    status = InvoiceStatus(status)
    processing_errors = json.dumps(list(errors or [])) if status == InvoiceStatus.INVALID else None

    cursor = conn.cursor()
    try:
        cursor.begin()
        try:
            exists = cursor.execute(
                "SELECT 1 FROM invoices WHERE id = ?", [invoice_id]
            ).fetchone()
            if not exists:
                cursor.rollback()
                raise NotFoundError(f"Invoice not found: {invoice_id}")

            cursor.execute("""
                UPDATE invoices SET status = ?, processing_errors = ? WHERE id = ?
            """, [status.value, processing_errors, invoice_id])
            cursor.commit()
        except duckdb.Error as e:
            cursor.rollback()
            logger.exception("Failed to update status of invoice %s", invoice_id)
            raise PersistenceError("Failed to update invoice status") from e
    finally:
        cursor.close()

    logger.info("Invoice %s status set to %s", invoice_id, status.value)


def delete_invoice(conn: duckdb.DuckDBPyConnection, invoice_id: str) -> None:
    """Delete an invoice together with its line items"""
    cursor = conn.cursor()
    try:
        cursor.begin()
        try:
            exists = cursor.execute(
                "SELECT 1 FROM invoices WHERE id = ?", [invoice_id]
            ).fetchone()
            if not exists:
                cursor.rollback()
                raise NotFoundError(f"Invoice not found: {invoice_id}")

            cursor.execute("DELETE FROM invoice_line_items WHERE invoice_id = ?", [invoice_id])
            cursor.execute("DELETE FROM invoices WHERE id = ?", [invoice_id])
            cursor.commit()
        except duckdb.Error as e:
            cursor.rollback()
            logger.exception("Failed to delete invoice %s", invoice_id)
            raise PersistenceError("Failed to delete invoice") from e
    finally:
        cursor.close()

    logger.info("Deleted invoice %s", invoice_id)


def list_invoices(
    conn: duckdb.DuckDBPyConnection,
    vendor: Optional[str] = None,
    status: Optional[str] = None,
    offset: int = 0,
    limit: int = 100
) -> Tuple[List[Invoice], int]:
    """List invoices with filters and pagination, newest first"""
    conditions = []
    params = []

    if vendor:
        conditions.append("vendor_name ILIKE ?")
        params.append(f"%{vendor}%")
    if status:
        conditions.append("status = ?")
        params.append(InvoiceStatus(status).value)

    where_clause = " AND ".join(conditions) if conditions else "1=1"

    try:
        count_result = conn.execute(f"""
            SELECT COUNT(*) FROM invoices WHERE {where_clause}
        """, params).fetchone()
        total = count_result[0] if count_result else 0

        rows = conn.execute(f"""
            SELECT {", ".join(INVOICE_COLUMNS)}
            FROM invoices
            WHERE {where_clause}
            ORDER BY created_at DESC
            LIMIT ? OFFSET ?
        """, params + [limit, offset]).fetchall()
    except duckdb.Error as e:
        logger.exception("Failed to list invoices")
        raise PersistenceError("Failed to list invoices") from e

    return [_row_to_invoice(row) for row in rows], total
