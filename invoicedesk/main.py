"""FastAPI backend for invoice upload, validation and storage"""
import os
import logging
from typing import List, Optional

import duckdb
import ollama
from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import (
    init_database,
    get_invoice_by_id,
    get_invoice_line_items,
    update_invoice_status,
    delete_invoice,
    list_invoices,
)
from .errors import NotFoundError, PersistenceError
from .extraction import extract_invoice, GEMINI_API_KEY, OLLAMA_MODEL
from .models import (
    InvoiceLineItem,
    InvoiceStatus,
    InvoiceWithLineItems,
    ProcessingState,
    StatusUpdate,
)
from .pdf_parser import SUPPORTED_CONTENT_TYPES
from .processor import is_invoice_command, process_invoice


logging.basicConfig(
    level=os.getenv("INVOICEDESK_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024

OUTCOME_STATUS_CODES = {
    ProcessingState.PERSISTED: 201,
    ProcessingState.REJECTED: 422,
    ProcessingState.PARSE_ERROR: 502,
    ProcessingState.EXTRACTION_FAILED: 502,
    ProcessingState.TIMED_OUT: 504,
    ProcessingState.PERSISTENCE_FAILED: 500,
}


app = FastAPI(title="InvoiceDesk", version="0.1.0")

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

db_conn: Optional[duckdb.DuckDBPyConnection] = None


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup"""
    global db_conn
    db_conn = init_database()
    logger.info("Database initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Close database connection on shutdown"""
    global db_conn
    if db_conn:
        db_conn.close()
        db_conn = None


def get_connection() -> duckdb.DuckDBPyConnection:
    if db_conn is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return db_conn


@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    status = {
        "status": "ok",
        "ollama_available": False,
        "gemini_available": bool(GEMINI_API_KEY),
    }

    try:
        listing = ollama.list()
        status["ollama_available"] = any(
            OLLAMA_MODEL in (getattr(model, "model", None) or "")
            for model in listing.models
        )
    except Exception as e:
        logger.debug("Ollama not reachable: %s", e)

    return status


@app.post("/api/invoices")
async def process_invoice_endpoint(
    file: UploadFile = File(...),
    message: str = Form("Process this invoice"),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    """Validate an uploaded invoice and store it when accepted"""
    if not is_invoice_command(message):
        raise HTTPException(
            status_code=400,
            detail="Message must ask to 'process this invoice'"
        )

    if file.content_type not in SUPPORTED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail="Please attach a valid invoice file (PDF, JPEG, or PNG)."
        )

    file_bytes = await file.read()

    if not file_bytes:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(file_bytes) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=400,
            detail="File size exceeds 10MB limit"
        )

    outcome = await process_invoice(
        conn,
        file_bytes,
        file.content_type,
        file.filename,
        extractor=extract_invoice,
    )

    return JSONResponse(
        status_code=OUTCOME_STATUS_CODES[outcome.state],
        content=outcome.model_dump(mode="json", by_alias=True),
    )


@app.get("/api/invoices")
async def list_invoices_endpoint(
    vendor: Optional[str] = Query(None, description="Filter by vendor name"),
    status: Optional[InvoiceStatus] = Query(None, description="Filter by status"),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    """List invoices with filters and pagination"""
    try:
        invoices, total = list_invoices(
            conn,
            vendor=vendor,
            status=status.value if status else None,
            offset=offset,
            limit=limit
        )
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {
        "invoices": [invoice.model_dump(mode="json", by_alias=True) for invoice in invoices],
        "total": total,
        "offset": offset,
        "limit": limit
    }


@app.get("/api/invoices/{invoice_id}", response_model=InvoiceWithLineItems)
async def get_invoice_endpoint(
    invoice_id: str,
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    """Get single invoice by ID with its line items"""
    try:
        invoice = get_invoice_by_id(conn, invoice_id)
        if not invoice:
            raise HTTPException(status_code=404, detail="Invoice not found")
        line_items = get_invoice_line_items(conn, invoice_id)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return InvoiceWithLineItems(**invoice.model_dump(), line_items=line_items)


@app.get("/api/invoices/{invoice_id}/line-items", response_model=List[InvoiceLineItem])
async def get_line_items_endpoint(
    invoice_id: str,
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    """Get line items of an invoice"""
    try:
        if not get_invoice_by_id(conn, invoice_id):
            raise HTTPException(status_code=404, detail="Invoice not found")
        return get_invoice_line_items(conn, invoice_id)
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.patch("/api/invoices/{invoice_id}/status")
async def update_status_endpoint(
    invoice_id: str,
    update: StatusUpdate,
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    """Update the status of an invoice"""
    try:
        update_invoice_status(conn, invoice_id, update.status, update.errors)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Invoice not found")
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return {"id": invoice_id, "status": update.status.value}


@app.delete("/api/invoices/{invoice_id}", status_code=204)
async def delete_invoice_endpoint(
    invoice_id: str,
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    """Delete an invoice and its line items"""
    try:
        delete_invoice(conn, invoice_id)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Invoice not found")
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=str(e))

    return Response(status_code=204)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
