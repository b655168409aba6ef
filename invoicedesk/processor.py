"""Per-upload orchestration: extract, parse, validate, persist"""
import os
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Set

import duckdb

from .database import save_invoice
from .errors import (
    ExtractionFailed,
    ExtractionTimeout,
    ParseError,
    PersistenceError,
    ValidationRejection,
)
from .extraction import extract_invoice
from .models import (
    ExtractionResult,
    NormalizedInvoice,
    ProcessingOutcome,
    ProcessingState,
    TERMINAL_STATES,
)
from .parser import ParseFailure, parse_extraction_response
from .pdf_parser import SUPPORTED_CONTENT_TYPES
from .validator import Rejected, evaluate


logger = logging.getLogger(__name__)

EXTRACTION_TIMEOUT_SECONDS = float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "30"))
TRIGGER_PHRASE = "process this invoice"

TIMEOUT_MESSAGE = (
    "The invoice processing took too long to complete. Please try again with "
    "a smaller file or contact support if the issue persists."
)
FAILURE_MESSAGE = (
    "An error occurred while processing your invoice. Please ensure the file "
    "is a valid invoice document and try again."
)
PARSE_ERROR_MESSAGE = (
    "The invoice data could not be read from the extraction response. "
    "Please try uploading the invoice again."
)
PERSISTENCE_FAILED_MESSAGE = (
    "The invoice was validated but could not be saved. Please try again later."
)
UNSUPPORTED_MESSAGE = "Please attach a valid invoice file (PDF, JPEG, or PNG)."

Extractor = Callable[[bytes, str, Optional[str]], Awaitable[str]]

# Extractions still running after their request timed out
_background_tasks: Set[asyncio.Task] = set()


def is_invoice_command(text: Optional[str]) -> bool:
    """Check whether a chat message asks for invoice processing"""
    return bool(text) and TRIGGER_PHRASE in text.lower()


class ProcessingRun:
    """State of one upload. Resolves exactly once, on its first terminal state."""

    def __init__(self, filename: Optional[str] = None):
        self.filename = filename
        self.state = ProcessingState.RECEIVED
        self.outcome: Optional[ProcessingOutcome] = None

    @property
    def resolved(self) -> bool:
        return self.outcome is not None

    def advance(self, state: ProcessingState) -> None:
        if self.resolved:
            raise RuntimeError(f"Run already resolved as {self.state.value}")
        logger.info("Invoice upload %s: %s -> %s", self.filename, self.state.value, state.value)
        self.state = state

    def resolve(
        self,
        state: ProcessingState,
        message: str,
        invoice_id: Optional[str] = None,
        reasons: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ) -> ProcessingOutcome:
        if state not in TERMINAL_STATES:
            raise ValueError(f"Not a terminal state: {state.value}")
        self.advance(state)
        self.outcome = ProcessingOutcome(
            state=state,
            message=message,
            invoice_id=invoice_id,
            reasons=reasons or [],
            warnings=warnings or [],
        )
        return self.outcome


def _discard_late_result(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.warning("Extraction finished with an error after timeout: %s", error)
    else:
        logger.warning("Discarding extraction result that arrived after timeout")


async def _run_extraction(
    run: ProcessingRun,
    extractor: Extractor,
    file_bytes: bytes,
    content_type: str,
    filename: Optional[str],
    timeout: float,
) -> str:
    run.advance(ProcessingState.EXTRACTING)
    task = asyncio.ensure_future(extractor(file_bytes, content_type, filename))
    done, _ = await asyncio.wait({task}, timeout=timeout)

    if not done:
        # The provider call keeps running; its result must never reach storage
        _background_tasks.add(task)
        task.add_done_callback(_discard_late_result)
        raise ExtractionTimeout(f"Processing timeout after {timeout:g} seconds")

    return task.result()


def _parse(run: ProcessingRun, raw_text: str) -> ExtractionResult:
    parsed = parse_extraction_response(raw_text)
    if isinstance(parsed, ParseFailure):
        raise ParseError(parsed.message, kind=parsed.kind.value, raw_text=parsed.raw_text)
    run.advance(ProcessingState.PARSED)
    return parsed


async def process_invoice(
    conn: duckdb.DuckDBPyConnection,
    file_bytes: bytes,
    content_type: str,
    filename: Optional[str] = None,
    *,
    extractor: Extractor = extract_invoice,
    timeout: float = EXTRACTION_TIMEOUT_SECONDS,
    source_url: Optional[str] = None
) -> ProcessingOutcome:
    """
    Process one uploaded invoice to a terminal outcome

    Args:
        conn: Database connection used for persistence
        file_bytes: Raw file bytes
        content_type: MIME type of the upload
        filename: Original filename
        extractor: Extraction capability returning raw model text
        timeout: Wall-clock bound on the extraction step, in seconds
        source_url: Locator of the stored original file, if any

    Returns:
        ProcessingOutcome with exactly one user-facing message
    """
    run = ProcessingRun(filename)

    if content_type not in SUPPORTED_CONTENT_TYPES or not file_bytes:
        logger.info("Rejected upload %s with content type %s", filename, content_type)
        return run.resolve(ProcessingState.EXTRACTION_FAILED, UNSUPPORTED_MESSAGE)

    try:
        raw_text = await _run_extraction(run, extractor, file_bytes, content_type, filename, timeout)
        result = _parse(run, raw_text)

        run.advance(ProcessingState.VALIDATING)
        decision = evaluate(result)
        if isinstance(decision, Rejected):
            raise ValidationRejection(decision.reasons)

        # Raises on a run that has already reported an outcome, so nothing is saved
        run.advance(ProcessingState.ACCEPTED)
        invoice_data: NormalizedInvoice = decision.invoice
        if source_url:
            invoice_data = invoice_data.model_copy(update={"original_file_url": source_url})

        saved = save_invoice(conn, invoice_data)

    except ExtractionTimeout:
        logger.error("Processing timeout occurred for %s", filename)
        return run.resolve(ProcessingState.TIMED_OUT, TIMEOUT_MESSAGE)
    except ParseError as e:
        logger.error("Unparseable extraction response (%s): %s; raw: %r", e.kind, e, e.raw_text)
        return run.resolve(ProcessingState.PARSE_ERROR, PARSE_ERROR_MESSAGE)
    except ValidationRejection as e:
        logger.info("Invoice %s rejected: %s", filename, e)
        message = "The document is not a valid invoice: " + "; ".join(e.reasons)
        return run.resolve(ProcessingState.REJECTED, message, reasons=e.reasons)
    except PersistenceError:
        logger.exception("Failed to persist invoice from %s", filename)
        return run.resolve(ProcessingState.PERSISTENCE_FAILED, PERSISTENCE_FAILED_MESSAGE)
    except ExtractionFailed:
        logger.exception("Extraction failed for %s", filename)
        return run.resolve(ProcessingState.EXTRACTION_FAILED, FAILURE_MESSAGE)
    except Exception:
        logger.exception("Unexpected failure while processing %s", filename)
        return run.resolve(ProcessingState.EXTRACTION_FAILED, FAILURE_MESSAGE)

    return run.resolve(
        ProcessingState.PERSISTED,
        f"Invoice {saved.invoice_number} was validated and saved (id {saved.id}).",
        invoice_id=saved.id,
        warnings=decision.warnings,
    )
