"""LLM extraction with local Ollama first and Gemini as fallback.

Providers return the raw model text; decoding is left to the parser.
"""
import os
import asyncio
import logging
from typing import Optional

import ollama
from google import genai
from google.genai import types

from .errors import ExtractionFailed
from .pdf_parser import prepare_document


logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
OLLAMA_HOST = os.getenv("OLLAMA_HOST")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "qwen3-vl")
PREFER_LOCAL = os.getenv("PREFER_LOCAL", "true").lower() in ("1", "true", "yes")


EXTRACTION_SYSTEM_PROMPT = """
You are an expert invoice validation agent analyzing PDF documents and images.
Your task is to verify that the document is a legitimate invoice and extract its data.

PRE-VALIDATION CHECKS:
1. Readability: the document is not empty, corrupted, password protected or truncated.
2. Structure: the document has multiple distinct elements and readable text.

VALIDATION STEPS:
1. Document type: a proper invoice, not a receipt, quote, template or draft.
2. Required fields: invoice number, issue date, due date (on or after the issue date),
   total amount with currency, vendor name, customer name, line items with
   quantities and prices.
3. Mathematical checks: quantity x unit price = line total, line totals add up to
   the subtotal, tax and final total are consistent.
4. Legitimacy: business identifiers, payment terms, no suspicious inconsistencies,
   no future dating unless clearly marked as proforma.

Respond with ONLY a JSON object of this exact shape:
{
  "validation": {
    "status": "valid" | "invalid",
    "errors": ["string (one entry per problem found, empty when valid)"]
  },
  "data": {
    "invoiceNumber": "string",
    "issueDate": "ISO-8601 timestamp, e.g. 2024-01-01T00:00:00.000Z",
    "dueDate": "ISO-8601 timestamp",
    "totalAmount": number,
    "currency": "ISO-4217 code, e.g. USD",
    "customerName": "string",
    "customerAddress": "string or null",
    "customerContact": "string or null",
    "customerTaxId": "string or null",
    "vendorName": "string",
    "vendorAddress": "string or null",
    "vendorContact": "string or null",
    "vendorTaxId": "string or null",
    "paymentTerms": "string or null",
    "notes": "string or null",
    "lineItems": [
      {
        "description": "string",
        "quantity": number,
        "unitPrice": number,
        "totalPrice": number,
        "taxRate": "number (percent, e.g. 20) or null",
        "taxAmount": "number or null",
        "sku": "string or null",
        "category": "string or null"
      }
    ]
  }
}

Rules:
1. Amounts are plain decimal numbers in the invoice currency, without symbols.
2. If the document is not a valid invoice, set status to "invalid", explain why in
   errors and omit data.
3. Do not include markdown formatting.
"""

USER_PROMPT = "Process this invoice."


async def ollama_extract(file_bytes: bytes, content_type: str, filename: Optional[str] = None) -> str:
    """Extract invoice data using a local Ollama vision model"""
    try:
        document = await asyncio.to_thread(prepare_document, file_bytes, content_type, filename)
    except Exception as e:
        raise ValueError(f"Could not prepare document for Ollama: {e}") from e
    if not document["images"]:
        raise ValueError("No images extracted from document")

    prompt = USER_PROMPT
    text_layer = "\n".join(page for page in document["text"] if page.strip())
    if text_layer:
        prompt += f"\n\nText layer of the document:\n{text_layer}"

    client = ollama.AsyncClient(host=OLLAMA_HOST)
    try:
        response = await client.chat(
            model=OLLAMA_MODEL,
            messages=[
                {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                {"role": "user", "content": prompt, "images": document["images"]},
            ],
            format="json",
        )
    except Exception as e:
        if "not found" in str(e).lower():
            raise ValueError(f"Ollama model '{OLLAMA_MODEL}' not found. Please run: ollama pull {OLLAMA_MODEL}") from e
        raise ValueError(f"Ollama extraction failed: {e}") from e

    return response["message"]["content"]


async def gemini_extract(file_bytes: bytes, content_type: str) -> str:
    """Extract invoice data using Gemini, sending the document inline"""
    if not GEMINI_API_KEY:
        raise ValueError("GEMINI_API_KEY not set")

    client = genai.Client(api_key=GEMINI_API_KEY)
    try:
        response = await client.aio.models.generate_content(
            model=GEMINI_MODEL,
            contents=[
                types.Part.from_bytes(data=file_bytes, mime_type=content_type),
                USER_PROMPT,
            ],
            config=types.GenerateContentConfig(
                system_instruction=EXTRACTION_SYSTEM_PROMPT,
                response_mime_type="application/json",
                temperature=0,
            ),
        )
    except Exception as e:
        raise ValueError(f"Gemini extraction failed: {e}") from e

    if not response.text:
        raise ValueError("No response from Gemini")
    return response.text


async def extract_invoice(
    file_bytes: bytes,
    content_type: str,
    filename: Optional[str] = None,
    prefer_local: Optional[bool] = None
) -> str:
    """
    Run the extraction capability with Ollama + Gemini fallback

    Args:
        file_bytes: Raw file bytes
        content_type: MIME type of the upload
        filename: Original filename
        prefer_local: Try Ollama first if True (defaults to PREFER_LOCAL)

    Returns:
        Raw model output text

    Raises:
        ExtractionFailed: if every provider fails
    """
    if prefer_local is None:
        prefer_local = PREFER_LOCAL

    if prefer_local:
        try:
            return await ollama_extract(file_bytes, content_type, filename)
        except ValueError as e:
            logger.warning("Local extraction failed, falling back to Gemini: %s", e)

    try:
        return await gemini_extract(file_bytes, content_type)
    except ValueError as e:
        logger.error("Gemini extraction failed: %s", e)
        raise ExtractionFailed(f"All extraction methods failed. Last error: {e}") from e
