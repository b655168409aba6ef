"""Parsing of raw extraction model output into an ExtractionResult"""
import json
import logging
import re
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ValidationError

from .models import ExtractionResult


logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[\w-]*\s*\n?(.*?)\n?\s*```$", re.DOTALL)


class ParseErrorKind(str, Enum):
    EMPTY_RESPONSE = "empty_response"
    INVALID_JSON = "invalid_json"
    MALFORMED_SCHEMA = "malformed_schema"


class ParseFailure(BaseModel):
    kind: ParseErrorKind
    message: str
    raw_text: Optional[str] = None


ParseOutcome = Union[ExtractionResult, ParseFailure]


def strip_code_fences(text: str) -> str:
    """Remove a wrapping markdown code fence (with optional language tag)"""
    text = text.strip()
    match = _FENCE_RE.match(text)
    if match:
        return match.group(1).strip()
    return text


def _json_bounds(text: str) -> str:
    # Models sometimes wrap the object in prose; keep the outermost braces
    first_brace = text.find("{")
    last_brace = text.rfind("}")
    if first_brace != -1 and last_brace > first_brace:
        return text[first_brace:last_brace + 1]
    return text


def parse_extraction_response(text: Optional[str]) -> ParseOutcome:
    """
    Decode model output into an ExtractionResult.

    Never raises for malformed input: failures come back as a ParseFailure
    carrying the offending raw text.

    Args:
        text: Raw text returned by the extraction capability

    Returns:
        ExtractionResult on success, ParseFailure otherwise
    """
    if text is None or not text.strip():
        return ParseFailure(
            kind=ParseErrorKind.EMPTY_RESPONSE,
            message="Extraction returned an empty response",
            raw_text=text,
        )

    candidate = _json_bounds(strip_code_fences(text))

    try:
        decoded = json.loads(candidate)
    except json.JSONDecodeError as e:
        logger.warning("Extraction response is not valid JSON: %s", e)
        return ParseFailure(
            kind=ParseErrorKind.INVALID_JSON,
            message=f"Failed to parse JSON response: {e}",
            raw_text=text,
        )

    if not isinstance(decoded, dict):
        return ParseFailure(
            kind=ParseErrorKind.MALFORMED_SCHEMA,
            message="Extraction response is not a JSON object",
            raw_text=text,
        )

    if not isinstance(decoded.get("validation"), dict):
        return ParseFailure(
            kind=ParseErrorKind.MALFORMED_SCHEMA,
            message="Extraction response has no 'validation' object",
            raw_text=text,
        )

    try:
        result = ExtractionResult.model_validate(decoded)
    except ValidationError as e:
        logger.warning("Extraction response does not match schema: %s", e)
        return ParseFailure(
            kind=ParseErrorKind.MALFORMED_SCHEMA,
            message=f"Extraction response does not match schema: {e.error_count()} error(s)",
            raw_text=text,
        )

    # An invalid verdict may omit the payload, a valid one may not
    if result.declared_valid and result.data is None:
        return ParseFailure(
            kind=ParseErrorKind.MALFORMED_SCHEMA,
            message="Extraction response is valid but has no 'data' object",
            raw_text=text,
        )

    return result
