"""Tests for extraction response parsing"""
import json
import pytest
from invoicedesk.models import ExtractionResult
from invoicedesk.parser import (
    ParseErrorKind,
    ParseFailure,
    parse_extraction_response,
    strip_code_fences,
)


def test_strip_code_fences():
    """Test fences with and without language tags are removed"""
    assert strip_code_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fences('  {"a": 1}  ') == '{"a": 1}'


def test_parse_fenced_response(fenced_response_text):
    """Test parsing a markdown-fenced valid response"""
    result = parse_extraction_response(fenced_response_text)

    assert isinstance(result, ExtractionResult)
    assert result.declared_valid
    assert result.data.invoiceNumber == "INV-1"
    assert result.data.totalAmount == 120.50
    assert result.data.lineItems == []


def test_parse_clean_response(valid_response_text):
    """Test parsing clean JSON response"""
    result = parse_extraction_response(valid_response_text)

    assert isinstance(result, ExtractionResult)
    assert result.data.vendorName == "Test Vendor Inc."
    assert len(result.data.lineItems) == 2
    assert result.data.lineItems[0].unitPrice == 500.0


def test_parse_response_with_surrounding_text():
    """Test parsing JSON response with surrounding prose"""
    text = 'Here is the result: {"validation": {"status": "invalid", "errors": ["Blurry scan"]}} Thanks.'
    result = parse_extraction_response(text)

    assert isinstance(result, ExtractionResult)
    assert result.validation.errors == ["Blurry scan"]
    assert result.data is None


def test_parse_invalid_verdict_without_data():
    """Test an invalid verdict may omit the data payload"""
    result = parse_extraction_response('{"validation":{"status":"invalid","errors":["Missing total amount"]}}')

    assert isinstance(result, ExtractionResult)
    assert not result.declared_valid
    assert result.validation.errors == ["Missing total amount"]


def test_parse_not_json():
    """Test free text yields an invalid JSON failure with the raw text"""
    text = "This document appears to be a receipt, not an invoice."
    result = parse_extraction_response(text)

    assert isinstance(result, ParseFailure)
    assert result.kind == ParseErrorKind.INVALID_JSON
    assert result.raw_text == text


@pytest.mark.parametrize("text", ["", "   ", None])
def test_parse_empty(text):
    result = parse_extraction_response(text)

    assert isinstance(result, ParseFailure)
    assert result.kind == ParseErrorKind.EMPTY_RESPONSE


def test_parse_missing_validation():
    """Test a payload without validation is a schema failure"""
    result = parse_extraction_response(json.dumps({"data": {"invoiceNumber": "INV-1"}}))

    assert isinstance(result, ParseFailure)
    assert result.kind == ParseErrorKind.MALFORMED_SCHEMA


def test_parse_valid_without_data():
    """Test a valid verdict without data is a schema failure"""
    result = parse_extraction_response('{"validation": {"status": "valid"}}')

    assert isinstance(result, ParseFailure)
    assert result.kind == ParseErrorKind.MALFORMED_SCHEMA


def test_parse_wrong_field_types():
    """Test non-numeric amounts are a schema failure"""
    text = json.dumps({
        "validation": {"status": "valid"},
        "data": {"invoiceNumber": "INV-1", "totalAmount": "twelve dollars"},
    })
    result = parse_extraction_response(text)

    assert isinstance(result, ParseFailure)
    assert result.kind == ParseErrorKind.MALFORMED_SCHEMA
    assert result.raw_text == text


def test_parse_coerces_loose_values():
    """Test numeric invoice numbers, null line items and non-string errors"""
    text = json.dumps({
        "validation": {"status": "Valid", "errors": None},
        "data": {"invoiceNumber": 1042, "totalAmount": "99.90", "lineItems": None},
    })
    result = parse_extraction_response(text)

    assert isinstance(result, ExtractionResult)
    assert result.declared_valid
    assert result.validation.errors == []
    assert result.data.invoiceNumber == "1042"
    assert result.data.totalAmount == 99.9
    assert result.data.lineItems == []
