"""Pytest configuration and fixtures"""
import io
import json
import pytest
from PIL import Image
from invoicedesk.database import init_database


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database for testing"""
    conn = init_database(tmp_path / "test_invoices.duckdb")
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def sample_invoice_data():
    """Invoice payload as emitted by the extraction model"""
    return {
        "invoiceNumber": "INV-2024-001",
        "issueDate": "2024-01-15T00:00:00.000Z",
        "dueDate": "2024-02-15T00:00:00.000Z",
        "totalAmount": 1500.00,
        "currency": "EUR",
        "customerName": "Acme Corp",
        "customerAddress": "1 Market St, Springfield",
        "customerTaxId": "DE123456789",
        "vendorName": "Test Vendor Inc.",
        "vendorAddress": "123 Test St, Test City, TC 12345",
        "vendorContact": "billing@testvendor.example",
        "paymentTerms": "Net 30",
        "lineItems": [
            {
                "description": "Test Product 1",
                "quantity": 2,
                "unitPrice": 500.00,
                "totalPrice": 1000.00,
                "taxRate": 20,
                "taxAmount": 200.00,
                "sku": "SKU-001",
                "category": "Hardware"
            },
            {
                "description": "Test Product 2",
                "quantity": 1,
                "unitPrice": 500.00,
                "totalPrice": 500.00,
                "sku": "SKU-002"
            }
        ]
    }


@pytest.fixture
def valid_response_text(sample_invoice_data):
    """Raw model output for a valid invoice"""
    return json.dumps({
        "validation": {"status": "valid", "errors": []},
        "data": sample_invoice_data,
    })


@pytest.fixture
def fenced_response_text():
    """Fenced model output with only the required fields"""
    return (
        "```json\n"
        '{"validation":{"status":"valid"},"data":{"invoiceNumber":"INV-1",'
        '"issueDate":"2024-01-01T00:00:00.000Z","dueDate":"2024-01-15T00:00:00.000Z",'
        '"totalAmount":120.50,"customerName":"Acme","vendorName":"Bolt Co","lineItems":[]}}'
        "\n```"
    )


@pytest.fixture
def sample_pdf_bytes():
    """Create a minimal PDF for testing"""
    pdf_content = b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
2 0 obj
<< /Type /Pages /Kids [3 0 R] /Count 1 >>
endobj
3 0 obj
<< /Type /Page /Parent 2 0 R /MediaBox [0 0 612 792] >>
endobj
xref
0 4
0000000000 65535 f
0000000009 00000 n
0000000058 00000 n
0000000115 00000 n
trailer
<< /Size 4 /Root 1 0 R >>
startxref
179
%%EOF"""
    return pdf_content


@pytest.fixture
def sample_image_bytes():
    """Create a minimal PNG image for testing"""
    buffered = io.BytesIO()
    Image.new("RGBA", (1, 1), (0, 0, 0, 0)).save(buffered, format="PNG")
    return buffered.getvalue()
