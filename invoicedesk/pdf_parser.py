"""Document preprocessing for vision models using PyMuPDF, pdf2image and Pillow"""
import io
import base64
from typing import List, Dict, Any, Optional

import fitz  # PyMuPDF
from pdf2image import convert_from_bytes
from PIL import Image


PDF_CONTENT_TYPE = "application/pdf"
IMAGE_CONTENT_TYPES = ("image/jpeg", "image/png")
SUPPORTED_CONTENT_TYPES = (PDF_CONTENT_TYPE,) + IMAGE_CONTENT_TYPES

# Vision models get at most this many pages
MAX_PAGES = 3


def detect_file_type(file_bytes: bytes, content_type: Optional[str] = None, filename: Optional[str] = None) -> str:
    """Detect if file is PDF or image from content type, extension or magic bytes"""
    if content_type == PDF_CONTENT_TYPE:
        return 'pdf'
    if content_type in IMAGE_CONTENT_TYPES:
        return 'image'

    name = (filename or "").lower()
    if name.endswith('.pdf'):
        return 'pdf'
    if name.endswith(('.png', '.jpg', '.jpeg')):
        return 'image'

    if file_bytes.startswith(b'%PDF'):
        return 'pdf'
    if file_bytes.startswith(b'\x89PNG') or file_bytes.startswith(b'\xff\xd8\xff'):
        return 'image'
    return 'unknown'


def extract_text(pdf_bytes: bytes) -> List[str]:
    """Extract the text layer of each PDF page using PyMuPDF"""
    doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    try:
        return [page.get_text() for page in doc]
    finally:
        doc.close()


def pdf_to_images(pdf_bytes: bytes, dpi: int = 200, max_pages: int = MAX_PAGES) -> List[Image.Image]:
    """Convert PDF pages to PIL Images for vision LLM processing"""
    try:
        return convert_from_bytes(pdf_bytes, dpi=dpi, first_page=1, last_page=max_pages)
    except Exception as e:
        raise ValueError(f"Failed to convert PDF to images: {e}") from e


def image_to_base64(image: Image.Image) -> str:
    """Convert PIL Image to base64 PNG string"""
    buffered = io.BytesIO()
    image.save(buffered, format="PNG")
    return base64.b64encode(buffered.getvalue()).decode("utf-8")


def prepare_document(
    file_bytes: bytes,
    content_type: Optional[str] = None,
    filename: Optional[str] = None
) -> Dict[str, Any]:
    """
    Prepare an uploaded invoice for a vision model

    Args:
        file_bytes: Raw file bytes
        content_type: MIME type reported by the upload
        filename: Original filename

    Returns:
        Dict with base64 page images and, for PDFs, the text layer
    """
    file_type = detect_file_type(file_bytes, content_type, filename)

    result = {
        "file_type": file_type,
        "filename": filename,
        "text": [],
        "images": [],
    }

    if file_type == "pdf":
        result["text"] = extract_text(file_bytes)
        result["images"] = [image_to_base64(img) for img in pdf_to_images(file_bytes)]
    elif file_type == "image":
        result["images"] = [image_to_base64(Image.open(io.BytesIO(file_bytes)))]
    else:
        raise ValueError(f"Unsupported document type: {content_type or filename}")

    result["image_count"] = len(result["images"])
    return result
