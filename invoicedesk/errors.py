"""Exception types raised by the invoice pipeline"""
from typing import List, Optional


class InvoiceDeskError(Exception):
    """Base class for all invoice processing errors"""


class InvalidAmount(InvoiceDeskError, ValueError):
    """Monetary value that cannot be represented in minor units"""


class ParseError(InvoiceDeskError):
    """Model output that could not be decoded into an extraction result"""

    def __init__(self, message: str, kind: str, raw_text: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.raw_text = raw_text


class ValidationRejection(InvoiceDeskError):
    """Document judged not to be a valid invoice"""

    def __init__(self, reasons: List[str]):
        super().__init__("; ".join(reasons))
        self.reasons = list(reasons)


class ExtractionTimeout(InvoiceDeskError):
    pass


class ExtractionFailed(InvoiceDeskError):
    pass


class PersistenceError(InvoiceDeskError):
    pass


class NotFoundError(InvoiceDeskError):
    pass
