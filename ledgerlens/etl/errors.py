"""
Ingestion error classes.

Every failure the pipeline can surface to a caller is an ExtractionFailure
tagged with a FailureKind. Each kind carries user-facing guidance so the
HTTP layer never has to show a bare internal error string.
"""
from enum import Enum
from typing import Any, Dict, List, Optional


class FailureKind(str, Enum):
    UNREADABLE_DOCUMENT = "UnreadableDocument"
    UNSUPPORTED_FORMAT = "UnsupportedFormat"
    PROVIDER_UNAVAILABLE = "ProviderUnavailable"
    UNPARSABLE_RESPONSE = "UnparsableResponse"
    NO_TRANSACTIONS_FOUND = "NoTransactionsFound"
    FILE_TOO_LARGE = "FileTooLarge"
    CANCELLED = "Cancelled"


SUGGESTIONS: Dict[FailureKind, List[str]] = {
    FailureKind.UNREADABLE_DOCUMENT: [
        "Check if the file is not corrupted",
        "Try a different file format (PDF, CSV, or TXT)",
    ],
    FailureKind.UNSUPPORTED_FORMAT: [
        "Upload a PDF, CSV, or TXT file",
        "Export spreadsheets (XLS/XLSX) to CSV before uploading",
    ],
    FailureKind.PROVIDER_UNAVAILABLE: [
        "Wait a minute and try again",
        "Upload a CSV export instead, which does not require AI parsing",
    ],
    FailureKind.UNPARSABLE_RESPONSE: [
        "Try uploading the statement again",
        "Try a different file format (PDF, CSV, or TXT)",
    ],
    FailureKind.NO_TRANSACTIONS_FOUND: [
        "Make sure the file is a valid bank statement",
        "Make sure the file contains transaction data in a recognizable format",
    ],
    FailureKind.FILE_TOO_LARGE: [
        "Upload a file smaller than the size limit",
        "Split long statements into several files",
    ],
    FailureKind.CANCELLED: [
        "Upload the file again when ready",
    ],
}


class ExtractionFailure(Exception):
    """Base exception for all ingestion failures"""

    def __init__(self, kind: FailureKind, message: str,
                 detail: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.kind = kind
        self.message = message
        self.detail = detail
        self.details = details or {}
        super().__init__(self.message)

    @property
    def suggestions(self) -> List[str]:
        return list(SUGGESTIONS.get(self.kind, []))

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "success": False,
            "error": self.message,
            "kind": self.kind.value,
            "suggestions": self.suggestions,
        }
        if self.detail:
            payload["details"] = self.detail
        if self.details:
            payload["context"] = self.details
        return payload

    def __repr__(self):
        return f"ExtractionFailure(kind={self.kind.value}, message={self.message!r})"
