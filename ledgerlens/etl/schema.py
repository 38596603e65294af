"""
Ingestion Schema - TypedDict definitions passed between pipeline layers.

The canonical transaction itself lives in models.ExtractedTransaction;
these dicts describe the intermediate payloads and the caller-facing result.
"""
from typing import TypedDict, Dict, Any, Optional, List


# Closed enumeration; any other value collapses to "Other".
CATEGORIES = [
    "Food & Dining",
    "Shopping",
    "Transportation",
    "Bills & Utilities",
    "Entertainment",
    "Healthcare",
    "Travel",
    "Income",
    "Transfer",
    "ATM & Cash",
    "Other",
]


class ExtractionPayload(TypedDict):
    """Output from Extract layer"""
    document_hash: str            # SHA256 of the uploaded bytes
    format: str                   # 'pdf' | 'csv' | 'txt'
    raw_text: str                 # Text blob for the AI step (empty for CSV)
    rows: List[Dict[str, Any]]    # Column-mapped CSV candidates (empty otherwise)
    source_file: str              # Original filename


class CandidateRow(TypedDict):
    """A CSV row after column mapping, before coercion"""
    date: str
    amount: str
    description: str
    original_text: str


class IngestionData(TypedDict, total=False):
    totalParsed: int
    totalSaved: int
    errorCount: int
    duplicatesSkipped: int
    duplicatesDetected: int
    previousRecordsPreserved: int
    transactions: List[Dict[str, Any]]
    sessionTag: Optional[str]
    isDuplicateOnly: bool
    documentHash: str
    processingTimeMs: float


class IngestionResult(TypedDict, total=False):
    """Final output from the ingestion pipeline"""
    success: bool
    message: str
    warning: str
    data: IngestionData
    error: str
    kind: str
    details: str
    suggestions: List[str]
