"""
ETL Package - Bank statement to normalized transaction ingestion

Modules:
- extract: PDF/CSV/TXT reading and CSV column mapping
- categorize: Keyword-based category inference
- ai_client: Prompt building and Gemini calls with retry/backoff
- normalize: AI response repair and per-record coercion
- reconcile: Session tagging / duplicate suppression
- pipeline: Main orchestrator
- schema / models: TypedDict payloads and the ExtractedTransaction record
"""
from .pipeline import IngestionPipeline
from .models import ExtractedTransaction
from .errors import ExtractionFailure, FailureKind
from .schema import ExtractionPayload, IngestionResult

__all__ = [
    'IngestionPipeline', 'ExtractedTransaction', 'ExtractionFailure',
    'FailureKind', 'ExtractionPayload', 'IngestionResult',
]
