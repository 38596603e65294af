"""
Ingestion Pipeline Orchestrator - Coordinates Extract, Parse, Normalize and Reconcile.

Flow: Extract → (AI Extract → Normalize | Row Normalize) → Reconcile

CSV statements are column-mapped and categorized heuristically; PDF and TXT
statements go through the AI extraction client. The caller owns the upload
file; this module only ever sees its bytes.
"""
import time
import logging
import threading
from typing import Iterator, Optional, Tuple

from .ai_client import AIExtractionClient
from .categorize import CategoryMapper
from .config import Config
from .errors import ExtractionFailure, FailureKind
from .extract import ParserFactory
from .normalize import ResponseNormalizer, NormalizationResult
from .reconcile import get_policy
from .schema import ExtractionPayload, IngestionResult

ProgressEvent = Tuple[int, str, Optional[IngestionResult]]


class IngestionPipeline:
    """
    One upload in, normalized and persisted transactions out.
    """

    def __init__(self, store, ai_client: Optional[AIExtractionClient] = None,
                 strategy: str = Config.RECONCILIATION_STRATEGY,
                 max_upload_bytes: int = Config.MAX_UPLOAD_BYTES):
        self.store = store
        self.ai_client = ai_client or AIExtractionClient()
        self.category_mapper = CategoryMapper()
        self.normalizer = ResponseNormalizer(self.category_mapper)
        self.policy = get_policy(strategy, store)
        self.max_upload_bytes = max_upload_bytes

    def process(self, data: bytes, file_type: str, filename: str = "",
                cancel_event: Optional[threading.Event] = None) -> Iterator[ProgressEvent]:
        """
        Process one statement through the complete pipeline.
        Yields (percentage, message, result_dict); result is only set on the last item.
        """
        start_time = time.time()

        try:
            # ─── 0. Input guard ───
            self.check_size(len(data))

            # ─── 1. Extract (0-20%) ───
            yield 10, "Reading Document...", None
            parser = ParserFactory.get_parser(file_type)
            payload = parser.parse(data, filename)
            yield 20, "Document Read Successful.", None

            # ─── 2. Parse & Normalize (20-70%) ───
            if payload["rows"] or payload["format"] == "csv":
                yield 30, "Mapping CSV columns...", None
                result = self.normalizer.normalize_rows(payload["rows"])
            else:
                yield 30, "Extracting transactions with AI...", None
                result = self.parse_with_ai(payload, cancel_event)
            yield 70, f"Parsed {len(result.transactions)} transactions ({result.dropped} rejected).", None

            if not result.transactions:
                raise ExtractionFailure(
                    FailureKind.NO_TRANSACTIONS_FOUND,
                    "No transactions found in the uploaded file",
                    detail=f"{result.candidates} candidate records, {result.dropped} rejected",
                )

            # ─── 3. Reconcile & Persist (70-95%) ───
            yield 75, "Saving transactions...", None
            report = self.policy.reconcile(result.transactions, dropped=result.dropped)
            yield 95, "Finalizing...", None

            data_block = report.to_dict()
            data_block["documentHash"] = payload["document_hash"]
            data_block["processingTimeMs"] = (time.time() - start_time) * 1000
            data_block["categoryStats"] = self.category_mapper.get_category_stats(report.saved)

            final: IngestionResult = {
                "success": True,
                "message": "Successfully processed bank statement!",
                "data": data_block,
            }
            if report.duplicates_skipped:
                final["warning"] = f"{report.duplicates_skipped} duplicate transactions were skipped"
                if report.saved_count == 0:
                    final["message"] = f"All {report.duplicates_skipped} transactions already exist in your records"
            elif report.duplicates_detected:
                final["warning"] = (
                    f"{report.duplicates_detected} transactions look like records from earlier uploads"
                )
            if report.error_count:
                final.setdefault("warning", f"{report.error_count} records could not be saved or were invalid")

            yield 100, "Done", final

        except ExtractionFailure as e:
            logging.warning(f"Ingestion failed [{e.kind.value}]: {e.message}")
            yield 0, f"Error: {e.message}", e.to_dict()
        except Exception as e:
            logging.exception("PIPELINE_ERROR")
            yield 0, f"Error: {str(e)}", {
                "success": False,
                "error": "Server error during file processing",
                "details": str(e),
                "suggestions": ["Please try again or contact support if the problem persists."],
            }

    def ingest(self, data: bytes, file_type: str, filename: str = "",
               cancel_event: Optional[threading.Event] = None) -> IngestionResult:
        """Run process() to completion and return only the final result."""
        final = None
        for _, _, res in self.process(data, file_type, filename, cancel_event):
            if res:
                final = res
        return final

    def check_size(self, size: int) -> None:
        if size > self.max_upload_bytes:
            limit_mb = self.max_upload_bytes / (1024 * 1024)
            raise ExtractionFailure(
                FailureKind.FILE_TOO_LARGE,
                f"File too large ({size / (1024 * 1024):.1f}MB). Max is {limit_mb:.0f}MB.",
            )

    def parse_with_ai(self, payload: ExtractionPayload,
                      cancel_event: Optional[threading.Event] = None) -> NormalizationResult:
        raw_text = payload["raw_text"]
        if not raw_text.strip():
            raise ExtractionFailure(
                FailureKind.NO_TRANSACTIONS_FOUND,
                "No readable text found in the uploaded file",
                detail="The document may be a scanned image without a text layer",
            )
        raw_output = self.ai_client.extract(raw_text, cancel_event=cancel_event)
        return self.normalizer.normalize(raw_output)
