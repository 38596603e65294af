import io
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import List, Dict, Any, Optional

import pandas as pd
import pdfplumber

from .errors import ExtractionFailure, FailureKind
from .schema import ExtractionPayload, CandidateRow

# Known header triples from different banks, in priority order.
CSV_COLUMN_MAPPINGS = [
    {"date": "Date", "amount": "Amount", "description": "Description"},
    {"date": "Transaction Date", "amount": "Amount", "description": "Transaction Description"},
    {"date": "date", "amount": "amount", "description": "description"},
    {"date": "DATE", "amount": "AMOUNT", "description": "DESCRIPTION"},
]

# Formats commonly offered at the upload boundary that this layer does not parse.
SPREADSHEET_FORMATS = {"xls", "xlsx"}


class BaseParser(ABC):
    format = ""

    @abstractmethod
    def parse(self, data: bytes, filename: str = "") -> ExtractionPayload:
        pass

    def get_document_hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    def _payload(self, data: bytes, filename: str, raw_text: str = "",
                 rows: Optional[List[CandidateRow]] = None) -> ExtractionPayload:
        return {
            "document_hash": self.get_document_hash(data),
            "format": self.format,
            "raw_text": raw_text,
            "rows": rows or [],
            "source_file": filename,
        }


class PDFParser(BaseParser):
    format = "pdf"

    def parse(self, data: bytes, filename: str = "") -> ExtractionPayload:
        raw_text_pages = []

        logging.info(f"Extracting PDF text: {filename or '<bytes>'}")
        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                for page in pdf.pages:
                    text = page.extract_text()
                    if text:
                        raw_text_pages.append(text)
        except Exception as e:
            logging.warning(f"PDF extraction failed for {filename}: {e}")
            raise ExtractionFailure(
                FailureKind.UNREADABLE_DOCUMENT,
                "The PDF could not be read. The file may be corrupted or password protected.",
                detail=str(e),
            ) from e

        return self._payload(data, filename, raw_text="\n".join(raw_text_pages))


class CSVParser(BaseParser):
    format = "csv"

    def parse(self, data: bytes, filename: str = "") -> ExtractionPayload:
        try:
            df = pd.read_csv(io.BytesIO(data), dtype=str, keep_default_na=False,
                             skipinitialspace=True)
        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            raise ExtractionFailure(
                FailureKind.UNREADABLE_DOCUMENT,
                "The CSV file could not be parsed.",
                detail=str(e),
            ) from e

        rows: List[CandidateRow] = []
        skipped = 0
        for record in df.to_dict(orient="records"):
            row = self.map_row(record)
            if row is None:
                skipped += 1
                continue
            rows.append(row)

        if skipped:
            logging.info(f"CSV {filename}: {skipped} rows matched no known column mapping")

        return self._payload(data, filename, rows=rows)

    @staticmethod
    def map_row(record: Dict[str, Any]) -> Optional[CandidateRow]:
        """Map a header-keyed row onto the first column triple that is fully populated."""
        for mapping in CSV_COLUMN_MAPPINGS:
            values = {field: str(record.get(column, "") or "").strip()
                      for field, column in mapping.items()}
            if all(values.values()):
                return {
                    "date": values["date"],
                    "amount": values["amount"],
                    "description": values["description"],
                    "original_text": ",".join(f"{k}={v}" for k, v in record.items()),
                }
        return None


class TextParser(BaseParser):
    format = "txt"

    def parse(self, data: bytes, filename: str = "") -> ExtractionPayload:
        text = data.decode("utf-8", errors="replace")
        return self._payload(data, filename, raw_text=text)


class ParserFactory:
    @staticmethod
    def get_parser(file_type: str) -> BaseParser:
        ft = (file_type or "").lower().lstrip(".")
        if ft == 'pdf':
            return PDFParser()
        elif ft == 'csv':
            return CSVParser()
        elif ft == 'txt':
            return TextParser()
        elif ft in SPREADSHEET_FORMATS:
            raise ExtractionFailure(
                FailureKind.UNSUPPORTED_FORMAT,
                f"Spreadsheet files (.{ft}) are not supported. Export the sheet to CSV and upload it again.",
            )
        else:
            raise ExtractionFailure(
                FailureKind.UNSUPPORTED_FORMAT,
                f"Unsupported file type: {file_type}. Only PDF, CSV, and TXT files are allowed.",
            )
