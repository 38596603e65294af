"""
Normalize Layer - coerce extracted candidates into ExtractedTransaction records.

AI responses are repaired by slicing from the first '[' to the last ']'
before JSON parsing. A response that still fails to parse fails the whole
batch (UnparsableResponse). Individual records that fail coercion are
dropped and counted, never persisted half-formed:

- date unparseable          -> dropped
- amount non-numeric / zero -> dropped
- description empty         -> dropped
- category outside the enumeration -> replaced with "Other" (kept)
- transactionType disagreeing with the amount sign -> repaired (kept)
"""
import re
import json
import math
import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

import pandas as pd

from .categorize import CategoryMapper, DEFAULT_CATEGORY, is_valid_category
from .errors import ExtractionFailure, FailureKind
from .models import ExtractedTransaction, direction_for
from .schema import CandidateRow

_AMOUNT_NOISE = re.compile(r"[$,\s()]")


class RecordRejected(ValueError):
    """A single candidate failed coercion."""


class NormalizationResult(NamedTuple):
    transactions: List[ExtractedTransaction]
    dropped: int
    candidates: int


# ─────────────────────────────────────────────────────────────
# Field coercion
# ─────────────────────────────────────────────────────────────

def parse_date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.strptime(text[:10], "%Y-%m-%d").date()
    except ValueError:
        pass

    try:
        parsed = pd.to_datetime(text, errors="coerce")
    except (ValueError, TypeError, OverflowError):
        return None
    if pd.isna(parsed):
        return None
    return parsed.date()


def parse_amount(value: Any) -> Optional[Decimal]:
    """Handle 123.45, -123.45, $1,234.56 and (123.45) style amounts."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float, Decimal)):
        amount = Decimal(str(value))
    else:
        text = str(value).strip()
        negative = text.startswith("(") and text.endswith(")")
        cleaned = _AMOUNT_NOISE.sub("", text)
        if negative:
            cleaned = "-" + cleaned.lstrip("-")
        try:
            amount = Decimal(cleaned)
        except InvalidOperation:
            return None
    if not amount.is_finite():
        return None
    return amount


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


class ResponseNormalizer:
    """
    Usage:
        normalizer = ResponseNormalizer()
        result = normalizer.normalize(raw_model_output)
        result.transactions, result.dropped
    """

    def __init__(self, category_mapper: Optional[CategoryMapper] = None):
        self.category_mapper = category_mapper or CategoryMapper()

    # ─── AI path ───

    @staticmethod
    def extract_array(raw_output: Any) -> List[Any]:
        if not isinstance(raw_output, str):
            raise ExtractionFailure(
                FailureKind.UNPARSABLE_RESPONSE,
                "AI response parsing failed. Please try again.",
                detail="Provider returned no text",
            )

        json_start = raw_output.find("[")
        json_end = raw_output.rfind("]")
        if json_start == -1 or json_end <= json_start:
            raise ExtractionFailure(
                FailureKind.UNPARSABLE_RESPONSE,
                "AI response parsing failed. Please try again.",
                detail="No JSON array found in AI response",
            )

        try:
            parsed = json.loads(raw_output[json_start:json_end + 1])
        except json.JSONDecodeError as e:
            raise ExtractionFailure(
                FailureKind.UNPARSABLE_RESPONSE,
                "AI response parsing failed. Please try again.",
                detail=f"Invalid JSON: {e.msg}",
            ) from e

        if not isinstance(parsed, list):
            raise ExtractionFailure(
                FailureKind.UNPARSABLE_RESPONSE,
                "AI response parsing failed. Please try again.",
                detail="AI response JSON is not an array",
            )
        return parsed

    def normalize(self, raw_output: Any) -> NormalizationResult:
        items = self.extract_array(raw_output)
        return self._coerce_all(items, self.coerce_ai_record)

    def coerce_ai_record(self, item: Any) -> ExtractedTransaction:
        if not isinstance(item, dict):
            raise RecordRejected(f"Expected an object, got {type(item).__name__}")

        tx_date = parse_date(item.get("date"))
        if tx_date is None:
            raise RecordRejected(f"Unparseable date: {item.get('date')!r}")

        amount = parse_amount(item.get("amount"))
        if amount is None:
            raise RecordRejected(f"Non-numeric amount: {item.get('amount')!r}")
        if amount == 0:
            raise RecordRejected("Transaction amount cannot be zero")

        description = _optional_text(item.get("description"))
        if not description:
            raise RecordRejected("Empty description")

        raw_category = item.get("category")
        if raw_category is None or raw_category == "":
            category = self.category_mapper.categorize(description)
        elif is_valid_category(raw_category):
            category = raw_category
        else:
            logging.info(f"Replacing unknown category {raw_category!r} with {DEFAULT_CATEGORY}")
            category = DEFAULT_CATEGORY

        claimed_type = item.get("transactionType")
        if claimed_type != direction_for(amount):
            logging.info(
                f"Repairing transactionType {claimed_type!r} for amount {amount} "
                f"({description[:30]})"
            )

        return ExtractedTransaction(
            date=tx_date,
            description=description,
            amount=amount,
            category=category,
            merchant=_optional_text(item.get("merchant")),
            reference=_optional_text(item.get("reference")),
            balance=parse_amount(item.get("balance")),
            original_text=json.dumps(item, default=str),
            is_verified=False,
            origin_tag="ai",
        )

    # ─── CSV path ───

    def normalize_rows(self, rows: Iterable[CandidateRow]) -> NormalizationResult:
        return self._coerce_all(list(rows), self.coerce_csv_row)

    def coerce_csv_row(self, row: Dict[str, Any]) -> ExtractedTransaction:
        tx_date = parse_date(row.get("date"))
        if tx_date is None:
            raise RecordRejected(f"Unparseable date: {row.get('date')!r}")

        amount = parse_amount(row.get("amount"))
        if amount is None or amount == 0:
            raise RecordRejected(f"Invalid amount: {row.get('amount')!r}")

        description = _optional_text(row.get("description"))
        if not description:
            raise RecordRejected("Empty description")

        return ExtractedTransaction(
            date=tx_date,
            description=description,
            amount=amount,
            category=self.category_mapper.categorize(description),
            original_text=row.get("original_text"),
            is_verified=False,
            origin_tag="csv",
        )

    # ─── Shared ───

    @staticmethod
    def _coerce_all(items: List[Any], coerce) -> NormalizationResult:
        transactions = []
        dropped = 0
        for idx, item in enumerate(items):
            try:
                transactions.append(coerce(item))
            except ValueError as e:
                dropped += 1
                logging.warning(f"Dropped record {idx + 1}: {e}")
        return NormalizationResult(transactions, dropped, len(items))
