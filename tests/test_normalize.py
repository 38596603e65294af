import json
from datetime import date
from decimal import Decimal

import pytest

from ledgerlens.etl.errors import ExtractionFailure, FailureKind
from ledgerlens.etl.normalize import ResponseNormalizer, parse_amount, parse_date

from conftest import STARBUCKS_RESPONSE


@pytest.fixture
def normalizer():
    return ResponseNormalizer()


def _record(**overrides):
    record = {
        "date": "2024-01-15",
        "amount": -45.67,
        "description": "STARBUCKS COFFEE #123",
        "category": "Food & Dining",
        "transactionType": "debit",
    }
    record.update(overrides)
    return record


def test_prose_wrapped_array(normalizer):
    result = normalizer.normalize(STARBUCKS_RESPONSE)

    assert result.dropped == 0
    assert len(result.transactions) == 1
    tx = result.transactions[0]
    assert tx.amount == Decimal("-45.67")
    assert tx.date == date(2024, 1, 15)
    assert tx.category == "Food & Dining"
    assert tx.transaction_type == "debit"
    assert tx.origin_tag == "ai"
    assert tx.is_verified is False


def test_well_formed_records_are_all_kept(normalizer):
    records = [_record(description=f"STORE {i}", amount=-(i + 1)) for i in range(5)]
    result = normalizer.normalize(json.dumps(records))
    assert len(result.transactions) == 5
    assert result.dropped == 0
    assert result.candidates == 5


def test_zero_amount_is_dropped(normalizer):
    records = [_record(), _record(amount=0, description="ZERO"), _record(amount=12.5, description="REFUND")]
    result = normalizer.normalize(json.dumps(records))
    assert len(result.transactions) == 2
    assert result.dropped == 1
    assert "ZERO" not in [t.description for t in result.transactions]


@pytest.mark.parametrize("bad", [
    {"date": "not a date"},
    {"date": None},
    {"amount": "abc"},
    {"amount": None},
    {"amount": "0.00"},
    {"description": "   "},
    {"description": None},
])
def test_invalid_fields_drop_only_that_record(normalizer, bad):
    result = normalizer.normalize(json.dumps([_record(), _record(**bad)]))
    assert len(result.transactions) == 1
    assert result.dropped == 1


def test_non_object_elements_are_dropped(normalizer):
    result = normalizer.normalize(json.dumps([_record(), "oops", 42]))
    assert len(result.transactions) == 1
    assert result.dropped == 2


def test_unknown_category_becomes_other_and_is_kept(normalizer):
    result = normalizer.normalize(json.dumps([_record(category="Coffee Shops")]))
    assert len(result.transactions) == 1
    assert result.transactions[0].category == "Other"


def test_missing_category_uses_keyword_rules(normalizer):
    record = _record()
    del record["category"]
    result = normalizer.normalize(json.dumps([record]))
    assert result.transactions[0].category == "Food & Dining"


def test_transaction_type_follows_amount_sign(normalizer):
    result = normalizer.normalize(json.dumps([
        _record(amount=-10, transactionType="credit"),
        _record(amount=10, transactionType="debit", description="REFUND"),
        _record(amount=5, transactionType=None, description="INTEREST"),
    ]))
    assert [t.transaction_type for t in result.transactions] == ["debit", "credit", "credit"]


def test_merchant_and_reference(normalizer):
    result = normalizer.normalize(json.dumps([
        _record(merchant="Starbucks", reference="CHK 1001"),
        _record(description="  SHELL   OIL  57442 "),
        _record(description="AMAZON"),
    ]))
    first, second, third = result.transactions
    assert first.merchant == "Starbucks"
    assert first.reference == "CHK 1001"
    assert second.description == "SHELL OIL 57442"
    assert second.merchant == "SHELL OIL"
    assert second.reference is None
    assert third.merchant is None


def test_empty_array(normalizer):
    result = normalizer.normalize("[]")
    assert result.transactions == []
    assert result.dropped == 0


@pytest.mark.parametrize("raw", [
    "I could not find any transactions.",
    "] backwards [",
    '[{"date": "2024-01-15", "amount": }]',
    None,
])
def test_unparsable_response_fails_whole_batch(normalizer, raw):
    with pytest.raises(ExtractionFailure) as exc:
        normalizer.normalize(raw)
    assert exc.value.kind == FailureKind.UNPARSABLE_RESPONSE


def test_csv_rows_are_categorized(normalizer):
    rows = [
        {"date": "2024-01-15", "amount": "-4.75", "description": "STARBUCKS COFFEE #123"},
        {"date": "01/16/2024", "amount": "$2,500.00", "description": "ACME PAYROLL SALARY"},
        {"date": "2024-01-17", "amount": "0", "description": "ZERO"},
    ]
    result = normalizer.normalize_rows(rows)
    assert result.dropped == 1
    starbucks, salary = result.transactions
    assert starbucks.category == "Food & Dining"
    assert starbucks.transaction_type == "debit"
    assert starbucks.origin_tag == "csv"
    assert salary.amount == Decimal("2500.00")
    assert salary.date == date(2024, 1, 16)
    assert salary.category == "Income"
    assert salary.transaction_type == "credit"


@pytest.mark.parametrize("raw,expected", [
    ("-123.45", Decimal("-123.45")),
    ("$1,234.56", Decimal("1234.56")),
    ("(123.45)", Decimal("-123.45")),
    (" 42 ", Decimal("42")),
    (-45.67, Decimal("-45.67")),
    (10, Decimal("10")),
    ("abc", None),
    ("", None),
    (True, None),
    (float("nan"), None),
])
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


@pytest.mark.parametrize("raw,expected", [
    ("2024-01-15", date(2024, 1, 15)),
    ("2024-01-15T09:30:00Z", date(2024, 1, 15)),
    ("01/15/2024", date(2024, 1, 15)),
    ("Jan 15, 2024", date(2024, 1, 15)),
    ("garbage", None),
    ("", None),
])
def test_parse_date(raw, expected):
    assert parse_date(raw) == expected
