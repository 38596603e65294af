import logging
from datetime import date
from decimal import Decimal

import pytest

from ledgerlens.etl.ai_client import AIExtractionClient
from ledgerlens.etl.models import ExtractedTransaction
from ledgerlens.etl.pipeline import IngestionPipeline
from ledgerlens.store import InMemoryTransactionStore

logging.basicConfig(level=logging.DEBUG, format='%(asctime)s %(levelname)s: %(message)s')


STARBUCKS_RESPONSE = (
    'Here are the transactions: [{"date":"2024-01-15","amount":-45.67,'
    '"description":"STARBUCKS COFFEE #123","category":"Food & Dining",'
    '"transactionType":"debit"}] Let me know if you need more.'
)


class FakeProvider:
    """Replays canned responses; exceptions in the list are raised instead."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    @property
    def calls(self):
        return len(self.prompts)

    def complete(self, prompt):
        self.prompts.append(prompt)
        item = self.responses[min(len(self.prompts), len(self.responses)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


class FailingStore(InMemoryTransactionStore):
    """Refuses to insert records whose description contains a marker."""

    def __init__(self, marker="FAIL"):
        super().__init__()
        self.marker = marker

    def insert(self, tx):
        if self.marker in tx.description:
            raise RuntimeError("insert rejected")
        return super().insert(tx)


def make_tx(description="STARBUCKS COFFEE #123", amount="-4.75", day=15, **kwargs):
    return ExtractedTransaction(
        date=date(2024, 1, day),
        description=description,
        amount=Decimal(amount),
        **kwargs
    )


def make_client(*responses, **kwargs):
    provider = FakeProvider(*responses)
    kwargs.setdefault("base_delay", 0)
    kwargs.setdefault("timeout", 5)
    return AIExtractionClient(provider=provider, **kwargs), provider


@pytest.fixture
def store():
    return InMemoryTransactionStore()


@pytest.fixture
def pipeline_factory(store):
    def build(*responses, strategy="session", **kwargs):
        client, provider = make_client(*responses)
        pipeline = IngestionPipeline(store, ai_client=client, strategy=strategy, **kwargs)
        return pipeline, provider
    return build
