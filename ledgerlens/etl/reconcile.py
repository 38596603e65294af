"""
Reconciliation Policy - decides how a newly extracted batch relates to
stored data, persists it, and accounts for every candidate.

Exactly one policy runs per ingestion (Config.RECONCILIATION_STRATEGY):

- SessionTaggingPolicy (default): every record is stamped with a fresh
  session tag and stored; nothing already stored is touched. Duplicates of
  stored records are reported as a warning only.
      parsed == saved + errorCount

- DuplicateSuppressionPolicy: a record whose (date, amount, description)
  already exists is skipped and counted.
      parsed == saved + duplicatesSkipped + errorCount

errorCount covers records dropped during normalization as well as records
that failed to persist. A failed insert never aborts the batch.
"""
import uuid
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Optional

from .models import ExtractedTransaction

if TYPE_CHECKING:
    from ..store import TransactionStore


def new_session_tag() -> str:
    return uuid.uuid4().hex


@dataclass
class ReconciliationReport:
    strategy: str
    session_tag: str
    parsed: int = 0
    saved: List[ExtractedTransaction] = field(default_factory=list)
    error_count: int = 0
    duplicates_skipped: int = 0
    duplicates_detected: int = 0
    previous_records_preserved: int = 0

    @property
    def saved_count(self) -> int:
        return len(self.saved)

    def is_consistent(self) -> bool:
        return self.parsed == self.saved_count + self.duplicates_skipped + self.error_count

    def to_dict(self) -> Dict:
        data = {
            "totalParsed": self.parsed,
            "totalSaved": self.saved_count,
            "errorCount": self.error_count,
            "transactions": [tx.to_dict() for tx in self.saved],
            "sessionTag": self.session_tag,
        }
        if self.strategy == DuplicateSuppressionPolicy.name:
            data["duplicatesSkipped"] = self.duplicates_skipped
            data["isDuplicateOnly"] = self.saved_count == 0 and self.duplicates_skipped > 0
        else:
            data["previousRecordsPreserved"] = self.previous_records_preserved
            data["duplicatesDetected"] = self.duplicates_detected
        return data


class ReconciliationPolicy:
    name = ""

    def __init__(self, store: "TransactionStore"):
        self.store = store

    def reconcile(self, transactions: List[ExtractedTransaction], dropped: int = 0,
                  session_tag: Optional[str] = None) -> ReconciliationReport:
        report = ReconciliationReport(
            strategy=self.name,
            session_tag=session_tag or new_session_tag(),
            parsed=len(transactions) + dropped,
            error_count=dropped,
        )
        self._before(report)
        for tx in transactions:
            self._reconcile_one(tx.with_session(report.session_tag), report)

        logging.info(
            f"Reconciled session {report.session_tag} [{self.name}]: parsed={report.parsed} "
            f"saved={report.saved_count} duplicates={report.duplicates_skipped} errors={report.error_count}"
        )
        return report

    def _before(self, report: ReconciliationReport) -> None:
        pass

    def _reconcile_one(self, tx: ExtractedTransaction, report: ReconciliationReport) -> None:
        raise NotImplementedError

    def _insert(self, tx: ExtractedTransaction, report: ReconciliationReport) -> None:
        try:
            report.saved.append(self.store.insert(tx))
        except Exception as e:
            report.error_count += 1
            logging.error(f"Error saving transaction '{tx.description[:50]}': {e}")


class SessionTaggingPolicy(ReconciliationPolicy):
    name = "session"

    def _before(self, report: ReconciliationReport) -> None:
        try:
            report.previous_records_preserved = self.store.count()
        except Exception as e:
            logging.warning(f"Could not count previous records: {e}")

    def _reconcile_one(self, tx: ExtractedTransaction, report: ReconciliationReport) -> None:
        try:
            existing = self.store.find_duplicate(tx)
            # Repeats inside this upload are not records from earlier uploads
            if existing is not None and existing.session_tag != report.session_tag:
                report.duplicates_detected += 1
        except Exception as e:
            logging.warning(f"Duplicate check failed for '{tx.description[:50]}': {e}")
        self._insert(tx, report)


class _LockStripes:
    """
    Fixed pool of locks shared by every policy instance in the process.
    Records whose content keys hash to the same stripe share a lock.
    """

    def __init__(self, size: int = 64):
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(size)]

    def get(self, key: tuple) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class DuplicateSuppressionPolicy(ReconciliationPolicy):
    """
    Lookup-then-insert runs under a striped per-content-key lock, which only
    serializes uploads within this process. Two processes racing on the same
    record can still both insert it.
    """
    name = "duplicate"
    _locks = _LockStripes()

    def _reconcile_one(self, tx: ExtractedTransaction, report: ReconciliationReport) -> None:
        with self._locks.get(tx.content_key):
            try:
                existing = self.store.find_duplicate(tx)
            except Exception as e:
                report.error_count += 1
                logging.error(f"Duplicate lookup failed for '{tx.description[:50]}': {e}")
                return

            if existing is not None:
                report.duplicates_skipped += 1
                logging.info(f"Duplicate transaction found: {tx.description}")
                return

            self._insert(tx, report)


POLICIES = {
    SessionTaggingPolicy.name: SessionTaggingPolicy,
    DuplicateSuppressionPolicy.name: DuplicateSuppressionPolicy,
}


def get_policy(strategy: str, store: "TransactionStore") -> ReconciliationPolicy:
    try:
        return POLICIES[strategy](store)
    except KeyError:
        raise ValueError(f"Unknown reconciliation strategy: {strategy}") from None
