"""
Transaction Store - persistence gateway for extracted transactions.

SupabaseTransactionStore keeps records in a Supabase `transactions` table.
InMemoryTransactionStore keeps them in process memory; it is used when
Supabase is not configured (local development) and in tests.
"""
import uuid
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple

from supabase import create_client

from .etl.config import Config
from .etl.models import ExtractedTransaction

SORTABLE_FIELDS = {
    "date": "date",
    "amount": "amount",
    "description": "description",
    "category": "category",
    "createdAt": "created_at",
    "created_at": "created_at",
}

# Columns a bulk update may touch
BULK_UPDATABLE = {"category", "is_verified", "merchant", "reference"}

# Supabase caps a single select at 1000 rows by default
RECORDS_PAGE_SIZE = 1000


@dataclass
class TransactionQuery:
    session_tag: Optional[str] = None
    category: Optional[str] = None
    transaction_type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    search: Optional[str] = None
    sort_by: str = "date"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 50

    @property
    def offset(self) -> int:
        return (max(self.page, 1) - 1) * self.limit

    @property
    def sort_column(self) -> str:
        return SORTABLE_FIELDS.get(self.sort_by, "date")


class TransactionStore(ABC):
    @abstractmethod
    def insert(self, tx: ExtractedTransaction) -> ExtractedTransaction:
        pass

    @abstractmethod
    def find_duplicate(self, tx: ExtractedTransaction) -> Optional[ExtractedTransaction]:
        """Stored record with identical (date, amount, description), if any."""

    @abstractmethod
    def count(self, session_tag: Optional[str] = None) -> int:
        pass

    @abstractmethod
    def get(self, tx_id: str) -> Optional[ExtractedTransaction]:
        pass

    @abstractmethod
    def list(self, query: TransactionQuery) -> Tuple[List[ExtractedTransaction], int]:
        """Returns (page of records, total matching count)."""

    @abstractmethod
    def update(self, tx_id: str, tx: ExtractedTransaction) -> Optional[ExtractedTransaction]:
        pass

    @abstractmethod
    def delete(self, tx_id: str) -> Optional[ExtractedTransaction]:
        pass

    @abstractmethod
    def bulk_update(self, tx_ids: List[str], changes: Dict[str, Any]) -> Tuple[int, int]:
        """Returns (matched, modified)."""

    def records_for_session(self, session_tag: Optional[str],
                            page_size: int = RECORDS_PAGE_SIZE) -> List[ExtractedTransaction]:
        """Every record of one ingestion run (all records when session_tag is None)."""
        records: List[ExtractedTransaction] = []
        page = 1
        while True:
            batch, total = self.list(TransactionQuery(session_tag=session_tag, page=page, limit=page_size))
            records.extend(batch)
            if not batch or len(records) >= total:
                return records
            page += 1


def _check_bulk_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(changes) - BULK_UPDATABLE
    if unknown:
        raise ValueError(f"Fields cannot be bulk updated: {', '.join(sorted(unknown))}")
    return changes


class InMemoryTransactionStore(TransactionStore):
    """Thread-safe process-local store."""

    def __init__(self):
        self._records: Dict[str, ExtractedTransaction] = {}
        self._lock = threading.RLock()

    def insert(self, tx: ExtractedTransaction) -> ExtractedTransaction:
        with self._lock:
            saved = replace(tx, id=uuid.uuid4().hex, created_at=datetime.now().isoformat())
            self._records[saved.id] = saved
            return saved

    def find_duplicate(self, tx: ExtractedTransaction) -> Optional[ExtractedTransaction]:
        with self._lock:
            for record in self._records.values():
                if record.content_key == tx.content_key:
                    return record
        return None

    def count(self, session_tag: Optional[str] = None) -> int:
        with self._lock:
            if session_tag is None:
                return len(self._records)
            return sum(1 for r in self._records.values() if r.session_tag == session_tag)

    def get(self, tx_id: str) -> Optional[ExtractedTransaction]:
        with self._lock:
            return self._records.get(tx_id)

    def list(self, query: TransactionQuery) -> Tuple[List[ExtractedTransaction], int]:
        with self._lock:
            records = list(self._records.values())

        def matches(r: ExtractedTransaction) -> bool:
            if query.session_tag is not None and r.session_tag != query.session_tag:
                return False
            if query.category and r.category != query.category:
                return False
            if query.transaction_type and r.transaction_type != query.transaction_type:
                return False
            if query.start_date and r.date < query.start_date:
                return False
            if query.end_date and r.date > query.end_date:
                return False
            if query.search:
                needle = query.search.lower()
                haystacks = (r.description, r.merchant or "", r.category)
                if not any(needle in h.lower() for h in haystacks):
                    return False
            return True

        column = query.sort_column
        filtered = [r for r in records if matches(r)]
        # created_at is a secondary key so equal dates keep insertion order
        filtered.sort(key=lambda r: r.created_at or "", reverse=query.sort_order == "desc")
        filtered.sort(key=lambda r: _sort_value(getattr(r, column)), reverse=query.sort_order == "desc")
        total = len(filtered)
        return filtered[query.offset:query.offset + query.limit], total

    def update(self, tx_id: str, tx: ExtractedTransaction) -> Optional[ExtractedTransaction]:
        with self._lock:
            existing = self._records.get(tx_id)
            if existing is None:
                return None
            saved = replace(tx, id=tx_id, created_at=existing.created_at)
            self._records[tx_id] = saved
            return saved

    def delete(self, tx_id: str) -> Optional[ExtractedTransaction]:
        with self._lock:
            return self._records.pop(tx_id, None)

    def bulk_update(self, tx_ids: List[str], changes: Dict[str, Any]) -> Tuple[int, int]:
        _check_bulk_changes(changes)
        matched = modified = 0
        with self._lock:
            for tx_id in tx_ids:
                existing = self._records.get(tx_id)
                if existing is None:
                    continue
                matched += 1
                updated = replace(existing, **changes)
                if updated != existing:
                    modified += 1
                self._records[tx_id] = updated
        return matched, modified


def _sort_value(value):
    # Mixed None / str columns (merchant) must still sort
    if value is None:
        return (0, "")
    return (1, value)


class SupabaseTransactionStore(TransactionStore):
    """
    Supabase-backed store. Expects a `transactions` table whose columns match
    ExtractedTransaction.to_record() plus `id` and `created_at` defaults.
    """

    def __init__(self, url: str, key: str, table: str = Config.SUPABASE_TABLE):
        self.url = url
        self.table_name = table
        self.client = create_client(url, key)
        logging.info(f"Supabase transaction store initialized (table: {table}).")

    def _table(self):
        return self.client.table(self.table_name)

    @staticmethod
    def _rows(res) -> List[ExtractedTransaction]:
        return [ExtractedTransaction.from_record(row) for row in (res.data or [])]

    def insert(self, tx: ExtractedTransaction) -> ExtractedTransaction:
        res = self._table().insert(tx.to_record()).execute()
        return self._rows(res)[0]

    def find_duplicate(self, tx: ExtractedTransaction) -> Optional[ExtractedTransaction]:
        res = (self._table().select("*")
               .eq("date", tx.date.isoformat())
               .eq("amount", str(tx.amount))
               .eq("description", tx.description)
               .order("created_at")
               .limit(1).execute())
        rows = self._rows(res)
        return rows[0] if rows else None

    def count(self, session_tag: Optional[str] = None) -> int:
        query = self._table().select("id", count="exact")
        if session_tag is not None:
            query = query.eq("session_tag", session_tag)
        res = query.execute()
        return res.count if res.count is not None else len(res.data)

    def get(self, tx_id: str) -> Optional[ExtractedTransaction]:
        res = self._table().select("*").eq("id", tx_id).limit(1).execute()
        rows = self._rows(res)
        return rows[0] if rows else None

    def list(self, query: TransactionQuery) -> Tuple[List[ExtractedTransaction], int]:
        q = self._table().select("*", count="exact")
        if query.session_tag is not None:
            q = q.eq("session_tag", query.session_tag)
        if query.category:
            q = q.eq("category", query.category)
        if query.transaction_type:
            q = q.eq("transaction_type", query.transaction_type)
        if query.start_date:
            q = q.gte("date", query.start_date.isoformat())
        if query.end_date:
            q = q.lte("date", query.end_date.isoformat())
        if query.search:
            s = query.search.replace(",", " ")
            q = q.or_(f"description.ilike.*{s}*,merchant.ilike.*{s}*,category.ilike.*{s}*")

        q = q.order(query.sort_column, desc=query.sort_order == "desc")
        # Tie-breaker keeps pages stable when records_for_session walks them
        q = q.order("id")
        q = q.range(query.offset, query.offset + query.limit - 1)
        res = q.execute()
        total = res.count if res.count is not None else len(res.data)
        return self._rows(res), total

    def update(self, tx_id: str, tx: ExtractedTransaction) -> Optional[ExtractedTransaction]:
        res = self._table().update(tx.to_record()).eq("id", tx_id).execute()
        rows = self._rows(res)
        return rows[0] if rows else None

    def delete(self, tx_id: str) -> Optional[ExtractedTransaction]:
        res = self._table().delete().eq("id", tx_id).execute()
        rows = self._rows(res)
        return rows[0] if rows else None

    def bulk_update(self, tx_ids: List[str], changes: Dict[str, Any]) -> Tuple[int, int]:
        _check_bulk_changes(changes)
        res = self._table().update(changes).in_("id", tx_ids).execute()
        modified = len(res.data or [])
        return modified, modified


def create_store(config=Config) -> TransactionStore:
    """Supabase when configured, otherwise a process-local store."""
    key = config.SUPABASE_SERVICE_ROLE_KEY or config.SUPABASE_KEY
    if config.SUPABASE_URL and key:
        return SupabaseTransactionStore(config.SUPABASE_URL, key, config.SUPABASE_TABLE)
    logging.warning("Supabase not configured. Transactions are kept in memory only.")
    return InMemoryTransactionStore()
