from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Dict, Any

DESCRIPTION_MAX_LENGTH = 500
MERCHANT_MAX_LENGTH = 200
ORIGINAL_TEXT_MAX_LENGTH = 1000


def direction_for(amount: Decimal) -> str:
    return "credit" if amount >= 0 else "debit"


def derive_merchant(description: str) -> Optional[str]:
    """Best-effort merchant name: the first two words of a multi-word description."""
    words = description.split(" ")
    if len(words) > 1:
        return " ".join(words[:2])[:MERCHANT_MAX_LENGTH]
    return None


@dataclass
class ExtractedTransaction:
    date: date
    description: str
    amount: Decimal
    category: str = "Other"
    transaction_type: str = ""
    merchant: Optional[str] = None
    reference: Optional[str] = None
    balance: Optional[Decimal] = None
    original_text: Optional[str] = None
    is_verified: bool = False
    origin_tag: str = "ai"
    session_tag: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        if self.amount == 0:
            raise ValueError("Transaction amount cannot be zero")
        self.description = " ".join(self.description.split())[:DESCRIPTION_MAX_LENGTH]
        if not self.description:
            raise ValueError("Transaction description cannot be empty")
        # The sign of the amount is the source of truth for direction
        self.transaction_type = direction_for(self.amount)
        if not self.merchant:
            self.merchant = derive_merchant(self.description)
        if self.original_text:
            self.original_text = self.original_text[:ORIGINAL_TEXT_MAX_LENGTH]

    @property
    def content_key(self):
        return (self.date, self.amount, self.description)

    def with_session(self, session_tag: str) -> "ExtractedTransaction":
        return replace(self, session_tag=session_tag)

    def to_dict(self) -> Dict[str, Any]:
        """API representation (camelCase, JSON-safe)."""
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": float(self.amount),
            "category": self.category,
            "transactionType": self.transaction_type,
            "merchant": self.merchant,
            "reference": self.reference,
            "balance": float(self.balance) if self.balance is not None else None,
            "originalText": self.original_text,
            "isVerified": self.is_verified,
            "originTag": self.origin_tag,
            "sessionTag": self.session_tag,
            "createdAt": self.created_at,
        }

    def to_record(self) -> Dict[str, Any]:
        """Storage row (snake_case columns)."""
        return {
            "date": self.date.isoformat(),
            "description": self.description,
            "amount": str(self.amount),
            "category": self.category,
            "transaction_type": self.transaction_type,
            "merchant": self.merchant,
            "reference": self.reference,
            "balance": str(self.balance) if self.balance is not None else None,
            "original_text": self.original_text,
            "is_verified": self.is_verified,
            "origin_tag": self.origin_tag,
            "session_tag": self.session_tag,
        }

    @classmethod
    def from_record(cls, row: Dict[str, Any]) -> "ExtractedTransaction":
        raw_date = row["date"]
        if isinstance(raw_date, str):
            raw_date = datetime.fromisoformat(raw_date[:10]).date()
        balance = row.get("balance")
        created_at = row.get("created_at")
        return cls(
            date=raw_date,
            description=row["description"],
            amount=Decimal(str(row["amount"])),
            category=row.get("category") or "Other",
            merchant=row.get("merchant"),
            reference=row.get("reference"),
            balance=Decimal(str(balance)) if balance is not None else None,
            original_text=row.get("original_text"),
            is_verified=bool(row.get("is_verified", False)),
            origin_tag=row.get("origin_tag") or "ai",
            session_tag=row.get("session_tag"),
            id=str(row["id"]) if row.get("id") is not None else None,
            created_at=str(created_at) if created_at is not None else None,
        )
