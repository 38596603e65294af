"""
CategoryMapper - Rule-Based Transaction Categorization Engine.

Provides transparent, deterministic categorization using keyword matching.
Used directly for CSV imports and for AI records that come back without
a category.

Keyword matching is plain substring containment, so short keywords can
collide with unrelated words ("cash" inside "cashier", "car" inside "card").
Evaluation order is the tie-breaker: do not reorder without checking
which descriptions move between categories.
"""
from typing import List, Optional, Sequence, Tuple

from .schema import CATEGORIES


# ─────────────────────────────────────────────────────────────
# Category Rules Configuration
# ─────────────────────────────────────────────────────────────
# Single source of truth for categorization.
# Rules are applied in order; first match wins.

CATEGORY_RULES: List[Tuple[str, Tuple[str, ...]]] = [
    ("Food & Dining", (
        "restaurant", "cafe", "food", "dining", "starbucks", "mcdonalds",
        "pizza", "grocery",
    )),
    ("Shopping", (
        "amazon", "walmart", "target", "store", "shop", "retail", "purchase",
    )),
    ("Transportation", (
        "gas", "fuel", "uber", "lyft", "parking", "metro", "transit", "car",
    )),
    ("Bills & Utilities", (
        "electric", "water", "internet", "phone", "insurance", "rent", "mortgage",
    )),
    ("Entertainment", (
        "movie", "netflix", "spotify", "game", "entertainment", "fun",
    )),
    ("Healthcare", (
        "pharmacy", "doctor", "hospital", "medical", "health",
    )),
    ("Travel", (
        "hotel", "flight", "airbnb", "booking", "travel",
    )),
    ("ATM & Cash", (
        "atm", "cash", "withdrawal",
    )),
    ("Transfer", (
        "transfer", "deposit", "wire",
    )),
    ("Income", (
        "salary", "paycheck", "deposit", "income", "payment",
    )),
]

DEFAULT_CATEGORY = "Other"


def is_valid_category(category) -> bool:
    return isinstance(category, str) and category in CATEGORIES


class CategoryMapper:
    """
    Deterministic transaction categorizer using keyword matching.

    Usage:
        mapper = CategoryMapper()
        category = mapper.categorize("STARBUCKS COFFEE #123")
        # Returns: "Food & Dining"
    """

    def __init__(self, custom_rules: Optional[Sequence[Tuple[str, Sequence[str]]]] = None):
        """
        Args:
            custom_rules: Optional ordered (category, keywords) pairs that
                replace CATEGORY_RULES. Categories must belong to CATEGORIES.
        """
        rules = custom_rules if custom_rules else CATEGORY_RULES
        for category, _ in rules:
            if not is_valid_category(category):
                raise ValueError(f"Unknown category in rules: {category}")
        self.rules = [(category, tuple(k.lower() for k in keywords)) for category, keywords in rules]

    def categorize(self, description: str) -> str:
        """
        Categorize a transaction based on its description.

        Returns:
            Category name, defaults to "Other". Never raises.
        """
        if not description:
            return DEFAULT_CATEGORY

        desc_lower = str(description).lower()

        for category, keywords in self.rules:
            for keyword in keywords:
                if keyword in desc_lower:
                    return category

        return DEFAULT_CATEGORY

    def get_rules(self) -> List[Tuple[str, Tuple[str, ...]]]:
        """Return current categorization rules for transparency/audit."""
        return list(self.rules)

    def get_category_stats(self, transactions: list) -> dict:
        """
        Category distribution for a batch of ExtractedTransaction records.
        Zero-count categories are omitted.
        """
        stats = {cat: 0 for cat in CATEGORIES}

        for tx in transactions:
            cat = getattr(tx, "category", DEFAULT_CATEGORY)
            if cat in stats:
                stats[cat] += 1
            else:
                stats[DEFAULT_CATEGORY] += 1

        return {k: v for k, v in stats.items() if v > 0}
