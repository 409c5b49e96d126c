"""
Category defaults and category suggestions for transactions.
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.db_helpers import visible_categories_filter
from app.models import Category, Transaction

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = [
    {"name": "Food", "icon": "restaurant", "color": "#10b981", "children": [
        {"name": "Groceries", "icon": "shopping-cart"},
        {"name": "Restaurants", "icon": "restaurant"},
        {"name": "Delivery", "icon": "truck"},
    ]},
    {"name": "Transport", "icon": "car", "color": "#3b82f6", "children": [
        {"name": "Fuel", "icon": "gas-station"},
        {"name": "Public Transport", "icon": "bus"},
        {"name": "Taxi & Rideshare", "icon": "taxi"},
    ]},
    {"name": "Housing", "icon": "home", "color": "#8b5cf6", "children": [
        {"name": "Rent", "icon": "home"},
        {"name": "Condo Fees", "icon": "building"},
        {"name": "Electricity", "icon": "flashlight"},
        {"name": "Water", "icon": "drop"},
        {"name": "Internet", "icon": "global"},
    ]},
    {"name": "Health", "icon": "hospital", "color": "#ef4444", "children": []},
    {"name": "Education", "icon": "book", "color": "#f59e0b", "children": []},
    {"name": "Entertainment", "icon": "film", "color": "#ec4899", "children": []},
    {"name": "Shopping", "icon": "shopping-bag", "color": "#06b6d4", "children": []},
    {"name": "Services", "icon": "tools", "color": "#84cc16", "children": []},
    {"name": "Investments", "icon": "line-chart", "color": "#6366f1", "children": []},
    {"name": "Salary", "icon": "money-dollar", "color": "#22c55e", "children": []},
    {"name": "Other", "icon": "archive", "color": "#6b7280", "children": []},
]

# Keyword rules keyed by lowercase category name. Matching is substring-based
# on normalized text, so keywords should be lowercase.
KEYWORD_RULES: Dict[str, List[str]] = {
    "groceries": ["supermarket", "grocery", "market", "carrefour", "walmart", "aldi", "lidl", "tesco"],
    "restaurants": ["restaurant", "cafe", "coffee", "starbucks", "bar", "pizza", "burger", "bistro"],
    "delivery": ["ifood", "ubereats", "uber eats", "deliveroo", "doordash", "rappi", "just eat"],
    "fuel": ["fuel", "petrol", "gas station", "shell", "esso", "ipiranga", "chevron"],
    "public transport": ["metro", "subway", "bus", "train", "railway", "transit"],
    "taxi & rideshare": ["uber", "lyft", "taxi", "cabify", "99 pop", "bolt"],
    "rent": ["rent", "landlord", "lease"],
    "condo fees": ["condo", "hoa", "condominium"],
    "electricity": ["electric", "energy", "power"],
    "water": ["water", "sewage"],
    "internet": ["internet", "broadband", "fiber", "wifi"],
    "health": ["pharmacy", "drugstore", "doctor", "dentist", "hospital", "clinic", "medical"],
    "education": ["school", "university", "college", "tuition", "course", "udemy", "coursera"],
    "entertainment": ["netflix", "spotify", "disney", "cinema", "movie", "concert", "ticket", "steam"],
    "shopping": ["amazon", "ebay", "store", "shop", "mall", "zara"],
    "services": ["subscription", "service", "repair", "laundry", "cleaning"],
    "investments": ["broker", "investment", "dividend", "stock", "etf"],
    "salary": ["salary", "payroll", "wages", "paycheck"],
}

INCOME_CATEGORY_NAMES = {"salary", "investments"}


@dataclass
class CategorySuggestion:
    category: Optional[Category]
    method: str  # 'history', 'keyword', 'none'
    confidence: float = 0.0


def normalize_description(text: Optional[str]) -> str:
    """
    Lowercase, drop punctuation and digits-only tokens, collapse whitespace.
    Card/terminal suffixes like "#1234" vary between otherwise identical purchases.
    """
    if not text:
        return ""
    text = text.lower()
    text = re.sub(r"[^a-z0-9\s&]", " ", text)
    tokens = [token for token in text.split() if not token.isdigit()]
    return " ".join(tokens)


def initialize_default_categories(db: Session) -> int:
    """
    Create the system category tree if missing.

    Returns:
        Number of categories created
    """
    created = 0
    for parent_spec in DEFAULT_CATEGORIES:
        parent = db.query(Category).filter(
            Category.user_id.is_(None),
            Category.parent_id.is_(None),
            Category.name == parent_spec["name"],
        ).first()
        if not parent:
            parent = Category(
                name=parent_spec["name"],
                icon=parent_spec["icon"],
                color=parent_spec["color"],
                is_system=True,
            )
            db.add(parent)
            db.flush()
            created += 1

        for child_spec in parent_spec["children"]:
            exists = db.query(Category.id).filter(
                Category.user_id.is_(None),
                Category.parent_id == parent.id,
                Category.name == child_spec["name"],
            ).first()
            if exists:
                continue
            db.add(Category(
                name=child_spec["name"],
                icon=child_spec["icon"],
                color=parent_spec["color"],
                parent_id=parent.id,
                is_system=True,
            ))
            created += 1

    db.commit()
    if created:
        logger.info(f"Initialized {created} default categories")
    return created


class CategorySuggester:
    """
    Suggests a category for a transaction description.

    1. History: the category the user most often assigned to the same
       normalized description.
    2. Keywords: keyword rules matched against visible category names.
    """

    HISTORY_LOOKBACK = 500

    def __init__(self, db: Session, user_id: str):
        self.db = db
        self.user_id = user_id

    def _from_history(self, normalized: str) -> Optional[CategorySuggestion]:
        rows = self.db.query(Transaction.description, Transaction.category_id).filter(
            Transaction.user_id == self.user_id,
            Transaction.category_id.isnot(None),
        ).order_by(Transaction.date.desc()).limit(self.HISTORY_LOOKBACK).all()

        counts = Counter(
            category_id
            for description, category_id in rows
            if normalize_description(description) == normalized
        )
        if not counts:
            return None

        category_id, hits = counts.most_common(1)[0]
        category = self.db.query(Category).filter(
            Category.id == category_id,
            visible_categories_filter(self.user_id),
        ).first()
        if not category:
            return None
        return CategorySuggestion(category, "history", round(hits / sum(counts.values()), 2))

    def _from_keywords(self, normalized: str, transaction_type: Optional[str]) -> Optional[CategorySuggestion]:
        categories = self.db.query(Category).filter(visible_categories_filter(self.user_id)).all()
        # User categories win over system ones with the same name.
        by_name: Dict[str, Category] = {}
        for category in sorted(categories, key=lambda c: c.user_id is not None):
            by_name[category.name.lower()] = category

        best: Optional[Category] = None
        best_hits = 0
        best_total = 1
        for name, keywords in KEYWORD_RULES.items():
            category = by_name.get(name)
            if not category:
                continue
            if transaction_type == "income" and name not in INCOME_CATEGORY_NAMES:
                continue
            if transaction_type == "expense" and name == "salary":
                continue
            hits = sum(1 for keyword in keywords if keyword in normalized)
            if hits > best_hits:
                best, best_hits, best_total = category, hits, len(keywords)

        if best is None:
            return None
        confidence = max(best_hits / best_total, 0.1)
        return CategorySuggestion(best, "keyword", round(confidence, 2))

    def suggest(self, description: str, transaction_type: Optional[str] = None) -> CategorySuggestion:
        normalized = normalize_description(description)
        if not normalized:
            return CategorySuggestion(None, "none")

        suggestion = self._from_history(normalized) or self._from_keywords(normalized, transaction_type)
        if suggestion:
            logger.debug(f"Suggested category '{suggestion.category.name}' via {suggestion.method}")
            return suggestion
        return CategorySuggestion(None, "none")
