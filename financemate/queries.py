"""Filter options for list endpoints.

Each resource has a dataclass built from request query arguments. Every field
is optional; ``where`` turns the populated fields into repository predicates.
"""

import json
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional

from .repository import Where


class QueryError(ValueError):
    """Raised when a query argument cannot be interpreted."""


def _text(args, key):
    value = (args.get(key) or "").strip()
    return value or None


def _flag(args, key):
    value = args.get(key)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip().lower() == "true"


def _number(args, key):
    value = _text(args, key)
    if value is None:
        return None
    try:
        return float(value)
    except ValueError as exc:
        raise QueryError(f"{key} must be a number") from exc


def _positive_int(args, key, default):
    value = _text(args, key)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise QueryError(f"{key} must be an integer") from exc
    if parsed < 1:
        raise QueryError(f"{key} must be at least 1")
    return parsed


def _sort(args, allowed, default_by, default_order, aliases=None):
    sort_by = _text(args, "sortBy") or default_by
    sort_by = (aliases or {}).get(sort_by, sort_by)
    if sort_by not in allowed:
        raise QueryError(f"Cannot sort by {sort_by}")
    sort_order = (_text(args, "sortOrder") or default_order).lower()
    if sort_order not in ("asc", "desc"):
        raise QueryError("sortOrder must be asc or desc")
    return sort_by, sort_order


@dataclass
class TransactionQuery:
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    type: Optional[str] = None
    category: Optional[str] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    is_shared: Optional[bool] = None
    tags: List[str] = field(default_factory=list)
    search: Optional[str] = None
    sort_by: str = "date"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20

    SORTABLE = ("date", "amount", "category", "type", "created_at")

    @classmethod
    def from_args(cls, args):
        sort_by, sort_order = _sort(
            args,
            cls.SORTABLE,
            "date",
            "desc",
            aliases={"transaction_date": "date", "createdAt": "created_at"},
        )
        tags = [tag.strip() for tag in (args.get("tags") or "").split(",") if tag.strip()]
        return cls(
            start_date=_text(args, "startDate"),
            end_date=_text(args, "endDate"),
            type=_text(args, "type"),
            category=_text(args, "category"),
            min_amount=_number(args, "minAmount"),
            max_amount=_number(args, "maxAmount"),
            is_shared=_flag(args, "isShared"),
            tags=tags,
            search=_text(args, "search"),
            sort_by=sort_by,
            sort_order=sort_order,
            page=_positive_int(args, "page", 1),
            limit=_positive_int(args, "limit", 20),
        )

    @property
    def offset(self):
        return (self.page - 1) * self.limit

    def where(self, user_id):
        where = Where().eq("user_id", user_id)
        if self.start_date:
            where.add("date >= ?", self.start_date)
        if self.end_date:
            where.add("date <= ?", self.end_date)
        if self.type:
            where.eq("type", self.type)
        if self.category:
            where.eq("category", self.category)
        if self.min_amount is not None:
            where.add("amount >= ?", self.min_amount)
        if self.max_amount is not None:
            where.add("amount <= ?", self.max_amount)
        if self.is_shared is not None:
            where.eq("is_shared", 1 if self.is_shared else 0)
        for tag in self.tags:
            # tags are stored as a JSON array, so match the quoted element
            where.add("tags LIKE ?", f"%{json.dumps(tag)}%")
        if self.search:
            pattern = f"%{self.search.lower()}%"
            where.add("(LOWER(description) LIKE ? OR LOWER(category) LIKE ?)", pattern, pattern)
        return where


@dataclass
class BudgetQuery:
    category: Optional[str] = None
    period: Optional[str] = None
    is_recurring: Optional[bool] = None
    is_shared: Optional[bool] = None
    is_active: Optional[bool] = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    SORTABLE = ("created_at", "name", "amount", "category", "start_date", "end_date")

    @classmethod
    def from_args(cls, args):
        sort_by, sort_order = _sort(
            args,
            cls.SORTABLE,
            "created_at",
            "desc",
            aliases={"createdAt": "created_at", "startDate": "start_date", "endDate": "end_date"},
        )
        return cls(
            category=_text(args, "category"),
            period=_text(args, "period"),
            is_recurring=_flag(args, "isRecurring"),
            is_shared=_flag(args, "isShared"),
            is_active=_flag(args, "isActive"),
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def where(self, user_id, today=None):
        today = (today or date.today()).isoformat()
        where = Where().eq("user_id", user_id)
        if self.category:
            where.eq("category", self.category)
        if self.period:
            where.eq("period", self.period)
        if self.is_recurring is not None:
            where.eq("is_recurring", 1 if self.is_recurring else 0)
        if self.is_shared is not None:
            where.eq("is_shared", 1 if self.is_shared else 0)
        if self.is_active is True:
            where.add("start_date <= ? AND (end_date IS NULL OR end_date >= ?)", today, today)
        elif self.is_active is False:
            where.add("(start_date > ? OR end_date < ?)", today, today)
        return where


@dataclass
class GoalQuery:
    category: Optional[str] = None
    is_shared: Optional[bool] = None
    is_completed: Optional[bool] = None
    sort_by: str = "target_date"
    sort_order: str = "asc"

    SORTABLE = ("target_date", "created_at", "name", "target_amount", "current_amount")

    @classmethod
    def from_args(cls, args):
        sort_by, sort_order = _sort(
            args,
            cls.SORTABLE,
            "target_date",
            "asc",
            aliases={"targetDate": "target_date", "createdAt": "created_at"},
        )
        return cls(
            category=_text(args, "category"),
            is_shared=_flag(args, "isShared"),
            is_completed=_flag(args, "isCompleted"),
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def where(self, user_id):
        where = Where().eq("user_id", user_id)
        if self.category:
            where.eq("category", self.category)
        if self.is_shared is not None:
            where.eq("is_shared", 1 if self.is_shared else 0)
        if self.is_completed is not None:
            where.eq("is_completed", 1 if self.is_completed else 0)
        return where


@dataclass
class SubscriptionQuery:
    active: Optional[bool] = None
    upcoming_days: Optional[int] = None
    category: Optional[str] = None
    sort_by: str = "next_billing_date"
    sort_order: str = "asc"

    SORTABLE = ("next_billing_date", "name", "amount", "start_date", "created_at")

    @classmethod
    def from_args(cls, args):
        sort_by, sort_order = _sort(
            args,
            cls.SORTABLE,
            "next_billing_date",
            "asc",
            aliases={"nextBillingDate": "next_billing_date", "createdAt": "created_at"},
        )
        upcoming = _text(args, "upcomingRenewal")
        return cls(
            active=_flag(args, "active"),
            upcoming_days=_positive_int(args, "upcomingRenewal", 7) if upcoming else None,
            category=_text(args, "category"),
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def where(self, user_id, today=None):
        today = today or date.today()
        where = Where().eq("user_id", user_id)
        if self.active is True:
            where.add("(end_date IS NULL OR end_date >= ?)", today.isoformat())
        elif self.active is False:
            where.add("end_date < ?", today.isoformat())
        if self.upcoming_days is not None:
            horizon = today + timedelta(days=self.upcoming_days)
            where.add(
                "next_billing_date >= ? AND next_billing_date <= ?",
                today.isoformat(),
                horizon.isoformat(),
            )
        if self.category:
            where.eq("category", self.category)
        return where


@dataclass
class CategoryQuery:
    type: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    sort_by: str = "name"
    sort_order: str = "asc"

    SORTABLE = ("name", "usageCount", "totalAmount", "lastUsed")

    @classmethod
    def from_args(cls, args):
        sort_by, sort_order = _sort(args, cls.SORTABLE, "name", "asc")
        return cls(
            type=_text(args, "type"),
            start_date=_text(args, "startDate"),
            end_date=_text(args, "endDate"),
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def where(self, user_id):
        where = Where().add("(user_id IS NULL OR user_id = ?)", user_id)
        if self.type:
            where.eq("type", self.type)
        return where

    def transaction_where(self, user_id):
        where = Where().eq("user_id", user_id)
        if self.start_date:
            where.add("date >= ?", self.start_date)
        if self.end_date:
            where.add("date <= ?", self.end_date)
        return where
