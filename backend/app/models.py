"""
SQLAlchemy models for the finance domain.
Every user-owned table carries user_id for multi-tenancy; queries must filter by it.
"""
import json
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Numeric,
    Text,
    Integer,
    ForeignKey,
    Index,
    UniqueConstraint,
    JSON,
    Uuid,
)
from sqlalchemy.orm import relationship

from app.database import Base


def _load_json_text(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class User(Base):
    """
    User profile.
    Identity is issued by the frontend auth layer; this row holds profile data only.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(Text, nullable=True)
    email = Column(Text, unique=True, nullable=False)
    password_hash = Column(Text, nullable=True)
    avatar_url = Column(Text, nullable=True)
    currency = Column(String(3), default="BRL")  # Default currency for new accounts
    timezone = Column(String(64), default="UTC")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    categories = relationship("Category", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="user", cascade="all, delete-orphan")
    goals = relationship("Goal", back_populates="user", cascade="all, delete-orphan")
    investments = relationship("Investment", back_populates="user", cascade="all, delete-orphan")
    subscriptions = relationship("Subscription", back_populates="user", cascade="all, delete-orphan")
    notifications = relationship("Notification", back_populates="user", cascade="all, delete-orphan")


class Account(Base):
    """
    Financial account (bank account, credit card, brokerage).
    Accounts are soft-deleted through is_active.
    """
    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False)  # checking, savings, credit_card, investment
    provider = Column(String(50), nullable=False, default="manual")
    provider_account_id = Column(String(255), nullable=True)
    balance = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    currency = Column(String(3), default="BRL")
    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime, nullable=True)
    sync_error = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="accounts")
    transactions = relationship("Transaction", back_populates="account")
    subscriptions = relationship("Subscription", back_populates="account")

    # Indexes and constraints
    __table_args__ = (
        Index("idx_accounts_user_active", "user_id", "is_active"),
        UniqueConstraint("user_id", "provider", "provider_account_id", name="accounts_user_provider_account"),
    )


class Category(Base):
    """
    Transaction category.
    System categories have no user_id and are visible to everyone.
    Hierarchy is limited to one level (a parent cannot itself have a parent).
    """
    __tablename__ = "categories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(50), nullable=False)
    icon = Column(String(50), nullable=True)
    color = Column(String(7), nullable=True)  # Hex color
    parent_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    is_system = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="categories")
    parent = relationship("Category", remote_side=[id], backref="children")
    transactions = relationship("Transaction", back_populates="category")

    # Indexes and constraints
    __table_args__ = (
        Index("idx_categories_parent", "parent_id"),
        UniqueConstraint("user_id", "name", "parent_id", name="categories_user_name_parent"),
    )


class Transaction(Base):
    """
    A single recorded movement of money.

    Amounts are always positive; the direction comes from type
    (income, expense, transfer). Recurring parents carry a JSON rule and
    generated occurrences point back to them through parent_transaction_id.
    """
    __tablename__ = "transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    category_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(String(20), nullable=False)  # income, expense, transfer
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(String(255), nullable=False)
    date = Column(DateTime, nullable=False, index=True)
    tags = Column(Text, nullable=True)  # JSON array of strings
    location = Column(String(255), nullable=True)
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurring_rule = Column(Text, nullable=True)  # JSON object: frequency, interval, end_date, next_date
    parent_transaction_id = Column(Uuid, ForeignKey("transactions.id", ondelete="SET NULL"), nullable=True, index=True)
    attachments = Column(Text, nullable=True)  # JSON array of URLs
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="transactions")
    account = relationship("Account", back_populates="transactions")
    category = relationship("Category", back_populates="transactions")
    parent_transaction = relationship("Transaction", remote_side=[id], backref="occurrences")

    # Indexes and constraints
    __table_args__ = (
        Index("idx_transactions_user_date", "user_id", "date"),
        Index("idx_transactions_user_type", "user_id", "type"),
        Index("idx_transactions_recurring", "is_recurring"),
    )

    @property
    def tag_list(self) -> list:
        return _load_json_text(self.tags, [])

    @property
    def attachment_list(self) -> list:
        return _load_json_text(self.attachments, [])

    @property
    def rule(self) -> dict | None:
        return _load_json_text(self.recurring_rule, None)


class Goal(Base):
    """
    Financial goal tracked against a target amount and optional target date.
    """
    __tablename__ = "goals"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    type = Column(String(20), nullable=False)  # savings, spending_limit, investment, debt_payoff
    target_amount = Column(Numeric(15, 2), nullable=False)
    current_amount = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    target_date = Column(DateTime, nullable=True)
    category_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    last_milestone = Column(Integer, default=0, nullable=False)  # 0, 25, 50, 75, 100
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="goals")
    category = relationship("Category")

    __table_args__ = (
        Index("idx_goals_user_active", "user_id", "is_active"),
    )


class Investment(Base):
    """
    Investment position. quantity and average_price are maintained from
    InvestmentTransaction rows using the weighted average cost method.
    """
    __tablename__ = "investments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    symbol = Column(String(20), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(String(20), nullable=False)  # stock, fund, etf, crypto, bond, derivative
    quantity = Column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    average_price = Column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    current_price = Column(Numeric(20, 8), nullable=True)
    currency = Column(String(3), default="BRL")
    broker = Column(String(100), nullable=True)
    sector = Column(String(100), nullable=True)
    last_quote_at = Column(DateTime, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="investments")
    transactions = relationship(
        "InvestmentTransaction",
        back_populates="investment",
        cascade="all, delete-orphan",
        order_by="InvestmentTransaction.date",
    )

    __table_args__ = (
        UniqueConstraint("user_id", "symbol", "type", name="investments_user_symbol_type"),
    )


class InvestmentTransaction(Base):
    """
    Buy, sell or dividend event for an investment position.
    """
    __tablename__ = "investment_transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    investment_id = Column(Uuid, ForeignKey("investments.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(10), nullable=False)  # buy, sell, dividend
    quantity = Column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    price = Column(Numeric(20, 8), nullable=False)
    fees = Column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    date = Column(DateTime, nullable=False, default=datetime.utcnow)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    investment = relationship("Investment", back_populates="transactions")


class Subscription(Base):
    """
    Recurring bill or service subscription with its next payment date.
    """
    __tablename__ = "subscriptions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    account_id = Column(Uuid, ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True)
    category_id = Column(Uuid, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(3), default="BRL")
    frequency = Column(String(20), nullable=False)  # daily, weekly, monthly, yearly
    next_payment_date = Column(DateTime, nullable=False, index=True)
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    end_date = Column(DateTime, nullable=True)
    logo = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    user = relationship("User", back_populates="subscriptions")
    account = relationship("Account", back_populates="subscriptions")
    category = relationship("Category")

    __table_args__ = (
        Index("idx_subscriptions_user_active", "user_id", "is_active"),
    )


class Notification(Base):
    """
    Persisted in-app notification. New rows are also pushed over Redis Pub/Sub.
    """
    __tablename__ = "notifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(20), nullable=False, default="info")  # info, success, warning, error
    category = Column(String(30), nullable=False, default="system")  # goal, recurring, subscription, investment, anomaly, system
    link = Column(Text, nullable=True)
    data = Column(JSON, nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    user = relationship("User", back_populates="notifications")

    __table_args__ = (
        Index("idx_notifications_user_read", "user_id", "is_read"),
    )
