from pydantic import AfterValidator, AliasChoices, BaseModel, ConfigDict, Field, field_validator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional
from uuid import UUID


def _to_naive_utc(value: datetime) -> datetime:
    # Stored timestamps are naive UTC.
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_to_naive_utc)]


AccountType = Literal["checking", "savings", "credit_card", "investment"]
TransactionType = Literal["income", "expense", "transfer"]
Frequency = Literal["daily", "weekly", "monthly", "yearly"]
GoalType = Literal["savings", "spending_limit", "investment", "debt_payoff"]
InvestmentType = Literal["stock", "fund", "etf", "crypto", "bond", "derivative"]
InvestmentTransactionType = Literal["buy", "sell", "dividend"]

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"

# ORM rows expose JSON text columns through parsed properties and store
# "metadata" as metadata_ (the name is reserved on declarative classes).
_METADATA_ALIAS = AliasChoices("metadata_", "metadata")


# User Schemas
class UserProfileUpdate(BaseModel):
    email: Optional[str] = Field(None, max_length=255)
    name: Optional[str] = Field(None, max_length=255)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    timezone: Optional[str] = Field(None, max_length=64)
    avatar_url: Optional[str] = None
    password: Optional[str] = Field(None, min_length=8, max_length=128)


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str] = None
    currency: str
    timezone: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Account Schemas
class AccountBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    type: AccountType
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class AccountCreate(AccountBase):
    provider: str = "manual"
    provider_account_id: Optional[str] = None
    balance: Decimal = Field(Decimal("0"), ge=0)
    metadata: Optional[Dict[str, Any]] = None


class AccountUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    is_active: Optional[bool] = None
    balance: Optional[Decimal] = None


class AccountResponse(BaseModel):
    id: UUID
    name: str
    type: str
    provider: str
    provider_account_id: Optional[str] = None
    balance: Decimal
    currency: str
    is_active: bool
    last_sync_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=_METADATA_ALIAS)
    transaction_count: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AccountListResponse(BaseModel):
    accounts: List[AccountResponse]
    total: int


# Category Schemas
class CategoryBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    icon: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    parent_id: Optional[UUID] = None


class CategoryCreate(CategoryBase):
    pass


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    icon: Optional[str] = Field(None, max_length=50)
    color: Optional[str] = Field(None, pattern=HEX_COLOR_PATTERN)
    parent_id: Optional[UUID] = None


class CategoryResponse(CategoryBase):
    id: UUID
    is_system: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CategoryTreeResponse(CategoryResponse):
    children: List[CategoryResponse] = []


# Recurring rule
class RecurringRule(BaseModel):
    frequency: Frequency
    interval: int = Field(1, ge=1, le=365)
    end_date: Optional[UtcDatetime] = None
    next_date: Optional[UtcDatetime] = None


# Transaction Schemas
class TransactionBase(BaseModel):
    type: TransactionType
    amount: Decimal = Field(..., ge=Decimal("0.01"))
    description: str = Field(..., min_length=1, max_length=255)
    date: UtcDatetime
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    tags: List[str] = Field(default_factory=list)
    location: Optional[str] = Field(None, max_length=255)


class TransactionCreate(TransactionBase):
    is_recurring: bool = False
    recurring_rule: Optional[RecurringRule] = None
    attachments: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("tags")
    @classmethod
    def strip_tags(cls, value: List[str]) -> List[str]:
        return [tag.strip() for tag in value if tag and tag.strip()]


class TransactionUpdate(BaseModel):
    type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(None, ge=Decimal("0.01"))
    description: Optional[str] = Field(None, min_length=1, max_length=255)
    date: Optional[UtcDatetime] = None
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    tags: Optional[List[str]] = None
    location: Optional[str] = Field(None, max_length=255)
    is_recurring: Optional[bool] = None
    recurring_rule: Optional[RecurringRule] = None
    attachments: Optional[List[str]] = None
    metadata: Optional[Dict[str, Any]] = None


class TransactionResponse(BaseModel):
    id: UUID
    type: str
    amount: Decimal
    description: str
    date: datetime
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    tags: List[str] = Field(default_factory=list, validation_alias=AliasChoices("tag_list", "tags"))
    location: Optional[str] = None
    is_recurring: bool
    recurring_rule: Optional[RecurringRule] = Field(None, validation_alias=AliasChoices("rule", "recurring_rule"))
    parent_transaction_id: Optional[UUID] = None
    attachments: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("attachment_list", "attachments"),
    )
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=_METADATA_ALIAS)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaginationMeta(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int
    has_next: bool
    has_prev: bool


class TransactionListResponse(BaseModel):
    data: List[TransactionResponse]
    meta: PaginationMeta


class AccountTransactionsResponse(BaseModel):
    transactions: List[TransactionResponse]
    total: int


class BulkCategorizeRequest(BaseModel):
    transaction_ids: List[UUID] = Field(..., min_length=1)
    category_id: UUID


class BulkDeleteRequest(BaseModel):
    transaction_ids: List[UUID] = Field(..., min_length=1)


class DuplicateCheckRequest(BaseModel):
    type: TransactionType
    amount: Decimal
    description: str
    date: UtcDatetime


class CategorySuggestionRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=255)
    type: Optional[TransactionType] = None


class CategorySuggestionResponse(BaseModel):
    category_id: Optional[UUID] = None
    category_name: Optional[str] = None
    method: Literal["history", "keyword", "none"]
    confidence: float


# Recurring Schemas
class RecurringTransactionResponse(TransactionResponse):
    next_date: Optional[datetime] = None
    is_active: bool = True
    occurrence_count: int = 0


class RecurringUpdate(BaseModel):
    amount: Optional[Decimal] = Field(None, ge=Decimal("0.01"))
    description: Optional[str] = Field(None, min_length=1, max_length=255)
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    tags: Optional[List[str]] = None
    location: Optional[str] = Field(None, max_length=255)
    recurring_rule: Optional[RecurringRule] = None


class QueueStats(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int


# Goal Schemas
class GoalBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    type: GoalType
    target_amount: Decimal = Field(..., gt=0)
    target_date: Optional[UtcDatetime] = None
    category_id: Optional[UUID] = None


class GoalCreate(GoalBase):
    current_amount: Decimal = Field(Decimal("0"), ge=0)


class GoalUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    target_amount: Optional[Decimal] = Field(None, gt=0)
    current_amount: Optional[Decimal] = Field(None, ge=0)
    target_date: Optional[UtcDatetime] = None
    category_id: Optional[UUID] = None
    is_active: Optional[bool] = None


class GoalProgress(BaseModel):
    progress_percentage: float
    remaining_amount: Decimal
    days_remaining: Optional[int] = None
    monthly_required: Optional[Decimal] = None
    projected_completion_date: Optional[datetime] = None
    status: Literal["completed", "overdue", "ahead", "behind", "on_track"]
    is_on_track: bool


class GoalResponse(GoalBase):
    id: UUID
    current_amount: Decimal
    is_active: bool
    completed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    progress: Optional[GoalProgress] = None

    model_config = ConfigDict(from_attributes=True)


class GoalInsights(BaseModel):
    goal_id: UUID
    progress: GoalProgress
    insights: List[str]
    suggestions: List[Dict[str, Any]]


# Investment Schemas
class InvestmentBase(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=255)
    type: InvestmentType
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    broker: Optional[str] = Field(None, max_length=100)
    sector: Optional[str] = Field(None, max_length=100)


class InvestmentCreate(InvestmentBase):
    quantity: Decimal = Field(..., gt=0)
    average_price: Decimal = Field(..., gt=0)
    purchase_date: Optional[UtcDatetime] = None
    fees: Decimal = Field(Decimal("0"), ge=0)
    metadata: Optional[Dict[str, Any]] = None


class InvestmentUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    broker: Optional[str] = Field(None, max_length=100)
    sector: Optional[str] = Field(None, max_length=100)
    current_price: Optional[Decimal] = Field(None, gt=0)
    metadata: Optional[Dict[str, Any]] = None


class InvestmentTransactionCreate(BaseModel):
    type: InvestmentTransactionType
    quantity: Decimal = Field(Decimal("0"), ge=0)
    price: Decimal = Field(..., gt=0)
    fees: Decimal = Field(Decimal("0"), ge=0)
    date: Optional[UtcDatetime] = None
    notes: Optional[str] = Field(None, max_length=500)


class InvestmentTransactionResponse(BaseModel):
    id: UUID
    investment_id: UUID
    type: str
    quantity: Decimal
    price: Decimal
    fees: Decimal
    date: datetime
    notes: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestmentResponse(InvestmentBase):
    id: UUID
    quantity: Decimal
    average_price: Decimal
    current_price: Optional[Decimal] = None
    last_quote_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=_METADATA_ALIAS)
    current_value: Decimal = Decimal("0")
    cost_basis: Decimal = Decimal("0")
    gain_loss: Decimal = Decimal("0")
    gain_loss_percentage: float = 0.0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class InvestmentDetailResponse(InvestmentResponse):
    transactions: List[InvestmentTransactionResponse] = []


class RebalanceRequest(BaseModel):
    target_allocation: Dict[InvestmentType, float]


class QuoteResponse(BaseModel):
    symbol: str
    price: Decimal
    previous_close: Optional[Decimal] = None
    change: Optional[Decimal] = None
    change_percent: Optional[float] = None
    currency: Optional[str] = None
    timestamp: datetime


# Subscription Schemas
class SubscriptionBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=500)
    amount: Decimal = Field(..., ge=0)
    currency: str = Field("BRL", min_length=3, max_length=3)
    frequency: Frequency
    next_payment_date: UtcDatetime
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    logo: Optional[str] = None


class SubscriptionCreate(SubscriptionBase):
    is_active: bool = True
    metadata: Optional[Dict[str, Any]] = None


class SubscriptionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=500)
    amount: Optional[Decimal] = Field(None, ge=0)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    frequency: Optional[Frequency] = None
    next_payment_date: Optional[UtcDatetime] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    account_id: Optional[UUID] = None
    category_id: Optional[UUID] = None
    logo: Optional[str] = None
    is_active: Optional[bool] = None
    metadata: Optional[Dict[str, Any]] = None


class SubscriptionResponse(SubscriptionBase):
    id: UUID
    start_date: datetime
    is_active: bool
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=_METADATA_ALIAS)
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Notification Schemas
class NotificationResponse(BaseModel):
    id: UUID
    title: str
    message: str
    type: str
    category: str
    link: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class NotificationListResponse(BaseModel):
    data: List[NotificationResponse]
    meta: PaginationMeta


# Anomaly Detection Schemas
AnomalySeverity = Literal["low", "medium", "high", "critical"]


class AnalyzeTransactionRequest(BaseModel):
    transaction_id: Optional[UUID] = None
    type: TransactionType
    amount: Decimal = Field(..., ge=Decimal("0.01"))
    description: str = Field(..., min_length=1, max_length=255)
    date: UtcDatetime
    location: Optional[str] = Field(None, max_length=255)
    merchant: Optional[str] = Field(None, max_length=255)


class AnomalyResult(BaseModel):
    is_anomaly: bool
    confidence: float
    severity: AnomalySeverity
    anomaly_type: str
    reasons: List[str]
    risk_score: int
    recommendations: List[str]
    alert_id: Optional[UUID] = None


class RiskScoreResponse(BaseModel):
    transaction_risk: int
    behavior_risk: int
    account_risk: int
    time_risk: int
    location_risk: int
    overall_risk: int


class AnomalyAlertResponse(BaseModel):
    id: UUID
    transaction_id: Optional[str] = None
    alert_type: str
    severity: AnomalySeverity
    anomaly_type: Optional[str] = None
    title: str
    message: str
    details: Dict[str, Any]
    is_acknowledged: bool
    created_at: datetime
    acknowledged_at: Optional[datetime] = None


class AnomalyListResponse(BaseModel):
    data: List[AnomalyAlertResponse]
    total: int
    page: int
    limit: int
