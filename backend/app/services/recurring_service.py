"""
Recurring transaction service.

A recurring parent is a Transaction with is_recurring=True, a JSON
recurring_rule and no parent_transaction_id. Processing a parent
materializes each due occurrence as a child transaction and advances the
rule's next_date.
"""
import calendar
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.models import Transaction
from app.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

FREQUENCIES = ("daily", "weekly", "monthly", "yearly")
MIN_INTERVAL = 1
MAX_INTERVAL = 365
MAX_OCCURRENCES_PER_RUN = 366


class RecurringRuleError(ValueError):
    """Raised when a stored or submitted recurring rule is invalid."""


@dataclass
class Rule:
    frequency: str
    interval: int = 1
    end_date: Optional[datetime] = None
    next_date: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "frequency": self.frequency,
            "interval": self.interval,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "next_date": self.next_date.isoformat() if self.next_date else None,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _parse_datetime(value) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError as exc:
            raise RecurringRuleError(f"Invalid date in recurring rule: {value}") from exc
    # Stored timestamps are naive UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_rule(raw) -> Rule:
    """
    Build a Rule from a JSON string or dict, validating frequency and interval.

    Raises:
        RecurringRuleError: If the rule is missing or malformed
    """
    if raw is None or raw == "":
        raise RecurringRuleError("Recurring rule is required")
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise RecurringRuleError("Recurring rule is not valid JSON") from exc
    elif isinstance(raw, dict):
        data = raw
    else:
        raise RecurringRuleError("Recurring rule must be an object")

    if not isinstance(data, dict):
        raise RecurringRuleError("Recurring rule must be an object")

    frequency = data.get("frequency")
    if frequency not in FREQUENCIES:
        raise RecurringRuleError(f"Unsupported frequency: {frequency}")

    interval = data.get("interval", 1)
    if isinstance(interval, bool) or not isinstance(interval, int):
        raise RecurringRuleError("Interval must be an integer")
    if interval < MIN_INTERVAL or interval > MAX_INTERVAL:
        raise RecurringRuleError(f"Interval must be between {MIN_INTERVAL} and {MAX_INTERVAL}")

    return Rule(
        frequency=frequency,
        interval=interval,
        end_date=_parse_datetime(data.get("end_date")),
        next_date=_parse_datetime(data.get("next_date")),
    )


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_next_date(current: datetime, rule: Rule) -> datetime:
    """
    Compute the occurrence that follows `current`.

    Month and year steps clamp the day to the last day of the target month,
    so Jan 31 + 1 month is Feb 28/29 and Feb 29 + 1 year is Feb 28.
    """
    if rule.frequency == "daily":
        return current + timedelta(days=rule.interval)
    if rule.frequency == "weekly":
        return current + timedelta(weeks=rule.interval)
    if rule.frequency == "monthly":
        return add_months(current, rule.interval)
    if rule.frequency == "yearly":
        return add_months(current, 12 * rule.interval)
    raise RecurringRuleError(f"Unsupported frequency: {rule.frequency}")


def should_process(rule: Rule, next_date: datetime) -> bool:
    """An occurrence is allowed unless it falls after the rule's end date."""
    if rule.end_date is None:
        return True
    return next_date <= rule.end_date


def effective_next_date(transaction: Transaction, rule: Rule) -> datetime:
    return rule.next_date or calculate_next_date(transaction.date, rule)


def preview_dates(start: datetime, rule: Rule, count: int) -> List[datetime]:
    """Upcoming occurrence dates starting at `start`, honoring the end date."""
    dates: List[datetime] = []
    current = start
    while len(dates) < count and should_process(rule, current):
        dates.append(current)
        current = calculate_next_date(current, rule)
    return dates


def carry_schedule(rule: Rule, stored_rule, last_occurrence: datetime) -> Rule:
    """
    Fill in next_date for a rule that replaces `stored_rule`.

    While frequency and interval are unchanged the pending date is kept.
    A new cadence starts after the last recorded occurrence, so dates that
    were already materialized are never produced again.
    """
    if rule.next_date is not None:
        return rule
    stored = None
    if stored_rule:
        try:
            stored = parse_rule(stored_rule)
        except RecurringRuleError as e:
            logger.warning(f"[RECURRING] Replacing unreadable rule: {e}")
    if (
        stored is not None
        and stored.next_date is not None
        and (stored.frequency, stored.interval) == (rule.frequency, rule.interval)
    ):
        rule.next_date = stored.next_date
    else:
        rule.next_date = calculate_next_date(last_occurrence, rule)
    return rule


class RecurringTransactionService:
    """Finds due recurring parents and materializes their occurrences."""

    def __init__(self, db: Session, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or NotificationService(db)

    def _parents_query(self):
        return self.db.query(Transaction).filter(
            Transaction.is_recurring == True,  # noqa: E712
            Transaction.recurring_rule.isnot(None),
            Transaction.parent_transaction_id.is_(None),
        )

    def get_user_recurring(self, user_id: str) -> List[Transaction]:
        return self._parents_query().filter(
            Transaction.user_id == user_id
        ).order_by(Transaction.date.desc()).all()

    def last_occurrence_date(self, parent: Transaction) -> datetime:
        """Date of the newest generated occurrence, or the parent's own date."""
        latest = self.db.query(Transaction.date).filter(
            Transaction.parent_transaction_id == parent.id
        ).order_by(Transaction.date.desc()).first()
        return latest[0] if latest else parent.date

    def get_due(self, now: Optional[datetime] = None) -> List[Tuple[Transaction, Rule]]:
        """
        Return recurring parents whose next occurrence is due.

        Rows with an unreadable rule are logged and skipped.
        """
        now = now or datetime.utcnow()
        due: List[Tuple[Transaction, Rule]] = []
        for transaction in self._parents_query().all():
            try:
                rule = parse_rule(transaction.recurring_rule)
            except RecurringRuleError as e:
                logger.error(f"[RECURRING] Skipping transaction {transaction.id}: {e}")
                continue

            next_date = effective_next_date(transaction, rule)
            if next_date <= now and should_process(rule, next_date):
                due.append((transaction, rule))
        return due

    def _create_occurrence(self, parent: Transaction, occurrence_date: datetime, now: datetime) -> Transaction:
        metadata = dict(parent.metadata_ or {})
        metadata.update({
            "generated_from": str(parent.id),
            "generated_at": now.isoformat(),
        })
        child = Transaction(
            user_id=parent.user_id,
            account_id=parent.account_id,
            category_id=parent.category_id,
            type=parent.type,
            amount=parent.amount,
            description=parent.description,
            date=occurrence_date,
            tags=parent.tags,
            location=parent.location,
            is_recurring=False,
            parent_transaction_id=parent.id,
            metadata_=metadata,
        )
        self.db.add(child)
        return child

    def process(self, parent: Transaction, rule: Optional[Rule] = None, now: Optional[datetime] = None) -> List[Transaction]:
        """
        Materialize every due occurrence of `parent` and advance its rule.

        The caller commits. At most MAX_OCCURRENCES_PER_RUN rows are created
        per call; the remainder is picked up by the next run.
        """
        now = now or datetime.utcnow()
        rule = rule or parse_rule(parent.recurring_rule)
        next_date = effective_next_date(parent, rule)

        created: List[Transaction] = []
        while (
            next_date <= now
            and should_process(rule, next_date)
            and len(created) < MAX_OCCURRENCES_PER_RUN
        ):
            created.append(self._create_occurrence(parent, next_date, now))
            next_date = calculate_next_date(next_date, rule)

        rule.next_date = next_date
        parent.recurring_rule = rule.to_json()
        self.db.flush()

        if created:
            self.notifier.notify(
                parent.user_id,
                title="Recurring transaction created",
                message=f"{len(created)} occurrence(s) of '{parent.description}' were recorded.",
                notification_type="info",
                category="recurring",
                data={
                    "transaction_id": str(parent.id),
                    "occurrences": len(created),
                    "next_date": next_date.isoformat(),
                },
            )
        return created

    def process_by_id(self, transaction_id, now: Optional[datetime] = None) -> int:
        """Process a single parent by id. Returns the number of occurrences created."""
        try:
            transaction_id = uuid.UUID(str(transaction_id))
        except ValueError:
            raise LookupError(f"Recurring transaction not found: {transaction_id}")
        parent = self._parents_query().filter(Transaction.id == transaction_id).first()
        if not parent:
            raise LookupError(f"Recurring transaction not found: {transaction_id}")
        try:
            created = self.process(parent, now=now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return len(created)

    def process_all_due(self, now: Optional[datetime] = None) -> dict:
        """
        Process every due parent, committing each one independently.

        Returns:
            {"processed": n, "failed": n}
        """
        now = now or datetime.utcnow()
        processed = 0
        failed = 0
        for parent, rule in self.get_due(now):
            try:
                self.process(parent, rule=rule, now=now)
                self.db.commit()
                processed += 1
            except Exception as e:
                self.db.rollback()
                failed += 1
                logger.error(f"[RECURRING] Failed to process transaction {parent.id}: {e}")

        logger.info(f"[RECURRING] Processed {processed} recurring transactions, {failed} failed")
        return {"processed": processed, "failed": failed}
