"""
Goal progress tracking.

Computes the current amount of a goal from the user's ledger, derives
progress/status views and emits completion and milestone notifications.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.models import Goal, Investment, Transaction
from app.services.notification_service import NotificationService
from app.services.recurring_service import add_months

logger = logging.getLogger(__name__)

AVERAGE_DAYS_PER_MONTH = 30.44
STATUS_TOLERANCE_POINTS = 10
MILESTONES = (25, 50, 75)

TWO_PLACES = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(value or 0).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def progress_percentage(goal: Goal) -> float:
    target = Decimal(goal.target_amount or 0)
    if target <= 0:
        return 0.0
    current = Decimal(goal.current_amount or 0)
    return round(min(float(current / target * 100), 100.0), 2)


def determine_status(goal: Goal, percentage: float, now: datetime) -> str:
    """
    completed: target reached
    overdue: target date passed without reaching the target
    ahead/behind: more than 10 points away from time-elapsed expected progress
    on_track: otherwise
    """
    if percentage >= 100:
        return "completed"
    if not goal.target_date or not goal.is_active:
        return "on_track" if percentage > 0 else "behind"
    if now > goal.target_date:
        return "overdue"

    created_at = goal.created_at or now
    total_seconds = (goal.target_date - created_at).total_seconds()
    if total_seconds <= 0:
        return "on_track"
    elapsed_seconds = (now - created_at).total_seconds()
    expected = elapsed_seconds / total_seconds * 100
    difference = percentage - expected
    if difference > STATUS_TOLERANCE_POINTS:
        return "ahead"
    if difference < -STATUS_TOLERANCE_POINTS:
        return "behind"
    return "on_track"


def calculate_progress(goal: Goal, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()
    target = Decimal(goal.target_amount or 0)
    current = Decimal(goal.current_amount or 0)
    percentage = progress_percentage(goal)
    status = determine_status(goal, percentage, now)
    remaining = max(target - current, Decimal("0"))

    days_remaining = None
    monthly_required = None
    projected_completion = None

    if goal.target_date and goal.is_active:
        seconds_left = (goal.target_date - now).total_seconds()
        days_remaining = max(0, int(-(-seconds_left // 86400)))
        if days_remaining > 0:
            months_remaining = max(days_remaining / AVERAGE_DAYS_PER_MONTH, 1)
            monthly_required = _money(remaining / Decimal(str(months_remaining)))

    created_at = goal.created_at or now
    days_since_creation = (now - created_at).days
    if days_since_creation > 0 and current > 0 and remaining > 0:
        daily_rate = current / Decimal(days_since_creation)
        days_to_complete = float(remaining / daily_rate)
        projected_completion = now + timedelta(days=days_to_complete)

    return {
        "progress_percentage": percentage,
        "remaining_amount": _money(remaining),
        "days_remaining": days_remaining,
        "monthly_required": monthly_required,
        "projected_completion_date": projected_completion,
        "status": status,
        "is_on_track": status in ("completed", "ahead", "on_track"),
    }


def suggest_adjustments(goal: Goal, now: Optional[datetime] = None) -> dict:
    now = now or datetime.utcnow()
    progress = calculate_progress(goal, now)
    status = progress["status"]
    insights: List[str] = []
    suggestions: List[dict] = []

    if status == "completed":
        insights.append("Goal reached. Consider setting a new target.")
    elif status in ("behind", "overdue"):
        insights.append("Progress is below what the time elapsed would suggest.")
        if goal.target_date:
            suggestions.append({
                "type": "extend_target_date",
                "message": "Consider extending your target date to make the goal more achievable",
                "adjusted_target_date": add_months(goal.target_date, 3),
            })
        if progress["monthly_required"]:
            suggestions.append({
                "type": "monthly_contribution",
                "message": f"Set aside {progress['monthly_required']} per month to stay on track",
                "amount": progress["monthly_required"],
            })
    elif status == "ahead":
        insights.append("You are ahead of schedule.")
        suggestions.append({
            "type": "increase_target",
            "message": "Consider increasing your target amount for a bigger challenge",
            "adjusted_target_amount": _money(Decimal(goal.target_amount) * Decimal("1.2")),
        })
    else:
        insights.append("You are on track.")

    created_at = goal.created_at or now
    if progress["progress_percentage"] < 10 and created_at < now - timedelta(days=30):
        suggestions.append({
            "type": "automate",
            "message": "Break the goal into smaller weekly targets and automate transfers",
        })

    if progress["projected_completion_date"] and goal.target_date:
        if progress["projected_completion_date"] <= goal.target_date:
            insights.append("At the current pace the goal will be reached before the target date.")
        else:
            insights.append("At the current pace the goal will be reached after the target date.")

    return {
        "goal_id": goal.id,
        "progress": progress,
        "insights": insights,
        "suggestions": suggestions,
    }


class GoalProgressService:
    """Recomputes goal amounts from transactions and investments."""

    def __init__(self, db: Session, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or NotificationService(db)

    def _signed_sum(self, query):
        return query.with_entities(
            func.sum(
                case(
                    (Transaction.type == "income", Transaction.amount),
                    (Transaction.type == "expense", -Transaction.amount),
                    else_=0,
                )
            )
        ).scalar()

    def _savings_amount(self, goal: Goal) -> Decimal:
        query = self.db.query(Transaction).filter(
            Transaction.user_id == goal.user_id,
            Transaction.date >= goal.created_at,
        )
        if goal.category_id:
            query = query.filter(Transaction.category_id == goal.category_id)
        return max(Decimal(self._signed_sum(query) or 0), Decimal("0"))

    def _spending_amount(self, goal: Goal, now: datetime) -> Decimal:
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        query = self.db.query(func.sum(Transaction.amount)).filter(
            Transaction.user_id == goal.user_id,
            Transaction.type == "expense",
            Transaction.date >= month_start,
            Transaction.date <= now,
        )
        if goal.category_id:
            query = query.filter(Transaction.category_id == goal.category_id)
        return Decimal(query.scalar() or 0)

    def _investment_amount(self, goal: Goal) -> Decimal:
        total = Decimal("0")
        investments = self.db.query(Investment).filter(Investment.user_id == goal.user_id).all()
        for investment in investments:
            price = investment.current_price or investment.average_price or 0
            total += Decimal(investment.quantity or 0) * Decimal(price)
        return total

    def _debt_payoff_amount(self, goal: Goal) -> Decimal:
        matches = func.lower(Transaction.description).contains("debt")
        if goal.category_id:
            matches = matches | (Transaction.category_id == goal.category_id)
        query = self.db.query(func.sum(Transaction.amount)).filter(
            Transaction.user_id == goal.user_id,
            Transaction.type == "expense",
            Transaction.date >= goal.created_at,
            matches,
        )
        return Decimal(query.scalar() or 0)

    def compute_current_amount(self, goal: Goal, now: Optional[datetime] = None) -> Decimal:
        now = now or datetime.utcnow()
        if goal.type == "savings":
            amount = self._savings_amount(goal)
        elif goal.type == "spending_limit":
            amount = self._spending_amount(goal, now)
        elif goal.type == "investment":
            amount = self._investment_amount(goal)
        elif goal.type == "debt_payoff":
            amount = self._debt_payoff_amount(goal)
        else:
            raise ValueError(f"Unsupported goal type: {goal.type}")
        return _money(amount)

    def update_progress(self, goal: Goal, now: Optional[datetime] = None) -> Goal:
        """
        Refresh current_amount, complete the goal when the target is reached
        and send milestone notifications. The caller commits.
        """
        now = now or datetime.utcnow()
        goal.current_amount = self.compute_current_amount(goal, now)
        percentage = progress_percentage(goal)

        if goal.is_active and Decimal(goal.current_amount) >= Decimal(goal.target_amount):
            goal.is_active = False
            goal.completed_at = now
            goal.last_milestone = 100
            self.notifier.notify(
                goal.user_id,
                title="Goal completed",
                message=f"Congratulations! You reached your goal '{goal.name}'.",
                notification_type="success",
                category="goal",
                link=f"/goals/{goal.id}",
                data={"goal_id": str(goal.id)},
            )
            logger.info(f"[GOALS] Goal {goal.id} completed")
        elif goal.is_active:
            reached = [m for m in MILESTONES if (goal.last_milestone or 0) < m <= percentage]
            for milestone in reached:
                self.notifier.notify(
                    goal.user_id,
                    title="Goal milestone reached",
                    message=f"You reached {milestone}% of your goal '{goal.name}'.",
                    notification_type="info",
                    category="goal",
                    link=f"/goals/{goal.id}",
                    data={"goal_id": str(goal.id), "milestone": milestone},
                )
            if reached:
                goal.last_milestone = reached[-1]

        self.db.flush()
        return goal

    def update_all_active(self, now: Optional[datetime] = None) -> dict:
        """Refresh every active goal, committing each one independently."""
        updated = 0
        completed = 0
        failed = 0
        goals = self.db.query(Goal).filter(Goal.is_active == True).all()  # noqa: E712
        for goal in goals:
            try:
                self.update_progress(goal, now)
                self.db.commit()
                updated += 1
                if not goal.is_active:
                    completed += 1
            except Exception as e:
                self.db.rollback()
                failed += 1
                logger.error(f"[GOALS] Failed to update goal {goal.id}: {e}")
        return {"updated": updated, "completed": completed, "failed": failed}

    def summary(self, user_id: str, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        goals = self.db.query(Goal).filter(Goal.user_id == user_id).all()
        statuses = [calculate_progress(goal, now) for goal in goals]
        total = len(goals)
        average = sum(p["progress_percentage"] for p in statuses) / total if total else 0
        return {
            "total_goals": total,
            "active_goals": sum(1 for g in goals if g.is_active),
            "completed_goals": sum(1 for p in statuses if p["status"] == "completed"),
            "overdue_goals": sum(1 for p in statuses if p["status"] == "overdue"),
            "goals_on_track": sum(1 for p in statuses if p["status"] == "on_track"),
            "goals_behind": sum(1 for p in statuses if p["status"] in ("behind", "overdue")),
            "goals_ahead": sum(1 for p in statuses if p["status"] == "ahead"),
            "average_progress": round(average, 2),
            "total_target": _money(sum((Decimal(g.target_amount) for g in goals), Decimal("0"))),
            "total_current": _money(sum((Decimal(g.current_amount or 0) for g in goals), Decimal("0"))),
        }
