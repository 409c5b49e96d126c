"""
Goal gamification: badges, experience levels and the activity streak.
Everything is derived from goals and transactions; nothing is stored.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import Goal, Transaction

logger = logging.getLogger(__name__)

GOAL_CREATED_XP = 10
GOAL_COMPLETED_XP = 50
MILESTONE_XP = 25


@dataclass(frozen=True)
class Badge:
    id: str
    name: str
    description: str
    category: str
    requirement: str
    value: int


BADGES = (
    Badge("first_goal", "Goal Setter", "Created your first financial goal", "achievement", "goals_created", 1),
    Badge("goal_master", "Goal Master", "Created 5 financial goals", "achievement", "goals_created", 5),
    Badge("first_completion", "Achiever", "Completed your first goal", "achievement", "goals_completed", 1),
    Badge("goal_champion", "Goal Champion", "Completed 5 goals", "achievement", "goals_completed", 5),
    Badge("saver_bronze", "Bronze Saver", "Saved 1,000 in savings goals", "milestone", "total_saved", 1000),
    Badge("saver_silver", "Silver Saver", "Saved 5,000 in savings goals", "milestone", "total_saved", 5000),
    Badge("saver_gold", "Gold Saver", "Saved 10,000 in savings goals", "milestone", "total_saved", 10000),
    Badge("streak_week", "Weekly Warrior", "Recorded activity 7 days in a row", "streak", "streak_days", 7),
    Badge("streak_month", "Monthly Master", "Recorded activity 30 days in a row", "streak", "streak_days", 30),
    Badge("streak_legend", "Streak Legend", "Recorded activity 100 days in a row", "streak", "streak_days", 100),
)

# (level, minimum experience, title)
LEVELS = (
    (1, 0, "Beginner"),
    (2, 100, "Saver"),
    (3, 250, "Planner"),
    (4, 500, "Achiever"),
    (5, 1000, "Expert"),
    (6, 2000, "Master"),
    (7, 5000, "Legend"),
)
MAX_EXPERIENCE = 10000


def is_completed(goal: Goal) -> bool:
    if goal.completed_at is not None:
        return True
    return not goal.is_active and Decimal(goal.current_amount) >= Decimal(goal.target_amount)


def experience_for(goals: List[Goal]) -> int:
    experience = 0
    for goal in goals:
        experience += GOAL_CREATED_XP
        if is_completed(goal):
            experience += GOAL_COMPLETED_XP
        experience += (goal.last_milestone or 0) // 25 * MILESTONE_XP
    return experience


def level_for(experience: int) -> Dict:
    """Current level with the experience needed to reach the next one."""
    index = 0
    for position, (_, minimum, _) in enumerate(LEVELS):
        if experience >= minimum:
            index = position
    level, minimum, title = LEVELS[index]
    next_minimum = LEVELS[index + 1][1] if index + 1 < len(LEVELS) else MAX_EXPERIENCE
    return {
        "level": level,
        "title": title,
        "experience": experience,
        "level_start_experience": minimum,
        "next_level_experience": next_minimum,
    }


def activity_streak(days: List, today) -> int:
    """Consecutive days with activity ending today, or yesterday if today has none yet."""
    active = set(days)
    day = today if today in active else today - timedelta(days=1)
    streak = 0
    while day in active:
        streak += 1
        day -= timedelta(days=1)
    return streak


class GamificationService:
    def __init__(self, db: Session):
        self.db = db

    def _activity_days(self, user_id: str, since: datetime) -> List:
        rows = self.db.query(func.date(Transaction.date)).filter(
            Transaction.user_id == user_id,
            Transaction.date >= since,
        ).distinct().all()
        days = []
        for (value,) in rows:
            # func.date returns a string on SQLite and a date on PostgreSQL.
            days.append(datetime.strptime(value, "%Y-%m-%d").date() if isinstance(value, str) else value)
        return days

    def gamification(self, user_id: str, now: Optional[datetime] = None) -> Dict:
        now = now or datetime.utcnow()
        goals = self.db.query(Goal).filter(Goal.user_id == user_id).all()

        total_saved = sum(
            (Decimal(g.current_amount) for g in goals if g.type == "savings"),
            Decimal("0"),
        )
        longest_badge = max(b.value for b in BADGES if b.requirement == "streak_days")
        since = now - timedelta(days=longest_badge + 1)
        streak = activity_streak(self._activity_days(user_id, since), now.date())

        stats = {
            "goals_created": len(goals),
            "goals_completed": sum(1 for g in goals if is_completed(g)),
            "total_saved": total_saved,
            "streak_days": streak,
        }
        badges = [
            {
                "id": badge.id,
                "name": badge.name,
                "description": badge.description,
                "category": badge.category,
                "earned": stats[badge.requirement] >= badge.value,
            }
            for badge in BADGES
        ]

        experience = experience_for(goals)
        logger.debug(f"Gamification for user {user_id}: {experience} XP, streak {streak}")
        return {
            "total_goals": stats["goals_created"],
            "completed_goals": stats["goals_completed"],
            "active_goals": sum(1 for g in goals if g.is_active),
            "total_saved": total_saved,
            "streak_days": streak,
            "badges": badges,
            **level_for(experience),
        }
