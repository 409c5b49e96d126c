from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy import or_
from datetime import datetime
from typing import List, Optional
from uuid import UUID
import logging

from app.database import get_db
from app.models import Goal
from app.db_helpers import get_or_create_user, get_user_id, get_visible_category
from app.schemas import GoalCreate, GoalInsights, GoalProgress, GoalResponse, GoalType, GoalUpdate
from app.services.gamification_service import GamificationService
from app.services.goal_service import GoalProgressService, calculate_progress, suggest_adjustments

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_owned_goal(db: Session, goal_id, user_id: str) -> Goal:
    goal = db.query(Goal).filter(
        Goal.id == goal_id,
        Goal.user_id == user_id
    ).first()
    if not goal:
        raise HTTPException(status_code=404, detail="Goal not found")
    return goal


def _validate_target_date(target_date: Optional[datetime]) -> None:
    if target_date is not None and target_date <= datetime.utcnow():
        raise HTTPException(status_code=400, detail="Target date must be in the future")


def _serialize_goal(goal: Goal) -> GoalResponse:
    response = GoalResponse.model_validate(goal)
    response.progress = GoalProgress(**calculate_progress(goal))
    return response


@router.get("/", response_model=List[GoalResponse])
def list_goals(
    type: Optional[GoalType] = None,
    is_active: Optional[bool] = None,
    category_id: Optional[UUID] = None,
    search: Optional[str] = None,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List goals, active first, each with its computed progress."""
    user_id = get_user_id(user_id)
    query = db.query(Goal).filter(Goal.user_id == user_id)
    if type:
        query = query.filter(Goal.type == type)
    if is_active is not None:
        query = query.filter(Goal.is_active == is_active)
    if category_id:
        query = query.filter(Goal.category_id == category_id)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(Goal.name.ilike(pattern), Goal.description.ilike(pattern)))

    goals = query.order_by(Goal.is_active.desc(), Goal.created_at.desc()).all()
    return [_serialize_goal(goal) for goal in goals]


@router.get("/summary")
def get_goals_summary(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Goal counts by status and overall totals."""
    user_id = get_user_id(user_id)
    return GoalProgressService(db).summary(user_id)


@router.get("/gamification")
def get_gamification(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Badges, experience level and activity streak."""
    user_id = get_user_id(user_id)
    return GamificationService(db).gamification(user_id)


@router.get("/{goal_id}", response_model=GoalResponse)
def get_goal(
    goal_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get a specific goal by ID."""
    user_id = get_user_id(user_id)
    return _serialize_goal(_get_owned_goal(db, goal_id, user_id))


@router.post("/", response_model=GoalResponse, status_code=201)
def create_goal(
    goal: GoalCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create a new goal."""
    user_id = get_user_id(user_id)
    get_or_create_user(db, user_id)
    _validate_target_date(goal.target_date)
    if goal.category_id:
        get_visible_category(db, goal.category_id, user_id)

    goal_data = goal.model_dump()
    goal_data["user_id"] = user_id
    db_goal = Goal(**goal_data)
    db.add(db_goal)
    db.commit()
    db.refresh(db_goal)
    return _serialize_goal(db_goal)


@router.patch("/{goal_id}", response_model=GoalResponse)
def update_goal(
    goal_id: UUID,
    updates: GoalUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update a goal."""
    user_id = get_user_id(user_id)
    goal = _get_owned_goal(db, goal_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    if "target_date" in update_data:
        _validate_target_date(update_data["target_date"])
    if update_data.get("category_id"):
        get_visible_category(db, update_data["category_id"], user_id)

    for field, value in update_data.items():
        if value is None and field in ("name", "target_amount", "current_amount", "is_active"):
            continue
        setattr(goal, field, value)

    db.commit()
    db.refresh(goal)
    return _serialize_goal(goal)


@router.delete("/{goal_id}", status_code=204)
def delete_goal(
    goal_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Delete a goal."""
    user_id = get_user_id(user_id)
    goal = _get_owned_goal(db, goal_id, user_id)
    db.delete(goal)
    db.commit()
    return None


@router.post("/{goal_id}/update-progress", response_model=GoalResponse)
def update_goal_progress(
    goal_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Recompute the goal's current amount from the ledger."""
    user_id = get_user_id(user_id)
    goal = _get_owned_goal(db, goal_id, user_id)
    GoalProgressService(db).update_progress(goal)
    db.commit()
    db.refresh(goal)
    logger.info(f"[GOALS] Updated progress for goal {goal.id}")
    return _serialize_goal(goal)


@router.get("/{goal_id}/insights", response_model=GoalInsights)
def get_goal_insights(
    goal_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Progress insights and suggested adjustments for a goal."""
    user_id = get_user_id(user_id)
    goal = _get_owned_goal(db, goal_id, user_id)
    return suggest_adjustments(goal)
