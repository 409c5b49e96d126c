from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from sqlalchemy import case, func
from typing import List, Optional
from uuid import UUID
import logging

from app.database import get_db
from app.models import Category, Transaction
from app.db_helpers import get_or_create_user, get_user_id, get_visible_category, visible_categories_filter
from app.schemas import (
    CategoryCreate,
    CategoryResponse,
    CategoryTreeResponse,
    CategoryUpdate,
)
from app.services.category_service import initialize_default_categories

logger = logging.getLogger(__name__)

router = APIRouter()


def _get_user_category(db: Session, category_id, user_id: str) -> Category:
    """Fetch a category the user may modify: 404 if not visible, 400 if system."""
    category = get_visible_category(db, category_id, user_id)
    if category.is_system or category.user_id is None:
        raise HTTPException(status_code=400, detail="System categories cannot be modified")
    return category


def _validate_parent(db: Session, parent_id, user_id: str, category_id=None) -> None:
    if parent_id is None:
        return
    if category_id is not None and parent_id == category_id:
        raise HTTPException(status_code=400, detail="A category cannot be its own parent")
    parent = get_visible_category(db, parent_id, user_id)
    if parent.parent_id is not None:
        raise HTTPException(status_code=400, detail="Only one level of category hierarchy is supported")
    if category_id is not None:
        has_children = db.query(Category.id).filter(Category.parent_id == category_id).first()
        if has_children:
            raise HTTPException(status_code=400, detail="A category with subcategories cannot become a subcategory")


def _check_duplicate_name(db: Session, user_id: str, name: str, parent_id, exclude_id=None) -> None:
    query = db.query(Category.id).filter(
        Category.user_id == user_id,
        func.lower(Category.name) == name.lower(),
    )
    if parent_id is None:
        query = query.filter(Category.parent_id.is_(None))
    else:
        query = query.filter(Category.parent_id == parent_id)
    if exclude_id is not None:
        query = query.filter(Category.id != exclude_id)
    if query.first():
        raise HTTPException(status_code=400, detail="A category with this name already exists")


@router.get("/", response_model=List[CategoryResponse])
def list_categories(
    parent_id: Optional[UUID] = None,
    include_system: bool = Query(True, description="Include system categories"),
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List categories visible to the current user."""
    user_id = get_user_id(user_id)
    if include_system:
        query = db.query(Category).filter(visible_categories_filter(user_id))
    else:
        query = db.query(Category).filter(Category.user_id == user_id)
    if parent_id:
        query = query.filter(Category.parent_id == parent_id)
    return query.order_by(Category.name).all()


@router.get("/hierarchy", response_model=List[CategoryTreeResponse])
def get_category_hierarchy(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Top-level categories with their subcategories."""
    user_id = get_user_id(user_id)
    categories = db.query(Category).filter(
        visible_categories_filter(user_id)
    ).order_by(Category.name).all()

    children_by_parent = {}
    for category in categories:
        if category.parent_id is not None:
            children_by_parent.setdefault(category.parent_id, []).append(category)

    tree = []
    for category in categories:
        if category.parent_id is not None:
            continue
        node = CategoryTreeResponse.model_validate(category)
        node.children = [
            CategoryResponse.model_validate(child)
            for child in children_by_parent.get(category.id, [])
        ]
        tree.append(node)
    return tree


@router.get("/stats")
def get_category_stats(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Transaction count and expense total per category, most used first."""
    user_id = get_user_id(user_id)
    rows = db.query(
        Category.id,
        Category.name,
        func.count(Transaction.id),
        func.sum(case((Transaction.type == "expense", Transaction.amount), else_=0)),
    ).join(
        Transaction, Transaction.category_id == Category.id
    ).filter(
        Transaction.user_id == user_id,
        visible_categories_filter(user_id),
    ).group_by(Category.id, Category.name).all()

    stats = [
        {
            "category_id": category_id,
            "category_name": name,
            "transaction_count": count,
            "total_expenses": total or 0,
        }
        for category_id, name, count, total in rows
    ]
    return sorted(stats, key=lambda item: item["transaction_count"], reverse=True)


@router.post("/initialize-defaults")
def initialize_defaults(
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create the system category set if it does not exist yet."""
    get_user_id(user_id)
    created = initialize_default_categories(db)
    return {"created": created}


@router.get("/{category_id}", response_model=CategoryResponse)
def get_category(
    category_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Get a specific category by ID."""
    user_id = get_user_id(user_id)
    return get_visible_category(db, category_id, user_id)


@router.post("/", response_model=CategoryResponse, status_code=201)
def create_category(
    category: CategoryCreate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Create a new category."""
    user_id = get_user_id(user_id)
    get_or_create_user(db, user_id)
    _validate_parent(db, category.parent_id, user_id)
    _check_duplicate_name(db, user_id, category.name, category.parent_id)

    category_data = category.model_dump()
    category_data["user_id"] = user_id
    category_data["is_system"] = False
    if category_data.get("color") is None and category.parent_id:
        parent = db.query(Category).filter(Category.id == category.parent_id).first()
        category_data["color"] = parent.color
    db_category = Category(**category_data)
    db.add(db_category)
    db.commit()
    db.refresh(db_category)
    return db_category


@router.patch("/{category_id}", response_model=CategoryResponse)
def update_category(
    category_id: UUID,
    updates: CategoryUpdate,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """Update a category."""
    user_id = get_user_id(user_id)
    category = _get_user_category(db, category_id, user_id)

    update_data = updates.model_dump(exclude_unset=True)
    if "parent_id" in update_data:
        _validate_parent(db, update_data["parent_id"], user_id, category_id=category.id)
    if "name" in update_data or "parent_id" in update_data:
        _check_duplicate_name(
            db,
            user_id,
            update_data.get("name") or category.name,
            update_data.get("parent_id", category.parent_id),
            exclude_id=category.id,
        )

    for field, value in update_data.items():
        if field == "name" and value is None:
            continue
        setattr(category, field, value)

    db.commit()
    db.refresh(category)
    return category


@router.delete("/{category_id}", status_code=204)
def delete_category(
    category_id: UUID,
    user_id: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Delete a user category.
    Transactions lose their category and subcategories become top-level.
    """
    user_id = get_user_id(user_id)
    category = _get_user_category(db, category_id, user_id)

    db.query(Transaction).filter(
        Transaction.user_id == user_id,
        Transaction.category_id == category.id
    ).update({"category_id": None}, synchronize_session=False)

    db.query(Category).filter(
        Category.parent_id == category.id
    ).update({"parent_id": None}, synchronize_session=False)

    db.delete(category)
    db.commit()
    logger.info(f"Deleted category {category_id} for user {user_id}")
    return None
