"""
Category endpoints. Reading is open to any authenticated user; changes are
limited to admins and managers.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session, aliased

from auth.dependencies import get_current_staff, get_current_user
from database import get_db
from models import Category, Task, User
from responses import ok
from schemas import CategoryCreate, CategoryUpdate
from time_utils import as_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/categories", tags=["categories"])


def _category_rows(db: Session):
    creator = aliased(User)
    task_count = (
        db.query(func.count(Task.id))
        .filter(Task.category_id == Category.id, Task.archived_at.is_(None))
        .correlate(Category)
        .scalar_subquery()
    )
    return (
        db.query(Category, creator.full_name, task_count)
        .outerjoin(creator, Category.created_by == creator.id)
    )


def serialize_category(category: Category, created_by_name=None, task_count: int = 0) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "icon": category.icon,
        "created_by": category.created_by,
        "created_at": as_utc(category.created_at),
        "created_by_name": created_by_name,
        "task_count": task_count or 0,
    }


def get_category_or_404(db: Session, category_id: int) -> Category:
    category = db.get(Category, category_id)
    if category is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return category


@router.get("")
def list_categories(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = _category_rows(db).order_by(Category.name.asc()).all()
    return ok([serialize_category(*row) for row in rows])


@router.get("/{category_id}")
def get_category(category_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    row = _category_rows(db).filter(Category.id == category_id).first()
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return ok(serialize_category(*row))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_category(
    category_in: CategoryCreate,
    current_user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    """
    Create a category.

    Raises:
        HTTPException: 409 (via the IntegrityError handler) if the name is taken
    """
    category = Category(
        name=category_in.name,
        color=category_in.color,
        icon=category_in.icon,
        created_by=current_user.id,
    )
    db.add(category)
    db.commit()
    db.refresh(category)
    logger.info(f"Category created: {category.id} '{category.name}' by user {current_user.id}")
    return ok(serialize_category(category, current_user.full_name, 0))


@router.put("/{category_id}")
def update_category(
    category_id: int,
    category_in: CategoryUpdate,
    current_user: User = Depends(get_current_staff),
    db: Session = Depends(get_db),
):
    category = get_category_or_404(db, category_id)
    changes = {k: v for k, v in category_in.model_dump(exclude_unset=True).items() if v is not None or k == "icon"}
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")

    for field, value in changes.items():
        setattr(category, field, value)
    db.commit()

    logger.info(f"Category {category.id} updated by user {current_user.id}: {', '.join(changes)}")
    row = _category_rows(db).filter(Category.id == category_id).first()
    return ok(serialize_category(*row))


@router.delete("/{category_id}")
def delete_category(category_id: int, current_user: User = Depends(get_current_staff), db: Session = Depends(get_db)):
    """Delete a category; its tasks become uncategorized."""
    category = get_category_or_404(db, category_id)
    detached = (
        db.query(Task)
        .filter(Task.category_id == category.id)
        .update({Task.category_id: None}, synchronize_session=False)
    )
    db.delete(category)
    db.commit()
    logger.info(f"Category {category_id} deleted by user {current_user.id} ({detached} tasks detached)")
    return ok(message="Category deleted successfully")
