from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Optional, List, Dict, Literal

from models import UserRole, TaskType, TaskPriority, TaskStatus, Theme


def _strip_required(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("must not be empty")
    return value


# User schemas
class UserSettingsOut(BaseModel):
    theme: Theme
    email_notifications: Dict[str, bool]
    timezone: str
    language: str

    class Config:
        from_attributes = True


class UserOut(BaseModel):
    id: int
    username: str
    email: str
    full_name: str
    avatar_url: Optional[str] = None
    role: UserRole
    is_active: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserProfile(UserOut):
    settings: Optional[UserSettingsOut] = None


class UserUpdate(BaseModel):
    username: Optional[str] = Field(None, min_length=3, max_length=50)
    email: Optional[EmailStr] = None
    full_name: Optional[str] = Field(None, max_length=255)
    avatar_url: Optional[str] = Field(None, max_length=512)
    role: Optional[UserRole] = None
    is_active: Optional[bool] = None

    @field_validator("full_name")
    @classmethod
    def strip_full_name(cls, value):
        return _strip_required(value)


class UserSettingsUpdate(BaseModel):
    theme: Optional[Theme] = None
    email_notifications: Optional[Dict[str, bool]] = None
    timezone: Optional[str] = Field(None, max_length=64)
    language: Optional[str] = Field(None, max_length=10)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., min_length=6, alias="newPassword")

    class Config:
        populate_by_name = True


# Category schemas
HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"


class CategoryCreate(BaseModel):
    name: str = Field(..., max_length=100)
    color: str = Field("#228BE6", pattern=HEX_COLOR)
    icon: Optional[str] = Field(None, max_length=50)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value):
        return _strip_required(value)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    color: Optional[str] = Field(None, pattern=HEX_COLOR)
    icon: Optional[str] = Field(None, max_length=50)

    @field_validator("name")
    @classmethod
    def strip_name(cls, value):
        return _strip_required(value)


# Task schemas
RECURRENCE_REQUIRED = "Recurring tasks require a recurrence pattern"


class RecurrencePattern(BaseModel):
    frequency: Literal["daily", "weekly", "monthly"]
    interval: int = Field(1, ge=1)


class TaskBase(BaseModel):
    description: Optional[str] = None
    category_id: Optional[int] = None
    assigned_to: Optional[int] = None
    due_date: Optional[datetime] = None
    start_date: Optional[datetime] = None
    recurrence_pattern: Optional[RecurrencePattern] = None


class TaskCreate(TaskBase):
    title: str = Field(..., max_length=255)
    task_type: TaskType = TaskType.utility
    priority: TaskPriority = TaskPriority.medium
    status: TaskStatus = TaskStatus.not_started
    tags: List[str] = []
    is_recurring: bool = False

    @field_validator("title")
    @classmethod
    def strip_title(cls, value):
        return _strip_required(value)

    @model_validator(mode="after")
    def require_recurrence_pattern(self):
        if self.is_recurring and self.recurrence_pattern is None:
            raise ValueError(RECURRENCE_REQUIRED)
        return self


class TaskUpdate(TaskBase):
    """All fields optional; only the fields present in the request are applied."""
    title: Optional[str] = Field(None, max_length=255)
    task_type: Optional[TaskType] = None
    priority: Optional[TaskPriority] = None
    status: Optional[TaskStatus] = None
    tags: Optional[List[str]] = None
    is_recurring: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, value):
        return _strip_required(value)

    @model_validator(mode="after")
    def require_recurrence_pattern(self):
        # An explicit null pattern cannot be combined with is_recurring=true
        if self.is_recurring and "recurrence_pattern" in self.model_fields_set and self.recurrence_pattern is None:
            raise ValueError(RECURRENCE_REQUIRED)
        return self


# Comment schemas
class CommentCreate(BaseModel):
    content: str
    parent_comment_id: Optional[int] = None

    @field_validator("content")
    @classmethod
    def strip_content(cls, value):
        return _strip_required(value)


def user_payload(user, include_settings: bool = False) -> dict:
    """Serialize a User (optionally with its settings) to JSON-ready data."""
    schema = UserProfile if include_settings else UserOut
    return schema.model_validate(user).model_dump(mode="json")
