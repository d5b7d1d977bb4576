import re
from pydantic import BaseModel, EmailStr, Field, field_validator
from datetime import datetime
from typing import Any, Dict, List, Optional
from enum import Enum

from time_utils import ensure_utc


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    PREMIUM = "PREMIUM"
    TEAM = "TEAM"
    ENTERPRISE = "ENTERPRISE"


class TaskPriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class SharePermission(str, Enum):
    VIEW = "VIEW"
    EDIT = "EDIT"


class TeamRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class AddableTeamRole(str, Enum):
    """Roles that can be granted when adding a member (OWNER only via role update)."""
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"
    VIEWER = "VIEWER"


class TaskSortField(str, Enum):
    created_at = "created_at"
    updated_at = "updated_at"
    due_date = "due_date"
    priority = "priority"
    title = "title"


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


USERNAME_PATTERN = r"^[a-zA-Z0-9_]+$"


def check_password_strength(value: str) -> str:
    """Require at least one lowercase letter, one uppercase letter, and one digit."""
    if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
        raise ValueError(
            "Password must contain at least one lowercase letter, one uppercase letter, and one number"
        )
    return value


class UtcModel(BaseModel):
    """Response base that renders every datetime as timezone-aware UTC."""

    class Config:
        from_attributes = True

    @field_validator("*", mode="after")
    @classmethod
    def normalize_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_utc(value)
        return value


# User schemas
class UserSummary(UtcModel):
    id: int
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserProfile(UtcModel):
    id: int
    email: str
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    timezone: str
    language: str
    subscription_tier: SubscriptionTier
    email_verified: bool
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)
    username: Optional[str] = Field(None, min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    timezone: Optional[str] = Field(None, min_length=1, max_length=64)
    language: Optional[str] = Field(None, min_length=1, max_length=16)


# Auth schemas
class RegisterRequest(BaseModel):
    email: EmailStr
    username: str = Field(..., min_length=3, max_length=30, pattern=USERNAME_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, min_length=1, max_length=50)

    @field_validator("password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)


class RegisterResponse(BaseModel):
    message: str
    user: UserProfile


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    remember_me: bool = False


class TokenPair(UtcModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime


class LoginResponse(BaseModel):
    message: str
    user: UserProfile
    tokens: TokenPair


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class RefreshResponse(BaseModel):
    tokens: TokenPair


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


class VerifyEmailRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)
    refresh_token: Optional[str] = None

    @field_validator("new_password")
    @classmethod
    def password_strength(cls, value: str) -> str:
        return check_password_strength(value)


class MessageResponse(BaseModel):
    message: str


# Subtask schemas
class SubtaskCreate(BaseModel):
    text: str = Field(..., min_length=1, max_length=255)


class SubtaskUpdate(BaseModel):
    text: Optional[str] = Field(None, min_length=1, max_length=255)
    completed: Optional[bool] = None


class SubtaskReorder(BaseModel):
    subtask_ids: List[int] = Field(..., min_length=1)

    @field_validator("subtask_ids")
    @classmethod
    def no_duplicates(cls, value: List[int]) -> List[int]:
        if len(set(value)) != len(value):
            raise ValueError("subtask_ids must not contain duplicates")
        return value


class Subtask(UtcModel):
    id: int
    task_id: int
    text: str
    completed: bool
    order: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubtaskList(BaseModel):
    task_id: int
    subtasks: List[Subtask] = []


# Task activity schemas
class TaskActivity(UtcModel):
    id: int
    task_id: int
    user_id: Optional[int] = None
    user: Optional[UserSummary] = None
    action: str
    description: Optional[str] = None
    metadata: Optional[dict] = Field(None, validation_alias="activity_metadata")
    created_at: Optional[datetime] = None


class TaskActivityList(BaseModel):
    activities: List[TaskActivity] = []
    total_count: int


# Task share schemas
class TaskShareRequest(BaseModel):
    user_ids: List[int] = Field(..., min_length=1)
    permission: SharePermission
    message: Optional[str] = Field(None, max_length=500)


class TaskShare(UtcModel):
    id: int
    task_id: int
    user_id: int
    user: Optional[UserSummary] = None
    permission: SharePermission
    shared_by: Optional[int] = None
    shared_at: Optional[datetime] = None


class TaskShareResult(BaseModel):
    message: str
    shares: List[TaskShare] = []


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    priority: TaskPriority = TaskPriority.MEDIUM
    category: Optional[str] = Field(None, max_length=100)
    tags: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    estimated_time: Optional[int] = Field(None, ge=1, description="Estimated minutes (must be >= 1)")

    @field_validator("due_date", mode="after")
    @classmethod
    def due_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class TaskCreate(TaskBase):
    pass


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=2000)
    completed: Optional[bool] = None
    priority: Optional[TaskPriority] = None
    category: Optional[str] = Field(None, max_length=100)
    tags: Optional[List[str]] = None
    due_date: Optional[datetime] = None
    estimated_time: Optional[int] = Field(None, ge=1, description="Estimated minutes (must be >= 1)")
    actual_time: Optional[int] = Field(None, ge=1, description="Actual minutes spent (must be >= 1)")

    @field_validator("due_date", mode="after")
    @classmethod
    def due_date_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Task(UtcModel):
    id: int
    user_id: int
    owner: Optional[UserSummary] = None
    title: str
    description: Optional[str] = None
    completed: bool
    priority: TaskPriority
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    due_date: Optional[datetime] = None
    estimated_time: Optional[int] = None
    actual_time: Optional[int] = None
    completed_at: Optional[datetime] = None
    subtasks: List[Subtask] = Field(default_factory=list)
    shares: List[TaskShare] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def tags_default(cls, value: Any) -> Any:
        return value or []


class TaskDetail(Task):
    activities: List[TaskActivity] = Field(default_factory=list)


class TaskFilters(BaseModel):
    completed: Optional[bool] = None
    priority: Optional[TaskPriority] = None
    category: Optional[str] = None
    search: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort_by: TaskSortField = TaskSortField.created_at
    sort_order: SortOrder = SortOrder.desc
    page: int = Field(1, ge=1)
    limit: int = Field(20, ge=1, le=100)

    @field_validator("start_date", "end_date", mode="after")
    @classmethod
    def bounds_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class TaskList(BaseModel):
    tasks: List[Task] = []
    pagination: Pagination


class TaskStats(BaseModel):
    total: int
    completed: int
    pending: int
    overdue: int
    due_today: int
    urgent: int


# Team schemas
class TeamCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)


class TeamUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    settings: Optional[Dict[str, Any]] = None


class TeamJoin(BaseModel):
    invite_code: str = Field(..., min_length=1, max_length=64)


class TeamMemberCreate(BaseModel):
    user_id: int
    role: AddableTeamRole = AddableTeamRole.MEMBER


class TeamMemberUpdate(BaseModel):
    role: TeamRole


class TeamMember(UtcModel):
    id: int
    team_id: int
    user_id: int
    user: Optional[UserSummary] = None
    role: TeamRole
    joined_at: Optional[datetime] = None


class Team(UtcModel):
    id: int
    name: str
    description: Optional[str] = None
    owner_id: Optional[int] = None
    owner: Optional[UserSummary] = None
    invite_code: str
    settings: Dict[str, Any] = Field(default_factory=dict)
    members: List[TeamMember] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("settings", mode="before")
    @classmethod
    def settings_default(cls, value: Any) -> Any:
        return value or {}
