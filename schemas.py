"""
Document Schemas for the Student Organization Console

Each document model mirrors one collection of the document store. Stored field
names are camelCase; models expose snake_case attributes with camelCase aliases.

Collections:
- tasks
- announcements
- reports
- users (profiles, roles: student, officer, admin)
- subjects
- freedom-wall-posts

Documents read from the store are default-filled: null or absent values fall back
to field defaults and unknown enum values fall back to the default member.
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

TASKS = "tasks"
ANNOUNCEMENTS = "announcements"
REPORTS = "reports"
USERS = "users"
SUBJECTS = "subjects"
FREEDOM_WALL_POSTS = "freedom-wall-posts"

TASK_STATUSES = ("Pending", "In Progress", "Completed")
ANNOUNCEMENT_TYPES = ("General", "Reminder", "Event", "Critical")
REPORT_STATUSES = ("Pending", "Reviewed", "Resolved")
ROLES = ("student", "officer", "admin")
ELEVATED_ROLES = ("officer", "admin")

ANONYMOUS_NAME = "Anonymous"
MAX_POST_LENGTH = 500


def _choice(value: Any, choices, default: str) -> str:
    return value if value in choices else default


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class Document(BaseModel):
    """Base for every stored document; `id` is the store's opaque identifier."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True)

    id: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="before")
    @classmethod
    def _drop_nulls(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _timestamps(cls, v):
        return _as_datetime(v)

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        """Fields of the wrong type fall back to their defaults; anything else still raises."""
        try:
            return cls.model_validate(doc)
        except ValidationError as exc:
            bad = {str(err["loc"][0]) for err in exc.errors() if err["loc"]}
            cleaned = {k: v for k, v in doc.items() if k not in bad and to_camel(k) not in bad}
            if len(cleaned) == len(doc):
                raise
            return cls.model_validate(cleaned)


class Task(Document):
    title: str = ""
    description: str = ""
    subject: str = ""
    subject_id: Optional[str] = None
    deadline: Optional[date] = None
    status: str = "Pending"
    created_by: str = ""
    created_by_name: str = ""
    image_url: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return _choice(v, TASK_STATUSES, "Pending")

    @field_validator("deadline", mode="before")
    @classmethod
    def _deadline(cls, v):
        return _as_date(v)


class Announcement(Document):
    title: str = ""
    content: str = ""
    type: str = "General"
    author_id: str = ""
    author_name: str = ""
    expires_at: Optional[datetime] = None

    @field_validator("type", mode="before")
    @classmethod
    def _type(cls, v):
        return _choice(v, ANNOUNCEMENT_TYPES, "General")

    @field_validator("expires_at", mode="before")
    @classmethod
    def _expires(cls, v):
        return _as_datetime(v)


class Report(Document):
    """Moderation reports; created outside the console, optionally pointing at a wall post"""
    report_type: str = ""
    description: str = ""
    status: str = "Pending"
    reported_by: str = ""
    reported_at: Optional[datetime] = None
    post_id: Optional[str] = None

    @field_validator("status", mode="before")
    @classmethod
    def _status(cls, v):
        return _choice(v, REPORT_STATUSES, "Pending")

    @field_validator("reported_at", mode="before")
    @classmethod
    def _reported(cls, v):
        return _as_datetime(v)


class FreedomWallPost(Document):
    content: str = ""
    author_id: str = ""
    author_name: str = ""
    is_anonymous: bool = False

    @property
    def display_name(self) -> str:
        return ANONYMOUS_NAME if self.is_anonymous else self.author_name

    def public_view(self) -> Dict[str, Any]:
        """Fields safe to render for any viewer. Anonymous posts never carry authorId."""
        view = {
            "id": self.id,
            "content": self.content,
            "authorName": self.display_name,
            "isAnonymous": self.is_anonymous,
            "createdAt": self.created_at,
        }
        if not self.is_anonymous:
            view["authorId"] = self.author_id
        return view


class UserProfile(Document):
    """
    Users collection schema
    Roles:
    - admin: Full control, changes roles
    - officer: Organization officer, moderates reports and posts
    - student: Regular member
    """
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    role: str = "student"

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, v):
        return _choice(v, ROLES, "student")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Subject(Document):
    code: str = ""
    name: str = ""
    description: str = ""
    created_by: str = ""


class Identity(BaseModel):
    """The signed-in account. Replaced wholesale on every auth event, never mutated."""

    model_config = ConfigDict(frozen=True)

    uid: str
    email: str
    token: str = ""
    display_name: str = ""
    role: str = "student"

    @field_validator("role", mode="before")
    @classmethod
    def _role(cls, v):
        return _choice(v, ROLES, "student")

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# Input bodies. Validated before any mutation is attempted.

class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    def to_fields(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class SignInBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TaskBody(_Body):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = ""
    subject: str = ""
    subject_id: Optional[str] = None
    deadline: date
    status: Literal["Pending", "In Progress", "Completed"] = "Pending"
    image_url: Optional[str] = None

    @field_serializer("deadline")
    def _deadline(self, v: date) -> str:
        return v.isoformat()


class AnnouncementBody(_Body):
    title: str = Field(..., min_length=1, max_length=200)
    content: str = Field(..., min_length=1)
    type: Literal["General", "Reminder", "Event", "Critical"] = "General"
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def _not_in_past(cls, v):
        if v is None:
            return v
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        if v < datetime.now(timezone.utc):
            raise ValueError("expiry must not be before the announcement is created")
        return v


class PostBody(_Body):
    content: str = Field(..., min_length=1, max_length=MAX_POST_LENGTH)
    is_anonymous: bool = False


class SubjectBody(_Body):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    description: str = ""

    @field_validator("code")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()


class RoleChangeBody(_Body):
    role: Literal["student", "officer", "admin"]
