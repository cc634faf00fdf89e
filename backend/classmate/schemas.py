"""Pydantic request schemas used by the API.

Schemas keep API input shapes stable and provide validation for
controller handlers and tests. Responses are plain dictionaries built by
the services.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .models import AttendanceStatus, Gender, Role
from .utils.encryption import normalize_phone

_MIN_PASSWORD = 8
_MIN_PHONE_DIGITS = 7


def _check_password(value: str) -> str:
    if len(value) < _MIN_PASSWORD:
        raise ValueError(f"password must be at least {_MIN_PASSWORD} characters")
    if not any(ch.isdigit() for ch in value) or not any(ch.isalpha() for ch in value):
        raise ValueError("password must contain letters and digits")
    return value


def _check_phone(value: str) -> str:
    """Reject phone numbers with fewer than `_MIN_PHONE_DIGITS` digits once normalised."""
    if len(normalize_phone(value)) < _MIN_PHONE_DIGITS:
        raise ValueError("invalid phone number")
    return value.strip()


class StudentRegisterIn(BaseModel):
    """Self-registration payload for a student account."""
    matric_number: str = Field(min_length=3, max_length=32)
    jamb_reg_number: str = Field(min_length=3, max_length=32)
    surname: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    other_name: Optional[str] = None
    gender: Optional[Gender] = None
    email: str
    phone: str = Field(min_length=7)
    nin: Optional[str] = None
    department: str
    college: str
    course_of_study: str = ""
    admission_year: Optional[int] = None
    password: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("invalid email address")
        return value.strip()

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _check_phone(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _check_password(value)


class TeacherRegisterIn(BaseModel):
    """Registration payload for a teacher account."""
    staff_id: str = Field(min_length=2, max_length=32)
    surname: str = Field(min_length=1)
    first_name: str = Field(min_length=1)
    other_name: Optional[str] = None
    title: Optional[str] = None
    email: str
    phone: str = Field(min_length=7)
    institution: str
    department: str
    qualification: Optional[str] = None
    specialization: Optional[str] = None
    password: str

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("invalid email address")
        return value.strip()

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _check_phone(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _check_password(value)


class AdminCreateIn(BaseModel):
    staff_id: str
    surname: str
    first_name: str
    email: str
    phone: str
    department: str = "Administration"
    password: str

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        return _check_phone(value)

    @field_validator("password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _check_password(value)


class LoginIn(BaseModel):
    """Login with an email address or a matric number."""
    identifier: str
    password: str


class RefreshIn(BaseModel):
    refresh_token: str


class TokenOut(BaseModel):
    """Authentication response containing the access and refresh tokens."""
    access_token: str
    refresh_token: str
    expires_at: datetime
    role: Role


class ProfileUpdateIn(BaseModel):
    """Editable profile fields; omitted fields are left unchanged."""
    surname: Optional[str] = None
    first_name: Optional[str] = None
    other_name: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    qualification: Optional[str] = None
    specialization: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: Optional[str]) -> Optional[str]:
        return _check_phone(value) if value is not None else None


class PasswordChangeIn(BaseModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _check_password(value)


class ForgotPasswordIn(BaseModel):
    email: str


class ResetTokenIn(BaseModel):
    token: str = Field(min_length=1)


class PasswordResetIn(BaseModel):
    token: str = Field(min_length=1)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _password(cls, value: str) -> str:
        return _check_password(value)


class DeletionRequestIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=1000)


class DeletionReviewIn(BaseModel):
    """Admin decision on a pending deletion request."""
    approve: bool
    note: Optional[str] = Field(default=None, max_length=1000)


class CourseIn(BaseModel):
    code: str = Field(min_length=2, max_length=16)
    title: str = Field(min_length=1)
    description: Optional[str] = None
    credits: int = Field(default=3, ge=1, le=12)
    level: int = Field(default=100, ge=100, le=900)
    semester: int = Field(default=1, ge=1, le=3)
    instructor_id: Optional[int] = None


class LectureIn(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    duration: Optional[int] = Field(default=None, ge=1)
    order_index: int = 0
    is_published: bool = True
    scheduled_at: Optional[datetime] = None


class AssignmentIn(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    instructions: Optional[str] = None
    due_date: datetime
    max_score: int = Field(default=100, ge=1)
    weight: float = Field(default=1.0, ge=0)
    allowed_attempts: int = Field(default=1, ge=1)
    allow_late_submission: bool = False
    publish: bool = False


class SubmissionIn(BaseModel):
    content: Optional[str] = None
    submission_url: Optional[str] = None


class SubmissionGradeIn(BaseModel):
    score: float = Field(ge=0)
    feedback: Optional[str] = None


class CourseGradeIn(BaseModel):
    """Final course score for one enrolled student."""
    student_id: int
    score: float


class BulkGradeIn(BaseModel):
    grades: List[CourseGradeIn]


class AttendanceRecordIn(BaseModel):
    student_id: int
    status: AttendanceStatus = AttendanceStatus.PRESENT
    notes: Optional[str] = None


class AttendanceIn(BaseModel):
    records: List[AttendanceRecordIn]


class ExamIn(BaseModel):
    title: str
    description: Optional[str] = None
    date: datetime
    duration: int = Field(default=180, ge=1)
    total_marks: int = Field(default=70, ge=1)
    venue: str = "TBA"


class ExamResultIn(BaseModel):
    """`score` of None records the student as absent."""
    student_id: int
    score: Optional[float] = Field(default=None, ge=0)
    feedback: Optional[str] = None

