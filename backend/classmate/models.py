"""SQLModel data models.

This module defines the portal's database tables using SQLModel. A
`User` owns exactly one role profile (`Student`, `Teacher` or `Admin`);
students enroll in courses, submit assignments, attend lectures and sit
exams. `AuditLog`, `UserSession` and `RateLimit` are operational tables.

All timestamps are stored as naive UTC datetimes (see `utcnow`).
"""

import enum
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise an incoming datetime to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Role(str, enum.Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


class Gender(str, enum.Enum):
    MALE = "MALE"
    FEMALE = "FEMALE"
    OTHER = "OTHER"


class Grade(str, enum.Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"


class NotificationType(str, enum.Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"
    SECURITY = "SECURITY"
    REMINDER = "REMINDER"
    GRADE = "GRADE"


class AuditAction(str, enum.Enum):
    USER_REGISTERED = "USER_REGISTERED"
    USER_LOGGED_IN = "USER_LOGGED_IN"
    USER_LOGGED_OUT = "USER_LOGGED_OUT"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    PROFILE_UPDATED = "PROFILE_UPDATED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    SESSION_REFRESHED = "SESSION_REFRESHED"
    SESSION_TERMINATED = "SESSION_TERMINATED"
    COURSE_CREATED = "COURSE_CREATED"
    ENROLLMENT_CREATED = "ENROLLMENT_CREATED"
    LECTURE_CREATED = "LECTURE_CREATED"
    ASSIGNMENT_CREATED = "ASSIGNMENT_CREATED"
    ASSIGNMENT_PUBLISHED = "ASSIGNMENT_PUBLISHED"
    ASSIGNMENT_SUBMITTED = "ASSIGNMENT_SUBMITTED"
    SUBMISSION_GRADED = "SUBMISSION_GRADED"
    GRADE_ASSIGNED = "GRADE_ASSIGNED"
    ATTENDANCE_MARKED = "ATTENDANCE_MARKED"
    EXAM_CREATED = "EXAM_CREATED"
    EXAM_RESULT_RECORDED = "EXAM_RESULT_RECORDED"
    EXAM_RESULT_UPDATED = "EXAM_RESULT_UPDATED"
    EXAM_RESULT_PUBLISHED = "EXAM_RESULT_PUBLISHED"
    EXPORT_TRANSCRIPT = "EXPORT_TRANSCRIPT"
    DATA_EXPORT_REQUESTED = "DATA_EXPORT_REQUESTED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    ACCOUNT_DEACTIVATED = "ACCOUNT_DEACTIVATED"
    ACCOUNT_ACTIVATED = "ACCOUNT_ACTIVATED"
    NOTIFICATION_SENT = "NOTIFICATION_SENT"
    PASSWORD_RESET_REQUESTED = "PASSWORD_RESET_REQUESTED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    DELETION_REQUESTED = "DELETION_REQUESTED"
    DELETION_REVIEWED = "DELETION_REVIEWED"


# actions counted as suspicious in audit statistics
SUSPICIOUS_ACTIONS = (AuditAction.USER_LOGIN_FAILED, AuditAction.RATE_LIMIT_EXCEEDED)


class ResourceType(str, enum.Enum):
    USER = "USER"
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"
    COURSE = "COURSE"
    LECTURE = "LECTURE"
    ASSIGNMENT = "ASSIGNMENT"
    SUBMISSION = "SUBMISSION"
    ENROLLMENT = "ENROLLMENT"
    SESSION = "SESSION"
    NOTIFICATION = "NOTIFICATION"
    ATTENDANCE = "ATTENDANCE"
    EXAM = "EXAM"
    EXAM_RESULT = "EXAM_RESULT"
    DELETION_REQUEST = "DELETION_REQUEST"


class SecurityLevel(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class DeletionStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AttendanceStatus(str, enum.Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    LATE = "LATE"
    EXCUSED = "EXCUSED"


class ExamRemark(str, enum.Enum):
    EXCELLENT = "EXCELLENT"
    VERY_GOOD = "VERY_GOOD"
    GOOD = "GOOD"
    FAIR = "FAIR"
    PASS = "PASS"
    FAIL = "FAIL"
    ABSENT = "ABSENT"


class User(SQLModel, table=True):
    """A portal account.

    Fields:
    - `email`: unique login email (students may also sign in by matric number)
    - `password_hash`: hashed password string (never store plaintext)
    - `failed_login_attempts` / `locked_until`: consecutive-failure lockout state
    - `greeting` / `greeting_next_change`: cached dashboard greeting
    """
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    name: Optional[str] = None
    role: Role = Field(default=Role.STUDENT, index=True)
    password_hash: str
    is_active: bool = True
    last_login_at: Optional[datetime] = None
    login_count: int = 0
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    account_locked: bool = False
    locked_until: Optional[datetime] = None
    greeting: Optional[str] = None
    greeting_next_change: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Student(SQLModel, table=True):
    """Student profile. `email`, `phone` and `nin` hold ciphertext."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    matric_number: str = Field(index=True, unique=True)
    jamb_reg_number: str = Field(unique=True)
    surname: str
    first_name: str
    other_name: Optional[str] = None
    gender: Optional[Gender] = None
    email: str
    phone: str
    nin: Optional[str] = None
    email_search_hash: str = Field(index=True, unique=True)
    phone_search_hash: str = Field(index=True, unique=True)
    department: str
    college: str
    course_of_study: str = ""
    admission_year: Optional[int] = None
    date_enrolled: datetime = Field(default_factory=utcnow)
    is_active: bool = True
    last_activity_at: Optional[datetime] = None
    enrollments: List["Enrollment"] = Relationship(back_populates="student")


class Teacher(SQLModel, table=True):
    """Teacher profile. `email` and `phone` hold ciphertext."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    staff_id: str = Field(index=True, unique=True)
    surname: str
    first_name: str
    other_name: Optional[str] = None
    title: Optional[str] = None
    email: str
    phone: str
    email_search_hash: str = Field(index=True, unique=True)
    phone_search_hash: str = Field(index=True, unique=True)
    institution: str
    department: str
    qualification: Optional[str] = None
    specialization: Optional[str] = None
    date_joined: datetime = Field(default_factory=utcnow)
    last_activity_at: Optional[datetime] = None


class Admin(SQLModel, table=True):
    """Administrator profile. `email` and `phone` hold ciphertext."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", unique=True)
    staff_id: str = Field(index=True, unique=True)
    surname: str
    first_name: str
    email: str
    phone: str
    department: str
    date_joined: datetime = Field(default_factory=utcnow)


class Course(SQLModel, table=True):
    """A course offering taught by one instructor."""
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, unique=True)
    title: str
    description: Optional[str] = None
    credits: int = 3
    level: int = Field(default=100, index=True)
    semester: int = Field(default=1, index=True)
    is_active: bool = True
    instructor_id: Optional[int] = Field(default=None, foreign_key="teacher.id", index=True)
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    enrollments: List["Enrollment"] = Relationship(back_populates="course")


class Lecture(SQLModel, table=True):
    """A single lecture occurrence of a course; attendance is taken per lecture."""
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    title: str
    description: Optional[str] = None
    duration: Optional[int] = None
    order_index: int = 0
    is_published: bool = False
    scheduled_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow)


class Enrollment(SQLModel, table=True):
    """Links a student to a course; carries the final course grade."""
    __table_args__ = (UniqueConstraint("student_id", "course_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    date_enrolled: datetime = Field(default_factory=utcnow)
    is_completed: bool = False
    completion_date: Optional[datetime] = None
    grade: Optional[Grade] = None
    score: Optional[float] = None
    progress: float = 0.0
    last_accessed_at: Optional[datetime] = None
    student: Optional[Student] = Relationship(back_populates="enrollments")
    course: Optional[Course] = Relationship(back_populates="enrollments")


class Assignment(SQLModel, table=True):
    """Coursework with a due date and an attempt allowance."""
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    teacher_id: Optional[int] = Field(default=None, foreign_key="teacher.id")
    title: str
    description: Optional[str] = None
    instructions: Optional[str] = None
    due_date: datetime = Field(index=True)
    max_score: int = 100
    weight: float = 1.0
    allowed_attempts: int = 1
    allow_late_submission: bool = False
    is_published: bool = False
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class AssignmentSubmission(SQLModel, table=True):
    """One attempt by a student at an assignment."""
    __table_args__ = (UniqueConstraint("student_id", "assignment_id", "attempt_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(foreign_key="assignment.id", index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    content: Optional[str] = None
    submission_url: Optional[str] = None
    submitted_at: datetime = Field(default_factory=utcnow)
    attempt_number: int = 1
    is_late: bool = False
    score: Optional[float] = None
    feedback: Optional[str] = None
    is_graded: bool = False
    graded_at: Optional[datetime] = None
    graded_by: Optional[int] = Field(default=None, foreign_key="user.id")


class Attendance(SQLModel, table=True):
    """Attendance of one student at one lecture."""
    __table_args__ = (UniqueConstraint("student_id", "lecture_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    lecture_id: int = Field(foreign_key="lecture.id", index=True)
    status: AttendanceStatus = AttendanceStatus.PRESENT
    marked_at: datetime = Field(default_factory=utcnow)
    marked_by: Optional[int] = Field(default=None, foreign_key="user.id")
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Exam(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    course_id: int = Field(foreign_key="course.id", index=True)
    title: str
    description: Optional[str] = None
    date: datetime
    duration: int = 180
    total_marks: int = 70
    venue: str = "TBA"
    is_published: bool = False
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class ExamResult(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("exam_id", "student_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    exam_id: int = Field(foreign_key="exam.id", index=True)
    student_id: int = Field(foreign_key="student.id", index=True)
    course_id: int = Field(foreign_key="course.id")
    score: Optional[float] = None
    percentage: Optional[float] = None
    grade: Optional[Grade] = None
    remark: ExamRemark = ExamRemark.PASS
    feedback: Optional[str] = None
    is_published: bool = False
    published_at: Optional[datetime] = None
    recorded_by: Optional[int] = Field(default=None, foreign_key="user.id")
    recorded_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    is_read: bool = Field(default=False, index=True)
    action_url: Optional[str] = None
    priority: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None


class AuditLog(SQLModel, table=True):
    """Append-only record of a user action."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    action: AuditAction = Field(index=True)
    resource_type: Optional[ResourceType] = None
    resource_id: Optional[str] = None
    details: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    security_level: Optional[SecurityLevel] = None
    created_at: datetime = Field(default_factory=utcnow, index=True)


class UserSession(SQLModel, table=True):
    """Server-side login session referenced by the session cookie and JWT `sid`."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    session_token: str = Field(index=True, unique=True)
    refresh_token: str = Field(index=True, unique=True)
    expires_at: datetime
    refresh_expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_fingerprint: Optional[str] = None
    security_level: SecurityLevel = SecurityLevel.MEDIUM
    refresh_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_accessed_at: datetime = Field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None


class RateLimit(SQLModel, table=True):
    """Request counter for one key inside one fixed window."""
    __table_args__ = (UniqueConstraint("key", "window_start"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    key: str = Field(index=True)
    count: int = 0
    window_start: datetime
    window_end: datetime = Field(index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PasswordResetToken(SQLModel, table=True):
    """Single-use password reset token; only its SHA-256 digest is stored."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    token_hash: str = Field(index=True, unique=True)
    expires_at: datetime
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class DeletionRequest(SQLModel, table=True):
    """A user's request to have their account and profile removed."""
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    reason: Optional[str] = None
    status: DeletionStatus = Field(default=DeletionStatus.PENDING, index=True)
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    review_note: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
