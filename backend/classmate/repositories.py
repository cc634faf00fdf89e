"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (accounts,
courses, coursework, attendance, exams, notifications, audit, sessions,
reset tokens, deletion requests).
Repositories return SQLModel objects and perform commits/refreshes where
appropriate.
"""

from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, col, select

from . import models


class _Repository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj):
        """Persist `obj` and return the refreshed instance."""
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj

    def count_rows(self, model, *conditions) -> int:
        stmt = select(func.count()).select_from(model)
        for condition in conditions:
            stmt = stmt.where(condition)
        return self.session.exec(stmt).one()


class UserRepository(_Repository):
    """CRUD operations for `User` objects and their role profiles."""

    def create(self, user: models.User) -> models.User:
        return self.save(user)

    def create_with_profile(self, user: models.User, profile) -> models.User:
        """Create a user and its role profile in a single transaction."""
        self.session.add(user)
        self.session.flush()
        profile.user_id = user.id
        self.session.add(profile)
        self.session.commit()
        self.session.refresh(user)
        self.session.refresh(profile)
        return user

    def get(self, user_id: int) -> Optional[models.User]:
        return self.session.get(models.User, user_id)

    def get_by_email(self, email: str) -> Optional[models.User]:
        stmt = select(models.User).where(models.User.email == email)
        return self.session.exec(stmt).first()

    def list(self, role: Optional[models.Role] = None, active: Optional[bool] = None,
             offset: int = 0, limit: int = 50) -> List[models.User]:
        stmt = select(models.User)
        if role is not None:
            stmt = stmt.where(models.User.role == role)
        if active is not None:
            stmt = stmt.where(models.User.is_active == active)
        stmt = stmt.order_by(models.User.id).offset(offset).limit(limit)
        return self.session.exec(stmt).all()

    def count_by_role(self) -> dict:
        stmt = select(models.User.role, func.count(models.User.id)).group_by(models.User.role)
        return {role.value: count for role, count in self.session.exec(stmt).all()}

    def student_for_user(self, user_id: int) -> Optional[models.Student]:
        stmt = select(models.Student).where(models.Student.user_id == user_id)
        return self.session.exec(stmt).first()

    def teacher_for_user(self, user_id: int) -> Optional[models.Teacher]:
        stmt = select(models.Teacher).where(models.Teacher.user_id == user_id)
        return self.session.exec(stmt).first()

    def admin_for_user(self, user_id: int) -> Optional[models.Admin]:
        stmt = select(models.Admin).where(models.Admin.user_id == user_id)
        return self.session.exec(stmt).first()


class StudentRepository(_Repository):
    def get(self, student_id: int) -> Optional[models.Student]:
        return self.session.get(models.Student, student_id)

    def get_by_matric(self, matric_number: str) -> Optional[models.Student]:
        stmt = select(models.Student).where(models.Student.matric_number == matric_number)
        return self.session.exec(stmt).first()

    def exists(self, matric_number: str, jamb_reg_number: str, email_hash: str, phone_hash: str) -> bool:
        """Return True if any unique student identifier is already taken."""
        stmt = select(models.Student.id).where(
            (models.Student.matric_number == matric_number)
            | (models.Student.jamb_reg_number == jamb_reg_number)
            | (models.Student.email_search_hash == email_hash)
            | (models.Student.phone_search_hash == phone_hash)
        )
        return self.session.exec(stmt).first() is not None

    def count(self) -> int:
        return self.session.exec(select(func.count(models.Student.id))).one()


class TeacherRepository(_Repository):
    def get(self, teacher_id: int) -> Optional[models.Teacher]:
        return self.session.get(models.Teacher, teacher_id)

    def exists(self, staff_id: str, email_hash: str, phone_hash: str) -> bool:
        stmt = select(models.Teacher.id).where(
            (models.Teacher.staff_id == staff_id)
            | (models.Teacher.email_search_hash == email_hash)
            | (models.Teacher.phone_search_hash == phone_hash)
        )
        return self.session.exec(stmt).first() is not None


class CourseRepository(_Repository):
    """Courses, lectures and enrollments."""

    def get(self, course_id: int) -> Optional[models.Course]:
        return self.session.get(models.Course, course_id)

    def get_by_code(self, code: str) -> Optional[models.Course]:
        stmt = select(models.Course).where(models.Course.code == code)
        return self.session.exec(stmt).first()

    def search(self, level: Optional[int] = None, semester: Optional[int] = None,
               query: Optional[str] = None, instructor_id: Optional[int] = None,
               active_only: bool = True) -> List[models.Course]:
        stmt = select(models.Course)
        if active_only:
            stmt = stmt.where(models.Course.is_active == True)  # noqa: E712
        if level is not None:
            stmt = stmt.where(models.Course.level == level)
        if semester is not None:
            stmt = stmt.where(models.Course.semester == semester)
        if instructor_id is not None:
            stmt = stmt.where(models.Course.instructor_id == instructor_id)
        if query:
            pattern = f"%{query.strip()}%"
            stmt = stmt.where(col(models.Course.code).ilike(pattern) | col(models.Course.title).ilike(pattern))
        return self.session.exec(stmt.order_by(models.Course.code)).all()

    def get_enrollment(self, student_id: int, course_id: int) -> Optional[models.Enrollment]:
        stmt = select(models.Enrollment).where(
            models.Enrollment.student_id == student_id,
            models.Enrollment.course_id == course_id,
        )
        return self.session.exec(stmt).first()

    def enrollments_for_student(self, student_id: int) -> List[models.Enrollment]:
        """Enrollments ordered by course level, semester and code."""
        stmt = (
            select(models.Enrollment)
            .join(models.Course, models.Course.id == models.Enrollment.course_id)
            .where(models.Enrollment.student_id == student_id)
            .order_by(models.Course.level, models.Course.semester, models.Course.code)
        )
        return self.session.exec(stmt).all()

    def enrollments_for_course(self, course_id: int) -> List[models.Enrollment]:
        stmt = select(models.Enrollment).where(models.Enrollment.course_id == course_id)
        return self.session.exec(stmt).all()

    def count_enrollments(self, course_id: int) -> int:
        stmt = select(func.count(models.Enrollment.id)).where(models.Enrollment.course_id == course_id)
        return self.session.exec(stmt).one()

    def get_lecture(self, lecture_id: int) -> Optional[models.Lecture]:
        return self.session.get(models.Lecture, lecture_id)

    def lectures_for_course(self, course_id: int) -> List[models.Lecture]:
        stmt = (
            select(models.Lecture)
            .where(models.Lecture.course_id == course_id)
            .order_by(models.Lecture.order_index, models.Lecture.id)
        )
        return self.session.exec(stmt).all()

    def lectures_between(self, course_ids: Iterable[int], start: datetime, end: datetime) -> List[models.Lecture]:
        ids = list(course_ids)
        if not ids:
            return []
        stmt = select(models.Lecture).where(
            col(models.Lecture.course_id).in_(ids),
            models.Lecture.scheduled_at >= start,
            models.Lecture.scheduled_at < end,
        )
        return self.session.exec(stmt).all()

    def count(self) -> int:
        return self.session.exec(select(func.count(models.Course.id))).one()


class AssignmentRepository(_Repository):
    """Assignments and their submissions."""

    def get(self, assignment_id: int) -> Optional[models.Assignment]:
        return self.session.get(models.Assignment, assignment_id)

    def for_courses(self, course_ids: Iterable[int], published_only: bool = True) -> List[models.Assignment]:
        ids = list(course_ids)
        if not ids:
            return []
        stmt = select(models.Assignment).where(col(models.Assignment.course_id).in_(ids))
        if published_only:
            stmt = stmt.where(models.Assignment.is_published == True)  # noqa: E712
        return self.session.exec(stmt.order_by(models.Assignment.due_date)).all()

    def get_submission(self, submission_id: int) -> Optional[models.AssignmentSubmission]:
        return self.session.get(models.AssignmentSubmission, submission_id)

    def submissions_for(self, assignment_id: int, student_id: Optional[int] = None) -> List[models.AssignmentSubmission]:
        stmt = select(models.AssignmentSubmission).where(models.AssignmentSubmission.assignment_id == assignment_id)
        if student_id is not None:
            stmt = stmt.where(models.AssignmentSubmission.student_id == student_id)
        stmt = stmt.order_by(models.AssignmentSubmission.student_id, models.AssignmentSubmission.attempt_number)
        return self.session.exec(stmt).all()

    def submissions_by_student(self, student_id: int) -> List[models.AssignmentSubmission]:
        stmt = (
            select(models.AssignmentSubmission)
            .where(models.AssignmentSubmission.student_id == student_id)
            .order_by(col(models.AssignmentSubmission.submitted_at).desc())
        )
        return self.session.exec(stmt).all()

    def count_ungraded(self, assignment_ids: Iterable[int]) -> int:
        ids = list(assignment_ids)
        if not ids:
            return 0
        stmt = select(func.count(models.AssignmentSubmission.id)).where(
            col(models.AssignmentSubmission.assignment_id).in_(ids),
            models.AssignmentSubmission.is_graded == False,  # noqa: E712
        )
        return self.session.exec(stmt).one()


class AttendanceRepository(_Repository):
    def get(self, student_id: int, lecture_id: int) -> Optional[models.Attendance]:
        stmt = select(models.Attendance).where(
            models.Attendance.student_id == student_id,
            models.Attendance.lecture_id == lecture_id,
        )
        return self.session.exec(stmt).first()

    def for_course(self, course_id: int, student_id: Optional[int] = None,
                   start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[models.Attendance]:
        stmt = select(models.Attendance).where(models.Attendance.course_id == course_id)
        if student_id is not None:
            stmt = stmt.where(models.Attendance.student_id == student_id)
        if start is not None:
            stmt = stmt.where(models.Attendance.marked_at >= start)
        if end is not None:
            stmt = stmt.where(models.Attendance.marked_at <= end)
        return self.session.exec(stmt.order_by(col(models.Attendance.marked_at).desc())).all()

    def for_student(self, student_id: int) -> List[models.Attendance]:
        stmt = select(models.Attendance).where(models.Attendance.student_id == student_id)
        return self.session.exec(stmt).all()


class ExamRepository(_Repository):
    def get(self, exam_id: int) -> Optional[models.Exam]:
        return self.session.get(models.Exam, exam_id)

    def get_result(self, exam_id: int, student_id: int) -> Optional[models.ExamResult]:
        stmt = select(models.ExamResult).where(
            models.ExamResult.exam_id == exam_id,
            models.ExamResult.student_id == student_id,
        )
        return self.session.exec(stmt).first()

    def results_for_exam(self, exam_id: int) -> List[models.ExamResult]:
        stmt = select(models.ExamResult).where(models.ExamResult.exam_id == exam_id)
        return self.session.exec(stmt).all()

    def published_results_for_student(self, student_id: int) -> List[models.ExamResult]:
        stmt = select(models.ExamResult).where(
            models.ExamResult.student_id == student_id,
            models.ExamResult.is_published == True,  # noqa: E712
        )
        return self.session.exec(stmt).all()

    def between(self, course_ids: Iterable[int], start: datetime, end: datetime) -> List[models.Exam]:
        ids = list(course_ids)
        if not ids:
            return []
        stmt = select(models.Exam).where(
            col(models.Exam.course_id).in_(ids),
            models.Exam.date >= start,
            models.Exam.date < end,
        )
        return self.session.exec(stmt).all()


class NotificationRepository(_Repository):
    def get(self, notification_id: int) -> Optional[models.Notification]:
        return self.session.get(models.Notification, notification_id)

    def for_user(self, user_id: int, unread_only: bool = False, limit: int = 20, offset: int = 0) -> List[models.Notification]:
        stmt = select(models.Notification).where(models.Notification.user_id == user_id)
        if unread_only:
            stmt = stmt.where(models.Notification.is_read == False)  # noqa: E712
        stmt = stmt.order_by(col(models.Notification.created_at).desc(), col(models.Notification.id).desc())
        return self.session.exec(stmt.offset(offset).limit(limit)).all()

    def unread(self, user_id: int) -> List[models.Notification]:
        return self.for_user(user_id, unread_only=True, limit=10_000)

    def count_unread(self, user_id: int) -> int:
        stmt = select(func.count(models.Notification.id)).where(
            models.Notification.user_id == user_id,
            models.Notification.is_read == False,  # noqa: E712
        )
        return self.session.exec(stmt).one()

    def counts_by_type(self, user_id: int) -> dict:
        stmt = (
            select(models.Notification.type, func.count(models.Notification.id))
            .where(models.Notification.user_id == user_id)
            .group_by(models.Notification.type)
        )
        return {t.value: count for t, count in self.session.exec(stmt).all()}

    def delete(self, notification: models.Notification):
        self.session.delete(notification)
        self.session.commit()


class AuditRepository(_Repository):
    """Append and query `AuditLog` rows."""

    def add(self, entry: models.AuditLog) -> models.AuditLog:
        return self.save(entry)

    def _filtered(self, stmt, user_id=None, action=None, resource_type=None, start=None, end=None):
        if user_id is not None:
            stmt = stmt.where(models.AuditLog.user_id == user_id)
        if action is not None:
            stmt = stmt.where(models.AuditLog.action == action)
        if resource_type is not None:
            stmt = stmt.where(models.AuditLog.resource_type == resource_type)
        if start is not None:
            stmt = stmt.where(models.AuditLog.created_at >= start)
        if end is not None:
            stmt = stmt.where(models.AuditLog.created_at <= end)
        return stmt

    def search(self, offset: int = 0, limit: int = 50, **filters) -> tuple[List[models.AuditLog], int]:
        total = self.session.exec(self._filtered(select(func.count(models.AuditLog.id)), **filters)).one()
        stmt = self._filtered(select(models.AuditLog), **filters)
        stmt = stmt.order_by(col(models.AuditLog.created_at).desc(), col(models.AuditLog.id).desc())
        return self.session.exec(stmt.offset(offset).limit(limit)).all(), total

    def count(self, **filters) -> int:
        return self.session.exec(self._filtered(select(func.count(models.AuditLog.id)), **filters)).one()

    def count_grouped(self, column, start=None, end=None) -> dict:
        stmt = self._filtered(select(column, func.count(models.AuditLog.id)), start=start, end=end).group_by(column)
        return {(key.value if key is not None else "unknown"): count for key, count in self.session.exec(stmt).all()}

    def count_actions(self, actions, start=None, end=None) -> int:
        stmt = select(func.count(models.AuditLog.id)).where(col(models.AuditLog.action).in_(list(actions)))
        return self.session.exec(self._filtered(stmt, start=start, end=end)).one()


class SessionRepository(_Repository):
    """Login sessions keyed by opaque session and refresh tokens."""

    def get(self, session_id: int) -> Optional[models.UserSession]:
        return self.session.get(models.UserSession, session_id)

    def get_by_token(self, token: str) -> Optional[models.UserSession]:
        stmt = select(models.UserSession).where(models.UserSession.session_token == token)
        return self.session.exec(stmt).first()

    def get_by_refresh_token(self, token: str) -> Optional[models.UserSession]:
        stmt = select(models.UserSession).where(models.UserSession.refresh_token == token)
        return self.session.exec(stmt).first()

    def active_for_user(self, user_id: int, now: datetime) -> List[models.UserSession]:
        stmt = (
            select(models.UserSession)
            .where(
                models.UserSession.user_id == user_id,
                models.UserSession.revoked_at == None,  # noqa: E711
                models.UserSession.expires_at > now,
            )
            .order_by(col(models.UserSession.last_accessed_at).desc())
        )
        return self.session.exec(stmt).all()

    def unrevoked_for_user(self, user_id: int) -> List[models.UserSession]:
        """Every session not yet revoked, including ones whose access window has ended."""
        stmt = select(models.UserSession).where(
            models.UserSession.user_id == user_id,
            models.UserSession.revoked_at == None,  # noqa: E711
        )
        return self.session.exec(stmt).all()


class PasswordResetRepository(_Repository):
    """Hashed password reset tokens."""

    def get_by_hash(self, token_hash: str) -> Optional[models.PasswordResetToken]:
        stmt = select(models.PasswordResetToken).where(models.PasswordResetToken.token_hash == token_hash)
        return self.session.exec(stmt).first()

    def unused_for_user(self, user_id: int) -> List[models.PasswordResetToken]:
        stmt = select(models.PasswordResetToken).where(
            models.PasswordResetToken.user_id == user_id,
            models.PasswordResetToken.used_at == None,  # noqa: E711
        )
        return self.session.exec(stmt).all()


class DeletionRequestRepository(_Repository):
    """Account deletion requests and their review state."""

    def get(self, request_id: int) -> Optional[models.DeletionRequest]:
        return self.session.get(models.DeletionRequest, request_id)

    def pending_for_user(self, user_id: int) -> Optional[models.DeletionRequest]:
        stmt = select(models.DeletionRequest).where(
            models.DeletionRequest.user_id == user_id,
            models.DeletionRequest.status == models.DeletionStatus.PENDING,
        )
        return self.session.exec(stmt).first()

    def for_user(self, user_id: int) -> List[models.DeletionRequest]:
        stmt = (
            select(models.DeletionRequest)
            .where(models.DeletionRequest.user_id == user_id)
            .order_by(col(models.DeletionRequest.created_at).desc())
        )
        return self.session.exec(stmt).all()

    def search(self, status: Optional[models.DeletionStatus] = None) -> List[models.DeletionRequest]:
        stmt = select(models.DeletionRequest)
        if status is not None:
            stmt = stmt.where(models.DeletionRequest.status == status)
        return self.session.exec(stmt.order_by(col(models.DeletionRequest.created_at).desc())).all()
