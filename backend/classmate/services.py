"""Business logic services used by HTTP controllers.

This module holds the service classes that coordinate repositories and
the helpers under `utils`. Services perform validation, enforce role and
ownership rules, persist aggregates via repositories and record audit
entries. They raise:

- `ValueError` for invalid input,
- `NotFoundError` when a referenced row does not exist,
- `AccessDeniedError` when the caller may not act on a resource,
- `AuthenticationError` / `AccountLockedError` for login problems,
- `RateLimitExceeded` when a rate-limit policy denies the request.

The HTTP layer maps these to status codes.
"""

import hashlib
import logging
import secrets
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import models, repositories, schemas
from .config import settings
from .utils import encryption, grading, greetings, transcript as transcript_docs
from .utils.rate_limit import (
    ASSIGNMENT_SUBMISSION,
    LOGIN,
    PASSWORD_CHANGE,
    PASSWORD_RESET,
    PROFILE_UPDATE,
    DatabaseRateLimiter,
    Policy,
)

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

logger = logging.getLogger("classmate.services")
audit_logger = logging.getLogger("classmate.audit")


class NotFoundError(LookupError):
    pass


class AccessDeniedError(PermissionError):
    pass


class AuthenticationError(Exception):
    pass


class AccountLockedError(Exception):
    def __init__(self, locked_until: datetime):
        super().__init__(f"account locked until {locked_until.isoformat()}")
        self.locked_until = locked_until


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: int):
        super().__init__(f"too many requests, retry in {retry_after} seconds")
        self.retry_after = retry_after


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _full_name(profile) -> str:
    parts = [profile.surname, profile.first_name, getattr(profile, "other_name", None)]
    return " ".join(p for p in parts if p)


def _normalize_matric(matric_number: str) -> str:
    return matric_number.strip().upper()


def _decrypt_or_none(decrypt, value, *args):
    """Decrypt a stored PII value; corrupt ciphertext is logged and hidden."""
    if not value:
        return None
    try:
        return decrypt(value, *args)
    except ValueError:
        logger.warning("could not decrypt stored value")
        return None


_REQUIRED_PROFILE_FIELDS = ("surname", "first_name", "phone")


def _mask(value: Optional[str], visible: int = 4) -> Optional[str]:
    if not value:
        return None
    return "*" * max(0, len(value) - visible) + value[-visible:]


def issue_access_token(user: models.User, user_session: models.UserSession) -> str:
    """Sign an HS256 JWT bound to `user_session` (claim `sid`)."""
    payload = {
        "user_id": user.id,
        "role": user.role.value,
        "sid": user_session.id,
        "exp": user_session.expires_at,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])


class _Service:
    """Shared repository wiring and role/ownership helpers."""

    def __init__(self, session: Session):
        self.session = session
        self.users = repositories.UserRepository(session)
        self.courses = repositories.CourseRepository(session)

    def _audit(self, action: models.AuditAction, user_id: Optional[int] = None, **kwargs) -> models.AuditLog:
        return AuditService(self.session).log(action, user_id=user_id, **kwargs)

    def _student(self, user: models.User) -> models.Student:
        profile = self.users.student_for_user(user.id) if user.role == models.Role.STUDENT else None
        if profile is None:
            raise AccessDeniedError("student profile required")
        return profile

    def _teacher(self, user: models.User) -> Optional[models.Teacher]:
        return self.users.teacher_for_user(user.id) if user.role == models.Role.TEACHER else None

    def _course(self, course_id: int) -> models.Course:
        course = self.courses.get(course_id)
        if course is None:
            raise NotFoundError("course not found")
        return course

    def _managed_course(self, user: models.User, course_id: int) -> models.Course:
        """Return the course if `user` is an admin or its instructor."""
        course = self._course(course_id)
        if user.role == models.Role.ADMIN:
            return course
        teacher = self._teacher(user)
        if teacher is None or course.instructor_id != teacher.id:
            raise AccessDeniedError("you do not teach this course")
        return course

    def _enrolled_student_ids(self, course_id: int) -> set:
        return {e.student_id for e in self.courses.enrollments_for_course(course_id)}

    def _notify_course(self, course_id: int, title: str, message: str,
                       type: models.NotificationType = models.NotificationType.INFO,
                       action_url: Optional[str] = None) -> int:
        notifier = NotificationService(self.session)
        sent = 0
        for enrollment in self.courses.enrollments_for_course(course_id):
            student = self.session.get(models.Student, enrollment.student_id)
            if student is None:
                continue
            notifier.notify(student.user_id, title, message, type=type, action_url=action_url)
            sent += 1
        return sent

    def _enforce(self, policy: Policy, *parts, user_id: Optional[int] = None, ip: Optional[str] = None):
        decision = DatabaseRateLimiter(self.session).check_policy(policy, *parts)
        if not decision.allowed:
            self._audit(
                models.AuditAction.RATE_LIMIT_EXCEEDED,
                user_id=user_id,
                details={"policy": policy.prefix, "retry_after": decision.retry_after},
                ip_address=ip,
                security_level=models.SecurityLevel.MEDIUM,
            )
            raise RateLimitExceeded(decision.retry_after)


class AuditService:
    """Append-only audit trail, mirrored on the `classmate.audit` logger."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.AuditRepository(session)

    def log(self, action: models.AuditAction, user_id: Optional[int] = None,
            resource_type: Optional[models.ResourceType] = None, resource_id=None,
            details: Optional[dict] = None, ip_address: Optional[str] = None,
            user_agent: Optional[str] = None,
            security_level: models.SecurityLevel = models.SecurityLevel.LOW) -> models.AuditLog:
        entry = models.AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            ip_address=ip_address,
            user_agent=user_agent,
            security_level=security_level,
        )
        self.repo.add(entry)
        audit_logger.info(
            "%s user=%s resource=%s:%s level=%s",
            action.value,
            user_id,
            resource_type.value if resource_type else "-",
            entry.resource_id or "-",
            security_level.value,
        )
        return entry

    @staticmethod
    def to_dict(entry: models.AuditLog) -> dict:
        return {
            "id": entry.id,
            "user_id": entry.user_id,
            "action": entry.action,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "details": entry.details,
            "ip_address": entry.ip_address,
            "security_level": entry.security_level,
            "created_at": entry.created_at,
        }

    def search(self, page: int = 1, page_size: int = 50, **filters) -> dict:
        """Paginated, newest-first audit search.

        Accepted filters: `user_id`, `action`, `resource_type`, `start`, `end`.
        """
        if page < 1 or not 1 <= page_size <= 200:
            raise ValueError("page must be >= 1 and page_size in 1..200")
        rows, total = self.repo.search(offset=(page - 1) * page_size, limit=page_size, **filters)
        return {
            "items": [self.to_dict(r) for r in rows],
            "total": total,
            "page": page,
            "page_size": page_size,
            "pages": (total + page_size - 1) // page_size,
        }

    def statistics(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        return {
            "total": self.repo.count(start=start, end=end),
            "by_action": self.repo.count_grouped(models.AuditLog.action, start=start, end=end),
            "by_resource_type": self.repo.count_grouped(models.AuditLog.resource_type, start=start, end=end),
            "by_security_level": self.repo.count_grouped(models.AuditLog.security_level, start=start, end=end),
            "suspicious": self.repo.count_actions(models.SUSPICIOUS_ACTIONS, start=start, end=end),
        }

    def for_user(self, user_id: int, limit: int = 20) -> List[dict]:
        rows, _ = self.repo.search(limit=limit, user_id=user_id)
        return [self.to_dict(r) for r in rows]


class NotificationService:
    """In-app notifications for a single user."""

    def __init__(self, session: Session):
        self.session = session
        self.repo = repositories.NotificationRepository(session)

    def notify(self, user_id: int, title: str, message: str,
               type: models.NotificationType = models.NotificationType.INFO,
               action_url: Optional[str] = None, priority: int = 1) -> models.Notification:
        note = models.Notification(
            user_id=user_id, title=title, message=message, type=type,
            action_url=action_url, priority=priority,
        )
        return self.repo.save(note)

    @staticmethod
    def to_dict(note: models.Notification) -> dict:
        return {
            "id": note.id,
            "title": note.title,
            "message": note.message,
            "type": note.type,
            "is_read": note.is_read,
            "action_url": note.action_url,
            "priority": note.priority,
            "created_at": note.created_at,
            "read_at": note.read_at,
        }

    def list(self, user_id: int, unread_only: bool = False, page: int = 1, page_size: int = 20) -> dict:
        if page < 1 or not 1 <= page_size <= 100:
            raise ValueError("page must be >= 1 and page_size in 1..100")
        rows = self.repo.for_user(user_id, unread_only=unread_only, limit=page_size, offset=(page - 1) * page_size)
        return {
            "items": [self.to_dict(n) for n in rows],
            "unread_count": self.repo.count_unread(user_id),
            "page": page,
        }

    def _owned(self, user_id: int, notification_id: int) -> models.Notification:
        note = self.repo.get(notification_id)
        if note is None:
            raise NotFoundError("notification not found")
        if note.user_id != user_id:
            raise AccessDeniedError("not your notification")
        return note

    def mark_read(self, user_id: int, notification_id: int) -> models.Notification:
        note = self._owned(user_id, notification_id)
        if not note.is_read:
            note.is_read = True
            note.read_at = models.utcnow()
            self.repo.save(note)
        return note

    def mark_all_read(self, user_id: int) -> int:
        now = models.utcnow()
        unread = self.repo.unread(user_id)
        for note in unread:
            note.is_read = True
            note.read_at = now
            self.session.add(note)
        self.session.commit()
        return len(unread)

    def unread_count(self, user_id: int) -> int:
        return self.repo.count_unread(user_id)

    def delete(self, user_id: int, notification_id: int):
        self.repo.delete(self._owned(user_id, notification_id))

    def stats(self, user_id: int) -> dict:
        by_type = self.repo.counts_by_type(user_id)
        return {
            "total": sum(by_type.values()),
            "unread": self.repo.count_unread(user_id),
            "by_type": by_type,
        }


class AuthService(_Service):
    """Registration, login with lockout, and server-side sessions."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.students = repositories.StudentRepository(session)
        self.teachers = repositories.TeacherRepository(session)
        self.sessions = repositories.SessionRepository(session)
        self.resets = repositories.PasswordResetRepository(session)

    def _persist_account(self, user: models.User, profile) -> models.User:
        if self.users.get_by_email(user.email):
            raise ValueError("an account with this email already exists")
        try:
            return self.users.create_with_profile(user, profile)
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("an account with these details already exists") from exc

    def register_student(self, data: schemas.StudentRegisterIn, ip: Optional[str] = None,
                         user_agent: Optional[str] = None) -> models.User:
        """Create a student `User` and its encrypted `Student` profile."""
        email = encryption.normalize_email(data.email)
        phone = encryption.normalize_phone(data.phone)
        matric = _normalize_matric(data.matric_number)
        email_hash = encryption.search_hash(email)
        phone_hash = encryption.search_hash(phone)
        if self.students.exists(matric, data.jamb_reg_number.strip(), email_hash, phone_hash):
            raise ValueError("a student with these details already exists")
        user = models.User(
            email=email,
            name=f"{data.first_name} {data.surname}",
            role=models.Role.STUDENT,
            password_hash=PWD_CTX.hash(data.password),
        )
        profile = models.Student(
            user_id=0,
            matric_number=matric,
            jamb_reg_number=data.jamb_reg_number.strip(),
            surname=data.surname.strip(),
            first_name=data.first_name.strip(),
            other_name=data.other_name,
            gender=data.gender,
            email=encryption.encrypt_searchable(email, "email"),
            phone=encryption.encrypt_searchable(phone, "phone"),
            nin=encryption.encrypt_highest_security(data.nin) if data.nin else None,
            email_search_hash=email_hash,
            phone_search_hash=phone_hash,
            department=data.department,
            college=data.college,
            course_of_study=data.course_of_study,
            admission_year=data.admission_year,
        )
        user = self._persist_account(user, profile)
        self._audit(
            models.AuditAction.USER_REGISTERED, user_id=user.id,
            resource_type=models.ResourceType.STUDENT, resource_id=profile.id,
            details={"matric_number": matric}, ip_address=ip, user_agent=user_agent,
        )
        NotificationService(self.session).notify(
            user.id, "Welcome", f"Welcome to {settings.INSTITUTION_NAME}, {data.first_name}!",
            type=models.NotificationType.SUCCESS,
        )
        logger.info("registered student user=%s", user.id)
        return user

    def register_teacher(self, data: schemas.TeacherRegisterIn, ip: Optional[str] = None,
                         user_agent: Optional[str] = None) -> models.User:
        email = encryption.normalize_email(data.email)
        phone = encryption.normalize_phone(data.phone)
        email_hash = encryption.search_hash(email)
        phone_hash = encryption.search_hash(phone)
        staff_id = data.staff_id.strip().upper()
        if self.teachers.exists(staff_id, email_hash, phone_hash):
            raise ValueError("a teacher with these details already exists")
        user = models.User(
            email=email,
            name=f"{data.first_name} {data.surname}",
            role=models.Role.TEACHER,
            password_hash=PWD_CTX.hash(data.password),
        )
        profile = models.Teacher(
            user_id=0,
            staff_id=staff_id,
            surname=data.surname.strip(),
            first_name=data.first_name.strip(),
            other_name=data.other_name,
            title=data.title,
            email=encryption.encrypt_searchable(email, "email"),
            phone=encryption.encrypt_searchable(phone, "phone"),
            email_search_hash=email_hash,
            phone_search_hash=phone_hash,
            institution=data.institution,
            department=data.department,
            qualification=data.qualification,
            specialization=data.specialization,
        )
        user = self._persist_account(user, profile)
        self._audit(
            models.AuditAction.USER_REGISTERED, user_id=user.id,
            resource_type=models.ResourceType.TEACHER, resource_id=profile.id,
            details={"staff_id": staff_id}, ip_address=ip, user_agent=user_agent,
        )
        logger.info("registered teacher user=%s", user.id)
        return user

    def create_admin(self, data: schemas.AdminCreateIn, actor_id: Optional[int] = None) -> models.User:
        email = encryption.normalize_email(data.email)
        user = models.User(
            email=email,
            name=f"{data.first_name} {data.surname}",
            role=models.Role.ADMIN,
            password_hash=PWD_CTX.hash(data.password),
        )
        profile = models.Admin(
            user_id=0,
            staff_id=data.staff_id.strip().upper(),
            surname=data.surname.strip(),
            first_name=data.first_name.strip(),
            email=encryption.encrypt_searchable(email, "email"),
            phone=encryption.encrypt_searchable(encryption.normalize_phone(data.phone), "phone"),
            department=data.department,
        )
        user = self._persist_account(user, profile)
        self._audit(
            models.AuditAction.USER_REGISTERED, user_id=actor_id,
            resource_type=models.ResourceType.ADMIN, resource_id=profile.id,
            details={"created_user_id": user.id}, security_level=models.SecurityLevel.HIGH,
        )
        return user

    def _find_account(self, identifier: str) -> Optional[models.User]:
        identifier = identifier.strip()
        if "@" in identifier:
            return self.users.get_by_email(encryption.normalize_email(identifier))
        student = self.students.get_by_matric(_normalize_matric(identifier))
        return self.users.get(student.user_id) if student else None

    def authenticate(self, identifier: str, password: str, ip: Optional[str] = None,
                     user_agent: Optional[str] = None) -> dict:
        """Verify credentials and open a session.

        Accepts an email address or a student matric number. After
        `MAX_FAILED_LOGINS` consecutive failures the account is locked for
        `LOCKOUT_MINUTES`. Returns the token payload plus the new
        `UserSession` under `"session"`.
        """
        self._enforce(LOGIN, ip or "unknown", ip=ip)
        now = models.utcnow()
        user = self._find_account(identifier)
        if user is None:
            self._audit(
                models.AuditAction.USER_LOGIN_FAILED,
                details={"identifier": identifier, "reason": "unknown account"},
                ip_address=ip, user_agent=user_agent, security_level=models.SecurityLevel.MEDIUM,
            )
            raise AuthenticationError("invalid credentials")
        if user.account_locked:
            if user.locked_until and user.locked_until > now:
                raise AccountLockedError(user.locked_until)
            user.account_locked = False
            user.locked_until = None
            user.failed_login_attempts = 0
        if not PWD_CTX.verify(password, user.password_hash):
            self._record_failure(user, now, ip, user_agent)
        if not user.is_active:
            raise AuthenticationError("account is deactivated")

        user.failed_login_attempts = 0
        user.last_failed_login_at = None
        user.last_login_at = now
        user.login_count += 1
        user.updated_at = now
        self.session.add(user)
        user_session = self._open_session(user, ip, user_agent, now)
        self._audit(
            models.AuditAction.USER_LOGGED_IN, user_id=user.id,
            resource_type=models.ResourceType.SESSION, resource_id=user_session.id,
            ip_address=ip, user_agent=user_agent,
        )
        return self._token_payload(user, user_session)

    def _record_failure(self, user: models.User, now: datetime, ip, user_agent):
        user.failed_login_attempts += 1
        user.last_failed_login_at = now
        locked = user.failed_login_attempts >= settings.MAX_FAILED_LOGINS
        if locked:
            user.account_locked = True
            user.locked_until = now + timedelta(minutes=settings.LOCKOUT_MINUTES)
        self.session.add(user)
        self.session.commit()
        self._audit(
            models.AuditAction.USER_LOGIN_FAILED, user_id=user.id,
            details={"attempts": user.failed_login_attempts, "locked": locked},
            ip_address=ip, user_agent=user_agent,
            security_level=models.SecurityLevel.HIGH if locked else models.SecurityLevel.MEDIUM,
        )
        if locked:
            logger.warning("account locked user=%s", user.id)
            NotificationService(self.session).notify(
                user.id, "Account locked",
                f"Too many failed sign-in attempts. Try again after {settings.LOCKOUT_MINUTES} minutes.",
                type=models.NotificationType.SECURITY, priority=3,
            )
            raise AccountLockedError(user.locked_until)
        raise AuthenticationError("invalid credentials")

    def _open_session(self, user: models.User, ip, user_agent, now: datetime) -> models.UserSession:
        fingerprint = hashlib.sha256(f"{user_agent or ''}|{ip or ''}".encode("utf-8")).hexdigest()[:32]
        user_session = models.UserSession(
            user_id=user.id,
            session_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(48),
            expires_at=now + timedelta(hours=settings.SESSION_HOURS),
            refresh_expires_at=now + timedelta(days=settings.REFRESH_DAYS),
            ip_address=ip,
            user_agent=user_agent,
            device_fingerprint=fingerprint,
            created_at=now,
            last_accessed_at=now,
        )
        return self.sessions.save(user_session)

    @staticmethod
    def _token_payload(user: models.User, user_session: models.UserSession) -> dict:
        return {
            "access_token": issue_access_token(user, user_session),
            "refresh_token": user_session.refresh_token,
            "expires_at": user_session.expires_at,
            "role": user.role,
            "session": user_session,
        }

    def resolve_session(self, session_token: Optional[str] = None,
                        session_id: Optional[int] = None) -> Optional[tuple]:
        """Return `(UserSession, User)` for a live session or None.

        A session is live when it exists, is not revoked, has not expired
        and belongs to an active user. `last_accessed_at` is refreshed.
        """
        if session_token:
            user_session = self.sessions.get_by_token(session_token)
        elif session_id is not None:
            user_session = self.sessions.get(session_id)
        else:
            return None
        now = models.utcnow()
        if user_session is None or user_session.revoked_at is not None or user_session.expires_at <= now:
            return None
        user = self.users.get(user_session.user_id)
        if user is None or not user.is_active:
            return None
        user_session.last_accessed_at = now
        self.sessions.save(user_session)
        return user_session, user

    def logout(self, user: models.User, user_session: models.UserSession, ip: Optional[str] = None):
        user_session.revoked_at = models.utcnow()
        self.sessions.save(user_session)
        self._audit(
            models.AuditAction.USER_LOGGED_OUT, user_id=user.id,
            resource_type=models.ResourceType.SESSION, resource_id=user_session.id, ip_address=ip,
        )

    def refresh(self, refresh_token: str, ip: Optional[str] = None) -> dict:
        """Rotate both tokens of the session owning `refresh_token`."""
        user_session = self.sessions.get_by_refresh_token(refresh_token)
        now = models.utcnow()
        if (
            user_session is None
            or user_session.revoked_at is not None
            or user_session.refresh_expires_at <= now
        ):
            raise AuthenticationError("invalid or expired refresh token")
        user = self.users.get(user_session.user_id)
        if user is None or not user.is_active:
            raise AuthenticationError("account is not active")
        user_session.session_token = secrets.token_urlsafe(32)
        user_session.refresh_token = secrets.token_urlsafe(48)
        user_session.expires_at = now + timedelta(hours=settings.SESSION_HOURS)
        user_session.refresh_count += 1
        user_session.last_accessed_at = now
        self.sessions.save(user_session)
        self._audit(
            models.AuditAction.SESSION_REFRESHED, user_id=user.id,
            resource_type=models.ResourceType.SESSION, resource_id=user_session.id, ip_address=ip,
        )
        return self._token_payload(user, user_session)

    def list_sessions(self, user: models.User, current_id: Optional[int] = None) -> List[dict]:
        return [
            {
                "id": s.id,
                "ip_address": s.ip_address,
                "user_agent": s.user_agent,
                "created_at": s.created_at,
                "last_accessed_at": s.last_accessed_at,
                "expires_at": s.expires_at,
                "refresh_count": s.refresh_count,
                "is_current": s.id == current_id,
            }
            for s in self.sessions.active_for_user(user.id, models.utcnow())
        ]

    def terminate_session(self, user: models.User, session_id: int):
        user_session = self.sessions.get(session_id)
        if user_session is None or user_session.revoked_at is not None:
            raise NotFoundError("session not found")
        if user_session.user_id != user.id:
            raise AccessDeniedError("not your session")
        user_session.revoked_at = models.utcnow()
        self.sessions.save(user_session)
        self._audit(
            models.AuditAction.SESSION_TERMINATED, user_id=user.id,
            resource_type=models.ResourceType.SESSION, resource_id=session_id,
            security_level=models.SecurityLevel.MEDIUM,
        )

    def revoke_all(self, user_id: int, keep_id: Optional[int] = None) -> int:
        """Revoke every unrevoked session, including ones only a refresh token keeps alive."""
        now = models.utcnow()
        revoked = 0
        for user_session in self.sessions.unrevoked_for_user(user_id):
            if user_session.id == keep_id:
                continue
            user_session.revoked_at = now
            self.session.add(user_session)
            revoked += 1
        self.session.commit()
        return revoked

    def change_password(self, user: models.User, current_password: str, new_password: str,
                        current_session_id: Optional[int] = None, ip: Optional[str] = None) -> int:
        """Replace the password and revoke every other session of the user."""
        self._enforce(PASSWORD_CHANGE, user.id, user_id=user.id, ip=ip)
        if not PWD_CTX.verify(current_password, user.password_hash):
            raise ValueError("current password is incorrect")
        if current_password == new_password:
            raise ValueError("new password must differ from the current password")
        user.password_hash = PWD_CTX.hash(new_password)
        user.updated_at = models.utcnow()
        self.users.save(user)
        revoked = self.revoke_all(user.id, keep_id=current_session_id)
        self._audit(
            models.AuditAction.PASSWORD_CHANGED, user_id=user.id,
            resource_type=models.ResourceType.USER, resource_id=user.id,
            details={"revoked_sessions": revoked}, ip_address=ip,
            security_level=models.SecurityLevel.HIGH,
        )
        NotificationService(self.session).notify(
            user.id, "Password changed", "Your password was changed. Other sessions were signed out.",
            type=models.NotificationType.SECURITY, priority=2,
        )
        return revoked

    @staticmethod
    def _reset_digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def request_password_reset(self, email: str, ip: Optional[str] = None,
                               user_agent: Optional[str] = None) -> Optional[str]:
        """Issue a single-use reset token for the active account behind `email`.

        Returns the raw token, or None when no active account matches. Only
        the SHA-256 digest is stored and earlier unused tokens are voided.
        Mail delivery is not wired up, so the token is written to the
        service log for the operator to pass on.
        """
        user = self.users.get_by_email(encryption.normalize_email(email))
        if user is None or not user.is_active:
            self._audit(
                models.AuditAction.PASSWORD_RESET_REQUESTED,
                details={"reason": "unknown account"}, ip_address=ip, user_agent=user_agent,
                security_level=models.SecurityLevel.MEDIUM,
            )
            return None
        self._enforce(PASSWORD_RESET, user.id, user_id=user.id, ip=ip)
        now = models.utcnow()
        for stale in self.resets.unused_for_user(user.id):
            stale.used_at = now
            self.session.add(stale)
        token = secrets.token_urlsafe(32)
        record = self.resets.save(models.PasswordResetToken(
            user_id=user.id,
            token_hash=self._reset_digest(token),
            expires_at=now + timedelta(minutes=settings.RESET_TOKEN_MINUTES),
            ip_address=ip,
            created_at=now,
        ))
        self._audit(
            models.AuditAction.PASSWORD_RESET_REQUESTED, user_id=user.id,
            resource_type=models.ResourceType.USER, resource_id=user.id,
            ip_address=ip, user_agent=user_agent, security_level=models.SecurityLevel.MEDIUM,
        )
        logger.info("password reset token issued user=%s token_id=%s token=%s", user.id, record.id, token)
        return token

    def _live_reset_token(self, token: str) -> models.PasswordResetToken:
        record = self.resets.get_by_hash(self._reset_digest(token))
        if record is None or record.used_at is not None or record.expires_at <= models.utcnow():
            raise ValueError("invalid or expired reset token")
        return record

    def verify_reset_token(self, token: str) -> dict:
        record = self._live_reset_token(token)
        return {"valid": True, "expires_at": record.expires_at}

    def reset_password(self, token: str, new_password: str, ip: Optional[str] = None) -> int:
        """Set a new password from a reset token and sign out every session."""
        record = self._live_reset_token(token)
        user = self.users.get(record.user_id)
        if user is None or not user.is_active:
            raise ValueError("invalid or expired reset token")
        now = models.utcnow()
        record.used_at = now
        self.resets.save(record)
        user.password_hash = PWD_CTX.hash(new_password)
        user.account_locked = False
        user.locked_until = None
        user.failed_login_attempts = 0
        user.updated_at = now
        self.users.save(user)
        revoked = self.revoke_all(user.id)
        self._audit(
            models.AuditAction.PASSWORD_RESET_COMPLETED, user_id=user.id,
            resource_type=models.ResourceType.USER, resource_id=user.id,
            details={"revoked_sessions": revoked}, ip_address=ip,
            security_level=models.SecurityLevel.HIGH,
        )
        NotificationService(self.session).notify(
            user.id, "Password reset", "Your password was reset. All sessions were signed out.",
            type=models.NotificationType.SECURITY, priority=2,
        )
        return revoked


class ProfileService(_Service):
    """Profile read/update with PII decryption, activity and data export."""

    def _profile(self, user: models.User):
        if user.role == models.Role.STUDENT:
            return self.users.student_for_user(user.id)
        if user.role == models.Role.TEACHER:
            return self.users.teacher_for_user(user.id)
        return self.users.admin_for_user(user.id)

    def get_profile(self, user: models.User) -> dict:
        data = {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "is_active": user.is_active,
            "last_login_at": user.last_login_at,
            "login_count": user.login_count,
            "created_at": user.created_at,
            "profile": None,
        }
        profile = self._profile(user)
        if profile is None:
            return data
        details = {
            "id": profile.id,
            "surname": profile.surname,
            "first_name": profile.first_name,
            "full_name": _full_name(profile),
            "email": _decrypt_or_none(encryption.decrypt_searchable, profile.email, "email"),
            "phone": _decrypt_or_none(encryption.decrypt_searchable, profile.phone, "phone"),
            "department": profile.department,
        }
        if isinstance(profile, models.Student):
            details.update({
                "other_name": profile.other_name,
                "matric_number": profile.matric_number,
                "jamb_reg_number": profile.jamb_reg_number,
                "gender": profile.gender,
                "nin": _mask(_decrypt_or_none(encryption.decrypt_highest_security, profile.nin)),
                "college": profile.college,
                "course_of_study": profile.course_of_study,
                "admission_year": profile.admission_year,
                "date_enrolled": profile.date_enrolled,
            })
        elif isinstance(profile, models.Teacher):
            details.update({
                "other_name": profile.other_name,
                "staff_id": profile.staff_id,
                "title": profile.title,
                "institution": profile.institution,
                "qualification": profile.qualification,
                "specialization": profile.specialization,
                "date_joined": profile.date_joined,
            })
        else:
            details.update({"staff_id": profile.staff_id, "date_joined": profile.date_joined})
        data["profile"] = details
        return data

    def update_profile(self, user: models.User, data: schemas.ProfileUpdateIn, ip: Optional[str] = None) -> dict:
        self._enforce(PROFILE_UPDATE, user.id, user_id=user.id, ip=ip)
        profile = self._profile(user)
        if profile is None:
            raise NotFoundError("profile not found")
        changes = data.model_dump(exclude_unset=True)
        allowed = {"surname", "first_name", "phone"}
        if not isinstance(profile, models.Admin):
            allowed.add("other_name")
        if isinstance(profile, models.Teacher):
            allowed |= {"title", "qualification", "specialization"}
        rejected = sorted(set(changes) - allowed)
        if rejected:
            raise ValueError(f"fields not editable for this role: {', '.join(rejected)}")
        if not changes:
            raise ValueError("no changes supplied")
        for field in _REQUIRED_PROFILE_FIELDS:
            if field in changes and not (changes[field] or "").strip():
                raise ValueError(f"{field} cannot be empty")

        if "phone" in changes:
            phone = encryption.normalize_phone(changes.pop("phone"))
            if len(phone) < 7:
                raise ValueError("invalid phone number")
            if hasattr(profile, "phone_search_hash"):
                phone_hash = encryption.search_hash(phone)
                clash = self.session.exec(
                    select(type(profile)).where(
                        type(profile).phone_search_hash == phone_hash, type(profile).id != profile.id
                    )
                ).first()
                if clash:
                    raise ValueError("phone number already in use")
                profile.phone_search_hash = phone_hash
            profile.phone = encryption.encrypt_searchable(phone, "phone")
            changes["phone"] = "***"
        for field, value in changes.items():
            if field != "phone":
                # optional fields are cleared by null or blank values
                setattr(profile, field, (value or "").strip() or None)
        user.name = f"{profile.first_name} {profile.surname}"
        user.updated_at = models.utcnow()
        self.session.add(profile)
        self.session.add(user)
        self.session.commit()
        self._audit(
            models.AuditAction.PROFILE_UPDATED, user_id=user.id,
            resource_type=models.ResourceType.USER, resource_id=user.id,
            details={"fields": sorted(changes)}, ip_address=ip,
        )
        return self.get_profile(user)

    def activity(self, user: models.User, limit: int = 20) -> List[dict]:
        return AuditService(self.session).for_user(user.id, limit=limit)

    def export_data(self, user: models.User, ip: Optional[str] = None) -> dict:
        """Everything the portal stores about `user`, decrypted."""
        export = {
            "generated_at": models.utcnow(),
            "account": self.get_profile(user),
            "notifications": [
                NotificationService.to_dict(n)
                for n in repositories.NotificationRepository(self.session).for_user(user.id, limit=1000)
            ],
            "sessions": AuthService(self.session).list_sessions(user),
            "activity": self.activity(user, limit=200),
        }
        student = self.users.student_for_user(user.id)
        if student is not None:
            export["enrollments"] = GradeService(self.session).student_grades(student)
            export["submissions"] = [
                {
                    "assignment_id": s.assignment_id,
                    "attempt_number": s.attempt_number,
                    "submitted_at": s.submitted_at,
                    "is_late": s.is_late,
                    "score": s.score,
                    "feedback": s.feedback,
                }
                for s in repositories.AssignmentRepository(self.session).submissions_by_student(student.id)
            ]
            export["attendance"] = [
                {"course_id": a.course_id, "lecture_id": a.lecture_id, "status": a.status, "marked_at": a.marked_at}
                for a in repositories.AttendanceRepository(self.session).for_student(student.id)
            ]
        self._audit(
            models.AuditAction.DATA_EXPORT_REQUESTED, user_id=user.id,
            resource_type=models.ResourceType.USER, resource_id=user.id, ip_address=ip,
            security_level=models.SecurityLevel.MEDIUM,
        )
        return export

    @staticmethod
    def deletion_dict(request: models.DeletionRequest) -> dict:
        return {
            "id": request.id,
            "user_id": request.user_id,
            "reason": request.reason,
            "status": request.status,
            "reviewed_by": request.reviewed_by,
            "review_note": request.review_note,
            "reviewed_at": request.reviewed_at,
            "created_at": request.created_at,
        }

    def request_deletion(self, user: models.User, reason: Optional[str] = None,
                         ip: Optional[str] = None) -> models.DeletionRequest:
        """File a deletion request for an administrator to review.

        Only one request per user may be pending at a time.
        """
        requests = repositories.DeletionRequestRepository(self.session)
        if requests.pending_for_user(user.id) is not None:
            raise ValueError("a deletion request is already pending")
        request = requests.save(models.DeletionRequest(
            user_id=user.id, reason=(reason or "").strip() or None, created_at=models.utcnow(),
        ))
        self._audit(
            models.AuditAction.DELETION_REQUESTED, user_id=user.id,
            resource_type=models.ResourceType.DELETION_REQUEST, resource_id=request.id,
            ip_address=ip, security_level=models.SecurityLevel.HIGH,
        )
        logger.info("deletion requested user=%s request=%s", user.id, request.id)
        return request

    def deletion_requests(self, user: models.User) -> List[dict]:
        return [
            self.deletion_dict(r)
            for r in repositories.DeletionRequestRepository(self.session).for_user(user.id)
        ]


class CourseService(_Service):
    """Course catalogue, enrollment and lectures."""

    def to_dict(self, course: models.Course, student: Optional[models.Student] = None) -> dict:
        instructor = self.session.get(models.Teacher, course.instructor_id) if course.instructor_id else None
        data = {
            "id": course.id,
            "code": course.code,
            "title": course.title,
            "description": course.description,
            "credits": course.credits,
            "level": course.level,
            "semester": course.semester,
            "is_active": course.is_active,
            "instructor": _full_name(instructor) if instructor else None,
            "instructor_id": course.instructor_id,
            "enrollment_count": self.courses.count_enrollments(course.id),
        }
        if student is not None:
            data["is_enrolled"] = self.courses.get_enrollment(student.id, course.id) is not None
        return data

    def create_course(self, user: models.User, data: schemas.CourseIn) -> models.Course:
        code = data.code.strip().upper()
        if self.courses.get_by_code(code):
            raise ValueError(f"course code already exists: {code}")
        teacher = self._teacher(user)
        if teacher is not None:
            instructor_id = teacher.id
        elif user.role == models.Role.ADMIN:
            instructor_id = data.instructor_id
            if instructor_id is not None and self.session.get(models.Teacher, instructor_id) is None:
                raise NotFoundError("instructor not found")
        else:
            raise AccessDeniedError("only teachers and admins can create courses")
        course = models.Course(
            code=code,
            title=data.title.strip(),
            description=data.description,
            credits=data.credits,
            level=data.level,
            semester=data.semester,
            instructor_id=instructor_id,
            created_by=user.id,
        )
        self.courses.save(course)
        self._audit(
            models.AuditAction.COURSE_CREATED, user_id=user.id,
            resource_type=models.ResourceType.COURSE, resource_id=course.id, details={"code": code},
        )
        return course

    def list_courses(self, user: models.User, level: Optional[int] = None, semester: Optional[int] = None,
                     query: Optional[str] = None, mine: bool = False) -> List[dict]:
        """Active catalogue; `mine` narrows to taught or enrolled courses."""
        student = self.users.student_for_user(user.id) if user.role == models.Role.STUDENT else None
        teacher = self._teacher(user)
        instructor_id = teacher.id if (mine and teacher) else None
        courses = self.courses.search(level=level, semester=semester, query=query, instructor_id=instructor_id)
        if mine and student is not None:
            enrolled = {e.course_id for e in self.courses.enrollments_for_student(student.id)}
            courses = [c for c in courses if c.id in enrolled]
        return [self.to_dict(c, student) for c in courses]

    def get_course(self, user: models.User, course_id: int) -> dict:
        course = self._course(course_id)
        student = self.users.student_for_user(user.id) if user.role == models.Role.STUDENT else None
        data = self.to_dict(course, student)
        data["lecture_count"] = len(self.courses.lectures_for_course(course.id))
        return data

    def enroll(self, user: models.User, course_id: int) -> models.Enrollment:
        student = self._student(user)
        course = self._course(course_id)
        if not course.is_active:
            raise ValueError("course is not open for enrollment")
        if self.courses.get_enrollment(student.id, course.id):
            raise ValueError("already enrolled in this course")
        enrollment = models.Enrollment(student_id=student.id, course_id=course.id)
        try:
            self.courses.save(enrollment)
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("already enrolled in this course") from exc
        self._audit(
            models.AuditAction.ENROLLMENT_CREATED, user_id=user.id,
            resource_type=models.ResourceType.ENROLLMENT, resource_id=enrollment.id,
            details={"course_id": course.id, "code": course.code},
        )
        NotificationService(self.session).notify(
            user.id, "Enrollment confirmed", f"You are enrolled in {course.code}: {course.title}.",
            type=models.NotificationType.SUCCESS, action_url=f"/courses/{course.id}",
        )
        return enrollment

    def course_progress(self, user: models.User, course_id: int) -> dict:
        """Lecture attendance and coursework completion for the caller."""
        student = self._student(user)
        course = self._course(course_id)
        enrollment = self.courses.get_enrollment(student.id, course.id)
        if enrollment is None:
            raise AccessDeniedError("not enrolled in this course")
        lectures = [lec for lec in self.courses.lectures_for_course(course.id) if lec.is_published]
        published = {lec.id for lec in lectures}
        # attendance at unpublished lectures does not count towards progress
        attended = {
            a.lecture_id
            for a in repositories.AttendanceRepository(self.session).for_course(course.id, student_id=student.id)
            if a.status in (models.AttendanceStatus.PRESENT, models.AttendanceStatus.LATE)
            and a.lecture_id in published
        }
        assignment_repo = repositories.AssignmentRepository(self.session)
        assignments = assignment_repo.for_courses([course.id])
        submitted = {
            s.assignment_id
            for s in assignment_repo.submissions_by_student(student.id)
            if s.assignment_id in {a.id for a in assignments}
        }
        work_total = len(lectures) + len(assignments)
        work_done = len(attended) + len(submitted)
        if not enrollment.is_completed:
            enrollment.progress = round(work_done / work_total * 100.0, 2) if work_total else 0.0
        enrollment.last_accessed_at = models.utcnow()
        self.courses.save(enrollment)
        return {
            "course_id": course.id,
            "code": course.code,
            "progress": enrollment.progress,
            "is_completed": enrollment.is_completed,
            "grade": enrollment.grade,
            "score": enrollment.score,
            "lectures_total": len(lectures),
            "lectures_attended": len(attended),
            "assignments_total": len(assignments),
            "assignments_submitted": len(submitted),
        }

    def add_lecture(self, user: models.User, course_id: int, data: schemas.LectureIn) -> models.Lecture:
        course = self._managed_course(user, course_id)
        lecture = models.Lecture(
            course_id=course.id,
            title=data.title.strip(),
            description=data.description,
            duration=data.duration,
            order_index=data.order_index,
            is_published=data.is_published,
            scheduled_at=models.as_naive_utc(data.scheduled_at),
        )
        self.courses.save(lecture)
        self._audit(
            models.AuditAction.LECTURE_CREATED, user_id=user.id,
            resource_type=models.ResourceType.LECTURE, resource_id=lecture.id, details={"course_id": course.id},
        )
        if lecture.is_published:
            self._notify_course(
                course.id, f"{course.code}: new lecture", f"{lecture.title} is now available.",
                action_url=f"/courses/{course.id}/lectures",
            )
        return lecture

    def list_lectures(self, user: models.User, course_id: int) -> List[models.Lecture]:
        course = self._course(course_id)
        if user.role == models.Role.STUDENT:
            student = self._student(user)
            if self.courses.get_enrollment(student.id, course.id) is None:
                raise AccessDeniedError("not enrolled in this course")
            return [lec for lec in self.courses.lectures_for_course(course.id) if lec.is_published]
        self._managed_course(user, course_id)
        return self.courses.lectures_for_course(course.id)


class AssignmentService(_Service):
    """Coursework lifecycle: create, publish, submit and grade."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.repo = repositories.AssignmentRepository(session)

    def _assignment(self, assignment_id: int) -> models.Assignment:
        assignment = self.repo.get(assignment_id)
        if assignment is None:
            raise NotFoundError("assignment not found")
        return assignment

    @staticmethod
    def to_dict(assignment: models.Assignment) -> dict:
        return {
            "id": assignment.id,
            "course_id": assignment.course_id,
            "title": assignment.title,
            "description": assignment.description,
            "instructions": assignment.instructions,
            "due_date": assignment.due_date,
            "max_score": assignment.max_score,
            "weight": assignment.weight,
            "allowed_attempts": assignment.allowed_attempts,
            "allow_late_submission": assignment.allow_late_submission,
            "is_published": assignment.is_published,
            "published_at": assignment.published_at,
        }

    @staticmethod
    def submission_dict(submission: models.AssignmentSubmission) -> dict:
        return {
            "id": submission.id,
            "assignment_id": submission.assignment_id,
            "student_id": submission.student_id,
            "attempt_number": submission.attempt_number,
            "content": submission.content,
            "submission_url": submission.submission_url,
            "submitted_at": submission.submitted_at,
            "is_late": submission.is_late,
            "score": submission.score,
            "feedback": submission.feedback,
            "is_graded": submission.is_graded,
            "graded_at": submission.graded_at,
        }

    def create_assignment(self, user: models.User, course_id: int, data: schemas.AssignmentIn) -> models.Assignment:
        course = self._managed_course(user, course_id)
        teacher = self._teacher(user)
        now = models.utcnow()
        assignment = models.Assignment(
            course_id=course.id,
            teacher_id=teacher.id if teacher else None,
            title=data.title.strip(),
            description=data.description,
            instructions=data.instructions,
            due_date=models.as_naive_utc(data.due_date),
            max_score=data.max_score,
            weight=data.weight,
            allowed_attempts=data.allowed_attempts,
            allow_late_submission=data.allow_late_submission,
            is_published=data.publish,
            published_at=now if data.publish else None,
        )
        self.repo.save(assignment)
        self._audit(
            models.AuditAction.ASSIGNMENT_CREATED, user_id=user.id,
            resource_type=models.ResourceType.ASSIGNMENT, resource_id=assignment.id,
            details={"course_id": course.id, "published": data.publish},
        )
        if data.publish:
            self._announce(assignment, course)
        return assignment

    def _announce(self, assignment: models.Assignment, course: models.Course):
        self._notify_course(
            course.id,
            f"New assignment in {course.code}",
            f"{assignment.title} is due {assignment.due_date:%Y-%m-%d %H:%M} UTC.",
            type=models.NotificationType.REMINDER,
            action_url=f"/assignments/{assignment.id}",
        )

    def publish(self, user: models.User, assignment_id: int) -> models.Assignment:
        assignment = self._assignment(assignment_id)
        course = self._managed_course(user, assignment.course_id)
        if assignment.is_published:
            raise ValueError("assignment is already published")
        assignment.is_published = True
        assignment.published_at = models.utcnow()
        self.repo.save(assignment)
        self._audit(
            models.AuditAction.ASSIGNMENT_PUBLISHED, user_id=user.id,
            resource_type=models.ResourceType.ASSIGNMENT, resource_id=assignment.id,
        )
        self._announce(assignment, course)
        return assignment

    def _status(self, assignment: models.Assignment, attempts: List[models.AssignmentSubmission],
                now: datetime) -> str:
        if any(s.is_graded for s in attempts):
            return "graded"
        if attempts:
            return "submitted"
        if now > assignment.due_date:
            return "overdue"
        return "pending"

    def list_for_student(self, user: models.User, status: Optional[str] = None) -> List[dict]:
        """Published assignments of the caller's courses with submission status.

        `status` filters on one of pending, submitted, graded or overdue.
        """
        if status is not None and status not in ("pending", "submitted", "graded", "overdue"):
            raise ValueError("status must be one of pending, submitted, graded, overdue")
        student = self._student(user)
        enrollments = self.courses.enrollments_for_student(student.id)
        codes = {e.course_id: e.course.code for e in enrollments}
        by_assignment = defaultdict(list)
        for submission in self.repo.submissions_by_student(student.id):
            by_assignment[submission.assignment_id].append(submission)
        now = models.utcnow()
        items = []
        for assignment in self.repo.for_courses(list(codes)):
            attempts = sorted(by_assignment.get(assignment.id, []), key=lambda s: s.attempt_number)
            item_status = self._status(assignment, attempts, now)
            if status and item_status != status:
                continue
            latest = attempts[-1] if attempts else None
            item = self.to_dict(assignment)
            item.update({
                "course_code": codes[assignment.course_id],
                "status": item_status,
                "attempts_used": len(attempts),
                "score": latest.score if latest else None,
                "feedback": latest.feedback if latest else None,
            })
            items.append(item)
        return items

    def get_assignment(self, user: models.User, assignment_id: int) -> dict:
        assignment = self._assignment(assignment_id)
        if user.role == models.Role.STUDENT:
            student = self._student(user)
            if not assignment.is_published:
                raise NotFoundError("assignment not found")
            if self.courses.get_enrollment(student.id, assignment.course_id) is None:
                raise AccessDeniedError("not enrolled in this course")
            data = self.to_dict(assignment)
            data["submissions"] = [
                self.submission_dict(s) for s in self.repo.submissions_for(assignment.id, student_id=student.id)
            ]
            return data
        self._managed_course(user, assignment.course_id)
        data = self.to_dict(assignment)
        data["submission_count"] = len(self.repo.submissions_for(assignment.id))
        return data

    def submit(self, user: models.User, assignment_id: int, data: schemas.SubmissionIn,
               ip: Optional[str] = None) -> models.AssignmentSubmission:
        """Record a new attempt.

        The assignment must be published and the student enrolled. After
        the due date a submission is accepted only when late submission is
        allowed (and flagged late). Attempts are capped by
        `allowed_attempts`.
        """
        student = self._student(user)
        self._enforce(ASSIGNMENT_SUBMISSION, user.id, assignment_id, user_id=user.id, ip=ip)
        if not (data.content and data.content.strip()) and not data.submission_url:
            raise ValueError("submission requires content or a submission_url")
        assignment = self._assignment(assignment_id)
        if not assignment.is_published:
            raise NotFoundError("assignment not found")
        enrollment = self.courses.get_enrollment(student.id, assignment.course_id)
        if enrollment is None:
            raise AccessDeniedError("not enrolled in this course")
        now = models.utcnow()
        is_late = now > assignment.due_date
        if is_late and not assignment.allow_late_submission:
            raise ValueError("submission deadline has passed")
        previous = self.repo.submissions_for(assignment.id, student_id=student.id)
        if len(previous) >= assignment.allowed_attempts:
            raise ValueError("maximum number of attempts reached")
        submission = models.AssignmentSubmission(
            assignment_id=assignment.id,
            student_id=student.id,
            content=data.content,
            submission_url=data.submission_url,
            submitted_at=now,
            attempt_number=len(previous) + 1,
            is_late=is_late,
        )
        try:
            self.repo.save(submission)
        except IntegrityError as exc:
            self.session.rollback()
            raise ValueError("duplicate submission attempt") from exc
        enrollment.last_accessed_at = now
        self.courses.save(enrollment)
        self._audit(
            models.AuditAction.ASSIGNMENT_SUBMITTED, user_id=user.id,
            resource_type=models.ResourceType.SUBMISSION, resource_id=submission.id,
            details={"assignment_id": assignment.id, "attempt": submission.attempt_number, "late": is_late},
            ip_address=ip,
        )
        return submission

    def list_submissions(self, user: models.User, assignment_id: int) -> List[dict]:
        assignment = self._assignment(assignment_id)
        if user.role == models.Role.STUDENT:
            student = self._student(user)
            rows = self.repo.submissions_for(assignment.id, student_id=student.id)
            return [self.submission_dict(s) for s in rows]
        self._managed_course(user, assignment.course_id)
        items = []
        for submission in self.repo.submissions_for(assignment.id):
            item = self.submission_dict(submission)
            student = self.session.get(models.Student, submission.student_id)
            item["student_name"] = _full_name(student) if student else None
            item["matric_number"] = student.matric_number if student else None
            items.append(item)
        return items

    def grade_submission(self, user: models.User, submission_id: int,
                         data: schemas.SubmissionGradeIn) -> models.AssignmentSubmission:
        submission = self.repo.get_submission(submission_id)
        if submission is None:
            raise NotFoundError("submission not found")
        assignment = self._assignment(submission.assignment_id)
        course = self._managed_course(user, assignment.course_id)
        if not 0 <= data.score <= assignment.max_score:
            raise ValueError(f"score must be between 0 and {assignment.max_score}")
        submission.score = data.score
        submission.feedback = data.feedback
        submission.is_graded = True
        submission.graded_at = models.utcnow()
        submission.graded_by = user.id
        self.repo.save(submission)
        self._audit(
            models.AuditAction.SUBMISSION_GRADED, user_id=user.id,
            resource_type=models.ResourceType.SUBMISSION, resource_id=submission.id,
            details={"score": data.score, "max_score": assignment.max_score},
        )
        student = self.session.get(models.Student, submission.student_id)
        pct = grading.percentage(data.score, assignment.max_score)
        NotificationService(self.session).notify(
            student.user_id,
            f"{course.code}: assignment graded",
            f"{assignment.title}: {data.score:g}/{assignment.max_score} ({pct:.2f}%).",
            type=models.NotificationType.GRADE,
            action_url=f"/assignments/{assignment.id}",
        )
        return submission


class AttendanceService(_Service):
    """Per-lecture attendance marking and summaries."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.repo = repositories.AttendanceRepository(session)

    @staticmethod
    def summarize(records: Iterable[models.Attendance]) -> dict:
        counts = Counter(r.status for r in records)
        total = sum(counts.values())
        present = counts[models.AttendanceStatus.PRESENT]
        return {
            "total": total,
            "present": present,
            "absent": counts[models.AttendanceStatus.ABSENT],
            "late": counts[models.AttendanceStatus.LATE],
            "excused": counts[models.AttendanceStatus.EXCUSED],
            "attendance_rate": round(present / total * 100.0, 2) if total else 0.0,
        }

    def mark(self, user: models.User, lecture_id: int, records: List[schemas.AttendanceRecordIn]) -> dict:
        """Upsert one attendance row per (student, lecture)."""
        lecture = self.courses.get_lecture(lecture_id)
        if lecture is None:
            raise NotFoundError("lecture not found")
        course = self._managed_course(user, lecture.course_id)
        if not records:
            raise ValueError("no attendance records supplied")
        enrolled = self._enrolled_student_ids(course.id)
        missing = sorted({r.student_id for r in records} - enrolled)
        if missing:
            raise ValueError(f"students not enrolled in {course.code}: {missing}")
        now = models.utcnow()
        created = updated = 0
        for record in records:
            row = self.repo.get(record.student_id, lecture.id)
            if row is None:
                row = models.Attendance(
                    student_id=record.student_id, course_id=course.id, lecture_id=lecture.id, created_at=now,
                )
                created += 1
            else:
                updated += 1
            row.status = record.status
            row.notes = record.notes
            row.marked_at = now
            row.marked_by = user.id
            row.updated_at = now
            self.session.add(row)
        self.session.commit()
        self._audit(
            models.AuditAction.ATTENDANCE_MARKED, user_id=user.id,
            resource_type=models.ResourceType.LECTURE, resource_id=lecture.id,
            details={"course_id": course.id, "created": created, "updated": updated},
        )
        return {"lecture_id": lecture.id, "marked": created + updated, "created": created, "updated": updated}

    def student_summary(self, user: models.User, course_id: int, student_id: int) -> dict:
        if user.role == models.Role.STUDENT:
            if self._student(user).id != student_id:
                raise AccessDeniedError("students may only view their own attendance")
            self._course(course_id)
        else:
            self._managed_course(user, course_id)
        if self.courses.get_enrollment(student_id, course_id) is None:
            raise NotFoundError("student is not enrolled in this course")
        records = self.repo.for_course(course_id, student_id=student_id)
        summary = self.summarize(records)
        summary.update({
            "course_id": course_id,
            "student_id": student_id,
            "records": [
                {"lecture_id": r.lecture_id, "status": r.status, "marked_at": r.marked_at, "notes": r.notes}
                for r in records
            ],
        })
        return summary

    def course_statistics(self, user: models.User, course_id: int,
                          start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
        """Status totals, session count (distinct marking dates) and per-student rates."""
        course = self._managed_course(user, course_id)
        records = self.repo.for_course(course.id, start=start, end=end)
        stats = self.summarize(records)
        per_student = defaultdict(list)
        for record in records:
            per_student[record.student_id].append(record)
        students = []
        for student_id, rows in sorted(per_student.items()):
            student = self.session.get(models.Student, student_id)
            students.append({
                "student_id": student_id,
                "matric_number": student.matric_number if student else None,
                "name": _full_name(student) if student else None,
                **self.summarize(rows),
            })
        stats.update({
            "course_id": course.id,
            "code": course.code,
            "total_sessions": len({r.marked_at.date() for r in records}),
            "enrolled_students": len(self._enrolled_student_ids(course.id)),
            "students": students,
        })
        return stats

    def my_attendance(self, user: models.User) -> dict:
        student = self._student(user)
        records = self.repo.for_student(student.id)
        by_course = defaultdict(list)
        for record in records:
            by_course[record.course_id].append(record)
        courses = []
        for enrollment in self.courses.enrollments_for_student(student.id):
            courses.append({
                "course_id": enrollment.course_id,
                "code": enrollment.course.code,
                "title": enrollment.course.title,
                **self.summarize(by_course.get(enrollment.course_id, [])),
            })
        overall = self.summarize(records)
        overall["courses"] = courses
        return overall


class GradeService(_Service):
    """Course grades, GPA, transcripts and teacher gradebooks."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.assignments = repositories.AssignmentRepository(session)

    def student_for(self, user: models.User) -> models.Student:
        return self._student(user)

    def _latest_attempts(self, student_id: int) -> dict:
        """Map assignment id -> the attempt that counts (latest graded, else latest)."""
        chosen = {}
        for submission in self.assignments.submissions_by_student(student_id):
            current = chosen.get(submission.assignment_id)
            key = (submission.is_graded, submission.attempt_number)
            if current is None or key > (current.is_graded, current.attempt_number):
                chosen[submission.assignment_id] = submission
        return chosen

    def _graded_pairs_by_course(self, latest: dict) -> dict:
        pairs = defaultdict(list)
        for assignment_id, submission in latest.items():
            if not submission.is_graded or submission.score is None:
                continue
            assignment = self.assignments.get(assignment_id)
            pairs[assignment.course_id].append((submission.score, assignment.max_score))
        return pairs

    def _course_entry(self, enrollment: models.Enrollment, pairs: dict) -> dict:
        course = enrollment.course
        return {
            "course_id": course.id,
            "code": course.code,
            "title": course.title,
            "credits": course.credits,
            "level": course.level,
            "semester": course.semester,
            "grade": enrollment.grade.value if enrollment.grade else None,
            "score": enrollment.score,
            "grade_point": grading.grade_point(enrollment.grade),
            "is_completed": enrollment.is_completed,
            "completion_date": _iso(enrollment.completion_date),
            "progress": enrollment.progress,
            "assignment_percentage": grading.assignment_percentage(pairs.get(course.id, [])),
        }

    def student_grades(self, student: models.Student) -> List[dict]:
        pairs = self._graded_pairs_by_course(self._latest_attempts(student.id))
        return [self._course_entry(e, pairs) for e in self.courses.enrollments_for_student(student.id)]

    @staticmethod
    def _gpa_items(entries: Iterable[dict]) -> list:
        return [(e["grade"], e["credits"]) for e in entries if e["is_completed"] and e["grade"]]

    def semester_grades(self, student: models.Student) -> List[dict]:
        grouped = defaultdict(list)
        for entry in self.student_grades(student):
            grouped[(entry["level"], entry["semester"])].append(entry)
        semesters = []
        for (level, semester), entries in sorted(grouped.items()):
            credits, points, gpa = grading.compute_gpa(self._gpa_items(entries))
            semesters.append({
                "level": level,
                "semester": semester,
                "courses": entries,
                "total_credits": credits,
                "total_grade_points": points,
                "gpa": gpa,
            })
        return semesters

    def course_summary(self, student: models.Student) -> dict:
        entries = self.student_grades(student)
        credits, points, cgpa = grading.compute_gpa(self._gpa_items(entries))
        completed = sum(1 for e in entries if e["is_completed"])
        return {
            "cgpa": cgpa,
            "total_credits": credits,
            "total_grade_points": points,
            "total_courses": len(entries),
            "completed_courses": completed,
            "in_progress_courses": len(entries) - completed,
            "courses": entries,
        }

    def transcript(self, student: models.Student) -> dict:
        """Transcript document model shared by the JSON, PDF and XLSX exports."""
        latest = self._latest_attempts(student.id)
        semesters = self.semester_grades(student)
        entries = [c for s in semesters for c in s["courses"]]
        credits, _, cgpa = grading.compute_gpa(self._gpa_items(entries))
        completed = sum(1 for e in entries if e["is_completed"])
        assignments = []
        for assignment_id, submission in sorted(latest.items()):
            assignment = self.assignments.get(assignment_id)
            course = self.courses.get(assignment.course_id)
            pct = grading.percentage(submission.score, assignment.max_score) if submission.is_graded else None
            letter = grading.grade_from_score(pct)
            assignments.append({
                "course_code": course.code,
                "title": assignment.title,
                "max_score": assignment.max_score,
                "score": submission.score,
                "percentage": pct,
                "grade": letter.value if letter else None,
                "submitted_at": _iso(submission.submitted_at),
                "is_graded": submission.is_graded,
                "feedback": submission.feedback,
            })
        return {
            "institution": settings.INSTITUTION_NAME,
            "student": {
                "matric_number": student.matric_number,
                "full_name": _full_name(student),
                "email": _decrypt_or_none(encryption.decrypt_searchable, student.email, "email"),
                "department": student.department,
                "college": student.college,
                "course_of_study": student.course_of_study,
                "date_enrolled": _iso(student.date_enrolled),
            },
            "semesters": semesters,
            "assignments": assignments,
            "cumulative_gpa": cgpa,
            "total_credits": credits,
            "total_courses": len(entries),
            "completed_courses": completed,
            "in_progress_courses": len(entries) - completed,
            "graded_assignments": sum(1 for a in assignments if a["is_graded"]),
            "generated_at": _iso(models.utcnow()),
        }

    def statistics(self, student: models.Student) -> dict:
        entries = self.student_grades(student)
        graded = [e for e in entries if e["is_completed"] and e["grade"]]
        scores = [e["score"] for e in graded if e["score"] is not None]
        distribution = {g.value: 0 for g in models.Grade}
        for entry in graded:
            distribution[entry["grade"]] += 1
        credits, _, cgpa = grading.compute_gpa(self._gpa_items(entries))
        return {
            "cgpa": cgpa,
            "total_credits": credits,
            "graded_courses": len(graded),
            "grade_distribution": distribution,
            "average_score": round(sum(scores) / len(scores), 2) if scores else None,
            "highest_score": max(scores) if scores else None,
            "lowest_score": min(scores) if scores else None,
            "pass_rate": round(
                sum(1 for e in graded if e["grade"] != models.Grade.F.value) / len(graded) * 100.0, 2
            ) if graded else 0.0,
        }

    def progression(self, student: models.Student) -> List[dict]:
        """Per-semester GPA with the running cumulative GPA."""
        items = []
        running = []
        for semester in self.semester_grades(student):
            running.extend(self._gpa_items(semester["courses"]))
            _, _, cumulative = grading.compute_gpa(running)
            items.append({
                "level": semester["level"],
                "semester": semester["semester"],
                "gpa": semester["gpa"],
                "credits": semester["total_credits"],
                "cumulative_gpa": cumulative,
            })
        return items

    def grade_student(self, user: models.User, course_id: int, student_id: int, score: float) -> models.Enrollment:
        """Record a final course score (0-100) and complete the enrollment."""
        course = self._managed_course(user, course_id)
        if not 0 <= score <= 100:
            raise ValueError("score must be between 0 and 100")
        enrollment = self.courses.get_enrollment(student_id, course.id)
        if enrollment is None:
            raise NotFoundError(f"student {student_id} is not enrolled in {course.code}")
        now = models.utcnow()
        enrollment.score = score
        enrollment.grade = grading.grade_from_score(score)
        enrollment.progress = 100.0
        enrollment.is_completed = True
        enrollment.completion_date = now
        self.courses.save(enrollment)
        self._audit(
            models.AuditAction.GRADE_ASSIGNED, user_id=user.id,
            resource_type=models.ResourceType.ENROLLMENT, resource_id=enrollment.id,
            details={"course_id": course.id, "student_id": student_id, "score": score,
                     "grade": enrollment.grade.value},
        )
        student = self.session.get(models.Student, student_id)
        NotificationService(self.session).notify(
            student.user_id, f"{course.code}: final grade released",
            f"Your final grade for {course.title} is {enrollment.grade.value}.",
            type=models.NotificationType.GRADE, action_url="/grades/summary",
        )
        return enrollment

    def bulk_grade(self, user: models.User, course_id: int, grades: List[schemas.CourseGradeIn]) -> dict:
        self._managed_course(user, course_id)
        results = []
        for item in grades:
            try:
                enrollment = self.grade_student(user, course_id, item.student_id, item.score)
            except (ValueError, NotFoundError) as exc:
                results.append({"student_id": item.student_id, "success": False, "error": str(exc)})
                continue
            results.append({"student_id": item.student_id, "success": True, "grade": enrollment.grade})
        graded = sum(1 for r in results if r["success"])
        logger.info("bulk grade course=%s graded=%s failed=%s", course_id, graded, len(results) - graded)
        return {"graded": graded, "failed": len(results) - graded, "results": results}

    def gradebook(self, user: models.User, course_id: int) -> dict:
        course = self._managed_course(user, course_id)
        assignments = self.assignments.for_courses([course.id], published_only=False)
        attendance = repositories.AttendanceRepository(self.session)
        rows = []
        for enrollment in self.courses.enrollments_for_course(course.id):
            student = enrollment.student
            latest = self._latest_attempts(student.id)
            pairs = self._graded_pairs_by_course(latest)
            rows.append({
                "student_id": student.id,
                "matric_number": student.matric_number,
                "name": _full_name(student),
                "score": enrollment.score,
                "grade": enrollment.grade,
                "is_completed": enrollment.is_completed,
                "assignment_percentage": grading.assignment_percentage(pairs.get(course.id, [])),
                "submissions": sum(1 for a in assignments if a.id in latest),
                "attendance_rate": AttendanceService.summarize(
                    attendance.for_course(course.id, student_id=student.id)
                )["attendance_rate"],
            })
        rows.sort(key=lambda r: r["matric_number"])
        return {
            "course_id": course.id,
            "code": course.code,
            "title": course.title,
            "assignments": [AssignmentService.to_dict(a) for a in assignments],
            "students": rows,
        }

    def export_transcript(self, user: models.User, fmt: str, ip: Optional[str] = None) -> tuple:
        """Return `(content, media_type, filename)` for `fmt` pdf, excel or json."""
        fmt = (fmt or "").lower()
        if fmt not in ("pdf", "excel", "json"):
            raise ValueError("format must be one of pdf, excel, json")
        student = self._student(user)
        document = self.transcript(student)
        stem = f"transcript_{student.matric_number.replace('/', '-')}_{models.utcnow():%Y%m%d}"
        if fmt == "pdf":
            result = (transcript_docs.build_pdf(document), transcript_docs.PDF_MEDIA_TYPE, f"{stem}.pdf")
        elif fmt == "excel":
            result = (transcript_docs.build_workbook(document), transcript_docs.XLSX_MEDIA_TYPE, f"{stem}.xlsx")
        else:
            result = (document, "application/json", f"{stem}.json")
        self._audit(
            models.AuditAction.EXPORT_TRANSCRIPT, user_id=user.id,
            resource_type=models.ResourceType.STUDENT, resource_id=student.id,
            details={"format": fmt}, ip_address=ip, security_level=models.SecurityLevel.MEDIUM,
        )
        return result


class ExamService(_Service):
    """Exams, result recording and result publication."""

    def __init__(self, session: Session):
        super().__init__(session)
        self.repo = repositories.ExamRepository(session)

    def _exam(self, exam_id: int) -> models.Exam:
        exam = self.repo.get(exam_id)
        if exam is None:
            raise NotFoundError("exam not found")
        return exam

    @staticmethod
    def result_dict(result: models.ExamResult, exam: Optional[models.Exam] = None) -> dict:
        data = {
            "id": result.id,
            "exam_id": result.exam_id,
            "student_id": result.student_id,
            "course_id": result.course_id,
            "score": result.score,
            "percentage": result.percentage,
            "grade": result.grade,
            "remark": result.remark,
            "feedback": result.feedback,
            "is_published": result.is_published,
            "published_at": result.published_at,
        }
        if exam is not None:
            data.update({"exam_title": exam.title, "total_marks": exam.total_marks, "date": exam.date})
        return data

    def create_exam(self, user: models.User, course_id: int, data: schemas.ExamIn) -> models.Exam:
        course = self._managed_course(user, course_id)
        exam = models.Exam(
            course_id=course.id,
            title=data.title.strip(),
            description=data.description,
            date=models.as_naive_utc(data.date),
            duration=data.duration,
            total_marks=data.total_marks,
            venue=data.venue,
        )
        self.repo.save(exam)
        self._audit(
            models.AuditAction.EXAM_CREATED, user_id=user.id,
            resource_type=models.ResourceType.EXAM, resource_id=exam.id, details={"course_id": course.id},
        )
        self._notify_course(
            course.id, f"{course.code}: exam scheduled",
            f"{exam.title} on {exam.date:%Y-%m-%d %H:%M} UTC at {exam.venue}.",
            type=models.NotificationType.REMINDER,
        )
        return exam

    def record_result(self, user: models.User, exam_id: int, data: schemas.ExamResultIn) -> models.ExamResult:
        """Insert or update the result of one student; a missing score means absent."""
        exam = self._exam(exam_id)
        self._managed_course(user, exam.course_id)
        if self.courses.get_enrollment(data.student_id, exam.course_id) is None:
            raise ValueError("student is not enrolled in this course")
        if data.score is not None and data.score > exam.total_marks:
            raise ValueError(f"score must be between 0 and {exam.total_marks}")
        pct = grading.percentage(data.score, exam.total_marks)
        letter = grading.grade_from_score(pct)
        result = self.repo.get_result(exam.id, data.student_id)
        action = models.AuditAction.EXAM_RESULT_UPDATED
        if result is None:
            result = models.ExamResult(exam_id=exam.id, student_id=data.student_id, course_id=exam.course_id)
            action = models.AuditAction.EXAM_RESULT_RECORDED
        result.score = data.score
        result.percentage = pct
        result.grade = letter
        result.remark = grading.remark_for(letter)
        result.feedback = data.feedback
        result.recorded_by = user.id
        result.updated_at = models.utcnow()
        self.repo.save(result)
        self._audit(
            action, user_id=user.id, resource_type=models.ResourceType.EXAM_RESULT, resource_id=result.id,
            details={"exam_id": exam.id, "student_id": data.student_id, "score": data.score},
        )
        return result

    def publish_results(self, user: models.User, exam_id: int) -> dict:
        exam = self._exam(exam_id)
        course = self._managed_course(user, exam.course_id)
        now = models.utcnow()
        notifier = NotificationService(self.session)
        published = 0
        for result in self.repo.results_for_exam(exam.id):
            if result.is_published:
                continue
            result.is_published = True
            result.published_at = now
            self.session.add(result)
            published += 1
            student = self.session.get(models.Student, result.student_id)
            notifier.notify(
                student.user_id, f"{course.code}: exam result published",
                f"Your result for {exam.title} is available.",
                type=models.NotificationType.GRADE, action_url="/exams/results/me",
            )
        exam.is_published = True
        exam.published_at = now
        self.session.add(exam)
        self.session.commit()
        self._audit(
            models.AuditAction.EXAM_RESULT_PUBLISHED, user_id=user.id,
            resource_type=models.ResourceType.EXAM, resource_id=exam.id, details={"published": published},
        )
        return {"exam_id": exam.id, "published": published}

    def my_results(self, user: models.User) -> List[dict]:
        student = self._student(user)
        items = []
        for result in self.repo.published_results_for_student(student.id):
            exam = self.repo.get(result.exam_id)
            item = self.result_dict(result, exam)
            item["course_code"] = self.courses.get(result.course_id).code
            items.append(item)
        items.sort(key=lambda i: i["date"], reverse=True)
        return items


class ScheduleService(_Service):
    """Calendar items (lectures, assignment deadlines, exams) for a user."""

    def _course_ids(self, user: models.User) -> List[int]:
        if user.role == models.Role.STUDENT:
            return [e.course_id for e in self.courses.enrollments_for_student(self._student(user).id)]
        teacher = self._teacher(user)
        if teacher is not None:
            return [c.id for c in self.courses.search(instructor_id=teacher.id)]
        return [c.id for c in self.courses.search()]

    def _items(self, user: models.User, start: datetime, end: datetime) -> List[dict]:
        course_ids = self._course_ids(user)
        codes = {cid: self.courses.get(cid).code for cid in course_ids}
        student_view = user.role == models.Role.STUDENT
        items = []
        for lecture in self.courses.lectures_between(course_ids, start, end):
            if student_view and not lecture.is_published:
                continue
            items.append({
                "type": "lecture",
                "id": lecture.id,
                "title": lecture.title,
                "course_id": lecture.course_id,
                "course_code": codes[lecture.course_id],
                "starts_at": lecture.scheduled_at,
                "ends_at": lecture.scheduled_at + timedelta(minutes=lecture.duration) if lecture.duration else None,
            })
        assignment_repo = repositories.AssignmentRepository(self.session)
        for assignment in assignment_repo.for_courses(course_ids, published_only=student_view):
            if not start <= assignment.due_date < end:
                continue
            items.append({
                "type": "assignment",
                "id": assignment.id,
                "title": assignment.title,
                "course_id": assignment.course_id,
                "course_code": codes[assignment.course_id],
                "starts_at": assignment.due_date,
                "ends_at": None,
            })
        for exam in repositories.ExamRepository(self.session).between(course_ids, start, end):
            items.append({
                "type": "exam",
                "id": exam.id,
                "title": exam.title,
                "course_id": exam.course_id,
                "course_code": codes[exam.course_id],
                "starts_at": exam.date,
                "ends_at": exam.date + timedelta(minutes=exam.duration),
                "venue": exam.venue,
            })
        items.sort(key=lambda i: (i["starts_at"], i["type"], i["id"]))
        return items

    def weekly(self, user: models.User, week_start: Optional[date] = None) -> dict:
        """Items in the seven days from `week_start` (default: this week's Monday)."""
        today = models.utcnow().date()
        week_start = week_start or today - timedelta(days=today.weekday())
        start = datetime.combine(week_start, datetime.min.time())
        end = start + timedelta(days=7)
        return {"week_start": week_start, "week_end": (end - timedelta(days=1)).date(),
                "items": self._items(user, start, end)}

    def upcoming(self, user: models.User, days: int = 7) -> List[dict]:
        if not 1 <= days <= 90:
            raise ValueError("days must be between 1 and 90")
        now = models.utcnow()
        return self._items(user, now, now + timedelta(days=days))


class GreetingService(_Service):
    """Dashboard greeting cached on the user until the next period starts."""

    def _first_name(self, user: models.User) -> Optional[str]:
        profile = (
            self.users.student_for_user(user.id)
            or self.users.teacher_for_user(user.id)
            or self.users.admin_for_user(user.id)
        )
        if profile is not None:
            return profile.first_name
        return user.name.split()[0] if user.name else None

    def get(self, user: models.User, now: Optional[datetime] = None, force: bool = False) -> dict:
        now = now or models.utcnow()
        stale = not user.greeting or user.greeting_next_change is None or now >= user.greeting_next_change
        if force or stale:
            user.greeting = greetings.pick_greeting(self._first_name(user), now)
            user.greeting_next_change = greetings.next_change(now)
            self.users.save(user)
        return {
            "greeting": user.greeting,
            "period": greetings.time_period(now.hour),
            "next_change": user.greeting_next_change,
        }

    def refresh(self, user: models.User, now: Optional[datetime] = None) -> dict:
        return self.get(user, now=now, force=True)


class AdminService(_Service):
    """User administration and system-wide statistics."""

    @staticmethod
    def user_dict(user: models.User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "role": user.role,
            "is_active": user.is_active,
            "account_locked": user.account_locked,
            "locked_until": user.locked_until,
            "last_login_at": user.last_login_at,
            "login_count": user.login_count,
            "created_at": user.created_at,
        }

    def list_users(self, role: Optional[models.Role] = None, active: Optional[bool] = None,
                   page: int = 1, page_size: int = 50) -> dict:
        if page < 1 or not 1 <= page_size <= 200:
            raise ValueError("page must be >= 1 and page_size in 1..200")
        rows = self.users.list(role=role, active=active, offset=(page - 1) * page_size, limit=page_size)
        return {"items": [self.user_dict(u) for u in rows], "page": page, "page_size": page_size}

    def set_active(self, actor: models.User, user_id: int, active: bool, ip: Optional[str] = None) -> models.User:
        target = self.users.get(user_id)
        if target is None:
            raise NotFoundError("user not found")
        if target.id == actor.id and not active:
            raise ValueError("administrators cannot deactivate their own account")
        target.is_active = active
        if active:
            target.account_locked = False
            target.locked_until = None
            target.failed_login_attempts = 0
        target.updated_at = models.utcnow()
        self.users.save(target)
        revoked = 0 if active else AuthService(self.session).revoke_all(target.id)
        self._audit(
            models.AuditAction.ACCOUNT_ACTIVATED if active else models.AuditAction.ACCOUNT_DEACTIVATED,
            user_id=actor.id, resource_type=models.ResourceType.USER, resource_id=target.id,
            details={"revoked_sessions": revoked}, ip_address=ip, security_level=models.SecurityLevel.HIGH,
        )
        return target

    def list_deletion_requests(self, status: Optional[models.DeletionStatus] = None) -> List[dict]:
        return [
            ProfileService.deletion_dict(r)
            for r in repositories.DeletionRequestRepository(self.session).search(status=status)
        ]

    def review_deletion_request(self, actor: models.User, request_id: int, approve: bool,
                                note: Optional[str] = None, ip: Optional[str] = None) -> dict:
        """Approve or reject a pending deletion request.

        Approval deactivates the account and revokes its sessions; the
        rows themselves are kept for the audit trail.
        """
        requests = repositories.DeletionRequestRepository(self.session)
        request = requests.get(request_id)
        if request is None:
            raise NotFoundError("deletion request not found")
        if request.status != models.DeletionStatus.PENDING:
            raise ValueError("deletion request has already been reviewed")
        if request.user_id == actor.id:
            raise ValueError("administrators cannot review their own deletion request")
        if approve:
            self.set_active(actor, request.user_id, False, ip=ip)
        request.status = models.DeletionStatus.APPROVED if approve else models.DeletionStatus.REJECTED
        request.reviewed_by = actor.id
        request.review_note = (note or "").strip() or None
        request.reviewed_at = models.utcnow()
        requests.save(request)
        self._audit(
            models.AuditAction.DELETION_REVIEWED, user_id=actor.id,
            resource_type=models.ResourceType.DELETION_REQUEST, resource_id=request.id,
            details={"status": request.status.value, "target": request.user_id},
            ip_address=ip, security_level=models.SecurityLevel.HIGH,
        )
        if not approve:
            NotificationService(self.session).notify(
                request.user_id, "Deletion request rejected",
                request.review_note or "Your account deletion request was rejected.",
                type=models.NotificationType.WARNING,
            )
        return ProfileService.deletion_dict(request)

    def system_stats(self) -> dict:
        now = models.utcnow()
        audits = AuditService(self.session).statistics(start=now - timedelta(hours=24))
        by_role = self.users.count_by_role()
        return {
            "users_by_role": by_role,
            "total_users": sum(by_role.values()),
            "active_users": self.users.count_rows(models.User, models.User.is_active == True),  # noqa: E712
            "locked_accounts": self.users.count_rows(models.User, models.User.account_locked == True),  # noqa: E712
            "total_courses": self.courses.count(),
            "total_enrollments": self.users.count_rows(models.Enrollment),
            "active_sessions": self.users.count_rows(
                models.UserSession,
                models.UserSession.revoked_at == None,  # noqa: E711
                models.UserSession.expires_at > now,
            ),
            "audit_events_24h": audits["total"],
            "suspicious_events_24h": audits["suspicious"],
            "rate_limit_windows": self.users.count_rows(models.RateLimit),
        }

    def cleanup_rate_limits(self) -> int:
        return DatabaseRateLimiter(self.session).cleanup_expired()


class DashboardService(_Service):
    """Role-specific dashboard aggregates."""

    def overview(self, user: models.User) -> dict:
        if user.role == models.Role.STUDENT:
            return self.student(user)
        if user.role == models.Role.TEACHER:
            return self.teacher(user)
        return self.admin(user)

    def _common(self, user: models.User) -> dict:
        notifications = repositories.NotificationRepository(self.session).for_user(user.id, limit=5)
        return {
            "role": user.role,
            "greeting": GreetingService(self.session).get(user),
            "recent_notifications": [NotificationService.to_dict(n) for n in notifications],
        }

    def student(self, user: models.User) -> dict:
        student = self._student(user)
        enrollments = self.courses.enrollments_for_student(student.id)
        completed = sum(1 for e in enrollments if e.is_completed)
        assignments = AssignmentService(self.session).list_for_student(user, status="pending")
        soon = models.utcnow() + timedelta(days=7)
        summary = GradeService(self.session).course_summary(student)
        data = self._common(user)
        data["stats"] = {
            "total_courses": len(enrollments),
            "active_courses": len(enrollments) - completed,
            "completed_courses": completed,
            "pending_assignments": len(assignments),
            "upcoming_deadlines": sum(1 for a in assignments if a["due_date"] <= soon),
            "current_gpa": summary["cgpa"],
            "total_credits": summary["total_credits"],
            "unread_notifications": NotificationService(self.session).unread_count(user.id),
        }
        data["upcoming"] = ScheduleService(self.session).upcoming(user, days=7)[:10]
        return data

    def teacher(self, user: models.User) -> dict:
        teacher = self._teacher(user)
        if teacher is None:
            raise AccessDeniedError("teacher profile required")
        courses = self.courses.search(instructor_id=teacher.id)
        course_ids = [c.id for c in courses]
        students = set()
        for course_id in course_ids:
            students |= self._enrolled_student_ids(course_id)
        assignment_repo = repositories.AssignmentRepository(self.session)
        assignments = assignment_repo.for_courses(course_ids, published_only=False)
        data = self._common(user)
        data["stats"] = {
            "total_courses": len(courses),
            "total_students": len(students),
            "total_assignments": len(assignments),
            "pending_grading": assignment_repo.count_ungraded([a.id for a in assignments]),
            "unread_notifications": NotificationService(self.session).unread_count(user.id),
        }
        data["courses"] = [
            {"id": c.id, "code": c.code, "title": c.title, "enrollment_count": self.courses.count_enrollments(c.id)}
            for c in courses
        ]
        data["upcoming"] = ScheduleService(self.session).upcoming(user, days=7)[:10]
        return data

    def admin(self, user: models.User) -> dict:
        data = self._common(user)
        data["stats"] = AdminService(self.session).system_stats()
        data["recent_activity"] = AuditService(self.session).search(page=1, page_size=10)["items"]
        return data
