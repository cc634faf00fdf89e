"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the ClassMate student portal.
Controllers are intentionally thin: they accept requests, check the
caller's role, delegate to services and return JSON (or binary transcript
documents). Service exceptions are mapped to status codes by the
handlers registered below, and every error body is `{"error": ...}`.

Endpoint groups:
- /auth: registration, login/logout, token refresh, password reset,
  sessions, greeting
- /profile: profile, password change, activity, data export, deletion request
- /courses, /lectures: catalogue, enrollment, lectures, attendance
- /assignments, /submissions: coursework and grading
- /exams: exam results
- /grades: summaries, transcript and transcript export
- /attendance, /schedule, /notifications, /dashboard
- /admin: users, deletion requests, audit log, system statistics
- GET /health
"""

import json
import logging
import time
import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models, services
from .auth import SESSION_COOKIE, get_current_session, get_current_user, require_role
from .config import settings
from .database import create_db_and_tables, get_session
from .schemas import (
    AdminCreateIn,
    AssignmentIn,
    AttendanceIn,
    BulkGradeIn,
    CourseIn,
    DeletionRequestIn,
    DeletionReviewIn,
    ExamIn,
    ExamResultIn,
    ForgotPasswordIn,
    LectureIn,
    LoginIn,
    PasswordChangeIn,
    PasswordResetIn,
    ProfileUpdateIn,
    RefreshIn,
    ResetTokenIn,
    StudentRegisterIn,
    SubmissionGradeIn,
    SubmissionIn,
    TeacherRegisterIn,
    TokenOut,
)

app = FastAPI(title="ClassMate Student Portal API")
logger = logging.getLogger("classmate.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

# Wide-open CORS keeps a local frontend dev server working without extra config.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()

Role = models.Role
student_only = require_role(Role.STUDENT)
staff_only = require_role(Role.TEACHER, Role.ADMIN)
admin_only = require_role(Role.ADMIN)


def _request_log(request: Request, req_id: str, elapsed_ms: float, status_code: Optional[int] = None) -> str:
    payload = {
        "request_id": req_id,
        "path": request.url.path,
        "method": request.method,
        "duration_ms": elapsed_ms,
        "client": request.client.host if request.client else "unknown",
    }
    if status_code is not None:
        payload["status_code"] = status_code
    return json.dumps(payload, ensure_ascii=True)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception("request_failed %s", _request_log(request, req_id, elapsed_ms))
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    logger.info("request_done %s", _request_log(request, req_id, elapsed_ms, response.status_code))
    return response


def _error(status_code: int, message: str, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail), getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return _error(400, "; ".join(problems) or "invalid request")


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error(400, str(exc))


@app.exception_handler(services.NotFoundError)
async def not_found_handler(request: Request, exc: services.NotFoundError):
    return _error(404, str(exc))


@app.exception_handler(services.AccessDeniedError)
async def access_denied_handler(request: Request, exc: services.AccessDeniedError):
    return _error(403, str(exc))


@app.exception_handler(services.AuthenticationError)
async def authentication_error_handler(request: Request, exc: services.AuthenticationError):
    return _error(401, str(exc))


@app.exception_handler(services.AccountLockedError)
async def account_locked_handler(request: Request, exc: services.AccountLockedError):
    return _error(403, str(exc))


@app.exception_handler(services.RateLimitExceeded)
async def rate_limited_handler(request: Request, exc: services.RateLimitExceeded):
    return _error(429, str(exc), {"Retry-After": str(exc.retry_after)})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error request_id=%s", getattr(request.state, "request_id", "-"))
    return _error(500, "internal server error")


def _client(request: Request) -> tuple:
    return (request.client.host if request.client else None, request.headers.get("user-agent"))


def _login_response(tokens: dict) -> JSONResponse:
    user_session = tokens.pop("session")
    body = TokenOut(**tokens)
    response = JSONResponse(content=jsonable_encoder(body))
    response.set_cookie(
        SESSION_COOKIE,
        user_session.session_token,
        max_age=settings.SESSION_HOURS * 3600,
        httponly=True,
        secure=settings.SECURE_COOKIES,
        samesite="lax",
    )
    return response


# ---- auth -------------------------------------------------------------------

@app.post('/auth/register/student', status_code=201)
def register_student(payload: StudentRegisterIn, request: Request, db: Session = Depends(get_session)):
    ip, agent = _client(request)
    user = services.AuthService(db).register_student(payload, ip=ip, user_agent=agent)
    return {"id": user.id, "email": user.email, "role": user.role}


@app.post('/auth/register/teacher', status_code=201)
def register_teacher(payload: TeacherRegisterIn, request: Request, db: Session = Depends(get_session)):
    ip, agent = _client(request)
    user = services.AuthService(db).register_teacher(payload, ip=ip, user_agent=agent)
    return {"id": user.id, "email": user.email, "role": user.role}


@app.post('/auth/login')
def login(payload: LoginIn, request: Request, db: Session = Depends(get_session)):
    ip, agent = _client(request)
    tokens = services.AuthService(db).authenticate(payload.identifier, payload.password, ip=ip, user_agent=agent)
    return _login_response(tokens)


@app.post('/auth/refresh')
def refresh(payload: RefreshIn, request: Request, db: Session = Depends(get_session)):
    ip, _ = _client(request)
    return _login_response(services.AuthService(db).refresh(payload.refresh_token, ip=ip))


@app.post('/auth/logout')
def logout(request: Request, db: Session = Depends(get_session),
           user_session: models.UserSession = Depends(get_current_session),
           user: models.User = Depends(get_current_user)):
    ip, _ = _client(request)
    services.AuthService(db).logout(user, user_session, ip=ip)
    response = JSONResponse(content={"status": "logged out"})
    response.delete_cookie(SESSION_COOKIE)
    return response


@app.post('/auth/forgot-password')
def forgot_password(payload: ForgotPasswordIn, request: Request, db: Session = Depends(get_session)):
    ip, agent = _client(request)
    token = services.AuthService(db).request_password_reset(payload.email, ip=ip, user_agent=agent)
    body = {"status": "if the account exists, a reset link has been issued"}
    if token and settings.ENV == "dev":
        body["reset_token"] = token
    return body


@app.post('/auth/verify-reset-token')
def verify_reset_token(payload: ResetTokenIn, db: Session = Depends(get_session)):
    return services.AuthService(db).verify_reset_token(payload.token)


@app.post('/auth/reset-password')
def reset_password(payload: PasswordResetIn, request: Request, db: Session = Depends(get_session)):
    ip, _ = _client(request)
    revoked = services.AuthService(db).reset_password(payload.token, payload.new_password, ip=ip)
    return {"status": "password reset", "revoked_sessions": revoked}


@app.get('/auth/me')
def me(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ProfileService(db).get_profile(user)


@app.get('/auth/user/greeting')
def get_greeting(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.GreetingService(db).get(user)


@app.post('/auth/user/greeting')
def refresh_greeting(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.GreetingService(db).refresh(user)


@app.get('/auth/sessions')
def list_sessions(db: Session = Depends(get_session),
                  user_session: models.UserSession = Depends(get_current_session),
                  user: models.User = Depends(get_current_user)):
    return services.AuthService(db).list_sessions(user, current_id=user_session.id)


@app.delete('/auth/sessions/{session_id}')
def terminate_session(session_id: int, db: Session = Depends(get_session),
                      user: models.User = Depends(get_current_user)):
    services.AuthService(db).terminate_session(user, session_id)
    return {"status": "terminated", "id": session_id}


# ---- profile ----------------------------------------------------------------

@app.get('/profile')
def get_profile(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ProfileService(db).get_profile(user)


@app.put('/profile')
def update_profile(payload: ProfileUpdateIn, request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    ip, _ = _client(request)
    return services.ProfileService(db).update_profile(user, payload, ip=ip)


@app.post('/profile/password')
def change_password(payload: PasswordChangeIn, request: Request, db: Session = Depends(get_session),
                    user_session: models.UserSession = Depends(get_current_session),
                    user: models.User = Depends(get_current_user)):
    ip, _ = _client(request)
    revoked = services.AuthService(db).change_password(
        user, payload.current_password, payload.new_password, current_session_id=user_session.id, ip=ip,
    )
    return {"status": "password changed", "revoked_sessions": revoked}


@app.get('/profile/activity')
def profile_activity(limit: int = 20, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    return services.ProfileService(db).activity(user, limit=min(max(limit, 1), 100))


@app.get('/profile/export')
def export_profile(request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    ip, _ = _client(request)
    return services.ProfileService(db).export_data(user, ip=ip)


@app.post('/profile/deletion-request', status_code=201)
def request_deletion(payload: DeletionRequestIn, request: Request, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    ip, _ = _client(request)
    created = services.ProfileService(db).request_deletion(user, payload.reason, ip=ip)
    return services.ProfileService.deletion_dict(created)


@app.get('/profile/deletion-request')
def my_deletion_requests(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.ProfileService(db).deletion_requests(user)


# ---- courses and lectures ----------------------------------------------------

@app.get('/courses')
def list_courses(level: Optional[int] = None, semester: Optional[int] = None, q: Optional[str] = None,
                 mine: bool = False, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    return services.CourseService(db).list_courses(user, level=level, semester=semester, query=q, mine=mine)


@app.post('/courses', status_code=201)
def create_course(payload: CourseIn, db: Session = Depends(get_session), user: models.User = Depends(staff_only)):
    return services.CourseService(db).create_course(user, payload)


@app.get('/courses/{course_id}')
def get_course(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.CourseService(db).get_course(user, course_id)


@app.post('/courses/{course_id}/enroll', status_code=201)
def enroll(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    return services.CourseService(db).enroll(user, course_id)


@app.get('/courses/{course_id}/progress')
def course_progress(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    return services.CourseService(db).course_progress(user, course_id)


@app.get('/courses/{course_id}/lectures')
def list_lectures(course_id: int, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    return services.CourseService(db).list_lectures(user, course_id)


@app.post('/courses/{course_id}/lectures', status_code=201)
def add_lecture(course_id: int, payload: LectureIn, db: Session = Depends(get_session),
                user: models.User = Depends(staff_only)):
    return services.CourseService(db).add_lecture(user, course_id, payload)


@app.post('/courses/{course_id}/assignments', status_code=201)
def create_assignment(course_id: int, payload: AssignmentIn, db: Session = Depends(get_session),
                      user: models.User = Depends(staff_only)):
    return services.AssignmentService(db).create_assignment(user, course_id, payload)


@app.post('/courses/{course_id}/grades')
def grade_students(course_id: int, payload: BulkGradeIn, db: Session = Depends(get_session),
                   user: models.User = Depends(staff_only)):
    return services.GradeService(db).bulk_grade(user, course_id, payload.grades)


@app.get('/courses/{course_id}/gradebook')
def gradebook(course_id: int, db: Session = Depends(get_session), user: models.User = Depends(staff_only)):
    return services.GradeService(db).gradebook(user, course_id)


@app.post('/courses/{course_id}/exams', status_code=201)
def create_exam(course_id: int, payload: ExamIn, db: Session = Depends(get_session),
                user: models.User = Depends(staff_only)):
    return services.ExamService(db).create_exam(user, course_id, payload)


@app.get('/courses/{course_id}/attendance/stats')
def attendance_stats(course_id: int, start: Optional[datetime] = None, end: Optional[datetime] = None,
                     db: Session = Depends(get_session), user: models.User = Depends(staff_only)):
    return services.AttendanceService(db).course_statistics(
        user, course_id, start=models.as_naive_utc(start), end=models.as_naive_utc(end),
    )


@app.get('/courses/{course_id}/attendance/students/{student_id}')
def student_attendance(course_id: int, student_id: int, db: Session = Depends(get_session),
                       user: models.User = Depends(get_current_user)):
    return services.AttendanceService(db).student_summary(user, course_id, student_id)


@app.post('/lectures/{lecture_id}/attendance')
def mark_attendance(lecture_id: int, payload: AttendanceIn, db: Session = Depends(get_session),
                    user: models.User = Depends(staff_only)):
    return services.AttendanceService(db).mark(user, lecture_id, payload.records)


# ---- assignments -------------------------------------------------------------

@app.get('/assignments')
def my_assignments(status: Optional[str] = None, db: Session = Depends(get_session),
                   user: models.User = Depends(student_only)):
    return services.AssignmentService(db).list_for_student(user, status=status)


@app.get('/assignments/{assignment_id}')
def get_assignment(assignment_id: int, db: Session = Depends(get_session),
                   user: models.User = Depends(get_current_user)):
    return services.AssignmentService(db).get_assignment(user, assignment_id)


@app.post('/assignments/{assignment_id}/publish')
def publish_assignment(assignment_id: int, db: Session = Depends(get_session),
                       user: models.User = Depends(staff_only)):
    return services.AssignmentService(db).publish(user, assignment_id)


@app.post('/assignments/{assignment_id}/submit', status_code=201)
def submit_assignment(assignment_id: int, payload: SubmissionIn, request: Request,
                      db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    ip, _ = _client(request)
    submission = services.AssignmentService(db).submit(user, assignment_id, payload, ip=ip)
    return services.AssignmentService.submission_dict(submission)


@app.get('/assignments/{assignment_id}/submissions')
def list_submissions(assignment_id: int, db: Session = Depends(get_session),
                     user: models.User = Depends(get_current_user)):
    return services.AssignmentService(db).list_submissions(user, assignment_id)


@app.post('/submissions/{submission_id}/grade')
def grade_submission(submission_id: int, payload: SubmissionGradeIn, db: Session = Depends(get_session),
                     user: models.User = Depends(staff_only)):
    submission = services.AssignmentService(db).grade_submission(user, submission_id, payload)
    return services.AssignmentService.submission_dict(submission)


# ---- exams -------------------------------------------------------------------

@app.post('/exams/{exam_id}/results')
def record_exam_result(exam_id: int, payload: ExamResultIn, db: Session = Depends(get_session),
                       user: models.User = Depends(staff_only)):
    result = services.ExamService(db).record_result(user, exam_id, payload)
    return services.ExamService.result_dict(result)


@app.post('/exams/{exam_id}/publish')
def publish_exam_results(exam_id: int, db: Session = Depends(get_session), user: models.User = Depends(staff_only)):
    return services.ExamService(db).publish_results(user, exam_id)


@app.get('/exams/results/me')
def my_exam_results(db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    return services.ExamService(db).my_results(user)


# ---- grades ------------------------------------------------------------------

@app.get('/grades/summary')
def grade_summary(db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    svc = services.GradeService(db)
    return svc.course_summary(svc.student_for(user))


@app.get('/grades/statistics')
def grade_statistics(db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    svc = services.GradeService(db)
    return svc.statistics(svc.student_for(user))


@app.get('/grades/progression')
def grade_progression(db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    svc = services.GradeService(db)
    return svc.progression(svc.student_for(user))


@app.get('/grades/transcript')
def transcript(db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    svc = services.GradeService(db)
    return svc.transcript(svc.student_for(user))


@app.get('/grades/export')
def export_transcript(request: Request, format: str = "pdf", db: Session = Depends(get_session),
                      user: models.User = Depends(student_only)):
    ip, _ = _client(request)
    content, media_type, filename = services.GradeService(db).export_transcript(user, format, ip=ip)
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    if isinstance(content, dict):
        return JSONResponse(content=jsonable_encoder(content), headers=headers)
    return Response(content=content, media_type=media_type, headers=headers)


# ---- attendance, schedule, notifications, dashboard --------------------------

@app.get('/attendance/me')
def my_attendance(db: Session = Depends(get_session), user: models.User = Depends(student_only)):
    return services.AttendanceService(db).my_attendance(user)


@app.get('/schedule')
def schedule(week_start: Optional[date] = None, upcoming_days: Optional[int] = None,
             db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    svc = services.ScheduleService(db)
    if upcoming_days is not None:
        return {"items": svc.upcoming(user, days=upcoming_days)}
    return svc.weekly(user, week_start=week_start)


@app.get('/notifications')
def list_notifications(unread_only: bool = False, page: int = 1, page_size: int = 20,
                       db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.NotificationService(db).list(user.id, unread_only=unread_only, page=page, page_size=page_size)


@app.get('/notifications/stats')
def notification_stats(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.NotificationService(db).stats(user.id)


@app.post('/notifications/read-all')
def read_all_notifications(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return {"updated": services.NotificationService(db).mark_all_read(user.id)}


@app.post('/notifications/{notification_id}/read')
def read_notification(notification_id: int, db: Session = Depends(get_session),
                      user: models.User = Depends(get_current_user)):
    note = services.NotificationService(db).mark_read(user.id, notification_id)
    return services.NotificationService.to_dict(note)


@app.delete('/notifications/{notification_id}')
def delete_notification(notification_id: int, db: Session = Depends(get_session),
                        user: models.User = Depends(get_current_user)):
    services.NotificationService(db).delete(user.id, notification_id)
    return {"status": "deleted", "id": notification_id}


@app.get('/dashboard')
def dashboard(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return services.DashboardService(db).overview(user)


# ---- admin -------------------------------------------------------------------

@app.get('/admin/users')
def admin_list_users(role: Optional[models.Role] = None, active: Optional[bool] = None, page: int = 1,
                     page_size: int = 50, db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.AdminService(db).list_users(role=role, active=active, page=page, page_size=page_size)


@app.post('/admin/users', status_code=201)
def admin_create_admin(payload: AdminCreateIn, db: Session = Depends(get_session),
                       user: models.User = Depends(admin_only)):
    created = services.AuthService(db).create_admin(payload, actor_id=user.id)
    return services.AdminService.user_dict(created)


@app.post('/admin/users/{user_id}/deactivate')
def admin_deactivate(user_id: int, request: Request, db: Session = Depends(get_session),
                     user: models.User = Depends(admin_only)):
    ip, _ = _client(request)
    return services.AdminService.user_dict(services.AdminService(db).set_active(user, user_id, False, ip=ip))


@app.post('/admin/users/{user_id}/activate')
def admin_activate(user_id: int, request: Request, db: Session = Depends(get_session),
                   user: models.User = Depends(admin_only)):
    ip, _ = _client(request)
    return services.AdminService.user_dict(services.AdminService(db).set_active(user, user_id, True, ip=ip))


@app.get('/admin/deletion-requests')
def admin_deletion_requests(status: Optional[models.DeletionStatus] = None, db: Session = Depends(get_session),
                            user: models.User = Depends(admin_only)):
    return services.AdminService(db).list_deletion_requests(status=status)


@app.post('/admin/deletion-requests/{request_id}/review')
def admin_review_deletion(request_id: int, payload: DeletionReviewIn, request: Request,
                          db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    ip, _ = _client(request)
    return services.AdminService(db).review_deletion_request(
        user, request_id, payload.approve, note=payload.note, ip=ip,
    )


@app.get('/admin/audits')
def admin_audits(user_id: Optional[int] = None, action: Optional[models.AuditAction] = None,
                 resource_type: Optional[models.ResourceType] = None, start: Optional[datetime] = None,
                 end: Optional[datetime] = None, page: int = 1, page_size: int = 50,
                 db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.AuditService(db).search(
        page=page, page_size=page_size, user_id=user_id, action=action, resource_type=resource_type,
        start=models.as_naive_utc(start), end=models.as_naive_utc(end),
    )


@app.get('/admin/audits/stats')
def admin_audit_stats(start: Optional[datetime] = None, end: Optional[datetime] = None,
                      db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.AuditService(db).statistics(start=models.as_naive_utc(start), end=models.as_naive_utc(end))


@app.get('/admin/stats')
def admin_stats(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return services.AdminService(db).system_stats()


@app.post('/admin/rate-limits/cleanup')
def admin_cleanup_rate_limits(db: Session = Depends(get_session), user: models.User = Depends(admin_only)):
    return {"removed": services.AdminService(db).cleanup_rate_limits()}


@app.get("/health")
def health():
    """Simple health check for monitoring and local dev."""
    return {"status": "ok"}
