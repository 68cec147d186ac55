"""HTTP API for the classdrive dashboard.

This module provides the FastAPI application: teacher sign-in, subject and
student management, the student consent callback, and the fan-out upload.

Every route that acts for a teacher resolves the signed-in teacher through
the ``current_teacher`` dependency and passes the teacher id explicitly to
the roster, onboarding and dispatcher components.

Example:
    # Run locally for testing
    uvicorn classdrive.app:app --reload --factory

    # Or via the CLI
    classdrive serve --port 8080
"""

import html
import json
import secrets
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from classdrive import __version__
from classdrive.config import AppConfig, load_config
from classdrive.gdrive.errors import (
    AlreadyAuthorizedError,
    ClassDriveError,
    DomainRejectedError,
    DuplicateEnrollmentError,
    DuplicateSubjectError,
    FileTooLargeError,
    StudentNotFoundError,
    SubjectNotFoundError,
    TokenExchangeError,
    UnknownSubjectError,
    UploadValidationError,
)
from classdrive.models import StudentProfile, SubjectEntry, TeacherProfile, UploadResult
from classdrive.services import Services, build_services
from classdrive.signing import TEACHER_LOGIN, TEACHER_SESSION, InvalidTokenError

logger = structlog.get_logger()

LOGIN_STATE_MAX_AGE = 600
LOGIN_NONCE_COOKIE = "classdrive_login_nonce"


# ----------------------------------------------------------------------------
# Request / response models
# ----------------------------------------------------------------------------


class SubjectCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_name: str = Field(..., min_length=1, alias="subjectName")
    academic_year: Optional[str] = Field(default=None, alias="academicYear")
    semester: Optional[str] = None


class SubjectArchive(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subject_name: str = Field(..., min_length=1, alias="subjectName")


class SubjectsResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    count: int
    subjects: List[SubjectEntry]


class StudentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    subject_name: str = Field(..., min_length=1, alias="subjectName")


class StudentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    subject_name: Optional[str] = Field(default=None, alias="subjectName")


class TeacherUpdate(BaseModel):
    name: Optional[str] = None
    picture: Optional[str] = None


class TeacherResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
    teacher: TeacherProfile


class StudentCreatedResponse(BaseModel):
    success: bool = True
    message: str
    student: StudentProfile
    email_sent: bool


class StudentsResponse(BaseModel):
    success: bool = True
    count: int
    students: List[StudentProfile]


class MessageResponse(BaseModel):
    success: bool = True
    message: str
    email_sent: Optional[bool] = None


class UploadResponse(BaseModel):
    """Tally and per-student detail for one fan-out upload.

    ``success`` means the request was processed; individual students may
    still have failed.
    """

    success: bool = True
    message: str
    file_name: str
    file_size: int
    total_students: int
    success_count: int
    fail_count: int
    skipped_student_ids: List[int] = Field(default_factory=list)
    results: List[UploadResult] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str


# ----------------------------------------------------------------------------
# Helpers
# ----------------------------------------------------------------------------


def parse_student_ids(values: Optional[List[str]]) -> List[int]:
    """Accept repeated form fields, a JSON-encoded list, or a mix of both.

    Raises:
        UploadValidationError: If any id is not an integer.
    """
    ids: List[int] = []
    for raw in values or []:
        text = raw.strip()
        if not text:
            continue
        if text.startswith("["):
            try:
                decoded = json.loads(text)
            except ValueError as e:
                raise UploadValidationError("studentIds is not valid JSON") from e
            items: List[Any] = decoded if isinstance(decoded, list) else [decoded]
        else:
            items = [text]
        for item in items:
            try:
                ids.append(int(item))
            except (TypeError, ValueError) as e:
                raise UploadValidationError(f"Invalid student id: {item!r}") from e
    return ids


def _error_status(error: ClassDriveError) -> int:
    if isinstance(error, FileTooLargeError):
        return 413
    if isinstance(error, (StudentNotFoundError, SubjectNotFoundError)):
        return 404
    if isinstance(
        error,
        (
            UploadValidationError,
            DomainRejectedError,
            DuplicateEnrollmentError,
            DuplicateSubjectError,
            AlreadyAuthorizedError,
        ),
    ):
        return 400
    return 500


def _status_page(title: str, lines: List[str], ok: bool) -> str:
    icon = "&#10003;" if ok else "&#10007;"
    color = "#2e7d32" if ok else "#c62828"
    body = "".join(f"<p>{line}</p>" for line in lines)
    return f"""<!DOCTYPE html>
<html>
<head>
  <meta charset="UTF-8">
  <title>{html.escape(title)}</title>
  <style>
    body {{ font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; display: flex;
           justify-content: center; align-items: center; height: 100vh; margin: 0; background: #f5f5f0; }}
    .container {{ background: white; padding: 40px; border-radius: 12px;
                 box-shadow: 0 2px 8px rgba(0,0,0,0.08); text-align: center; max-width: 500px; }}
    .icon {{ font-size: 60px; margin-bottom: 20px; color: {color}; }}
    p {{ color: #666; line-height: 1.6; }}
  </style>
</head>
<body>
  <div class="container">
    <div class="icon">{icon}</div>
    <h1>{html.escape(title)}</h1>
    {body}
  </div>
</body>
</html>"""


# ----------------------------------------------------------------------------
# Application
# ----------------------------------------------------------------------------


def create_app(services: Optional[Services] = None, config: Optional[AppConfig] = None) -> FastAPI:
    """Create the FastAPI application.

    Sign-in and the student consent callback live under ``/auth``. The
    dashboard's JSON API lives under ``/api``.

    Args:
        services: Pre-built component graph (tests pass fakes here).
        config: Used to build services when none are given. Loaded from
            settings.yaml and the environment when omitted.
    """
    if services is None:
        services = build_services(config or load_config())

    app = FastAPI(
        title="classdrive",
        description="Distribute course files into students' Google Drives",
        version=__version__,
    )
    app.state.services = services
    cfg = services.config
    api = APIRouter(prefix="/api")

    def get_services(request: Request) -> Services:
        return request.app.state.services

    def current_teacher(request: Request, svc: Services = Depends(get_services)) -> TeacherProfile:
        token = request.cookies.get(cfg.session_cookie_name)
        auth_header = request.headers.get("Authorization", "")
        if auth_header.lower().startswith("bearer "):
            token = auth_header[7:].strip()
        if not token:
            raise HTTPException(status_code=401, detail="Please log in to access this resource")
        try:
            teacher_id = svc.signer.verify(TEACHER_SESSION, token)
        except InvalidTokenError as e:
            raise HTTPException(status_code=401, detail="Session expired, please log in again") from e
        teacher = svc.roster.get_teacher(teacher_id)
        if teacher is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return teacher

    @app.exception_handler(ClassDriveError)
    async def classdrive_error_handler(request: Request, exc: ClassDriveError) -> JSONResponse:
        status = _error_status(exc)
        if status >= 500:
            logger.error("request_failed", path=request.url.path, error_type=type(exc).__name__,
                         error=exc.message)
            return JSONResponse(status_code=status, content={"detail": "Request failed"})
        return JSONResponse(status_code=status, content={"detail": exc.message})

    # ------------------------------------------------------------------
    # Service info
    # ------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check() -> HealthResponse:
        return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc), version=__version__)

    @app.get("/")
    async def root() -> Dict[str, str]:
        return {
            "service": "classdrive",
            "version": __version__,
            "docs": "/docs",
            "health": "/health",
        }

    # ------------------------------------------------------------------
    # Teacher sign-in
    # ------------------------------------------------------------------

    @app.get("/auth/google")
    async def teacher_login(svc: Services = Depends(get_services)) -> RedirectResponse:
        # The state is only accepted back from the browser holding the nonce cookie
        nonce = secrets.token_urlsafe(16)
        state = svc.signer.issue(TEACHER_LOGIN, 0, expires_in=LOGIN_STATE_MAX_AGE, nonce=nonce)
        response = RedirectResponse(svc.teacher_sign_in.authorization_url(state), status_code=302)
        response.set_cookie(
            LOGIN_NONCE_COOKIE,
            nonce,
            max_age=LOGIN_STATE_MAX_AGE,
            httponly=True,
            samesite="lax",
        )
        return response

    @app.get("/auth/google/callback")
    async def teacher_login_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        svc: Services = Depends(get_services),
    ) -> RedirectResponse:
        failure = RedirectResponse(f"{cfg.frontend_url}/login.html?error=unauthorized", status_code=302)
        failure.delete_cookie(LOGIN_NONCE_COOKIE)
        nonce = request.cookies.get(LOGIN_NONCE_COOKIE)
        if not code or not state or not nonce:
            return failure
        try:
            svc.signer.verify(TEACHER_LOGIN, state, nonce=nonce)
            claims = await run_in_threadpool(svc.teacher_sign_in.verify_callback, code)
            teacher = await run_in_threadpool(
                svc.roster.sign_in_teacher,
                email=claims.get("email", ""),
                name=claims.get("name") or claims.get("email", ""),
                google_id=claims.get("sub"),
                picture=claims.get("picture"),
            )
        except (InvalidTokenError, TokenExchangeError, DomainRejectedError) as e:
            logger.warning("teacher_login_rejected", reason=str(e))
            return failure

        response = RedirectResponse(f"{cfg.frontend_url}/dashboard.html", status_code=302)
        response.delete_cookie(LOGIN_NONCE_COOKIE)
        response.set_cookie(
            cfg.session_cookie_name,
            svc.signer.issue(TEACHER_SESSION, teacher.id, expires_in=cfg.session_max_age_seconds),
            max_age=cfg.session_max_age_seconds,
            httponly=True,
            samesite="lax",
        )
        logger.info("teacher_logged_in", teacher_id=teacher.id)
        return response

    @app.get("/auth/me")
    async def me(teacher: TeacherProfile = Depends(current_teacher)) -> Dict[str, Any]:
        return {"authenticated": True, "teacher": teacher.model_dump()}

    @app.api_route("/auth/logout", methods=["GET", "POST"], response_model=MessageResponse)
    async def logout() -> JSONResponse:
        response = JSONResponse({"success": True, "message": "Logged out successfully"})
        response.delete_cookie(cfg.session_cookie_name)
        return response

    # ------------------------------------------------------------------
    # Student consent callback (opened in the student's browser)
    # ------------------------------------------------------------------

    @app.get("/auth/student/callback", response_class=HTMLResponse)
    def student_callback(
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        svc: Services = Depends(get_services),
    ) -> HTMLResponse:
        if error:
            return HTMLResponse(
                _status_page("Authorization Cancelled",
                             ["Google Drive access was not granted.",
                              "Use the link in your email to try again."], ok=False),
                status_code=400,
            )
        if not code or not state:
            return HTMLResponse(
                _status_page("Authorization Failed",
                             ["Missing authorization code or student ID."], ok=False),
                status_code=400,
            )

        try:
            student = svc.onboarding.complete_authorization(code, state)
        except UnknownSubjectError as e:
            return HTMLResponse(
                _status_page("Student Not Found", [html.escape(e.message)], ok=False),
                status_code=404,
            )
        except TokenExchangeError:
            return HTMLResponse(
                _status_page("Authorization Failed",
                             ["Google rejected the authorization code. It may have expired "
                              "or already been used.", "Please try again from your email."],
                             ok=False),
                status_code=400,
            )
        except Exception:
            logger.error("student_callback_failed", traceback=traceback.format_exc())
            return HTMLResponse(
                _status_page("Authorization Failed", ["Please try again."], ok=False),
                status_code=500,
            )

        return HTMLResponse(
            _status_page(
                "Authorization Successful!",
                [
                    f"<strong>{html.escape(student.name)}</strong> ({html.escape(student.email)})",
                    "Your Google Drive has been connected successfully.",
                    "Your teacher can now send files directly to your Google Drive.",
                    "You can close this window now.",
                ],
                ok=True,
            )
        )

    # ------------------------------------------------------------------
    # Teacher profile
    # ------------------------------------------------------------------

    @api.get("/teachers/me", response_model=TeacherResponse)
    def get_profile(teacher: TeacherProfile = Depends(current_teacher)) -> TeacherResponse:
        return TeacherResponse(teacher=teacher)

    @api.put("/teachers/me", response_model=TeacherResponse)
    def update_profile(
        body: TeacherUpdate,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> TeacherResponse:
        updated = svc.roster.update_teacher(teacher.id, body.name, body.picture)
        if updated is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return TeacherResponse(message="Profile updated successfully", teacher=updated)

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------

    @api.post("/subjects", response_model=SubjectsResponse, status_code=201)
    def add_subject(
        body: SubjectCreate,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> SubjectsResponse:
        subjects = svc.roster.add_subject(teacher.id, body.subject_name, body.academic_year, body.semester)
        return SubjectsResponse(message="Subject added successfully", count=len(subjects), subjects=subjects)

    @api.get("/subjects", response_model=SubjectsResponse)
    def list_subjects(
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> SubjectsResponse:
        subjects = svc.roster.list_subjects(teacher.id)
        return SubjectsResponse(count=len(subjects), subjects=subjects)

    @api.put("/subjects/archive", response_model=SubjectsResponse)
    def archive_subject(
        body: SubjectArchive,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> SubjectsResponse:
        subjects = svc.roster.archive_subject(teacher.id, body.subject_name)
        return SubjectsResponse(message="Subject archived successfully", count=len(subjects), subjects=subjects)

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    @api.post("/students", response_model=StudentCreatedResponse, status_code=201)
    def create_student(
        body: StudentCreate,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> StudentCreatedResponse:
        result = svc.onboarding.enroll(teacher.id, body.name, body.email, body.subject_name)
        message = (
            "Student added successfully. Authorization email sent."
            if result.email_sent
            else "Student added successfully. Authorization email could not be sent."
        )
        return StudentCreatedResponse(message=message, student=result.student, email_sent=result.email_sent)

    @api.get("/students", response_model=StudentsResponse)
    def list_students(
        subject_name: Optional[str] = Query(default=None, alias="subjectName"),
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> StudentsResponse:
        students = svc.roster.list_students(teacher.id, subject_name)
        return StudentsResponse(count=len(students), students=students)

    @api.get("/students/{student_id}", response_model=StudentProfile)
    def get_student(
        student_id: int,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> StudentProfile:
        return svc.roster.get_student(teacher.id, student_id)

    @api.put("/students/{student_id}", response_model=StudentProfile)
    def update_student(
        student_id: int,
        body: StudentUpdate,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> StudentProfile:
        return svc.roster.update_student(teacher.id, student_id, body.name, body.subject_name)

    @api.delete("/students/{student_id}", response_model=MessageResponse)
    def delete_student(
        student_id: int,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> MessageResponse:
        svc.roster.remove_student(teacher.id, student_id)
        return MessageResponse(message="Student removed successfully")

    @api.post("/students/resend-auth/{student_id}", response_model=MessageResponse)
    def resend_authorization(
        student_id: int,
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> MessageResponse:
        result = svc.onboarding.resend_authorization(teacher.id, student_id)
        message = "Reminder email sent successfully" if result.success else "Reminder email could not be sent"
        return MessageResponse(message=message, email_sent=result.success)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    @api.post("/upload/upload", response_model=UploadResponse)
    async def upload_file(
        file: Optional[UploadFile] = File(default=None),
        subject_name: str = Form(default="", alias="subjectName"),
        document_type: str = Form(default="", alias="documentType"),
        student_ids: Optional[List[str]] = Form(default=None, alias="studentIds"),
        teacher: TeacherProfile = Depends(current_teacher),
        svc: Services = Depends(get_services),
    ) -> UploadResponse:
        if file is None:
            raise UploadValidationError("No file uploaded")

        # Read one byte past the limit so oversized payloads are detected
        # without buffering them whole
        payload = await file.read(svc.config.drive.max_upload_bytes + 1)
        target_ids = parse_student_ids(student_ids)

        logger.info(
            "upload_request_received",
            teacher_id=teacher.id,
            file_name=file.filename,
            targets=len(target_ids),
        )

        try:
            summary = await run_in_threadpool(
                svc.dispatcher.distribute,
                teacher.id,
                payload,
                file.filename or "",
                file.content_type,
                subject_name.strip(),
                document_type.strip(),
                target_ids,
            )
        except ClassDriveError:
            raise
        except Exception as e:
            logger.error("upload_request_failed", error=str(e), traceback=traceback.format_exc())
            raise HTTPException(status_code=500, detail="Upload failed") from e

        return UploadResponse(
            message=summary.message,
            file_name=summary.file_name,
            file_size=summary.file_size,
            total_students=summary.total_requested,
            success_count=summary.success_count,
            fail_count=summary.failure_count,
            skipped_student_ids=summary.skipped_student_ids,
            results=summary.results,
        )

    @api.get("/upload/history")
    def upload_history(teacher: TeacherProfile = Depends(current_teacher)) -> Dict[str, Any]:
        # Upload history is not persisted
        return {"success": True, "uploads": []}

    app.include_router(api)
    return app


def app() -> FastAPI:
    """Application factory for ``uvicorn --factory``."""
    return create_app()
