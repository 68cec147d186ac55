"""
Teacher, subject and student bookkeeping.

Every operation takes the acting teacher's id explicitly and opens its own
short-lived session, so the roster can be used from request handlers, the
CLI and upload worker threads alike.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from classdrive.database import Student, Subject, Teacher, as_utc, utcnow
from classdrive.gdrive.errors import (
    DomainRejectedError,
    DuplicateEnrollmentError,
    DuplicateSubjectError,
    StudentNotFoundError,
    SubjectNotFoundError,
)
from classdrive.models import (
    StudentCredentials,
    StudentProfile,
    SubjectEntry,
    SubjectStatus,
    TeacherProfile,
    TokenSet,
)

logger = structlog.get_logger()


def validate_institutional_email(email: str, domain: str) -> str:
    """
    Check that ``email`` belongs to the institutional domain.

    The address must contain exactly one ``@`` and its host part must equal
    ``domain`` ignoring case. Subdomains and look-alike suffixes are rejected.

    Returns:
        The email with surrounding whitespace removed.

    Raises:
        DomainRejectedError: If the address is malformed or off-domain.
    """
    cleaned = (email or "").strip()
    if cleaned.count("@") != 1:
        raise DomainRejectedError(f"Email must be from @{domain} domain", email=cleaned)
    local, _, host = cleaned.partition("@")
    if not local or host.lower() != domain.strip().lower():
        raise DomainRejectedError(f"Email must be from @{domain} domain", email=cleaned)
    return cleaned


def _credentials_from_row(student: Student) -> StudentCredentials:
    return StudentCredentials(
        student_id=student.id,
        teacher_id=student.teacher_id,
        name=student.name,
        email=student.email,
        access_token=student.access_token,
        refresh_token=student.refresh_token,
        token_expiry=as_utc(student.token_expiry),
    )


class Roster:
    """Persistence-backed operations on teachers, subjects and students."""

    def __init__(self, session_factory: sessionmaker, institutional_domain: str) -> None:
        self._sessions = session_factory
        self._domain = institutional_domain

    @property
    def institutional_domain(self) -> str:
        return self._domain

    # ------------------------------------------------------------------
    # Teachers
    # ------------------------------------------------------------------

    def sign_in_teacher(
        self,
        email: str,
        name: str,
        google_id: str | None = None,
        picture: str | None = None,
    ) -> TeacherProfile:
        """Find or create the teacher for a verified sign-in."""
        email = validate_institutional_email(email, self._domain)

        with self._sessions() as session, session.begin():
            teacher = None
            if google_id:
                teacher = session.scalar(select(Teacher).where(Teacher.google_id == google_id))
            if teacher is None:
                teacher = session.scalar(select(Teacher).where(Teacher.email == email))

            if teacher is None:
                teacher = Teacher(google_id=google_id, name=name, email=email, picture=picture)
                session.add(teacher)
                logger.info("teacher_created", email=email)
            else:
                teacher.name = name or teacher.name
                teacher.picture = picture or teacher.picture
                if google_id and not teacher.google_id:
                    teacher.google_id = google_id
                teacher.last_login = utcnow()

            session.flush()
            return TeacherProfile.model_validate(teacher)

    def get_teacher(self, teacher_id: int) -> TeacherProfile | None:
        with self._sessions() as session:
            teacher = session.get(Teacher, teacher_id)
            return TeacherProfile.model_validate(teacher) if teacher else None

    def update_teacher(
        self,
        teacher_id: int,
        name: str | None = None,
        picture: str | None = None,
    ) -> TeacherProfile | None:
        """Update the teacher's own profile. Omitted fields are left as they are."""
        with self._sessions() as session, session.begin():
            teacher = session.get(Teacher, teacher_id)
            if teacher is None:
                return None
            if name is not None and name.strip():
                teacher.name = name.strip()
            if picture is not None:
                teacher.picture = picture or None
            session.flush()
            logger.info("teacher_profile_updated", teacher_id=teacher_id)
            return TeacherProfile.model_validate(teacher)

    # ------------------------------------------------------------------
    # Subjects
    # ------------------------------------------------------------------

    def add_subject(
        self,
        teacher_id: int,
        subject_name: str,
        academic_year: str | None = None,
        semester: str | None = None,
    ) -> list[SubjectEntry]:
        """Add an active subject and return the active catalogue."""
        with self._sessions() as session, session.begin():
            exists = session.scalar(
                select(Subject).where(
                    Subject.teacher_id == teacher_id,
                    Subject.subject_name == subject_name,
                    Subject.status == SubjectStatus.ACTIVE.value,
                )
            )
            if exists is not None:
                raise DuplicateSubjectError("Subject already exists", subject_name=subject_name)

            session.add(
                Subject(
                    teacher_id=teacher_id,
                    subject_name=subject_name,
                    academic_year=academic_year,
                    semester=semester,
                    status=SubjectStatus.ACTIVE.value,
                )
            )
            session.flush()
            return self._active_subjects(session, teacher_id)

    def list_subjects(self, teacher_id: int) -> list[SubjectEntry]:
        with self._sessions() as session:
            return self._active_subjects(session, teacher_id)

    def archive_subject(self, teacher_id: int, subject_name: str) -> list[SubjectEntry]:
        with self._sessions() as session, session.begin():
            subject = session.scalar(
                select(Subject).where(
                    Subject.teacher_id == teacher_id,
                    Subject.subject_name == subject_name,
                    Subject.status == SubjectStatus.ACTIVE.value,
                )
            )
            if subject is None:
                raise SubjectNotFoundError("Subject not found", subject_name=subject_name)
            subject.status = SubjectStatus.ARCHIVED.value
            session.flush()
            return self._active_subjects(session, teacher_id)

    @staticmethod
    def _active_subjects(session: Session, teacher_id: int) -> list[SubjectEntry]:
        rows = session.scalars(
            select(Subject)
            .where(Subject.teacher_id == teacher_id, Subject.status == SubjectStatus.ACTIVE.value)
            .order_by(Subject.id)
        )
        return [SubjectEntry.model_validate(row) for row in rows]

    # ------------------------------------------------------------------
    # Students
    # ------------------------------------------------------------------

    def enroll_student(
        self, teacher_id: int, name: str, email: str, subject_name: str
    ) -> StudentProfile:
        """
        Create a pending student for ``teacher_id``.

        Raises:
            DomainRejectedError: Email is off-domain.
            DuplicateEnrollmentError: Same teacher, email and subject exist.
        """
        email = validate_institutional_email(email, self._domain)

        try:
            with self._sessions() as session, session.begin():
                existing = session.scalar(
                    select(Student).where(
                        Student.teacher_id == teacher_id,
                        Student.email == email,
                        Student.subject_name == subject_name,
                    )
                )
                if existing is not None:
                    raise DuplicateEnrollmentError(
                        "Student already exists in your class for this subject",
                        email=email,
                        subject_name=subject_name,
                    )

                student = Student(
                    teacher_id=teacher_id,
                    name=name,
                    email=email,
                    subject_name=subject_name,
                )
                session.add(student)
                session.flush()
                profile = StudentProfile.model_validate(student)
        except IntegrityError as e:
            # Lost a race with a concurrent enrollment of the same triple
            raise DuplicateEnrollmentError(
                "Student already exists in your class for this subject",
                email=email,
                subject_name=subject_name,
            ) from e

        logger.info("student_enrolled", student_id=profile.id, subject_name=subject_name)
        return profile

    def list_students(self, teacher_id: int, subject_name: str | None = None) -> list[StudentProfile]:
        with self._sessions() as session:
            query = select(Student).where(Student.teacher_id == teacher_id)
            if subject_name:
                query = query.where(Student.subject_name == subject_name)
            rows = session.scalars(query.order_by(Student.name))
            return [StudentProfile.model_validate(row) for row in rows]

    def get_student(self, teacher_id: int, student_id: int) -> StudentProfile:
        with self._sessions() as session:
            return StudentProfile.model_validate(self._owned(session, teacher_id, student_id))

    def update_student(
        self,
        teacher_id: int,
        student_id: int,
        name: str | None = None,
        subject_name: str | None = None,
    ) -> StudentProfile:
        try:
            with self._sessions() as session, session.begin():
                student = self._owned(session, teacher_id, student_id)
                if name:
                    student.name = name
                if subject_name:
                    student.subject_name = subject_name
                session.flush()
                return StudentProfile.model_validate(student)
        except IntegrityError as e:
            raise DuplicateEnrollmentError(
                "Student already exists in your class for this subject",
                subject_name=subject_name,
            ) from e

    def remove_student(self, teacher_id: int, student_id: int) -> None:
        with self._sessions() as session, session.begin():
            session.delete(self._owned(session, teacher_id, student_id))
        logger.info("student_removed", student_id=student_id)

    @staticmethod
    def _owned(session: Session, teacher_id: int, student_id: int) -> Student:
        student = session.scalar(
            select(Student).where(Student.id == student_id, Student.teacher_id == teacher_id)
        )
        if student is None:
            raise StudentNotFoundError("Student not found", student_id=student_id)
        return student

    # ------------------------------------------------------------------
    # Authorization state
    # ------------------------------------------------------------------

    def find_student(self, student_id: int) -> StudentProfile | None:
        """Look up a student without an ownership check (consent callback)."""
        with self._sessions() as session:
            student = session.get(Student, student_id)
            return StudentProfile.model_validate(student) if student else None

    def set_authorization_link(self, student_id: int, url: str) -> None:
        with self._sessions() as session, session.begin():
            student = session.get(Student, student_id)
            if student is None:
                raise StudentNotFoundError("Student not found", student_id=student_id)
            student.authorization_link = url

    def record_authorization(self, student_id: int, tokens: TokenSet) -> StudentProfile:
        """Store freshly exchanged tokens and mark the student connected."""
        with self._sessions() as session, session.begin():
            student = session.get(Student, student_id)
            if student is None:
                raise StudentNotFoundError("Student not found", student_id=student_id)
            student.access_token = tokens.access_token
            student.refresh_token = tokens.refresh_token
            student.token_expiry = tokens.expiry
            student.google_drive_connected = True
            student.authorized_at = utcnow()
            session.flush()
            profile = StudentProfile.model_validate(student)

        logger.info("student_authorized", student_id=student_id)
        return profile


class SqlCredentialStore:
    """Credential store backed by the ``students`` table."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._sessions = session_factory

    def load_credentials(self, student_id: int) -> StudentCredentials | None:
        with self._sessions() as session:
            student = session.get(Student, student_id)
            return _credentials_from_row(student) if student else None

    def save_refreshed_token(
        self,
        student_id: int,
        access_token: str,
        token_expiry: datetime,
        refresh_token: str | None = None,
    ) -> None:
        with self._sessions() as session, session.begin():
            student = session.get(Student, student_id)
            if student is None:
                raise StudentNotFoundError("Student not found", student_id=student_id)
            student.access_token = access_token
            student.token_expiry = token_expiry
            if refresh_token:
                student.refresh_token = refresh_token

    def find_connected(self, teacher_id: int, student_ids: Iterable[int]) -> list[StudentCredentials]:
        """Students owned by ``teacher_id``, in ``student_ids``, and connected."""
        ids = list(dict.fromkeys(student_ids))
        if not ids:
            return []
        with self._sessions() as session:
            rows = session.scalars(
                select(Student).where(
                    Student.id.in_(ids),
                    Student.teacher_id == teacher_id,
                    Student.google_drive_connected.is_(True),
                )
            )
            by_id = {row.id: _credentials_from_row(row) for row in rows}
        # Keep the caller's submission order
        return [by_id[i] for i in ids if i in by_id]
