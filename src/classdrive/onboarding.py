"""
Student onboarding: enrollment, consent links and the consent callback.

Example:
    onboarding = StudentOnboarding(roster, authorizer, notifier)
    result = onboarding.enroll(teacher_id, "Asha", "asha@slrtce.in", "Algorithms")
    ...
    onboarding.complete_authorization(code, state)
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from classdrive.gdrive.auth import DriveAuthorizer
from classdrive.gdrive.errors import AlreadyAuthorizedError, UnknownSubjectError
from classdrive.models import StudentProfile
from classdrive.notifications import NotificationGateway, NotificationResult
from classdrive.roster import Roster

logger = structlog.get_logger()


@dataclass(frozen=True)
class EnrollmentResult:
    """A newly enrolled student and whether the authorization email went out."""

    student: StudentProfile
    authorization_link: str
    email: NotificationResult

    @property
    def email_sent(self) -> bool:
        return self.email.success


class StudentOnboarding:
    """Ties the roster, the Drive authorizer and email together."""

    def __init__(self, roster: Roster, authorizer: DriveAuthorizer, notifier: NotificationGateway):
        self._roster = roster
        self._authorizer = authorizer
        self._notifier = notifier

    def enroll(self, teacher_id: int, name: str, email: str, subject_name: str) -> EnrollmentResult:
        """
        Enroll a student, store a consent link and email it.

        The student row and link are kept even when the email fails.
        """
        student = self._roster.enroll_student(teacher_id, name, email, subject_name)
        link = self._issue_link(student.id)

        teacher = self._roster.get_teacher(teacher_id)
        email_result = self._notifier.send_authorization_email(
            student.email,
            student.name,
            link,
            teacher.name if teacher else "Your teacher",
            subject_name,
        )

        student = student.model_copy(update={"authorization_link": link})
        return EnrollmentResult(student=student, authorization_link=link, email=email_result)

    def resend_authorization(self, teacher_id: int, student_id: int) -> NotificationResult:
        """
        Send a reminder with a freshly issued consent link.

        Raises:
            StudentNotFoundError: Not one of the teacher's students.
            AlreadyAuthorizedError: Student is already connected.
        """
        student = self._roster.get_student(teacher_id, student_id)
        if student.google_drive_connected:
            raise AlreadyAuthorizedError("Student is already authorized", student_id=student_id)

        # Earlier links may have aged past the state token's maximum age
        link = self._issue_link(student.id)
        teacher = self._roster.get_teacher(teacher_id)
        return self._notifier.send_reminder_email(
            student.email,
            student.name,
            link,
            teacher.name if teacher else "Your teacher",
            student.subject_name,
        )

    def complete_authorization(self, code: str, state: str) -> StudentProfile:
        """
        Finish the consent flow for the student named by ``state``.

        The student is looked up before the code is exchanged, so an unknown
        correlation token never leads to a token write.

        Raises:
            UnknownSubjectError: State is invalid or the student is gone.
            TokenExchangeError: Code rejected by Google.
        """
        student_id = self._authorizer.resolve_state(state)
        if self._roster.find_student(student_id) is None:
            raise UnknownSubjectError("Student not found", student_id=student_id)

        tokens = self._authorizer.exchange_code(code)
        profile = self._roster.record_authorization(student_id, tokens)
        logger.info("student_drive_connected", student_id=student_id)
        return profile

    def _issue_link(self, student_id: int) -> str:
        link = self._authorizer.generate_auth_url(student_id)
        self._roster.set_authorization_link(student_id, link)
        return link
