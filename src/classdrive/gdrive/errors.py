"""Custom exception classes for classdrive.

This module defines the exceptions raised while enrolling students, running
the per-student OAuth flow, and distributing files into student drives.
Every exception carries the offending identifiers as attributes so callers
can report them without parsing the message.
"""

from typing import Optional


class ClassDriveError(Exception):
    """Base class for all classdrive errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class DomainRejectedError(ClassDriveError):
    """Raised when an email address is outside the institutional domain.

    Both teacher sign-in and student enrollment are gated on the domain,
    and the check runs before anything is persisted.
    """

    def __init__(self, message: str, email: Optional[str] = None) -> None:
        self.email = email
        super().__init__(message)


class DuplicateEnrollmentError(ClassDriveError):
    """Raised when a (teacher, email, subject) enrollment already exists."""

    def __init__(
        self,
        message: str,
        email: Optional[str] = None,
        subject_name: Optional[str] = None,
    ) -> None:
        self.email = email
        self.subject_name = subject_name
        super().__init__(message)


class DuplicateSubjectError(ClassDriveError):
    """Raised when a teacher already has an active subject with that name."""

    def __init__(self, message: str, subject_name: Optional[str] = None) -> None:
        self.subject_name = subject_name
        super().__init__(message)


class SubjectNotFoundError(ClassDriveError):
    """Raised when an active subject cannot be found for the teacher."""

    def __init__(self, message: str, subject_name: Optional[str] = None) -> None:
        self.subject_name = subject_name
        super().__init__(message)


class StudentNotFoundError(ClassDriveError):
    """Raised when a student does not exist or belongs to another teacher."""

    def __init__(self, message: str, student_id: Optional[int] = None) -> None:
        self.student_id = student_id
        super().__init__(message)


class AlreadyAuthorizedError(ClassDriveError):
    """Raised when a reminder is requested for an already connected student."""

    def __init__(self, message: str, student_id: Optional[int] = None) -> None:
        self.student_id = student_id
        super().__init__(message)


class UnknownSubjectError(ClassDriveError):
    """Raised when a consent callback cannot be tied back to a student.

    This typically occurs when:
    - The state parameter was tampered with or is malformed
    - The consent link is older than the configured maximum age
    - The student was removed after the link was issued
    """

    def __init__(self, message: str, student_id: Optional[int] = None) -> None:
        self.student_id = student_id
        super().__init__(message)


class TokenExchangeError(ClassDriveError):
    """Raised when an authorization code cannot be exchanged for tokens.

    This typically occurs when:
    - The code is invalid, expired, or was already consumed
    - The redirect URI does not match the one registered for the client
    - The provider did not issue a refresh token
    """


class NotAuthorizedError(ClassDriveError):
    """Raised when a student has no refresh token on file."""

    def __init__(self, message: str, student_id: Optional[int] = None) -> None:
        self.student_id = student_id
        super().__init__(message)


class TokenRefreshError(ClassDriveError):
    """Raised when an expired access token cannot be refreshed.

    This typically occurs when:
    - The student revoked the application's access
    - The refresh round-trip timed out or hit a network error

    Stored credentials are left untouched when this is raised.
    """

    def __init__(self, message: str, student_id: Optional[int] = None) -> None:
        self.student_id = student_id
        super().__init__(message)


class FolderResolutionError(ClassDriveError):
    """Raised when a folder in the target path cannot be found or created.

    This typically occurs when:
    - The student's storage quota is exhausted
    - Permission was revoked between authorization and upload
    """

    def __init__(
        self,
        message: str,
        folder_name: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> None:
        self.folder_name = folder_name
        self.parent_id = parent_id
        super().__init__(message)


class UploadTransportError(ClassDriveError):
    """Raised when the file write itself fails.

    This typically occurs when:
    - Storage quota is exceeded
    - Network issues during upload
    """

    def __init__(
        self, message: str, folder_id: Optional[str] = None, file_name: Optional[str] = None
    ) -> None:
        self.folder_id = folder_id
        self.file_name = file_name
        super().__init__(message)


class UploadValidationError(ClassDriveError):
    """Raised when an upload request is rejected before any network call."""


class FileTooLargeError(UploadValidationError):
    """Raised when an upload payload exceeds the configured size limit."""

    def __init__(
        self, message: str, size_bytes: Optional[int] = None, limit_bytes: Optional[int] = None
    ) -> None:
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes
        super().__init__(message)


class NoAuthorizedStudentsError(UploadValidationError):
    """Raised when none of the requested students can receive the upload."""
