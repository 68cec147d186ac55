"""Google Drive integration for classdrive.

This module provides integration with Google Drive for:
- Running the per-student OAuth consent flow and exchanging codes
- Producing authenticated per-student Drive clients, refreshing tokens
- Resolving (find or create) nested folder paths idempotently
- Uploading one file into a student's folder
- Fanning a single upload out to many students

Example:
    from classdrive.gdrive import (
        DriveAuthorizer,
        DriveClientFactory,
        DriveConfig,
        UploadDispatcher,
    )

    authorizer = DriveAuthorizer(DriveConfig(), signer)
    link = authorizer.generate_auth_url(student_id=7)

    factory = DriveClientFactory(DriveConfig(), store)
    dispatcher = UploadDispatcher(store, factory)
    summary = dispatcher.distribute(
        teacher_id=1,
        file_bytes=payload,
        file_name="notes.pdf",
        mime_type="application/pdf",
        subject_name="Algorithms",
        document_type="Lecture Notes",
        target_student_ids=[7, 8],
    )
    print(summary.message)
"""

# Authentication
from classdrive.gdrive.auth import (
    DriveAuthorizer,
    DriveClientFactory,
    TeacherSignIn,
    build_drive_service,
)

# Configuration
from classdrive.gdrive.config import (
    DriveConfig,
    OAuthClientConfig,
)

# Dispatcher
from classdrive.gdrive.dispatcher import UploadDispatcher

# Errors
from classdrive.gdrive.errors import (
    ClassDriveError,
    FileTooLargeError,
    FolderResolutionError,
    NoAuthorizedStudentsError,
    NotAuthorizedError,
    TokenExchangeError,
    TokenRefreshError,
    UnknownSubjectError,
    UploadTransportError,
    UploadValidationError,
)

# Folders
from classdrive.gdrive.folders import FolderResolver

# Locks
from classdrive.gdrive.locks import StudentLockRegistry

# Uploader
from classdrive.gdrive.uploader import FileUploader, UploadedFile

__all__ = [
    # Authentication
    "DriveAuthorizer",
    "DriveClientFactory",
    "TeacherSignIn",
    "build_drive_service",
    # Configuration
    "DriveConfig",
    "OAuthClientConfig",
    # Dispatcher
    "UploadDispatcher",
    # Folders
    "FolderResolver",
    # Locks
    "StudentLockRegistry",
    # Uploader
    "FileUploader",
    "UploadedFile",
    # Errors
    "ClassDriveError",
    "FileTooLargeError",
    "FolderResolutionError",
    "NoAuthorizedStudentsError",
    "NotAuthorizedError",
    "TokenExchangeError",
    "TokenRefreshError",
    "UnknownSubjectError",
    "UploadTransportError",
    "UploadValidationError",
]
