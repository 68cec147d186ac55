"""Fan-out of one file to many student drives.

This module provides the UploadDispatcher, which delivers a single
in-memory file to every authorized student a teacher selects.

The dispatcher coordinates, per student:
1. Obtaining a live Drive client (refreshing the token if needed)
2. Resolving the folder path root label / subject / document type
3. Uploading the file into the resolved folder

Example:
    from classdrive.gdrive.dispatcher import UploadDispatcher

    dispatcher = UploadDispatcher(store, client_factory, resolver, uploader, config)
    summary = dispatcher.distribute(
        teacher_id=1,
        file_bytes=payload,
        file_name="notes.pdf",
        mime_type="application/pdf",
        subject_name="Algorithms",
        document_type="Lecture Notes",
        target_student_ids=[3, 4, 5],
    )
    print(summary.message)
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol, Sequence

import structlog

from classdrive.gdrive.config import DriveConfig
from classdrive.gdrive.errors import (
    ClassDriveError,
    FileTooLargeError,
    NoAuthorizedStudentsError,
    UploadValidationError,
)
from classdrive.gdrive.folders import FolderResolver
from classdrive.gdrive.uploader import FileUploader
from classdrive.models import (
    DistributionSummary,
    StudentCredentials,
    UploadResult,
    UploadStatus,
)

logger = structlog.get_logger()


class StudentDirectory(Protocol):
    """Source of upload candidates."""

    def find_connected(self, teacher_id: int, student_ids: Sequence[int]) -> List[StudentCredentials]:
        ...


class UploadDispatcher:
    """Delivers one file to many students with isolated outcomes.

    Each student is processed independently: a failure to refresh, resolve
    folders or upload for one student is recorded as that student's failed
    outcome and never stops the others. There is no shared transaction and
    nothing is rolled back.

    With ``max_workers`` above one the students are processed on a thread
    pool. Token refreshes are still serialized per student by the client
    factory, and the outcome list is assembled on the calling thread in
    submission order.
    """

    def __init__(
        self,
        directory: StudentDirectory,
        client_factory: Any,
        resolver: Optional[FolderResolver] = None,
        uploader: Optional[FileUploader] = None,
        config: Optional[DriveConfig] = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            directory: Looks up connected students owned by a teacher.
            client_factory: DriveClientFactory producing per-student clients.
            resolver: Folder path resolver. Defaults to a new FolderResolver.
            uploader: File uploader. Defaults to a new FileUploader.
            config: Drive configuration. Uses defaults if not provided.
        """
        self._directory = directory
        self._client_factory = client_factory
        self._resolver = resolver or FolderResolver(client_factory)
        self._uploader = uploader or FileUploader()
        self._config = config or DriveConfig()

    def folder_path(self, subject_name: str, document_type: str) -> List[str]:
        """Folder segments a file for ``subject_name``/``document_type`` lands in."""
        return [self._config.root_folder_label, subject_name, document_type]

    def validate(
        self,
        file_bytes: Optional[bytes],
        file_name: str,
        subject_name: str,
        document_type: str,
        target_student_ids: Sequence[int],
    ) -> None:
        """Reject a request before any network call.

        Raises:
            UploadValidationError: Missing file, name, subject, document type
                or targets.
            FileTooLargeError: Payload exceeds the configured limit.
        """
        if not file_bytes:
            raise UploadValidationError("No file uploaded")
        if not file_name:
            raise UploadValidationError("File name is required")
        if len(file_bytes) > self._config.max_upload_bytes:
            raise FileTooLargeError(
                f"File is {len(file_bytes)} bytes; the limit is "
                f"{self._config.max_upload_bytes} bytes",
                size_bytes=len(file_bytes),
                limit_bytes=self._config.max_upload_bytes,
            )
        if not subject_name or not document_type:
            raise UploadValidationError("Subject name and document type are required")
        if not target_student_ids:
            raise UploadValidationError("No students selected")

    def distribute(
        self,
        teacher_id: int,
        file_bytes: bytes,
        file_name: str,
        mime_type: Optional[str],
        subject_name: str,
        document_type: str,
        target_student_ids: Sequence[int],
    ) -> DistributionSummary:
        """Upload ``file_bytes`` to every connected student in ``target_student_ids``.

        Students that are unknown, owned by another teacher or not connected
        are not processed; their ids are returned in ``skipped_student_ids``.

        Returns:
            DistributionSummary with one UploadResult per processed student.

        Raises:
            UploadValidationError: Pre-flight validation failed, or none of
                the requested students can receive the file
                (NoAuthorizedStudentsError). No Drive call is made.
        """
        self.validate(file_bytes, file_name, subject_name, document_type, target_student_ids)

        started_at = datetime.now(timezone.utc)
        requested = list(dict.fromkeys(int(i) for i in target_student_ids))
        students = self._directory.find_connected(teacher_id, requested)
        if not students:
            raise NoAuthorizedStudentsError("No authorized students found")

        resolved_ids = {s.student_id for s in students}
        skipped = [i for i in requested if i not in resolved_ids]
        folder_path = self.folder_path(subject_name, document_type)

        logger.info(
            "distribution_started",
            file_name=file_name,
            file_size=len(file_bytes),
            targets=len(students),
            skipped=len(skipped),
            workers=self._config.max_workers,
        )

        def _deliver_one(student: StudentCredentials) -> UploadResult:
            return self._deliver(student, folder_path, file_bytes, file_name, mime_type)

        if self._config.max_workers <= 1 or len(students) == 1:
            results = [_deliver_one(student) for student in students]
        else:
            workers = min(self._config.max_workers, len(students))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(_deliver_one, student) for student in students]
                results = [future.result() for future in futures]

        summary = DistributionSummary(
            file_name=file_name,
            file_size=len(file_bytes),
            total_requested=len(requested),
            results=results,
            skipped_student_ids=skipped,
            started_at=started_at,
            completed_at=datetime.now(timezone.utc),
        )

        logger.info(
            "distribution_complete",
            file_name=file_name,
            successful=summary.success_count,
            failed=summary.failure_count,
            skipped=len(skipped),
            duration_seconds=summary.duration_seconds,
        )
        return summary

    def _deliver(
        self,
        student: StudentCredentials,
        folder_path: List[str],
        file_bytes: bytes,
        file_name: str,
        mime_type: Optional[str],
    ) -> UploadResult:
        """Deliver to one student. Never raises."""
        stage = "authorizing"
        try:
            service = self._client_factory.get_client(student)

            stage = "resolving_folders"
            folder_id = self._resolver.resolve_folder_path(student, folder_path, service=service)

            stage = "uploading"
            uploaded = self._uploader.upload(service, folder_id, file_bytes, file_name, mime_type)

        except ClassDriveError as e:
            logger.error(
                "student_upload_failed",
                student_id=student.student_id,
                stage=stage,
                error_type=type(e).__name__,
                error=e.message,
            )
            return self._failed(student, e.message)

        except Exception as e:
            logger.exception(
                "student_upload_crashed",
                student_id=student.student_id,
                stage=stage,
                error_type=type(e).__name__,
            )
            return self._failed(student, f"Unexpected error while {stage.replace('_', ' ')}")

        logger.info("student_upload_succeeded", student_id=student.student_id, file_id=uploaded.file_id)
        return UploadResult(
            student_id=student.student_id,
            student_name=student.name,
            student_email=student.email,
            status=UploadStatus.SUCCESS,
            file_id=uploaded.file_id,
            web_view_link=uploaded.web_view_link,
            folder_id=folder_id,
        )

    @staticmethod
    def _failed(student: StudentCredentials, error: str) -> UploadResult:
        return UploadResult(
            student_id=student.student_id,
            student_name=student.name,
            student_email=student.email,
            status=UploadStatus.FAILED,
            error=error,
        )
