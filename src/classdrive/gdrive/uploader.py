"""Single-file upload into a student's Drive folder.

Example:
    from classdrive.gdrive.uploader import FileUploader

    uploader = FileUploader()
    uploaded = uploader.upload(service, folder_id, payload, "notes.pdf", "application/pdf")
    print(uploaded.web_view_link)
"""

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Optional

from googleapiclient.http import MediaIoBaseUpload

from classdrive.gdrive.errors import UploadTransportError

# Set up structured logging
logger = logging.getLogger(__name__)

DEFAULT_MIME = "application/octet-stream"


@dataclass
class UploadedFile:
    """A file created in a student's Drive.

    Attributes:
        file_id: Google Drive file ID.
        name: Name the file was stored under.
        web_view_link: Browser link to the file.
        folder_id: Parent folder ID.
    """

    file_id: str
    name: str
    web_view_link: Optional[str]
    folder_id: str


class FileUploader:
    """Writes one in-memory file into one Drive folder.

    Every call creates a new file; existing files with the same name are
    left alone, matching how Drive itself treats duplicate names.
    """

    def __init__(self, chunk_size: int = 5 * 1024 * 1024) -> None:
        """Initialize the uploader.

        Args:
            chunk_size: Resumable upload chunk size in bytes.
        """
        self._chunk_size = chunk_size

    def upload(
        self,
        service: Any,
        folder_id: str,
        payload: bytes,
        file_name: str,
        mime_type: Optional[str] = None,
    ) -> UploadedFile:
        """Create ``file_name`` in ``folder_id`` with ``payload`` as content.

        Args:
            service: Authenticated Drive client for the target student.
            folder_id: Parent folder ID.
            payload: File content.
            file_name: Name for the new file.
            mime_type: Content type; defaults to application/octet-stream.

        Returns:
            UploadedFile with the new file's ID and view link.

        Raises:
            UploadTransportError: If the write fails.
        """
        file_metadata = {
            "name": file_name,
            "parents": [folder_id],
        }

        media = MediaIoBaseUpload(
            BytesIO(payload),
            mimetype=mime_type or DEFAULT_MIME,
            chunksize=self._chunk_size,
            resumable=True,
        )

        try:
            file_result = (
                service.files()
                .create(body=file_metadata, media_body=media, fields="id, name, webViewLink")
                .execute()
            )
        except Exception as e:
            error_str = str(e).lower()
            status_code = getattr(e, "status_code", None) or getattr(
                getattr(e, "resp", None), "status", None
            )

            # Log the error with structured fields
            logger.error(
                "Failed to create file",
                extra={
                    "file_name": file_name,
                    "folder_id": folder_id,
                    "status_code": status_code,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

            # Drive reports storageQuotaExceeded as a 403
            if status_code in (403, 507) and ("quota" in error_str or "storage" in error_str):
                raise UploadTransportError(
                    f"Storage quota exceeded when uploading '{file_name}'. "
                    "The student needs to free up space in their Google Drive.",
                    folder_id=folder_id,
                    file_name=file_name,
                ) from e

            if status_code == 404 or "not found" in error_str:
                raise UploadTransportError(
                    f"Folder '{folder_id}' not found. It may have been deleted or moved.",
                    folder_id=folder_id,
                    file_name=file_name,
                ) from e

            raise UploadTransportError(
                f"Failed to upload '{file_name}': {e}",
                folder_id=folder_id,
                file_name=file_name,
            ) from e

        file_id = str(file_result["id"])
        logger.info("Uploaded file", extra={"file_id": file_id, "folder_id": folder_id})

        return UploadedFile(
            file_id=file_id,
            name=str(file_result.get("name", file_name)),
            web_view_link=file_result.get("webViewLink"),
            folder_id=folder_id,
        )
