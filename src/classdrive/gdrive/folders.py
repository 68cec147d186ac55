"""Nested folder resolution inside a student's Google Drive.

Example:
    from classdrive.gdrive.folders import FolderResolver

    resolver = FolderResolver(client_factory)
    folder_id = resolver.resolve_folder_path(
        student, ["SLRTCE Files", "Algorithms", "Assignments"]
    )
"""

import logging
from typing import Any, List, Optional, Sequence

from classdrive.gdrive.errors import FolderResolutionError
from classdrive.models import StudentCredentials

# Set up structured logging
logger = logging.getLogger(__name__)

# MIME type for folders
FOLDER_MIME = "application/vnd.google-apps.folder"

# Alias Drive accepts for "My Drive"
ROOT_FOLDER_ID = "root"


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside single quotes in a Drive query."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _status_code(error: Exception) -> Optional[int]:
    return getattr(error, "status_code", None) or getattr(
        getattr(error, "resp", None), "status", None
    )


class FolderResolver:
    """Finds or creates a folder path, one segment at a time.

    For each segment the resolver lists non-trashed folders with that name
    under the current parent and descends into the first one whose name is
    an exact, case-sensitive match. Drive's ``name =`` operator is not
    guaranteed to be case-sensitive, so the match is re-checked locally.
    Only when no folder matches is one created. Running the same path twice
    therefore creates nothing the second time.
    """

    def __init__(self, client_factory: Optional[Any] = None, page_size: int = 100) -> None:
        """Initialize the resolver.

        Args:
            client_factory: DriveClientFactory used when no service is passed
                to resolve_folder_path.
            page_size: Page size for folder lookups.
        """
        self._client_factory = client_factory
        self._page_size = page_size

    def resolve_folder_path(
        self,
        student: StudentCredentials,
        segments: Sequence[str],
        service: Optional[Any] = None,
    ) -> str:
        """Return the id of the last folder in ``segments``, creating any missing.

        Args:
            student: Student whose drive is targeted.
            segments: Ordered folder names, outermost first.
            service: Drive client already built for this student. When
                omitted, one is obtained from the client factory.

        Returns:
            Terminal folder id.

        Raises:
            FolderResolutionError: If any lookup or create call fails.
        """
        if service is None:
            if self._client_factory is None:
                raise ValueError("FolderResolver needs a service or a client factory")
            service = self._client_factory.get_client(student)

        parent_id = ROOT_FOLDER_ID
        for name in segments:
            if not name:
                raise FolderResolutionError("Folder names must not be empty", parent_id=parent_id)

            existing = self._find_folder(service, name, parent_id)
            if existing is not None:
                parent_id = existing
            else:
                parent_id = self._create_folder(service, name, parent_id)
                logger.info(
                    "Created folder",
                    extra={"student_id": student.student_id, "folder_name": name,
                           "folder_id": parent_id},
                )

        return parent_id

    def _find_folder(self, service: Any, name: str, parent_id: str) -> Optional[str]:
        query = (
            f"'{escape_query_value(parent_id)}' in parents and "
            f"name = '{escape_query_value(name)}' and "
            f"mimeType = '{FOLDER_MIME}' and "
            "trashed = false"
        )

        page_token: Optional[str] = None
        try:
            while True:
                response = (
                    service.files()
                    .list(
                        q=query,
                        spaces="drive",
                        fields="nextPageToken, files(id, name)",
                        pageSize=self._page_size,
                        pageToken=page_token,
                    )
                    .execute()
                )

                files: List[dict] = response.get("files", [])
                for entry in files:
                    if entry.get("name") == name:
                        return str(entry["id"])

                page_token = response.get("nextPageToken")
                if not page_token:
                    return None
        except Exception as e:
            raise self._resolution_error(e, "look up", name, parent_id) from e

    def _create_folder(self, service: Any, name: str, parent_id: str) -> str:
        file_metadata = {
            "name": name,
            "mimeType": FOLDER_MIME,
            "parents": [parent_id],
        }
        try:
            folder = service.files().create(body=file_metadata, fields="id").execute()
            return str(folder["id"])
        except Exception as e:
            raise self._resolution_error(e, "create", name, parent_id) from e

    @staticmethod
    def _resolution_error(
        error: Exception, action: str, name: str, parent_id: str
    ) -> FolderResolutionError:
        status_code = _status_code(error)
        error_str = str(error).lower()

        logger.error(
            "Folder resolution failed",
            extra={
                "action": action,
                "folder_name": name,
                "parent_id": parent_id,
                "status_code": status_code,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )

        if status_code == 403 and ("quota" in error_str or "storage" in error_str):
            detail = "the student's Drive storage quota is exhausted"
        elif status_code in (401, 403):
            detail = "Drive access was denied; the student may have revoked authorization"
        elif isinstance(error, TimeoutError):
            detail = "the request timed out"
        else:
            detail = str(error)

        return FolderResolutionError(
            f"Failed to {action} folder '{name}': {detail}",
            folder_name=name,
            parent_id=parent_id,
        )
