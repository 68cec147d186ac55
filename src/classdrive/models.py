"""
Core data models shared by the roster, the Drive integration and the API.

ORM rows live in ``classdrive.database``; everything that crosses a thread
or an HTTP boundary is one of the immutable models below.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SubjectStatus(str, Enum):
    """Lifecycle of a teacher's subject."""
    ACTIVE = "active"
    ARCHIVED = "archived"


class UploadStatus(str, Enum):
    """Outcome of delivering one file to one student."""
    SUCCESS = "success"
    FAILED = "failed"


class TeacherProfile(BaseModel):
    """A signed-in teacher."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    name: str
    email: str
    picture: Optional[str] = None


class SubjectEntry(BaseModel):
    """One subject in a teacher's catalogue."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    subject_name: str
    academic_year: Optional[str] = None
    semester: Optional[str] = None
    status: SubjectStatus = SubjectStatus.ACTIVE


class StudentProfile(BaseModel):
    """Student as shown to the teacher. Never includes tokens."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    teacher_id: int
    name: str
    email: str
    subject_name: str
    google_drive_connected: bool = False
    authorization_link: Optional[str] = None
    authorized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class StudentCredentials(BaseModel):
    """Snapshot of a student's stored OAuth credential state.

    This is what the Drive core works with. It is re-read from the store
    whenever freshness matters, so a stale snapshot is never written back.
    """
    model_config = ConfigDict(frozen=True, from_attributes=True)

    student_id: int = Field(description="Primary key of the student row")
    teacher_id: int
    name: str
    email: str
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_expiry: Optional[datetime] = Field(
        default=None, description="Access token expiry, UTC"
    )


class TokenSet(BaseModel):
    """Tokens returned by a code exchange or a refresh."""
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expiry: datetime = Field(description="Access token expiry, UTC")


class UploadResult(BaseModel):
    """Outcome for one (file, student) pair. Not persisted."""
    model_config = ConfigDict(frozen=True)

    student_id: int
    student_name: str
    student_email: str
    status: UploadStatus
    file_id: Optional[str] = None
    web_view_link: Optional[str] = None
    folder_id: Optional[str] = None
    error: Optional[str] = None


class DistributionSummary(BaseModel):
    """Aggregate result of one fan-out upload request."""
    model_config = ConfigDict(frozen=True)

    file_name: str
    file_size: int
    total_requested: int
    results: list[UploadResult] = Field(default_factory=list)
    skipped_student_ids: list[int] = Field(
        default_factory=list,
        description="Requested ids that are unknown, foreign or not connected",
    )
    started_at: datetime
    completed_at: datetime

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.status == UploadStatus.SUCCESS)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if r.status == UploadStatus.FAILED)

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def message(self) -> str:
        return (
            f"Upload complete: {self.success_count} successful, "
            f"{self.failure_count} failed"
        )
