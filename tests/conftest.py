"""
Shared pytest fixtures for classdrive tests.

This module provides common fixtures used across test modules including:
- Application configuration pointing at an in-memory database
- A roster and credential store backed by that database
- An in-memory fake of the Drive v3 ``files()`` resource
- Student credential snapshots in various token states
"""

import re
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from classdrive.config import AppConfig
from classdrive.database import create_db_engine, create_session_factory, init_db
from classdrive.gdrive.config import DriveConfig, OAuthClientConfig
from classdrive.models import StudentCredentials
from classdrive.roster import Roster, SqlCredentialStore
from classdrive.signing import TokenSigner

INSTITUTIONAL_DOMAIN = "inst.edu"
FOLDER_MIME = "application/vnd.google-apps.folder"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Fake Drive service
# ============================================================================


_QUERY_RE = re.compile(
    r"^'(?P<parent>(?:[^'\\]|\\.)*)' in parents and "
    r"name = '(?P<name>(?:[^'\\]|\\.)*)' and "
    r"mimeType = '(?P<mime>[^']*)' and trashed = false$"
)


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


class _Call:
    def __init__(self, fn: Any) -> None:
        self._fn = fn

    def execute(self) -> Any:
        return self._fn()


class _Files:
    def __init__(self, drive: "FakeDrive") -> None:
        self._drive = drive

    def list(self, q: str, spaces: str = "drive", fields: str = "", pageSize: int = 100,
             pageToken: Optional[str] = None) -> _Call:
        return _Call(lambda: self._drive._list(q, pageSize, pageToken))

    def create(self, body: Dict[str, Any], fields: str = "", media_body: Any = None) -> _Call:
        return _Call(lambda: self._drive._create(body, media_body))


class FakeDrive:
    """In-memory stand-in for one student's Drive.

    Name lookups are case-insensitive, like Drive's own ``name =`` operator,
    so callers have to re-check case themselves.
    """

    def __init__(self) -> None:
        self.folders: Dict[str, Dict[str, str]] = {}
        self.files_created: List[Dict[str, Any]] = []
        self.folder_creates = 0
        self.list_calls = 0
        self.queries: List[str] = []
        self.list_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self._ids = 0
        self._lock = threading.Lock()

    def files(self) -> _Files:
        return _Files(self)

    def add_folder(self, name: str, parent: str = "root") -> str:
        with self._lock:
            self._ids += 1
            folder_id = f"folder-{self._ids}"
            self.folders[folder_id] = {"name": name, "parent": parent}
            return folder_id

    def folder_path_exists(self, names: List[str]) -> bool:
        parent = "root"
        for name in names:
            match = [fid for fid, f in self.folders.items()
                     if f["parent"] == parent and f["name"] == name]
            if not match:
                return False
            parent = match[0]
        return True

    def _list(self, q: str, page_size: int, page_token: Optional[str]) -> Dict[str, Any]:
        self.list_calls += 1
        self.queries.append(q)
        if self.list_error is not None:
            raise self.list_error

        match = _QUERY_RE.match(q)
        assert match, f"unexpected query: {q}"
        parent = _unescape(match.group("parent"))
        name = _unescape(match.group("name"))

        hits = [
            {"id": fid, "name": f["name"]}
            for fid, f in self.folders.items()
            if f["parent"] == parent and f["name"].lower() == name.lower()
        ]
        start = int(page_token or 0)
        page = hits[start:start + page_size]
        response: Dict[str, Any] = {"files": page}
        if start + page_size < len(hits):
            response["nextPageToken"] = str(start + page_size)
        return response

    def _create(self, body: Dict[str, Any], media_body: Any) -> Dict[str, Any]:
        if self.create_error is not None:
            raise self.create_error

        parent = body["parents"][0]
        if body.get("mimeType") == FOLDER_MIME:
            self.folder_creates += 1
            return {"id": self.add_folder(body["name"], parent)}

        content = media_body.getbytes(0, media_body.size()) if media_body is not None else b""
        with self._lock:
            self._ids += 1
            file_id = f"file-{self._ids}"
            self.files_created.append(
                {"id": file_id, "name": body["name"], "parent": parent, "content": content}
            )
        return {
            "id": file_id,
            "name": body["name"],
            "webViewLink": f"https://drive.google.com/file/d/{file_id}/view",
        }


class FakeClientFactory:
    """Hands out one FakeDrive per student; can be told to fail for some."""

    def __init__(self) -> None:
        self.drives: Dict[int, FakeDrive] = {}
        self.failures: Dict[int, Exception] = {}
        self.calls: List[int] = []
        self._lock = threading.Lock()

    def drive_for(self, student_id: int) -> FakeDrive:
        with self._lock:
            return self.drives.setdefault(student_id, FakeDrive())

    def get_client(self, student: StudentCredentials) -> FakeDrive:
        with self._lock:
            self.calls.append(student.student_id)
        if student.student_id in self.failures:
            raise self.failures[student.student_id]
        return self.drive_for(student.student_id)


class InMemoryCredentialStore:
    """Credential store keeping snapshots in a dict."""

    def __init__(self) -> None:
        self.records: Dict[int, StudentCredentials] = {}
        self.saves: List[Dict[str, Any]] = []
        self.save_error: Optional[Exception] = None
        self._lock = threading.Lock()

    def put(self, student: StudentCredentials) -> None:
        self.records[student.student_id] = student

    def load_credentials(self, student_id: int) -> Optional[StudentCredentials]:
        with self._lock:
            return self.records.get(student_id)

    def save_refreshed_token(self, student_id: int, access_token: str, token_expiry: datetime,
                             refresh_token: Optional[str] = None) -> None:
        if self.save_error is not None:
            raise self.save_error
        with self._lock:
            current = self.records[student_id]
            update: Dict[str, Any] = {"access_token": access_token, "token_expiry": token_expiry}
            if refresh_token:
                update["refresh_token"] = refresh_token
            self.records[student_id] = current.model_copy(update=update)
            self.saves.append({"student_id": student_id, **update})


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def drive_config() -> DriveConfig:
    """Drive configuration with a test OAuth client."""
    config = DriveConfig()
    config.oauth = OAuthClientConfig(
        client_id="student-client.apps.googleusercontent.com",
        client_secret="student-secret",
        redirect_uri="http://localhost:8000/auth/student/callback",
    )
    config.root_folder_label = "SLRTCE Files"
    config.max_upload_bytes = 1024
    config.max_workers = 1
    return config


@pytest.fixture
def app_config(drive_config: DriveConfig) -> AppConfig:
    """Application configuration backed by an in-memory database."""
    config = AppConfig(
        institutional_domain=INSTITUTIONAL_DOMAIN,
        secret_key="test-secret-key-for-hs256-signing!",
        database_url="sqlite://",
        frontend_url="http://frontend.test",
    )
    config.teacher_oauth = OAuthClientConfig(
        client_id="teacher-client.apps.googleusercontent.com",
        client_secret="teacher-secret",
        redirect_uri="http://localhost:8000/auth/google/callback",
    )
    config.drive = drive_config
    return config


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner("test-secret-key-for-hs256-signing!")


# ============================================================================
# Persistence Fixtures
# ============================================================================


@pytest.fixture
def session_factory():
    """Session factory over a fresh in-memory SQLite database."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def roster(session_factory) -> Roster:
    return Roster(session_factory, INSTITUTIONAL_DOMAIN)


@pytest.fixture
def sql_store(session_factory) -> SqlCredentialStore:
    return SqlCredentialStore(session_factory)


@pytest.fixture
def teacher(roster: Roster):
    """A signed-in teacher."""
    return roster.sign_in_teacher("prof@inst.edu", "Prof. Rao", google_id="g-prof")


# ============================================================================
# Drive Fixtures
# ============================================================================


@pytest.fixture
def fake_drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def fake_factory() -> FakeClientFactory:
    return FakeClientFactory()


@pytest.fixture
def memory_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def fresh_student() -> StudentCredentials:
    """Student whose access token is valid for another hour."""
    return StudentCredentials(
        student_id=1,
        teacher_id=1,
        name="Asha",
        email="asha@inst.edu",
        access_token="access-1",
        refresh_token="refresh-1",
        token_expiry=utcnow() + timedelta(hours=1),
    )


@pytest.fixture
def expired_student() -> StudentCredentials:
    """Student whose access token expired a minute ago."""
    return StudentCredentials(
        student_id=2,
        teacher_id=1,
        name="Ravi",
        email="ravi@inst.edu",
        access_token="stale-access",
        refresh_token="refresh-2",
        token_expiry=utcnow() - timedelta(minutes=1),
    )


@pytest.fixture
def pending_student() -> StudentCredentials:
    """Student who never completed consent."""
    return StudentCredentials(
        student_id=3,
        teacher_id=1,
        name="Meera",
        email="meera@inst.edu",
    )
