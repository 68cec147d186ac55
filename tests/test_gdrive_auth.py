"""Unit tests for Google Drive authentication module.

Tests consent URL generation, code exchange, client creation and the
locked, persisted token refresh.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, List
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import jwt
import pytest
from google.oauth2.credentials import Credentials

from classdrive.gdrive.auth import DriveAuthorizer, DriveClientFactory, TeacherSignIn
from classdrive.gdrive.errors import (
    DomainRejectedError,
    NotAuthorizedError,
    TokenExchangeError,
    TokenRefreshError,
    UnknownSubjectError,
)
from classdrive.signing import STUDENT_CONSENT, TEACHER_LOGIN

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def naive_utc(delta: timedelta = timedelta()) -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None) + delta


class RecordingCredentials:
    """Stand-in for google.oauth2.credentials.Credentials."""

    refreshes: List[str] = []
    refresh_error: Any = None
    rotate_to: Any = None

    def __init__(self, token=None, refresh_token=None, expiry=None, **kwargs: Any) -> None:
        self.token = token
        self.refresh_token = refresh_token
        self.expiry = expiry
        self.kwargs = kwargs

    def refresh(self, request: Any) -> None:
        RecordingCredentials.refreshes.append(self.refresh_token)
        time.sleep(0.02)
        if RecordingCredentials.refresh_error is not None:
            raise RecordingCredentials.refresh_error
        self.token = f"fresh-{len(RecordingCredentials.refreshes)}"
        self.expiry = naive_utc(timedelta(hours=1))
        if RecordingCredentials.rotate_to:
            self.refresh_token = RecordingCredentials.rotate_to


@pytest.fixture
def recording_credentials():
    RecordingCredentials.refreshes = []
    RecordingCredentials.refresh_error = None
    RecordingCredentials.rotate_to = None
    with patch("classdrive.gdrive.auth.Credentials", RecordingCredentials):
        yield RecordingCredentials


@pytest.fixture
def built_services() -> List[Any]:
    return []


@pytest.fixture
def factory(drive_config, memory_store, built_services):
    def builder(creds: Any, timeout: float) -> Any:
        built_services.append((creds, timeout))
        return MagicMock(name=f"drive-for-{creds.token}")

    return DriveClientFactory(drive_config, memory_store, service_builder=builder)


# -----------------------------------------------------------------------------
# DriveAuthorizer
# -----------------------------------------------------------------------------


class TestGenerateAuthUrl:
    """Tests for DriveAuthorizer.generate_auth_url."""

    def test_url_requests_offline_access_and_forced_consent(self, drive_config, signer) -> None:
        """URL asks for a refresh token and always shows the consent screen."""
        url = DriveAuthorizer(drive_config, signer).generate_auth_url(42)
        params = parse_qs(urlparse(url).query)

        assert params["access_type"] == ["offline"]
        assert params["prompt"] == ["consent"]
        assert params["client_id"] == ["student-client.apps.googleusercontent.com"]
        assert params["redirect_uri"] == ["http://localhost:8000/auth/student/callback"]

    def test_url_requests_only_drive_file_scope(self, drive_config, signer) -> None:
        """Only the narrow per-file scope is requested."""
        url = DriveAuthorizer(drive_config, signer).generate_auth_url(42)
        scope = parse_qs(urlparse(url).query)["scope"][0]

        assert scope.split() == ["https://www.googleapis.com/auth/drive.file"]

    def test_state_identifies_student(self, drive_config, signer) -> None:
        """The state round-trips back to the student id."""
        authorizer = DriveAuthorizer(drive_config, signer)
        url = authorizer.generate_auth_url(42)
        state = parse_qs(urlparse(url).query)["state"][0]

        assert authorizer.resolve_state(state) == 42

    def test_no_pkce_challenge(self, drive_config, signer) -> None:
        """No code challenge is sent because the exchange runs in another request."""
        url = DriveAuthorizer(drive_config, signer).generate_auth_url(1)

        assert "code_challenge" not in parse_qs(urlparse(url).query)


class TestResolveState:
    """Tests for DriveAuthorizer.resolve_state."""

    def test_forged_state_rejected(self, drive_config, signer) -> None:
        authorizer = DriveAuthorizer(drive_config, signer)

        with pytest.raises(UnknownSubjectError):
            authorizer.resolve_state("not-a-token")

    def test_state_for_other_purpose_rejected(self, drive_config, signer) -> None:
        """A teacher login state cannot be replayed as a student consent state."""
        authorizer = DriveAuthorizer(drive_config, signer)

        with pytest.raises(UnknownSubjectError):
            authorizer.resolve_state(signer.issue(TEACHER_LOGIN, 42, expires_in=600))

    def test_stale_state_rejected(self, drive_config, signer) -> None:
        authorizer = DriveAuthorizer(drive_config, signer)
        state = signer.issue(STUDENT_CONSENT, 42, expires_in=60, issued_at=time.time() - 3600)

        with pytest.raises(UnknownSubjectError):
            authorizer.resolve_state(state)

    def test_state_lifetime_follows_config(self, drive_config, signer) -> None:
        drive_config.state_max_age_seconds = 60
        url = DriveAuthorizer(drive_config, signer).generate_auth_url(42)
        state = parse_qs(urlparse(url).query)["state"][0]

        claims = jwt.decode(state, options={"verify_signature": False})

        assert claims["exp"] - claims["iat"] == 60


class TestExchangeCode:
    """Tests for DriveAuthorizer.exchange_code."""

    def test_successful_exchange_returns_tokens(self, drive_config, signer) -> None:
        """Tokens and a UTC expiry are returned from one fetch_token call."""
        expiry = naive_utc(timedelta(hours=1))
        with patch("classdrive.gdrive.auth.Flow") as mock_flow_cls:
            flow = mock_flow_cls.from_client_config.return_value
            flow.credentials.token = "access-abc"
            flow.credentials.refresh_token = "refresh-abc"
            flow.credentials.expiry = expiry

            tokens = DriveAuthorizer(drive_config, signer).exchange_code("abc")

        flow.fetch_token.assert_called_once_with(code="abc", timeout=30.0)
        assert tokens.access_token == "access-abc"
        assert tokens.refresh_token == "refresh-abc"
        assert tokens.expiry == expiry.replace(tzinfo=timezone.utc)

    def test_rejected_code_raises(self, drive_config, signer) -> None:
        """A code Google rejects surfaces as TokenExchangeError."""
        with patch("classdrive.gdrive.auth.Flow") as mock_flow_cls:
            flow = mock_flow_cls.from_client_config.return_value
            flow.fetch_token.side_effect = Exception("invalid_grant")

            with pytest.raises(TokenExchangeError) as exc_info:
                DriveAuthorizer(drive_config, signer).exchange_code("used-code")

        assert "invalid_grant" in exc_info.value.message
        assert flow.fetch_token.call_count == 1

    def test_missing_refresh_token_raises(self, drive_config, signer) -> None:
        """Without a refresh token the student could never be served later."""
        with patch("classdrive.gdrive.auth.Flow") as mock_flow_cls:
            flow = mock_flow_cls.from_client_config.return_value
            flow.credentials.token = "access-abc"
            flow.credentials.refresh_token = None

            with pytest.raises(TokenExchangeError, match="refresh token"):
                DriveAuthorizer(drive_config, signer).exchange_code("abc")


# -----------------------------------------------------------------------------
# DriveClientFactory
# -----------------------------------------------------------------------------


class TestGetClient:
    """Tests for DriveClientFactory.get_client."""

    def test_pending_student_not_authorized(self, factory, pending_student) -> None:
        with pytest.raises(NotAuthorizedError) as exc_info:
            factory.get_client(pending_student)

        assert exc_info.value.student_id == pending_student.student_id

    def test_fresh_token_not_refreshed(
        self, factory, fresh_student, memory_store, built_services, recording_credentials
    ) -> None:
        """A token expiring in the future is used as is."""
        memory_store.put(fresh_student)

        factory.get_client(fresh_student)

        assert recording_credentials.refreshes == []
        assert memory_store.saves == []
        creds, timeout = built_services[0]
        assert creds.token == "access-1"
        assert timeout == 30.0

    def test_expired_token_refreshed_and_persisted(
        self, factory, expired_student, memory_store, built_services, recording_credentials
    ) -> None:
        """The refreshed token is saved before the client is built."""
        memory_store.put(expired_student)

        factory.get_client(expired_student)

        assert recording_credentials.refreshes == ["refresh-2"]
        assert len(memory_store.saves) == 1
        stored = memory_store.records[expired_student.student_id]
        assert stored.access_token == "fresh-1"
        assert stored.token_expiry > datetime.now(timezone.utc)
        assert stored.refresh_token == "refresh-2"
        assert built_services[0][0].token == "fresh-1"

    def test_token_at_exact_expiry_is_refreshed(
        self, drive_config, memory_store, fresh_student, recording_credentials
    ) -> None:
        """Expiry equal to now counts as expired."""
        now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        student = fresh_student.model_copy(update={"token_expiry": now})
        memory_store.put(student)
        factory = DriveClientFactory(
            drive_config, memory_store, service_builder=lambda c, t: MagicMock(), clock=lambda: now
        )

        assert factory.is_expired(student) is True

    def test_token_inside_refresh_margin_is_refreshed(
        self, factory, fresh_student, memory_store, built_services, recording_credentials
    ) -> None:
        """A token a minute from expiry is refreshed and saved, not left to the HTTP layer."""
        student = fresh_student.model_copy(
            update={"token_expiry": datetime.now(timezone.utc) + timedelta(seconds=60)}
        )
        memory_store.put(student)

        factory.get_client(student)

        assert len(recording_credentials.refreshes) == 1
        assert len(memory_store.saves) == 1
        assert built_services[0][0].token == "fresh-1"

    def test_client_credentials_cannot_self_refresh(
        self, factory, fresh_student, memory_store, built_services
    ) -> None:
        """The Drive client gets a valid access token and no refresh material."""
        memory_store.put(fresh_student)

        factory.get_client(fresh_student)

        creds = built_services[0][0]
        assert isinstance(creds, Credentials)
        assert creds.valid is True
        assert creds.refresh_token is None
        assert creds.client_secret is None

    def test_missing_expiry_is_refreshed(
        self, factory, fresh_student, memory_store, recording_credentials
    ) -> None:
        student = fresh_student.model_copy(update={"token_expiry": None})
        memory_store.put(student)

        factory.get_client(student)

        assert len(recording_credentials.refreshes) == 1

    def test_rotated_refresh_token_persisted(
        self, factory, expired_student, memory_store, recording_credentials
    ) -> None:
        """If Google rotates the refresh token the new one is stored too."""
        recording_credentials.rotate_to = "refresh-rotated"
        memory_store.put(expired_student)

        factory.get_client(expired_student)

        assert memory_store.records[expired_student.student_id].refresh_token == "refresh-rotated"

    def test_refresh_failure_leaves_store_untouched(
        self, factory, expired_student, memory_store, built_services, recording_credentials
    ) -> None:
        """A revoked grant fails this student only and writes nothing."""
        recording_credentials.refresh_error = Exception("invalid_grant: Token has been revoked")
        memory_store.put(expired_student)

        with pytest.raises(TokenRefreshError) as exc_info:
            factory.get_client(expired_student)

        assert exc_info.value.student_id == expired_student.student_id
        assert memory_store.saves == []
        assert memory_store.records[expired_student.student_id] == expired_student
        assert built_services == []

    def test_persist_failure_raises_refresh_error(
        self, factory, expired_student, memory_store, built_services, recording_credentials
    ) -> None:
        """A token that cannot be saved is not used."""
        memory_store.put(expired_student)
        memory_store.save_error = RuntimeError("database is locked")

        with pytest.raises(TokenRefreshError, match="could not be saved"):
            factory.get_client(expired_student)

        assert built_services == []

    def test_stale_snapshot_reuses_stored_fresh_token(
        self, factory, expired_student, memory_store, built_services, recording_credentials
    ) -> None:
        """A refresh already persisted by another worker is reused."""
        memory_store.put(
            expired_student.model_copy(
                update={
                    "access_token": "already-fresh",
                    "token_expiry": datetime.now(timezone.utc) + timedelta(minutes=30),
                }
            )
        )

        factory.get_client(expired_student)

        assert recording_credentials.refreshes == []
        assert built_services[0][0].token == "already-fresh"

    def test_concurrent_refresh_happens_once(
        self, factory, expired_student, memory_store, built_services, recording_credentials
    ) -> None:
        """Workers racing on one student's expired token refresh it exactly once."""
        memory_store.put(expired_student)
        start = threading.Barrier(4)

        def worker() -> Any:
            start.wait()
            return factory.get_client(expired_student)

        with ThreadPoolExecutor(max_workers=4) as executor:
            futures = [executor.submit(worker) for _ in range(4)]
            for future in futures:
                future.result()

        assert len(recording_credentials.refreshes) == 1
        assert len(memory_store.saves) == 1
        assert {creds.token for creds, _ in built_services} == {"fresh-1"}


# -----------------------------------------------------------------------------
# TeacherSignIn
# -----------------------------------------------------------------------------


class TestTeacherSignIn:
    """Tests for the teacher Google sign-in."""

    def test_authorization_url_requests_identity_scopes(self, app_config) -> None:
        url = TeacherSignIn(app_config.teacher_oauth).authorization_url("state-1")
        params = parse_qs(urlparse(url).query)

        assert params["state"] == ["state-1"]
        assert "openid" in params["scope"][0].split()
        assert "drive" not in params["scope"][0]

    def test_verified_claims_returned(self, app_config) -> None:
        claims = {"sub": "g-1", "email": "prof@inst.edu", "email_verified": True, "name": "Prof"}
        with patch("classdrive.gdrive.auth.Flow") as mock_flow_cls, \
                patch("classdrive.gdrive.auth.id_token") as mock_id_token:
            mock_flow_cls.from_client_config.return_value.credentials.id_token = "jwt"
            mock_id_token.verify_oauth2_token.return_value = claims

            result = TeacherSignIn(app_config.teacher_oauth).verify_callback("code")

        assert result["email"] == "prof@inst.edu"
        assert mock_id_token.verify_oauth2_token.call_args[0][2] == app_config.teacher_oauth.client_id

    def test_unverified_email_rejected(self, app_config) -> None:
        with patch("classdrive.gdrive.auth.Flow"), \
                patch("classdrive.gdrive.auth.id_token") as mock_id_token:
            mock_id_token.verify_oauth2_token.return_value = {
                "email": "prof@inst.edu", "email_verified": False
            }

            with pytest.raises(DomainRejectedError):
                TeacherSignIn(app_config.teacher_oauth).verify_callback("code")

    def test_failed_exchange_raises(self, app_config) -> None:
        with patch("classdrive.gdrive.auth.Flow") as mock_flow_cls:
            mock_flow_cls.from_client_config.return_value.fetch_token.side_effect = Exception("boom")

            with pytest.raises(TokenExchangeError):
                TeacherSignIn(app_config.teacher_oauth).verify_callback("code")
