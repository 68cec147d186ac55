"""Google OAuth for teachers and students.

This module owns every round-trip to Google's OAuth endpoints:

- DriveAuthorizer: builds the per-student consent URL and exchanges the
  returned code for an access/refresh token pair
- DriveClientFactory: turns a student's stored credentials into a live
  Drive API client, refreshing and persisting the access token on the way
- TeacherSignIn: "Sign in with Google" for teachers

Nothing here holds credentials between calls. Each call builds its own
OAuth flow or Credentials object from explicit values, so concurrent
requests for different students cannot interfere.

Example:
    from classdrive.gdrive.auth import DriveAuthorizer, DriveClientFactory

    authorizer = DriveAuthorizer(config.drive, signer)
    url = authorizer.generate_auth_url(student.id)

    factory = DriveClientFactory(config.drive, credential_store)
    service = factory.get_client(credentials)
    service.files().list(q="'root' in parents").execute()
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import google.auth.transport.requests
import httplib2
from google.oauth2 import id_token
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import Resource, build

from classdrive.database import as_utc
from classdrive.gdrive.config import DriveConfig, OAuthClientConfig
from classdrive.gdrive.errors import (
    DomainRejectedError,
    NotAuthorizedError,
    TokenExchangeError,
    TokenRefreshError,
    UnknownSubjectError,
)
from classdrive.gdrive.locks import StudentLockRegistry
from classdrive.models import StudentCredentials, TokenSet
from classdrive.signing import STUDENT_CONSENT, InvalidTokenError, TokenSigner

# Set up structured logging
logger = logging.getLogger(__name__)

# Google Drive API version
DRIVE_API_VERSION = "v3"
DRIVE_API_SERVICE = "drive"

# Used when Google omits expires_in
DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)

TEACHER_SCOPES: List[str] = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeoutRequest(google.auth.transport.requests.Request):
    """google-auth transport that applies a default timeout to every call."""

    def __init__(self, timeout: float) -> None:
        super().__init__()
        self._timeout = timeout

    def __call__(self, url: str, method: str = "GET", body: Any = None,
                 headers: Any = None, timeout: Optional[float] = None, **kwargs: Any) -> Any:
        return super().__call__(
            url, method=method, body=body, headers=headers,
            timeout=timeout if timeout is not None else self._timeout, **kwargs,
        )


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # google-auth compares expiry against a naive UTC clock
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _build_flow(client: OAuthClientConfig, scopes: List[str], state: Optional[str] = None) -> Flow:
    # The exchange happens in a different request than the URL was built in,
    # so no PKCE verifier is generated.
    return Flow.from_client_config(
        client.to_client_config(),
        scopes=scopes,
        redirect_uri=client.redirect_uri,
        state=state,
        autogenerate_code_verifier=False,
    )


def build_drive_service(credentials: Credentials, timeout: float) -> Resource:
    """Build a Drive v3 client whose HTTP calls time out after ``timeout`` seconds."""
    http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=timeout))
    return build(DRIVE_API_SERVICE, DRIVE_API_VERSION, http=http, cache_discovery=False)


class CredentialStore(Protocol):
    """Where student credentials are read from and refreshed tokens written to."""

    def load_credentials(self, student_id: int) -> Optional[StudentCredentials]:
        ...

    def save_refreshed_token(
        self,
        student_id: int,
        access_token: str,
        token_expiry: datetime,
        refresh_token: Optional[str] = None,
    ) -> None:
        ...


class DriveAuthorizer:
    """Issues student consent URLs and exchanges authorization codes.

    The consent URL asks for offline access to the narrow ``drive.file``
    scope and always forces the consent screen, so Google issues a refresh
    token even when the student has authorized the app before. The
    ``state`` parameter is a signed correlation token naming the student.
    """

    def __init__(self, config: DriveConfig, signer: TokenSigner) -> None:
        self._config = config
        self._signer = signer

    def generate_auth_url(self, student_id: int) -> str:
        """Return the consent URL to send to ``student_id``."""
        state = self._signer.issue(
            STUDENT_CONSENT, student_id, expires_in=self._config.state_max_age_seconds
        )
        flow = _build_flow(self._config.oauth, self._config.scopes, state=state)
        url, _ = flow.authorization_url(access_type="offline", prompt="consent")
        logger.debug("Issued consent URL", extra={"student_id": student_id})
        return str(url)

    def resolve_state(self, state: str) -> int:
        """Return the student id a callback ``state`` was issued for.

        Raises:
            UnknownSubjectError: If the token is forged, malformed or stale.
        """
        try:
            return self._signer.verify(STUDENT_CONSENT, state)
        except InvalidTokenError as e:
            logger.warning("Rejected consent callback state", extra={"reason": str(e)})
            raise UnknownSubjectError(
                "Authorization link is invalid or has expired. "
                "Ask your teacher to resend the authorization email."
            ) from e

    def exchange_code(self, code: str) -> TokenSet:
        """Exchange an authorization code for tokens in a single round-trip.

        Raises:
            TokenExchangeError: If the code is rejected or no refresh token
                was issued. Not retried.
        """
        flow = _build_flow(self._config.oauth, self._config.scopes)
        try:
            flow.fetch_token(code=code, timeout=self._config.request_timeout_seconds)
        except Exception as e:
            logger.error(
                "Authorization code exchange failed",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            raise TokenExchangeError(f"Failed to exchange authorization code: {e}") from e

        creds = flow.credentials
        if not creds.token or not creds.refresh_token:
            raise TokenExchangeError(
                "Google did not issue a refresh token. Revoke the app's access at "
                "https://myaccount.google.com/permissions and authorize again."
            )

        expiry = as_utc(creds.expiry) or utcnow() + DEFAULT_TOKEN_LIFETIME
        return TokenSet(access_token=creds.token, refresh_token=creds.refresh_token, expiry=expiry)


class DriveClientFactory:
    """Produces Drive clients from stored student credentials.

    ``get_client`` is the only place access tokens are refreshed. A refresh
    happens when ``now >= token_expiry - token_refresh_margin`` (or the
    expiry is unknown), runs under the student's lock, re-reads the stored
    credentials first so a refresh done by another worker is reused, and
    persists the new token before the client is returned.

    The margin is wider than google-auth's own refresh threshold, and the
    credentials handed to the Drive client carry no refresh token, so the
    HTTP layer can never refresh behind the store's back.
    """

    def __init__(
        self,
        config: DriveConfig,
        store: CredentialStore,
        locks: Optional[StudentLockRegistry] = None,
        service_builder: Optional[Callable[[Credentials, float], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._store = store
        self._locks = locks or StudentLockRegistry()
        self._service_builder = service_builder or build_drive_service
        self._clock = clock or utcnow

    def get_client(self, student: StudentCredentials) -> Any:
        """Return a Drive client for ``student`` built from a live access token.

        Raises:
            NotAuthorizedError: No refresh token on file.
            TokenRefreshError: The token was expired and could not be refreshed
                or persisted. Stored state is unchanged.
        """
        if not student.refresh_token:
            raise NotAuthorizedError(
                f"Student {student.email} has not authorized Google Drive access",
                student_id=student.student_id,
            )

        if self.is_expired(student):
            student = self._refresh(student)

        return self._service_builder(
            self._access_credentials(student), self._config.request_timeout_seconds
        )

    def is_expired(self, student: StudentCredentials) -> bool:
        expiry = as_utc(student.token_expiry)
        if expiry is None or not student.access_token:
            return True
        margin = timedelta(seconds=self._config.token_refresh_margin_seconds)
        return self._clock() >= expiry - margin

    def _access_credentials(self, student: StudentCredentials) -> Credentials:
        # Access token only: a 401 fails the call instead of refreshing unsaved
        return Credentials(
            token=student.access_token,
            scopes=self._config.scopes,
            expiry=_to_naive_utc(student.token_expiry),
        )

    def _refreshable_credentials(self, student: StudentCredentials) -> Credentials:
        oauth = self._config.oauth
        return Credentials(
            token=student.access_token,
            refresh_token=student.refresh_token,
            token_uri=oauth.token_uri,
            client_id=oauth.client_id,
            client_secret=oauth.client_secret,
            scopes=self._config.scopes,
            expiry=_to_naive_utc(student.token_expiry),
        )

    def _refresh(self, student: StudentCredentials) -> StudentCredentials:
        student_id = student.student_id

        with self._locks.hold(student_id):
            current = self._store.load_credentials(student_id)
            if current is None or not current.refresh_token:
                raise NotAuthorizedError(
                    f"Student {student.email} is no longer authorized", student_id=student_id
                )
            if not self.is_expired(current):
                logger.debug("Reusing token refreshed by another worker",
                             extra={"student_id": student_id})
                return current

            creds = self._refreshable_credentials(current)
            try:
                creds.refresh(TimeoutRequest(self._config.request_timeout_seconds))
            except Exception as e:
                logger.error(
                    "Failed to refresh access token",
                    extra={"student_id": student_id, "error": str(e),
                           "error_type": type(e).__name__},
                )
                raise TokenRefreshError(
                    f"Failed to refresh Google Drive access for {current.email}: {e}. "
                    "The student may need to authorize again.",
                    student_id=student_id,
                ) from e

            if not creds.token:
                raise TokenRefreshError(
                    f"Token refresh for {current.email} returned no access token",
                    student_id=student_id,
                )

            expiry = as_utc(creds.expiry) or self._clock() + DEFAULT_TOKEN_LIFETIME
            rotated = creds.refresh_token if creds.refresh_token != current.refresh_token else None
            try:
                self._store.save_refreshed_token(student_id, creds.token, expiry, rotated)
            except Exception as e:
                logger.error(
                    "Failed to persist refreshed token",
                    extra={"student_id": student_id, "error": str(e)},
                )
                raise TokenRefreshError(
                    f"Refreshed token for {current.email} could not be saved: {e}",
                    student_id=student_id,
                ) from e

            logger.info("Refreshed access token", extra={"student_id": student_id})
            return current.model_copy(update={
                "access_token": creds.token,
                "token_expiry": expiry,
                "refresh_token": rotated or current.refresh_token,
            })


class TeacherSignIn:
    """Google sign-in for teachers.

    Only the identity scopes are requested. The returned ID token is
    verified against the client id before any claim is trusted.
    """

    def __init__(self, client: OAuthClientConfig, timeout: float = 30.0) -> None:
        self._client = client
        self._timeout = timeout

    def authorization_url(self, state: str) -> str:
        flow = _build_flow(self._client, TEACHER_SCOPES, state=state)
        url, _ = flow.authorization_url(access_type="online", prompt="select_account")
        return str(url)

    def verify_callback(self, code: str) -> Dict[str, Any]:
        """Exchange ``code`` and return the verified identity claims.

        Raises:
            TokenExchangeError: Exchange or ID token verification failed.
            DomainRejectedError: Google reports the email as unverified.
        """
        flow = _build_flow(self._client, TEACHER_SCOPES)
        try:
            flow.fetch_token(code=code, timeout=self._timeout)
            claims = id_token.verify_oauth2_token(
                flow.credentials.id_token,
                TimeoutRequest(self._timeout),
                self._client.client_id,
            )
        except Exception as e:
            logger.error("Teacher sign-in failed", extra={"error": str(e)})
            raise TokenExchangeError(f"Google sign-in failed: {e}") from e

        if not claims.get("email_verified", False):
            raise DomainRejectedError("Google account email is not verified",
                                      email=claims.get("email"))
        return dict(claims)
