"""Signed, time-bound tokens.

Several kinds of token are issued with the same signer:

- the OAuth ``state`` correlation token that ties a consent callback back to
  the student it was issued for, and
- the teacher session token carried in a cookie or bearer header, and
- the short-lived ``state`` of the teacher sign-in redirect.

Each token is an HS256 JWT with ``sub``, ``iat`` and ``exp`` claims plus a
``purpose`` claim, so a token minted for one use is refused for another.
"""

import hmac
import time
from typing import Any, Dict, Optional

import jwt

ALGORITHM = "HS256"

STUDENT_CONSENT = "student-consent"
TEACHER_SESSION = "teacher-session"
TEACHER_LOGIN = "teacher-login"


class InvalidTokenError(ValueError):
    """Raised when a token is malformed, forged, expired or of the wrong purpose."""


class TokenSigner:
    """Issues and verifies signed tokens bound to a purpose and a subject id.

    Example:
        signer = TokenSigner("secret")
        state = signer.issue(STUDENT_CONSENT, 42, expires_in=3600)
        student_id = signer.verify(STUDENT_CONSENT, state)
    """

    def __init__(self, secret_key: str) -> None:
        if not secret_key:
            raise ValueError("secret_key must not be empty")
        self._key = secret_key

    def issue(
        self,
        purpose: str,
        subject_id: int,
        expires_in: float,
        issued_at: Optional[float] = None,
        nonce: Optional[str] = None,
    ) -> str:
        """Return a token for ``subject_id`` valid only for ``purpose``.

        Args:
            purpose: What the token may be used for.
            subject_id: Student or teacher id carried in ``sub``.
            expires_in: Lifetime in seconds, counted from ``issued_at``.
            issued_at: Issue time as a Unix timestamp. Defaults to now.
            nonce: Optional value the verifier must present again.
        """
        iat = int(issued_at if issued_at is not None else time.time())
        claims: Dict[str, Any] = {
            "sub": str(int(subject_id)),
            "purpose": purpose,
            "iat": iat,
            "exp": iat + int(expires_in),
        }
        if nonce is not None:
            claims["nonce"] = nonce
        return jwt.encode(claims, self._key, algorithm=ALGORITHM)

    def verify(self, purpose: str, token: str, nonce: Optional[str] = None) -> int:
        """Return the subject id carried by ``token``.

        When ``nonce`` is given the token must carry the same value.

        Raises:
            InvalidTokenError: If the token fails any check.
        """
        if not token:
            raise InvalidTokenError("Malformed token")

        try:
            claims = jwt.decode(
                token,
                self._key,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "iat", "exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidTokenError("Token expired") from e
        except jwt.InvalidSignatureError as e:
            raise InvalidTokenError("Signature mismatch") from e
        except jwt.PyJWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}") from e

        if claims.get("purpose") != purpose:
            raise InvalidTokenError("Token issued for a different purpose")

        expected = str(claims.get("nonce", "")).encode("utf-8")
        if nonce is not None and not hmac.compare_digest(expected, nonce.encode("utf-8")):
            raise InvalidTokenError("Token nonce mismatch")

        try:
            return int(claims["sub"])
        except (TypeError, ValueError) as e:
            raise InvalidTokenError("Malformed token subject") from e
