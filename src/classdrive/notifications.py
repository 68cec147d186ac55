"""
Authorization and reminder emails sent over SMTP.

Sending is best effort: every method returns a NotificationResult instead
of raising, so a mail outage never undoes the enrollment that triggered it.
"""

from __future__ import annotations

import html
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid

import structlog

from classdrive.config import SmtpConfig

logger = structlog.get_logger()


@dataclass(frozen=True)
class NotificationResult:
    """Outcome of one send attempt."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class NotificationGateway:
    """Sends the one-time authorization request and its reminders."""

    AUTHORIZATION_SUBJECT = "Action Required: Authorize {app} for {subject}"
    REMINDER_SUBJECT = "Reminder: Authorize {app} for {subject}"

    def __init__(self, smtp: SmtpConfig, institutional_domain: str, app_name: str = "SLRTCE File Manager"):
        self._smtp = smtp
        self._domain = institutional_domain
        self._app_name = app_name

    def send_authorization_email(
        self,
        recipient_email: str,
        recipient_name: str,
        auth_url: str,
        sender_name: str,
        subject_label: str,
    ) -> NotificationResult:
        """Ask a newly enrolled student to connect their Google Drive."""
        body = self._authorization_body(recipient_name, auth_url, sender_name, subject_label)
        subject = self.AUTHORIZATION_SUBJECT.format(app=self._app_name, subject=subject_label)
        return self._send(recipient_email, subject, body, kind="authorization")

    def send_reminder_email(
        self,
        recipient_email: str,
        recipient_name: str,
        auth_url: str,
        sender_name: str,
        subject_label: str,
    ) -> NotificationResult:
        """Remind a pending student to complete authorization."""
        body = self._reminder_body(recipient_name, auth_url, sender_name, subject_label)
        subject = self.REMINDER_SUBJECT.format(app=self._app_name, subject=subject_label)
        return self._send(recipient_email, subject, body, kind="reminder")

    def _send(self, to_email: str, subject: str, html_body: str, kind: str) -> NotificationResult:
        if not self._smtp.enabled:
            logger.warning("email_not_sent_smtp_disabled", kind=kind, to=to_email)
            return NotificationResult(success=False, error="SMTP is not configured")

        msg = MIMEMultipart("alternative")
        msg["From"] = self._smtp.sender
        msg["To"] = to_email
        msg["Subject"] = subject
        msg["Message-ID"] = make_msgid(domain=self._smtp.sender.rpartition("@")[2] or None)
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        try:
            with smtplib.SMTP(self._smtp.host, self._smtp.port, timeout=self._smtp.timeout_seconds) as server:
                if self._smtp.use_tls:
                    server.starttls()
                if self._smtp.username:
                    server.login(self._smtp.username, self._smtp.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", kind=kind, to=to_email, error=str(e))
            return NotificationResult(success=False, error=str(e))

        logger.info("email_sent", kind=kind, to=to_email)
        return NotificationResult(success=True, message_id=msg["Message-ID"])

    def _authorization_body(self, student_name: str, link: str, teacher_name: str, subject_label: str) -> str:
        name, teacher, subject = (html.escape(v) for v in (student_name, teacher_name, subject_label))
        href = html.escape(link, quote=True)
        return f"""
    <html>
      <body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: auto;">
        <h2 style="color: #667eea;">{html.escape(self._app_name)}</h2>
        <p>Hello {name},</p>
        <p>
          <strong>{teacher}</strong> has added you to the <strong>{subject}</strong> class.
          To receive assignments and study material directly in your Google Drive,
          authorize this application <strong>just once</strong>.
        </p>
        <ol>
          <li>Click the button below</li>
          <li>Sign in with your @{html.escape(self._domain)} Google account</li>
          <li>Click "Allow" on the permission screen</li>
        </ol>
        <div style="text-align: center; margin: 24px 0;">
          <a href="{href}" style="background: #667eea; color: #fff; padding: 12px 30px;
             border-radius: 5px; text-decoration: none;">Authorize Google Drive Access</a>
        </div>
        <p>
          You must use your <strong>@{html.escape(self._domain)}</strong> account.
          Personal Gmail accounts will not work.
        </p>
        <p style="font-size: 12px; color: #888;">
          The application can only create and manage files it uploads. It cannot read
          or delete your existing Drive files.
        </p>
      </body>
    </html>
    """

    def _reminder_body(self, student_name: str, link: str, teacher_name: str, subject_label: str) -> str:
        name, teacher, subject = (html.escape(v) for v in (student_name, teacher_name, subject_label))
        href = html.escape(link, quote=True)
        return f"""
    <html>
      <body style="font-family: Arial, sans-serif; color: #333; max-width: 600px; margin: auto;">
        <h2 style="color: #ff9800;">Authorization pending</h2>
        <p>Hi {name},</p>
        <p>
          You have not authorized {html.escape(self._app_name)} for <strong>{subject}</strong> yet.
          <strong>{teacher}</strong> cannot send you files until you complete this step.
        </p>
        <div style="text-align: center; margin: 24px 0;">
          <a href="{href}" style="background: #667eea; color: #fff; padding: 12px 30px;
             border-radius: 5px; text-decoration: none;">Authorize Now</a>
        </div>
      </body>
    </html>
    """
