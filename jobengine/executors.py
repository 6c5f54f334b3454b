"""Executors for the job types the engine ships with.

Payloads are JSON objects; see each executor's docstring for the fields.
"""
import json
import logging
import os
import smtplib
import threading
from datetime import timedelta
from email.message import EmailMessage
from typing import Callable, Optional

import requests

from . import repository
from .db import connect_db
from .errors import ConfigError, ExecutionError
from .registry import ExecutorRegistry
from .utils import to_iso, utcnow

logger = logging.getLogger(__name__)

DATA_CLEANUP = "DATA_CLEANUP"
WEBHOOK_CALL = "WEBHOOK_CALL"
EMAIL_SEND = "EMAIL_SEND"


def parse_payload(payload: str) -> dict:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise ExecutionError(f"Payload is not valid JSON: {e.msg}")
    if not isinstance(data, dict):
        raise ExecutionError("Payload must be a JSON object.")
    return data


class DataCleanupExecutor:
    """DATA_CLEANUP jobs.

    Payload: ``{"cleanupType": "OLD_JOBS", "retentionDays": 30}``.
    """

    DEFAULT_RETENTION_DAYS = 30

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def execute(self, payload: str) -> None:
        data = parse_payload(payload)
        cleanup_type = data.get("cleanupType", "OLD_JOBS")
        retention_days = data.get("retentionDays", self.DEFAULT_RETENTION_DAYS)
        if not isinstance(retention_days, int) or retention_days < 1:
            raise ExecutionError(f"retentionDays must be a positive integer (got {retention_days!r}).")

        logger.info("Running data cleanup: type=%s, retentionDays=%s", cleanup_type, retention_days)
        if cleanup_type != "OLD_JOBS":
            raise ExecutionError(f"Unknown cleanup type: {cleanup_type}")

        cutoff = utcnow() - timedelta(days=retention_days)
        conn = connect_db(self.db_path)
        try:
            deleted = repository.delete_older_than(conn, cutoff)
        finally:
            conn.close()
        logger.info("Cleaned up %d old background jobs (created before %s)", deleted, to_iso(cutoff))


class WebhookExecutor:
    """WEBHOOK_CALL jobs: POST a JSON body to a URL.

    Payload: ``{"url": "https://...", "body": {...}, "headers": {"X-Key": "v"}}``.
    Any response status above 299 fails the job.

    Pool workers each get their own ``requests.Session``. A session passed in
    is shared by all of them.
    """

    TIMEOUT_SECONDS = 30
    MAX_RESPONSE_STATUS = 299

    def __init__(self, session: Optional[requests.Session] = None):
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def execute(self, payload: str) -> None:
        data = parse_payload(payload)
        url = data.get("url")
        if not url:
            raise ExecutionError("Webhook payload has no url.")
        headers = {"Content-Type": "application/json"}
        headers.update({k: str(v) for k, v in (data.get("headers") or {}).items()})

        logger.info("Sending webhook to: %s", url)
        resp = self.session.post(
            url,
            data=json.dumps(data.get("body", {})),
            headers=headers,
            timeout=self.TIMEOUT_SECONDS,
        )
        if resp.status_code > self.MAX_RESPONSE_STATUS:
            raise ExecutionError(
                f"Webhook call failed with status {resp.status_code}: {resp.text[:200]}"
            )
        logger.info("Webhook delivered to %s with status %s", url, resp.status_code)


# emailType -> (required fields, subject, body)
EMAIL_TEMPLATES = {
    "INVITATION": (
        ("organizationName", "token", "role"),
        "You have been invited to join {organizationName}",
        "Hello {firstName},\n\nYou have been invited to join {organizationName} as {role}.\n"
        "Invitation token: {token}\n",
    ),
    "PASSWORD_RESET": (
        ("token",),
        "Reset your password",
        "Hello {firstName},\n\nUse this token to reset your password: {token}\n",
    ),
    "VERIFICATION": (
        ("token",),
        "Verify your email address",
        "Hello {firstName},\n\nUse this token to verify your email address: {token}\n",
    ),
    "WELCOME": (
        (),
        "Welcome",
        "Hello {firstName},\n\nWelcome aboard!\n",
    ),
    "NOTIFICATION": (
        ("notificationType", "title", "message"),
        "{title}",
        "Hello {firstName},\n\n[{notificationType}] {message}\n{link}",
    ),
}


class SmtpSender:
    """Sends plain-text mail over SMTP. Usable as an ``EmailExecutor`` sender."""

    def __init__(self, host: str, from_address: str, *, port: int = 587,
                 user: Optional[str] = None, password: Optional[str] = None, use_tls: bool = True):
        self.host = host
        self.port = port
        self.from_address = from_address
        self.user = user
        self.password = password
        self.use_tls = use_tls

    @classmethod
    def from_env(cls) -> Optional["SmtpSender"]:
        """Build a sender from ``JOBENGINE_SMTP_*`` variables; None when no host is set."""
        host = os.environ.get("JOBENGINE_SMTP_HOST")
        if not host:
            return None
        try:
            port = int(os.environ.get("JOBENGINE_SMTP_PORT", "587"))
        except ValueError:
            raise ConfigError("JOBENGINE_SMTP_PORT must be an integer.")
        return cls(
            host,
            os.environ.get("JOBENGINE_SMTP_FROM", "noreply@localhost"),
            port=port,
            user=os.environ.get("JOBENGINE_SMTP_USER"),
            password=os.environ.get("JOBENGINE_SMTP_PASSWORD"),
            use_tls=os.environ.get("JOBENGINE_SMTP_TLS", "1") != "0",
        )

    def __call__(self, to: str, subject: str, body: str) -> None:
        msg = EmailMessage()
        msg["Subject"] = subject
        msg["From"] = self.from_address
        msg["To"] = to
        msg.set_content(body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=30) as server:
                if self.use_tls:
                    server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise ExecutionError(f"Could not send email to {to}: {e}") from e


class EmailExecutor:
    """EMAIL_SEND jobs.

    Payload: ``{"emailType": "WELCOME", "to": "a@example.com", "firstName": "Ada"}``
    plus the fields the email type needs (see ``EMAIL_TEMPLATES``). ``sender``
    is called as ``sender(to, subject, body)``.
    """

    def __init__(self, sender: Callable[[str, str, str], None]):
        self.sender = sender

    def execute(self, payload: str) -> None:
        data = parse_payload(payload)
        email_type = data.get("emailType")
        to = data.get("to")
        if not to:
            raise ExecutionError("Email payload has no recipient.")
        if email_type not in EMAIL_TEMPLATES:
            logger.warning("Unknown email type: %s", email_type)
            raise ExecutionError(f"Unknown email type: {email_type}")

        required, subject, body = EMAIL_TEMPLATES[email_type]
        missing = [f for f in required if not data.get(f)]
        if missing:
            raise ExecutionError(f"{email_type} email is missing {', '.join(missing)}.")

        fields = {"firstName": "", "link": ""}
        fields.update({k: v for k, v in data.items() if v is not None})
        self.sender(to, subject.format(**fields), body.format(**fields))
        logger.info("Email job executed: type=%s, to=%s", email_type, to)


def register_builtin_executors(
    registry: ExecutorRegistry,
    db_path: Optional[str] = None,
    email_sender: Optional[Callable[[str, str, str], None]] = None,
) -> ExecutorRegistry:
    registry.register(DATA_CLEANUP, DataCleanupExecutor(db_path))
    registry.register(WEBHOOK_CALL, WebhookExecutor())
    # EMAIL_SEND needs somewhere to send from
    if email_sender is not None:
        registry.register(EMAIL_SEND, EmailExecutor(email_sender))
    return registry
