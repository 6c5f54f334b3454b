import json
import threading
from datetime import timedelta

import pytest

from jobengine import executors, repository
from jobengine.errors import ExecutionError
from jobengine.executors import (
    DATA_CLEANUP, EMAIL_SEND, WEBHOOK_CALL, DataCleanupExecutor, EmailExecutor,
    SmtpSender, WebhookExecutor, parse_payload, register_builtin_executors,
)
from jobengine.utils import utcnow


class FakeResponse:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


class FakeSession:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.requests = []

    def post(self, url, **kwargs):
        self.requests.append((url, kwargs))
        return FakeResponse(self.status_code, "nope")


def test_parse_payload_rejects_non_objects():
    with pytest.raises(ExecutionError):
        parse_payload("not json")
    with pytest.raises(ExecutionError):
        parse_payload("[1, 2]")


def test_cleanup_deletes_old_jobs(db_path, conn):
    repository.insert_job(conn, "T", "old", now=utcnow() - timedelta(days=10))
    keep = repository.insert_job(conn, "T", "new")

    DataCleanupExecutor(db_path).execute(json.dumps({"cleanupType": "OLD_JOBS", "retentionDays": 7}))

    assert [j.id for j in repository.list_jobs(conn)] == [keep.id]


@pytest.mark.parametrize("payload", [
    {"cleanupType": "EXPIRED_TOKENS"},
    {"cleanupType": "OLD_JOBS", "retentionDays": 0},
    {"cleanupType": "OLD_JOBS", "retentionDays": "ten"},
])
def test_cleanup_rejects_bad_payloads(db_path, payload):
    with pytest.raises(ExecutionError):
        DataCleanupExecutor(db_path).execute(json.dumps(payload))


def test_webhook_posts_body_and_headers():
    session = FakeSession(204)
    WebhookExecutor(session).execute(json.dumps({
        "url": "https://example.com/hook",
        "body": {"event": "deadline"},
        "headers": {"X-Signature": "abc"},
    }))

    url, kwargs = session.requests[0]
    assert url == "https://example.com/hook"
    assert json.loads(kwargs["data"]) == {"event": "deadline"}
    assert kwargs["headers"]["X-Signature"] == "abc"
    assert kwargs["headers"]["Content-Type"] == "application/json"
    assert kwargs["timeout"] == WebhookExecutor.TIMEOUT_SECONDS


def test_webhook_error_status_fails_the_job():
    with pytest.raises(ExecutionError, match="500"):
        WebhookExecutor(FakeSession(500)).execute(json.dumps({"url": "https://example.com"}))


def test_webhook_requires_url():
    with pytest.raises(ExecutionError):
        WebhookExecutor(FakeSession()).execute("{}")


def test_builtin_registration(registry, db_path):
    register_builtin_executors(registry, db_path)

    assert registry.job_types() == [DATA_CLEANUP, WEBHOOK_CALL]


def test_builtin_registration_with_email_sender(registry, db_path):
    register_builtin_executors(registry, db_path, email_sender=lambda to, subject, body: None)

    assert EMAIL_SEND in registry


def test_webhook_sessions_are_per_thread():
    hook = WebhookExecutor()
    seen = []
    threads = [threading.Thread(target=lambda: seen.append(hook.session)) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert hook.session is hook.session
    assert len({id(s) for s in seen + [hook.session]}) == 3


class Outbox:
    def __init__(self):
        self.sent = []

    def __call__(self, to, subject, body):
        self.sent.append((to, subject, body))


def test_email_welcome():
    outbox = Outbox()
    EmailExecutor(outbox).execute(json.dumps({
        "emailType": "WELCOME", "to": "ada@example.com", "firstName": "Ada",
    }))

    [(to, subject, body)] = outbox.sent
    assert to == "ada@example.com"
    assert subject == "Welcome"
    assert "Hello Ada" in body


def test_email_notification_uses_title_as_subject():
    outbox = Outbox()
    EmailExecutor(outbox).execute(json.dumps({
        "emailType": "NOTIFICATION", "to": "a@example.com", "notificationType": "DEADLINE",
        "title": "Task due {soon}", "message": "Report is due", "link": "https://x/1",
    }))

    _, subject, body = outbox.sent[0]
    assert subject == "Task due {soon}"
    assert "[DEADLINE] Report is due" in body
    assert "https://x/1" in body


@pytest.mark.parametrize("payload", [
    {"emailType": "WELCOME"},
    {"emailType": "NEWSLETTER", "to": "a@example.com"},
    {"emailType": "PASSWORD_RESET", "to": "a@example.com"},
])
def test_email_rejects_bad_payloads(payload):
    outbox = Outbox()
    with pytest.raises(ExecutionError):
        EmailExecutor(outbox).execute(json.dumps(payload))
    assert outbox.sent == []


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.calls = []
        self.messages = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user))

    def send_message(self, msg):
        self.messages.append(msg)


def test_smtp_sender_sends_message(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(executors.smtplib, "SMTP", FakeSMTP)

    SmtpSender("mail.local", "noreply@example.com", user="u", password="p")(
        "ada@example.com", "Welcome", "Hello Ada",
    )

    [server] = FakeSMTP.instances
    assert (server.host, server.port) == ("mail.local", 587)
    assert server.calls == ["starttls", ("login", "u")]
    msg = server.messages[0]
    assert msg["To"] == "ada@example.com"
    assert msg["Subject"] == "Welcome"
    assert "Hello Ada" in msg.get_content()


def test_smtp_sender_from_env(monkeypatch):
    monkeypatch.delenv("JOBENGINE_SMTP_HOST", raising=False)
    assert SmtpSender.from_env() is None

    monkeypatch.setenv("JOBENGINE_SMTP_HOST", "mail.local")
    monkeypatch.setenv("JOBENGINE_SMTP_PORT", "2525")
    monkeypatch.setenv("JOBENGINE_SMTP_TLS", "0")
    sender = SmtpSender.from_env()
    assert (sender.host, sender.port, sender.use_tls) == ("mail.local", 2525, False)
