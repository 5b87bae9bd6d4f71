import smtplib
import threading

from utils import notifications, payment_ledger, reconciler
from utils.emailer import send_email


def _confirmed(pending_payment):
    payment, _ = payment_ledger.apply_notification(pending_payment.id, "2", "320025071278", {})
    appointment, _ = reconciler.confirm_from_payment(payment)
    return appointment, payment


def test_confirmation_message_contents(pending_payment):
    appointment, payment = _confirmed(pending_payment)

    address, subject, body = notifications.build_confirmation_message(appointment, payment)

    assert address == "nimal@example.com"
    assert subject == "Appointment confirmed - payment received"
    assert "Dear Nimal Perera," in body
    assert f"Appointment ID: {appointment.id}" in body
    assert "Doctor: Dr. Ruwan Fernando" in body
    assert "Time: 10:30" in body
    assert "Consultation: In-person" in body
    assert "Hospital: Lanka Central Hospital" in body
    assert "Amount paid: LKR 2500.00" in body
    assert "Payment reference: 320025071278" in body


def test_notify_confirmed_sends_once(pending_payment, outbox):
    appointment, payment = _confirmed(pending_payment)

    outcome = notifications.notify_confirmed(appointment, payment)

    assert outcome == {"success": True, "error": None}
    assert len(outbox) == 1


def test_notify_confirmed_reports_transport_failure(pending_payment, monkeypatch):
    appointment, payment = _confirmed(pending_payment)
    monkeypatch.setattr("utils.notifications.send_email", lambda *a: (False, "Connection refused"))

    outcome = notifications.notify_confirmed(appointment, payment)

    assert outcome["success"] is False
    assert "Connection refused" in outcome["error"]


def test_notify_confirmed_never_raises(pending_payment, monkeypatch):
    appointment, payment = _confirmed(pending_payment)

    def explode(*args):
        raise smtplib.SMTPServerDisconnected("gone")

    monkeypatch.setattr("utils.notifications.send_email", explode)

    outcome = notifications.notify_confirmed(appointment, payment)
    assert outcome == {"success": False, "error": "gone"}


def test_send_email_without_smtp_host(app):
    app.config["SMTP_HOST"] = None
    assert send_email("nimal@example.com", "Hi", "Body") == (False, "Email not configured")


def test_dispatch_runs_inline_when_async_disabled(pending_payment, outbox):
    appointment, payment = _confirmed(pending_payment)

    outcome = notifications.dispatch_confirmation(appointment, payment)

    assert outcome["success"] is True
    assert outbox[0]["subject"] == "Appointment confirmed - payment received"


def test_dispatch_in_background_thread(app, pending_payment, monkeypatch):
    appointment, payment = _confirmed(pending_payment)
    delivered = threading.Event()

    def fake_send(to_email, subject, body):
        delivered.set()
        return True, None

    monkeypatch.setattr("utils.notifications.send_email", fake_send)
    app.config["EMAIL_ASYNC"] = True

    assert notifications.dispatch_confirmation(appointment, payment) is None
    assert delivered.wait(timeout=5)


class RecordingSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port
        self.calls = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append("login")

    def send_message(self, msg):
        RecordingSMTP.sent.append((self, msg))


def test_send_email_over_smtp(app, monkeypatch):
    RecordingSMTP.sent = []
    monkeypatch.setattr(smtplib, "SMTP", RecordingSMTP)
    app.config.update(SMTP_USERNAME="mailer", SMTP_PASSWORD="pw")

    assert send_email("nimal@example.com", "Confirmed", "See you soon") == (True, None)

    server, msg = RecordingSMTP.sent[0]
    assert server.calls == ["starttls", "login"]
    assert msg["From"] == "MediBook Healthcare <noreply@medibook.test>"
    assert msg["To"] == "nimal@example.com"


def test_send_email_reports_connection_errors(app, monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(smtplib, "SMTP", refuse)
    ok, error = send_email("nimal@example.com", "Confirmed", "See you soon")

    assert ok is False
    assert "refused" in error
