import smtplib
from email.message import EmailMessage
from email.utils import formataddr

from flask import current_app


def _sender():
    cfg = current_app.config
    address = cfg.get("SMTP_FROM_EMAIL") or cfg.get("SMTP_USERNAME")
    if not address:
        return None
    return formataddr((cfg.get("SMTP_FROM_NAME") or "MediBook Healthcare", address))


def _connect(cfg):
    host = cfg.get("SMTP_HOST")
    port = cfg.get("SMTP_PORT", 587)
    if cfg.get("SMTP_USE_SSL"):
        return smtplib.SMTP_SSL(host, port, timeout=10)
    server = smtplib.SMTP(host, port, timeout=10)
    if cfg.get("SMTP_USE_TLS", True):
        server.starttls()
    return server


def send_email(to_email: str, subject: str, body: str):
    """Plain-text mail to a patient. Returns (ok, error); transport failures are not raised."""
    cfg = current_app.config
    sender = _sender()

    if not cfg.get("SMTP_HOST") or not sender:
        return False, "Email not configured"
    if not to_email:
        return False, "No recipient address"

    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with _connect(cfg) as server:
            username, password = cfg.get("SMTP_USERNAME"), cfg.get("SMTP_PASSWORD")
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        return False, str(exc)
