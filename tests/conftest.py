from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import update

from app import create_app
from config import Config
from models import db
from models.appointment import Appointment
from models.doctor import Doctor
from models.hospital import Hospital
from models.user import User, Role
from security.password import hash_password
from security.payhere import compute_notification_hash
from utils import payment_ledger
from utils.seed import seed_roles

MERCHANT_ID = "1221149"
MERCHANT_SECRET = "MjYzNTc0MDIxMzE1NDI4NjkxMjQxNTM0"
PASSWORD = "s3cure-pass-word"


class ConfigForTests(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    PAYHERE_MERCHANT_ID = MERCHANT_ID
    PAYHERE_MERCHANT_SECRET = MERCHANT_SECRET
    PAYHERE_SANDBOX = True
    PAYHERE_CURRENCY = "LKR"
    CLIENT_URL = "http://client.test"
    SERVER_URL = "http://api.test"
    EMAIL_ASYNC = False
    BCRYPT_ROUNDS = 4
    SMTP_HOST = "smtp.test"
    SMTP_FROM_EMAIL = "noreply@medibook.test"


def make_user(email, full_name, role_name, **extra):
    user = User(email=email, password_hash=hash_password(PASSWORD), full_name=full_name, **extra)
    role = Role.query.filter_by(name=role_name).first()
    user.roles.append(role)
    db.session.add(user)
    db.session.commit()
    return user


def login(app, email):
    client = app.test_client()
    resp = client.post("/auth/login", json={"email": email, "password": PASSWORD})
    assert resp.status_code == 200, resp.get_json()
    client.environ_base["HTTP_X_CSRF_TOKEN"] = client.get_cookie("csrf_token").value
    return client


@pytest.fixture
def app(tmp_path):
    app = create_app(ConfigForTests)
    app.config["RECEIPTS_DIR"] = str(tmp_path / "receipts")
    with app.app_context():
        db.create_all()
        seed_roles()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def patient(app):
    return make_user(
        "nimal@example.com", "Nimal Perera", "PATIENT",
        phone_number="0771234567", address="12 Galle Road", city="Colombo",
    )


@pytest.fixture
def other_patient(app):
    return make_user("kamala@example.com", "Kamala Silva", "PATIENT")


@pytest.fixture
def admin(app):
    return make_user("admin@example.com", "Clinic Admin", "ADMIN")


@pytest.fixture
def doctor(app):
    user = make_user("dr.fernando@example.com", "Ruwan Fernando", "DOCTOR")
    doc = Doctor(
        user_id=user.id,
        specialization="Cardiology",
        license_number="SLMC-10231",
        experience_years=12,
        in_person_fee=Decimal("2500.00"),
        remote_fee=Decimal("1800.00"),
    )
    db.session.add(doc)
    db.session.commit()
    return doc


@pytest.fixture
def hospital(app):
    h = Hospital(name="Lanka Central Hospital", address="1 Union Place", city="Colombo")
    db.session.add(h)
    db.session.commit()
    return h


@pytest.fixture
def appointment(app, patient, doctor, hospital):
    a = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        hospital_id=hospital.id,
        appointment_date=date.today() + timedelta(days=3),
        appointment_time="10:30",
        consultation_type="in_person",
        reason="Chest pain follow-up",
        consultation_fee=Decimal("2500.00"),
        status="pending_payment",
        payment_status="pending",
    )
    db.session.add(a)
    db.session.commit()
    return a


@pytest.fixture
def pending_payment(appointment, patient):
    return payment_ledger.initiate(appointment.id, patient.id)


@pytest.fixture
def patient_client(app, patient):
    return login(app, patient.email)


@pytest.fixture
def admin_client(app, admin):
    return login(app, admin.email)


@pytest.fixture
def login_as(app):
    return lambda user: login(app, user.email)


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    def fake_send(to_email, subject, body):
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True, None

    monkeypatch.setattr("utils.notifications.send_email", fake_send)
    return sent


@pytest.fixture
def notify_form():
    """Builds a signed PayHere notification body."""
    def _build(order_id, amount, status_code, currency="LKR", merchant_id=MERCHANT_ID, secret=MERCHANT_SECRET, **overrides):
        form = {
            "merchant_id": merchant_id,
            "order_id": order_id,
            "payment_id": "320025071278",
            "payhere_amount": amount,
            "payhere_currency": currency,
            "status_code": str(status_code),
            "status_message": "Successfully completed the payment.",
            "md5sig": compute_notification_hash(merchant_id, order_id, amount, currency, status_code, secret),
        }
        form.update(overrides)
        return form
    return _build


@pytest.fixture
def write_elsewhere():
    """Changes a row the way another request would: objects already loaded here keep their old values."""
    def _write(model, row_id, **values):
        db.session.execute(
            update(model).where(model.id == row_id).values(**values),
            execution_options={"synchronize_session": False},
        )
    return _write
