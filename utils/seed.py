from decimal import Decimal

from models import db
from models.doctor import Doctor
from models.hospital import Hospital
from models.user import User, Role
from security.password import hash_password
from security.rbac import DEFAULT_ROLES, ROLE_DOCTOR

DEMO_HOSPITALS = [
    {"name": "City General Hospital", "address": "123 Main Street", "city": "Trincomalee", "phone_number": "0262222222"},
    {"name": "Apollo Hospitals", "address": "456 Healthcare Avenue", "city": "Battaramulla", "phone_number": "0112345678"},
]

DEMO_DOCTORS = [
    {"email": "doctor@demo.com", "full_name": "Sarah Smith", "specialization": "Cardiology",
     "license_number": "SLMC-DEMO-001", "experience_years": 15, "in_person_fee": "2500.00", "remote_fee": "1800.00"},
    {"email": "michael@demo.com", "full_name": "Michael Johnson", "specialization": "Pediatrics",
     "license_number": "SLMC-DEMO-002", "experience_years": 8, "in_person_fee": "2000.00", "remote_fee": "1500.00"},
]


def seed_roles():
    """Creates any missing default roles; returns the names added."""
    existing = {r.name for r in Role.query.all()}
    added = [name for name in DEFAULT_ROLES if name not in existing]
    for name in added:
        db.session.add(Role(name=name))
    db.session.commit()
    return added


def seed_demo(password: str):
    """
    Demo hospitals and doctor accounts for a sandbox checkout walkthrough.
    Existing rows (matched by name / email) are left alone.
    """
    password_hash = hash_password(password)
    seed_roles()
    doctor_role = Role.query.filter_by(name=ROLE_DOCTOR).first()
    created = {"hospitals": 0, "doctors": 0}

    for row in DEMO_HOSPITALS:
        if Hospital.query.filter_by(name=row["name"]).first() is None:
            db.session.add(Hospital(**row))
            created["hospitals"] += 1

    for row in DEMO_DOCTORS:
        user = User.query.filter_by(email=row["email"]).first()
        if user is None:
            user = User(email=row["email"], password_hash=password_hash, full_name=row["full_name"])
            db.session.add(user)
            db.session.flush()
        if doctor_role not in user.roles:
            user.roles.append(doctor_role)
        if Doctor.query.filter_by(user_id=user.id).first() is None:
            db.session.add(Doctor(
                user_id=user.id,
                specialization=row["specialization"],
                license_number=row["license_number"],
                experience_years=row["experience_years"],
                in_person_fee=Decimal(row["in_person_fee"]),
                remote_fee=Decimal(row["remote_fee"]),
            ))
            created["doctors"] += 1

    db.session.commit()
    return created
