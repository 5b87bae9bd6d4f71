from datetime import datetime
from models.db import db

class Doctor(db.Model):
    __tablename__ = "doctors"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, unique=True, index=True)

    specialization = db.Column(db.String(80), nullable=False)
    license_number = db.Column(db.String(60), unique=True, nullable=False)
    experience_years = db.Column(db.Integer, nullable=False, default=0)

    # fee per consultation mode
    in_person_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    remote_fee = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    user = db.relationship("User")

    @property
    def display_name(self) -> str:
        name = self.user.full_name if self.user and self.user.full_name else "Doctor"
        return f"Dr. {name}"

    def fee_for(self, consultation_type: str):
        return self.in_person_fee if consultation_type == "in_person" else self.remote_fee
