from datetime import datetime
from models.db import db

APPOINTMENT_STATUSES = ("pending_payment", "scheduled", "confirmed", "cancelled", "completed", "no_show")
APPOINTMENT_PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "not_required")
CONSULTATION_TYPES = ("in_person", "remote")

class Appointment(db.Model):
    __tablename__ = "appointments"

    id = db.Column(db.Integer, primary_key=True)

    patient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey("doctors.id"), nullable=False, index=True)
    # only required for in_person consultations
    hospital_id = db.Column(db.Integer, db.ForeignKey("hospitals.id"), nullable=True)

    appointment_date = db.Column(db.Date, nullable=False, index=True)
    appointment_time = db.Column(db.String(5), nullable=False)  # "HH:MM"
    consultation_type = db.Column(db.String(20), nullable=False)
    reason = db.Column(db.String(200), nullable=False)
    consultation_fee = db.Column(db.Numeric(10, 2), nullable=False)

    status = db.Column(db.String(20), nullable=False, default="pending_payment", index=True)
    payment_status = db.Column(db.String(20), nullable=False, default="pending")

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    patient = db.relationship("User")
    doctor = db.relationship("Doctor")
    hospital = db.relationship("Hospital")

    def to_dict(self):
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "doctor_id": self.doctor_id,
            "hospital_id": self.hospital_id,
            "appointment_date": self.appointment_date.isoformat(),
            "appointment_time": self.appointment_time,
            "consultation_type": self.consultation_type,
            "reason": self.reason,
            "consultation_fee": f"{self.consultation_fee:.2f}",
            "status": self.status,
            "payment_status": self.payment_status,
        }
