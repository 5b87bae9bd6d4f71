from datetime import datetime
from models.db import db
from security.payhere import order_id_for

PAYMENT_STATUSES = ("pending", "completed", "failed", "cancelled", "refunded", "unknown")

class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = db.Column(db.Integer, db.ForeignKey("doctors.id"), nullable=False, index=True)

    method = db.Column(db.String(20), nullable=False, default="payhere")  # payhere, cash, card
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="LKR")

    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    payment_reference = db.Column(db.String(120), nullable=True)  # gateway payment id
    payment_date = db.Column(db.DateTime, nullable=True)

    refund_date = db.Column(db.DateTime, nullable=True)
    refund_amount = db.Column(db.Numeric(10, 2), nullable=True)

    # raw notification body, stored verbatim
    gateway_response = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    appointment = db.relationship("Appointment")
    patient = db.relationship("User")
    doctor = db.relationship("Doctor")

    @property
    def order_id(self) -> str:
        return order_id_for(self.id)

    def to_dict(self):
        return {
            "id": self.id,
            "order_id": self.order_id,
            "appointment_id": self.appointment_id,
            "amount": f"{self.amount:.2f}",
            "currency": self.currency,
            "method": self.method,
            "status": self.status,
            "payment_reference": self.payment_reference,
            "payment_date": self.payment_date.isoformat() if self.payment_date else None,
            "created_at": self.created_at.isoformat(),
        }
