import os
from datetime import datetime

from flask import current_app
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from utils.notifications import CONSULTATION_LABELS

_GRID = TableStyle([
    ("BOX", (0, 0), (-1, -1), 0.25, colors.black),
    ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.grey),
    ("FONTNAME", (0, 0), (-1, -1), "Helvetica"),
    ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
])


def receipt_path(payment) -> str:
    receipts_dir = current_app.config.get("RECEIPTS_DIR", "/tmp/receipts")
    # keyed by status; a refunded payment gets a fresh receipt
    return os.path.join(receipts_dir, f"receipt_{payment.id}_{payment.status}.pdf")


def render_receipt(payment, appointment, doctor) -> str:
    """
    Writes a one-page payment receipt and returns its path.
    """
    pdf_path = receipt_path(payment)
    os.makedirs(os.path.dirname(pdf_path), exist_ok=True)

    styles = getSampleStyleSheet()
    story = []
    doc = SimpleDocTemplate(
        pdf_path,
        pagesize=A4,
        leftMargin=20 * mm,
        rightMargin=20 * mm,
        topMargin=20 * mm,
        bottomMargin=20 * mm,
    )

    # ---------------- Header ----------------
    story.append(Paragraph("<b>Payment Receipt</b>", styles["Title"]))
    if appointment.hospital is not None:
        story.append(Paragraph(appointment.hospital.name, styles["Normal"]))
    story.append(Spacer(1, 8))

    # ---------------- Payment ----------------
    paid_on = payment.payment_date or datetime.utcnow()
    info = [
        ["Receipt No", payment.order_id],
        ["Date", paid_on.strftime("%d-%b-%Y %H:%M")],
        ["Payment Reference", payment.payment_reference or "-"],
        ["Status", payment.status.upper()],
    ]
    t = Table(info, colWidths=[120, 300])
    t.setStyle(_GRID)
    story.append(t)
    story.append(Spacer(1, 10))

    # ---------------- Appointment ----------------
    patient = appointment.patient
    rows = [
        ["Patient", (patient.full_name or patient.email) if patient else "-"],
        ["Doctor", doctor.display_name if doctor else "-"],
        ["Date / Time", f"{appointment.appointment_date.strftime('%d-%b-%Y')} {appointment.appointment_time}"],
        ["Consultation", CONSULTATION_LABELS.get(appointment.consultation_type, appointment.consultation_type)],
    ]
    at = Table(rows, colWidths=[120, 300])
    at.setStyle(_GRID)
    story.append(at)
    story.append(Spacer(1, 10))

    # ---------------- Totals ----------------
    totals = Table([["Total Paid", f"{payment.currency} {payment.amount:.2f}"]], colWidths=[120, 300])
    totals.setStyle(TableStyle([
        ("BOX", (0, 0), (-1, -1), 0.5, colors.black),
        ("FONTNAME", (0, 0), (-1, -1), "Helvetica-Bold"),
    ]))
    story.append(totals)

    doc.build(story)
    return pdf_path
