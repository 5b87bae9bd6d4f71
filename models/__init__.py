from .db import db
from .user import User, Role, user_roles
from .audit_log import AuditLog
from .session import Session
from .hospital import Hospital
from .doctor import Doctor
from .appointment import Appointment
from .payment import Payment
