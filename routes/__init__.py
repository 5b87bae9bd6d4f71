from .health import health_bp
from .auth import auth_bp
from .doctors import doctors_bp
from .appointments import appointments_bp
from .payments import payments_bp
