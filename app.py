import logging
from datetime import timedelta

import click
from flask import Flask, request, g

from config import Config, validate_config
from models import db
from models.user import User, Role
from flask_migrate import Migrate
from routes import health_bp, auth_bp, doctors_bp, appointments_bp, payments_bp
from security.csrf import csrf_protect
from security.rbac import load_current_user, ROLE_ADMIN
from utils.reconciler import bulk_reconcile
from utils.seed import seed_demo, seed_roles


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)

    # Refuse to start without merchant credentials
    validate_config(app.config)
    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(doctors_bp)
    app.register_blueprint(appointments_bp)
    app.register_blueprint(payments_bp)

    # Database init
    db.init_app(app)

    # Migrations
    Migrate(app, db)

    @app.before_request
    def _load_user():
        # the gateway callback never carries a session
        if request.path == "/payments/notify":
            g.user = None
            g.session = None
            return
        load_current_user()

    app.before_request(csrf_protect)

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    register_cli(app)

    app.logger.info(
        "PayHere configured for merchant %s (%s)",
        app.config["PAYHERE_MERCHANT_ID"],
        "sandbox" if app.config.get("PAYHERE_SANDBOX") else "live",
    )
    return app

#-------------------------

def register_cli(app):
    @app.cli.command("seed-roles")
    def seed_roles_command():
        """Create the default PATIENT/DOCTOR/ADMIN roles."""
        added = seed_roles()
        print("Roles seeded: " + (", ".join(added) if added else "none missing"))

    @app.cli.command("seed-demo")
    @click.option("--password", prompt=True, hide_input=True, help="Password for the demo doctor accounts.")
    def seed_demo_command(password):
        """Add demo hospitals and doctors for sandbox testing."""
        try:
            created = seed_demo(password)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--password")
        print(f"Created {created['hospitals']} hospitals and {created['doctors']} doctors")

    @app.cli.command("make-admin")
    @click.argument("email")
    def make_admin(email):
        """Promote a user to ADMIN by email (bootstrap)."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if not user:
            print("User not found")
            return

        admin_role = Role.query.filter_by(name=ROLE_ADMIN).first()
        if not admin_role:
            admin_role = Role(name=ROLE_ADMIN)
            db.session.add(admin_role)
            db.session.commit()

        if admin_role not in user.roles:
            user.roles.append(admin_role)
            db.session.commit()

        print(f"{user.email} promoted to ADMIN")

    @app.cli.command("reconcile-pending")
    @click.option("--minutes", type=int, default=None, help="Age threshold for pending payments.")
    def reconcile_pending(minutes):
        """Promote stale pending payments (lost webhooks) and confirm their appointments."""
        if minutes is None:
            minutes = app.config.get("PENDING_RECONCILE_MINUTES", 5)
        # the process exits straight after; background sends would be cut off
        app.config["EMAIL_ASYNC"] = False
        outcome = bulk_reconcile(timedelta(minutes=minutes))
        for row in outcome["results"]:
            print(f"payment {row['payment_id']}: {row['status']}" + (f" ({row['error']})" if row.get("error") else ""))
        print(f"Fixed {outcome['fixed_count']} of {outcome['total_pending']} pending payments")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
