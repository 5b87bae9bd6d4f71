from models import db


def test_reconcile_pending_command(app, pending_payment, appointment, outbox):
    result = app.test_cli_runner().invoke(args=["reconcile-pending", "--minutes", "0"])

    assert result.exit_code == 0
    assert f"payment {pending_payment.id}: fixed" in result.output
    assert "Fixed 1 of 1 pending payments" in result.output

    db.session.expire_all()
    assert appointment.status == "confirmed"
    assert len(outbox) == 1


def test_make_admin_command(app, patient):
    result = app.test_cli_runner().invoke(args=["make-admin", patient.email])

    assert "promoted to ADMIN" in result.output
    db.session.expire_all()
    assert patient.has_role("ADMIN")


def test_seed_demo_command_is_idempotent(app):
    runner = app.test_cli_runner()

    first = runner.invoke(args=["seed-demo", "--password", "demo-pass-123"])
    second = runner.invoke(args=["seed-demo", "--password", "demo-pass-123"])

    assert "Created 2 hospitals and 2 doctors" in first.output
    assert "Created 0 hospitals and 0 doctors" in second.output


def test_seed_demo_rejects_short_password(app):
    result = app.test_cli_runner().invoke(args=["seed-demo", "--password", "short"])
    assert result.exit_code != 0


def test_seed_roles_command_reports_nothing_missing(app):
    result = app.test_cli_runner().invoke(args=["seed-roles"])
    assert "Roles seeded: none missing" in result.output
