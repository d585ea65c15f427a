# Overview: Flask CLI command groups for bootstrap, stock housekeeping, and maintenance.

# backend/app/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users (normally provisioned by the auth provider):
# - python -m flask users create --email admin@pharmacy.local --name "Admin" --role ADMIN
# - python -m flask users issue-token --email admin@pharmacy.local
#   Mint a bearer token for scripts and manual API testing.
#
# Stock housekeeping:
# - python -m flask stock cleanup-reservations
#   Delete reservations whose hold window has passed. Run periodically.
#
# Maintenance:
# - python -m flask maintenance cleanup-audit-log --retention-days 365
# - python -m flask maintenance cleanup-movements --retention-days 1825

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .models import User, UserRole
from .services import audit_service, reservation_service, session_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema ready.")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


@click.group('users')
def users_group():
    """User bootstrap commands."""


@users_group.command('create')
@click.option('--email', prompt=True)
@click.option('--name', prompt=True)
@click.option('--role', type=click.Choice([r.value for r in UserRole]), default=UserRole.PHARMACIST.value, show_default=True)
@click.option('--pharmacy-name', default=None)
@with_appcontext
def create_user_cli(email, name, role, pharmacy_name):
    """Create a staff user."""
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).first():
        raise click.ClickException(f"User {email} already exists")

    user = User(email=email, name=name.strip(), role=role, pharmacy_name=pharmacy_name, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user {user.email} (ID: {user.id}, role: {user.role})")


@users_group.command('issue-token')
@click.option('--email', required=True)
@click.option('--hours', type=int, default=24, show_default=True)
@with_appcontext
def issue_token_cli(email, hours):
    """Create a session for a user and print its bearer token."""
    from datetime import timedelta

    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user:
        raise click.ClickException(f"User {email} not found")

    try:
        _, token = session_service.create_session(user.id, user_agent="flask-cli", ttl=timedelta(hours=hours))
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(token)


@click.group('stock')
def stock_group():
    """Stock housekeeping commands."""


@stock_group.command('cleanup-reservations')
@with_appcontext
def cleanup_reservations_cli():
    """Delete expired stock reservations."""
    removed = reservation_service.cleanup_expired_reservations()
    click.echo(f"Removed {removed} expired reservations.")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-audit-log')
@click.option('--retention-days', type=int, default=None, help='Defaults to AUDIT_LOG_RETENTION_DAYS')
@with_appcontext
def cleanup_audit_log_cli(retention_days):
    """Delete stock audit events older than the retention window."""
    if retention_days is None:
        retention_days = current_app.config["AUDIT_LOG_RETENTION_DAYS"]
    deleted = audit_service.cleanup_old_audit_logs(retention_days=retention_days)
    click.echo(f"Deleted {deleted} stock audit events older than {retention_days} days.")


@maintenance_group.command('cleanup-movements')
@click.option('--retention-days', type=int, default=None, help='Defaults to MOVEMENT_RETENTION_DAYS')
@with_appcontext
def cleanup_movements_cli(retention_days):
    """Delete stock movements older than the retention window."""
    if retention_days is None:
        retention_days = current_app.config["MOVEMENT_RETENTION_DAYS"]
    deleted = audit_service.cleanup_old_movements(retention_days=retention_days)
    click.echo(f"Deleted {deleted} stock movements older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(maintenance_group)
