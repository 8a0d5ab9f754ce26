# Overview: Flask CLI command groups for account bootstrap and maintenance.

# backend/quickprint/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Users:
# - python -m flask users create-admin --email admin@thequickprint.in --password "Password123"
#   Create an ADMIN account with a password (prompts if options are omitted).
# - python -m flask users list [--role SHOP]
#   List accounts, optionally filtered by role.
#
# Maintenance:
# - python -m flask maintenance purge-expired
#   Delete expired OTPs, refresh tokens, passkey challenges and pending partner registrations.
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.

import click
from flask.cli import with_appcontext
from sqlalchemy.exc import IntegrityError

from .extensions import db
from .models import User
from .models.identity import AUTH_PASSWORD, ROLE_ADMIN, ROLES
from .services import maintenance_service
from .services.container import get_services
from .services.passwords import PasswordValidationError, hash_password


@click.group('users')
def users_group():
    """Account inspection and bootstrap commands."""


@users_group.command('create-admin')
@click.option('--email', prompt=True, help='Email address')
@click.option('--name', default='Admin', show_default=True, help='Display name')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@with_appcontext
def create_admin_cli(email, name, password):
    """
    Create an ADMIN account.

    Password must be at least 8 characters with a letter and a digit.
    """
    email = email.strip().lower()
    if db.session.query(User).filter_by(email=email).first():
        click.echo(f"FAIL User '{email}' already exists")
        return

    try:
        password_hash = hash_password(password)
    except PasswordValidationError as e:
        click.echo(f"FAIL {e}")
        return

    user = User(
        email=email,
        name=name,
        password_hash=password_hash,
        role=ROLE_ADMIN,
        auth_method=AUTH_PASSWORD,
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        click.echo(f"FAIL User '{email}' already exists")
        return
    click.echo(f"OK Created admin {user.id} ({email})")


@users_group.command('list')
@click.option('--role', type=click.Choice(ROLES), help='Filter by role')
@with_appcontext
def list_users(role):
    """List all users."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.id.asc()).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "=" * 100)
    click.echo(f"{'ID':<5} {'Role':<8} {'Phone':<15} {'Email':<35} {'Auth':<10} {'Shop'}")
    click.echo("=" * 100)
    for user in users:
        shop_name = user.shop.business_name if user.shop else '-'
        click.echo(
            f"{user.id:<5} {user.role:<8} {user.phone or '-':<15} {user.email or '-':<35} "
            f"{user.auth_method:<10} {shop_name}"
        )
    click.echo("=" * 100 + "\n")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-expired')
@with_appcontext
def purge_expired_cli():
    """Delete expired identity rows."""
    counts = maintenance_service.purge_expired(get_services())
    for table, count in counts.items():
        click.echo(f"{table}: {count} deleted")


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    deleted = maintenance_service.cleanup_security_events(retention_days)
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
