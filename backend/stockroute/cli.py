# Overview: Flask CLI command groups for bootstrap and inspection.

# backend/stockroute/cli.py
# Commands Legend (run from the backend directory):
# - flask --app stockroute system init-db
#   Create all tables (idempotent).
# - flask --app stockroute system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
# - flask --app stockroute system seed-demo
#   Demo store, warehouse, users and role grants for trying the workflow.
# - flask --app stockroute users create --name "Ana Lopez" --email ana@example.com
# - flask --app stockroute users list
# - flask --app stockroute locations list [--type warehouse]
# - flask --app stockroute roles grant --user-id 1 --location-id 2 --role store_manager
# - flask --app stockroute roles list [--user-id 1] [--location-id 2]
# - flask --app stockroute transfers list [--status requested]
# - flask --app stockroute transfers history TRANSFER_ID

import click
from flask.cli import with_appcontext

from .errors import TransferWorkflowError
from .extensions import db
from .models import Location, Transfer, User
from .services import directory_service, location_service, role_service, status_log_service
from .workflow import Role, validate_status


def _fail(exc: Exception):
    db.session.rollback()
    raise click.ClickException(str(exc))


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created.")


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

    click.echo("PASS Database reset complete. Run 'flask system seed-demo' for demo data.")


_DEMO_LOCATIONS = [
    {"location_name": "Downtown Store", "location_code": "STR-01", "location_type": "store", "city": "Springfield"},
    {"location_name": "Uptown Store", "location_code": "STR-02", "location_type": "store", "city": "Springfield"},
    {"location_name": "Central Warehouse", "location_code": "WH-01", "location_type": "warehouse", "city": "Shelbyville"},
]

# (full name, email, role, location code)
_DEMO_USERS = [
    ("Lina Lineman", "lineman@stockroute.local", Role.LINEMAN, "STR-01"),
    ("Sam Store", "store.manager@stockroute.local", Role.STORE_MANAGER, "STR-01"),
    ("Wendy Warehouse", "warehouse.manager@stockroute.local", Role.WAREHOUSE_MANAGER, "WH-01"),
    ("Pat Packer", "packer@stockroute.local", Role.PACKING_TEAM, "WH-01"),
    ("Logan Logistics", "logistics.manager@stockroute.local", Role.LOGISTICS_MANAGER, "WH-01"),
    ("Drew Driver", "driver@stockroute.local", Role.LOGISTICS_TEAM, "WH-01"),
]


@system_group.command('seed-demo')
@with_appcontext
def seed_demo():
    """Create demo locations, users and role grants (skips anything that exists)."""
    db.create_all()
    try:
        by_code = {}
        for payload in _DEMO_LOCATIONS:
            existing = db.session.query(Location).filter_by(location_code=payload["location_code"]).first()
            by_code[payload["location_code"]] = existing or location_service.create_location(dict(payload))

        for full_name, email, role, code in _DEMO_USERS:
            user = db.session.query(User).filter_by(email=email).first()
            if not user:
                user = directory_service.create_user(full_name=full_name, email=email)
                click.echo(f"PASS Created user {email} (ID: {user.id})")
            location = by_code[code]
            if not role_service.authorize(user, location.id, role):
                role_service.grant_role(user_id=user.id, location_id=location.id, role=role)
                click.echo(f"PASS Granted {role.value} at {code} to {email}")
        db.session.commit()
    except TransferWorkflowError as exc:
        _fail(exc)
    click.echo("PASS Demo data ready.")


@click.group('users')
def users_group():
    """Identity directory commands."""


@users_group.command('create')
@click.option('--name', 'full_name', prompt=True, help='Display name')
@click.option('--email', prompt=True, help='Email address (unique)')
@with_appcontext
def create_user(full_name, email):
    try:
        user = directory_service.create_user(full_name=full_name, email=email)
        db.session.commit()
    except TransferWorkflowError as exc:
        _fail(exc)
    click.echo(f"PASS Created user {user.email} (ID: {user.id})")


@users_group.command('list')
@with_appcontext
def list_users():
    users = db.session.query(User).order_by(User.id.asc()).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo(f"{'ID':<5} {'Name':<25} {'Email':<40} {'Active'}")
    for user in users:
        click.echo(f"{user.id:<5} {user.full_name:<25} {user.email:<40} {'Yes' if user.is_active else 'No'}")


@click.group('locations')
def locations_group():
    """Location registry commands."""


@locations_group.command('list')
@click.option('--type', 'location_type', type=click.Choice(['store', 'warehouse']), help='Filter by type')
@with_appcontext
def list_locations(location_type):
    locations, stats = location_service.list_locations(location_type=location_type)
    if not locations:
        click.echo("No locations found.")
        return
    click.echo(f"{'ID':<5} {'Code':<10} {'Type':<10} {'Active':<7} Name")
    for loc in locations:
        click.echo(f"{loc.id:<5} {loc.location_code:<10} {loc.location_type:<10} {'Yes' if loc.is_active else 'No':<7} {loc.location_name}")
    click.echo(f"\n{stats['total']} total, {stats['stores']} stores, {stats['warehouses']} warehouses, {stats['active']} active")


@click.group('roles')
def roles_group():
    """Workflow role assignment commands."""


@roles_group.command('grant')
@click.option('--user-id', type=int, required=True)
@click.option('--location-id', type=int, required=True)
@click.option('--role', type=click.Choice([r.value for r in Role]), required=True)
@with_appcontext
def grant_role(user_id, location_id, role):
    try:
        assignment = role_service.grant_role(user_id=user_id, location_id=location_id, role=role)
        db.session.commit()
    except TransferWorkflowError as exc:
        _fail(exc)
    click.echo(f"PASS Granted {assignment.role} at location {assignment.location_id} to user {assignment.user_id}")


@roles_group.command('list')
@click.option('--user-id', type=int, help='Filter by user')
@click.option('--location-id', type=int, help='Filter by location')
@with_appcontext
def list_roles(user_id, location_id):
    assignments = role_service.list_roles(user_id=user_id, location_id=location_id)
    if not assignments:
        click.echo("No role assignments found.")
        return
    click.echo(f"{'ID':<5} {'User':<25} {'Location':<10} Role")
    for a in assignments:
        click.echo(f"{a.id:<5} {a.user.full_name:<25} {a.location.location_code:<10} {a.role}")


@click.group('transfers')
def transfers_group():
    """Transfer inspection commands."""


@transfers_group.command('list')
@click.option('--status', help='Filter by transfer status')
@click.option('--limit', default=50, show_default=True, type=int)
@with_appcontext
def list_transfers(status, limit):
    query = db.session.query(Transfer)
    if status:
        try:
            validate_status(status)
        except TransferWorkflowError as exc:
            raise click.BadParameter(str(exc), param_hint='--status')
        query = query.filter_by(transfer_status=status)
    transfers = query.order_by(Transfer.requested_at.desc(), Transfer.id.desc()).limit(limit).all()
    if not transfers:
        click.echo("No transfers found.")
        return
    click.echo(f"{'ID':<5} {'Number':<20} {'Status':<20} Route")
    for t in transfers:
        click.echo(f"{t.id:<5} {t.transfer_number:<20} {t.transfer_status:<20} {t.source_label} -> {t.destination_label}")


@transfers_group.command('history')
@click.argument('transfer_id', type=int)
@with_appcontext
def transfer_history(transfer_id):
    transfer = db.session.get(Transfer, transfer_id)
    if not transfer:
        raise click.ClickException("Transfer not found")
    click.echo(f"{transfer.transfer_number}: {transfer.source_label} -> {transfer.destination_label}")
    for entry in status_log_service.history(transfer.id):
        arrow = f"{entry['from_status'] or '-'} -> {entry['to_status']}"
        who = entry['changed_by_name'] or 'system'
        note = f"  ({entry['notes']})" if entry['notes'] else ""
        click.echo(f"{entry['changed_at']}  {arrow:<35} {who}{note}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(locations_group)
    app.cli.add_command(roles_group)
    app.cli.add_command(transfers_group)
