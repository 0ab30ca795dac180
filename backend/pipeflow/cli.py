# Overview: Flask CLI command groups for storage bootstrap/inspection and remote sync.

# backend/pipeflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to pipeflow (PowerShell: $env:FLASK_APP="pipeflow").
# - Use: python -m flask <group> <command> [options]
#
# Storage:
# - python -m flask storage init
#   Select the backend, run the one-time fallback migration, seed defaults.
#   Needed only when STORAGE_AUTO_INITIALIZE is off.
# - python -m flask storage migrate
#   Run the fallback -> entity store migration now (no-op once completed).
# - python -m flask storage status
#   Show mode, migration state and record counts.
# - python -m flask storage list inventory
#   Print the records of one entity type.
#
# Sync:
# - python -m flask sync run [--type sale]
#   Sync every type (inventory, sale, customer) or just one.
# - python -m flask sync offline
#   Replay entity types that failed while the remote was unreachable.
# - python -m flask sync status
#   Show cursors, queued requests, offline markers and last results.
# - python -m flask sync configure --url https://xyz.example.co --key <api-key>
#   Point sync at a remote store (persisted in the app settings record).
# - python -m flask sync reset-cursor [--type sale] --yes
#   Forget the sync cursor so the next pass covers the full history.

import json

import click
from flask import current_app
from flask.cli import with_appcontext

from .entities import EntityType, SYNC_ORDER
from .extensions import get_services
from .validation import ValidationError, parse_entity_type

ENTITY_CHOICES = click.Choice([et.value for et in EntityType])
SYNC_CHOICES = click.Choice([et.value for et in SYNC_ORDER])


@click.group('storage')
def storage_group():
    """Local storage bootstrap and inspection commands."""


@storage_group.command('init')
@with_appcontext
def init_storage_cli():
    """Initialize storage (idempotent)."""
    from . import initialize_storage

    ready = initialize_storage(current_app)
    gateway = get_services().gateway
    if not ready:
        click.echo("FAIL Storage could not be initialized; see the log for details.")
        raise SystemExit(1)
    click.echo(f"PASS Storage ready in {gateway.mode.value} mode")
    if gateway.fallback_reason:
        click.echo(f"   Fallback reason: {gateway.fallback_reason}")


@storage_group.command('migrate')
@with_appcontext
def migrate_storage_cli():
    """
    Copy the fallback store into the entity store.

    Skipped records are listed with their reason; the migration is still
    marked complete (records are not retried).
    """
    gateway = get_services().gateway
    if gateway.migration is None:
        click.echo("FAIL Entity store is not active; nothing to migrate into.")
        raise SystemExit(1)

    report = gateway.migration.ensure_migrated()
    if report.already_completed:
        click.echo("PASS Migration already completed; no changes made.")
        return

    click.echo(f"PASS Migrated {report.migrated} records ({report.already_present} already present)")
    for et, count in report.per_type.items():
        click.echo(f"   {et:<12} {count}")
    for skipped in report.skipped:
        click.echo(f"WARN Skipped {skipped['entity_type']}/{skipped['id']}: {skipped['reason']}")


@storage_group.command('status')
@with_appcontext
def storage_status_cli():
    """Show storage mode, migration state and record counts."""
    status = get_services().gateway.status()
    click.echo(f"Mode:       {status['mode']}")
    click.echo(f"Ready:      {'Yes' if status['ready'] else 'No'}")
    if status["fallback_reason"]:
        click.echo(f"Reason:     {status['fallback_reason']}")
    if status["migration"]:
        click.echo(f"Migration:  {status['migration']['state']}")
    click.echo(f"Repairs:    {status['pending_repairs']} pending")

    click.echo("\n" + "=" * 40)
    click.echo(f"{'Entity type':<20} {'Records':>10}")
    click.echo("=" * 40)
    for et, count in status["counts"].items():
        click.echo(f"{et:<20} {count:>10}")
    click.echo("=" * 40 + "\n")


@storage_group.command('list')
@click.argument('entity_type', type=ENTITY_CHOICES)
@with_appcontext
def list_records_cli(entity_type):
    """Print every record of ENTITY_TYPE as JSON lines."""
    records = get_services().gateway.list(entity_type)
    if not records:
        click.echo("No records found.")
        return
    for record in records:
        click.echo(json.dumps(record, sort_keys=True))


@click.group('sync')
def sync_group():
    """Remote synchronisation commands."""


def _echo_result(result: dict) -> None:
    stats = result["stats"]
    label = "PASS" if result["success"] else "FAIL"
    line = f"{label} {result['entity_type']:<10} pulled={stats['pulled']} pushed={stats['pushed']} skipped={stats['skipped']}"
    if result["reason"]:
        line += f" ({result['reason']})"
    click.echo(line)


@sync_group.command('run')
@click.option('--type', 'entity_type', type=SYNC_CHOICES, help='Sync only this entity type')
@with_appcontext
def run_sync_cli(entity_type):
    """Run a sync pass."""
    sync = get_services().sync
    if entity_type:
        result = sync.sync_entity_type(entity_type).to_dict()
        _echo_result(result)
        success = result["success"]
    else:
        outcome = sync.sync_all()
        for result in outcome["results"].values():
            _echo_result(result)
        success = outcome["success"]
    if not success:
        raise SystemExit(1)


@sync_group.command('offline')
@with_appcontext
def process_offline_cli():
    """Replay entity types queued while offline."""
    outcome = get_services().sync.process_offline_changes()
    if outcome.get("offline"):
        click.echo("FAIL Remote still unreachable.")
        raise SystemExit(1)
    for result in outcome["processed"].values():
        _echo_result(result)
    if outcome["remaining"]:
        click.echo(f"WARN Still pending: {', '.join(outcome['remaining'])}")
        raise SystemExit(1)
    click.echo("PASS No offline changes pending.")


@sync_group.command('status')
@with_appcontext
def sync_status_cli():
    """Show cursors, queues and offline markers."""
    status = get_services().sync.status()
    click.echo(f"Remote configured: {'Yes' if status['remote_configured'] else 'No'}")
    if status["remote_url"]:
        click.echo(f"Remote URL:        {status['remote_url']}")
    click.echo(f"Running:           {', '.join(status['running']) or '-'}")

    click.echo("\n" + "=" * 80)
    click.echo(f"{'Entity type':<12} {'Local cursor':<30} {'Remote cursor':<30} {'Queued':>6}")
    click.echo("=" * 80)
    for et, cursor in status["cursors"].items():
        remote_cursor = status["remote_cursors"].get(et)
        click.echo(f"{et:<12} {cursor or 'never':<30} {remote_cursor or 'never':<30} {status['queued'].get(et, 0):>6}")
    click.echo("=" * 80)

    for marker in status["offline_markers"]:
        click.echo(f"OFFLINE {marker['entity_type']} since {marker['queued_at']} ({marker['attempts']} attempts)")


@sync_group.command('configure')
@click.option('--url', required=True, help='Remote store base URL')
@click.option('--key', required=True, help='Remote store API key')
@with_appcontext
def configure_remote_cli(url, key):
    """Set the remote endpoint and credential."""
    sync = get_services().sync
    try:
        sync.configure_remote(url, key)
    except ValidationError as e:
        click.echo(f"FAIL Error: {str(e)}")
        raise SystemExit(1)
    reachable = sync.remote.is_available()
    click.echo(f"PASS Remote set to {url} ({'reachable' if reachable else 'not reachable right now'})")


@sync_group.command('reset-cursor')
@click.option('--type', 'entity_type', type=SYNC_CHOICES, help='Reset only this entity type')
@click.option('--yes', is_flag=True, help='Confirm the reset')
@with_appcontext
def reset_cursor_cli(entity_type, yes):
    """Forget sync cursors; the next pass re-covers the full history."""
    if not yes:
        click.echo("FAIL Refusing to reset cursors without --yes")
        raise SystemExit(1)
    et = parse_entity_type(entity_type) if entity_type else None
    get_services().sync.cursors.reset(et)
    click.echo(f"PASS Cursor reset for {et.value if et else 'all entity types'}")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(storage_group)
    app.cli.add_command(sync_group)
