"""
Operator CLI commands (registered on ``app.cli``)

    flask locks status | release KEY | clean
    flask sync SOURCE_ID [--force] [--bypass-lock] [--max-articles N]
                         [--begin-date YYYY-MM-DD] [--end-date YYYY-MM-DD]
    flask queue enqueue-sync SOURCE_ID | process | health | recover
    flask queue retry-failed | retry TASK_ID | cancel TASK_ID
    flask sources add SOURCE_ID | list
"""
import json

import click
from flask import current_app
from flask.cli import AppGroup, with_appcontext

from .extensions import db
from .models import SourceAccount
from .services import LockStore
from .services.factory import build_sync_orchestrator, build_task_queue
from .utils.validators import parse_date, validate_source_id

locks_cli = AppGroup('locks', help='Inspect and clean distributed locks.')
queue_cli = AppGroup('queue', help='Background task queue.')
sources_cli = AppGroup('sources', help='Content source accounts.')


class DateParam(click.ParamType):
    name = 'date'

    def convert(self, value, param, ctx):
        try:
            return parse_date(value)
        except ValueError:
            self.fail(f'{value!r} is not a YYYY-MM-DD date', param, ctx)


DATE = DateParam()


def _echo_json(data) -> None:
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


# ==================== locks ====================

@locks_cli.command('status')
def locks_status():
    """List every lock row with its remaining lease."""
    locks = LockStore().list_locks()
    if not locks:
        click.echo('No locks held')
        return

    for lock in locks:
        state = click.style('active', fg='yellow') if lock['active'] else click.style('expired', fg='white')
        click.echo(f"{lock['key']:<40} {state:<20} expires {lock['expires_at']} ({lock['remaining_seconds']}s left)")


@locks_cli.command('release')
@click.argument('key')
def locks_release(key):
    """Force-release KEY regardless of its holder."""
    if LockStore().force_release(key):
        click.echo(click.style(f'✓ Released {key}', fg='green'))
    else:
        click.echo(f'No lock named {key}')


@locks_cli.command('clean')
def locks_clean():
    """Delete all expired locks."""
    removed = LockStore().sweep_expired()
    if removed > 0:
        click.echo(click.style(f'✓ Removed {removed} expired locks', fg='green'))
    else:
        click.echo('No expired locks found')


# ==================== sync ====================

@click.command('sync')
@click.argument('source_id')
@click.option('--force', 'force_update', is_flag=True, help='Re-process articles that already exist.')
@click.option('--bypass-lock', is_flag=True, help='Skip the per-source lock (concurrent runs may race).')
@click.option('--max-articles', type=click.IntRange(min=0), default=0, show_default=True,
              help='Stop after this many articles (0 = all).')
@click.option('--begin-date', type=DATE, default=None, help='Only articles published on or after this date.')
@click.option('--end-date', type=DATE, default=None, help='Only articles published before this date.')
@with_appcontext
def sync_command(source_id, force_update, bypass_lock, max_articles, begin_date, end_date):
    """Run one sync of SOURCE_ID in the foreground and print its summary.

    Exits 0 when the run succeeded, 1 otherwise (including a busy lock).
    """
    if bypass_lock:
        click.echo(click.style('! Lock bypassed: concurrent runs of this source are not excluded', fg='yellow'),
                   err=True)

    run = build_sync_orchestrator(current_app.config).sync(
        source_id,
        force_update=force_update,
        bypass_lock=bypass_lock,
        max_articles=max_articles,
        begin_date=begin_date,
        end_date=end_date,
    )
    _echo_json(run.to_dict())
    click.get_current_context().exit(0 if run.success else 1)


# ==================== queue ====================

@queue_cli.command('enqueue-sync')
@click.argument('source_id')
@click.option('--force', 'force_update', is_flag=True)
@click.option('--bypass-lock', is_flag=True)
@click.option('--max-articles', type=click.IntRange(min=0), default=0)
@click.option('--priority', type=click.IntRange(1, 10), default=5, show_default=True)
def queue_enqueue_sync(source_id, force_update, bypass_lock, max_articles, priority):
    """Enqueue a content sync of SOURCE_ID."""
    task = build_task_queue(current_app.config).enqueue_content_sync(
        source_id,
        force_update=force_update,
        bypass_lock=bypass_lock,
        max_articles=max_articles,
        priority=priority,
    )
    click.echo(click.style(f'✓ Enqueued task {task.id} on {task.queue_name}', fg='green'))


@queue_cli.command('process')
@click.option('--queue', 'queue_name', default=None, help='Queue name (default: all queues).')
@click.option('--limit', type=click.IntRange(min=1), default=None, help='Tasks to claim (default: TASK_BATCH_SIZE).')
def queue_process(queue_name, limit):
    """Claim and run one batch of tasks."""
    queue = build_task_queue(current_app.config)
    queue.cleanup_expired_tasks()
    _echo_json(queue.process_queue(queue_name, limit))


@queue_cli.command('health')
@click.option('--queue', 'queue_name', default=None, help='Queue name (default: all queues).')
def queue_health(queue_name):
    """Show task counts and queue status."""
    _echo_json(build_task_queue(current_app.config).get_queue_health(queue_name))


@queue_cli.command('recover')
@click.option('--timeout', type=click.IntRange(min=1), default=None, help='Seconds (default: TASK_TIMEOUT).')
def queue_recover(timeout):
    """Requeue tasks stuck in running."""
    recovered = build_task_queue(current_app.config).recover_stale_tasks(timeout)
    click.echo(f'Recovered {recovered} stale tasks')


@queue_cli.command('retry-failed')
@click.option('--queue', 'queue_name', default=None, help='Queue name (default: all queues).')
def queue_retry_failed(queue_name):
    """Requeue every failed task."""
    retried = build_task_queue(current_app.config).retry_failed_tasks(queue_name)
    if retried > 0:
        click.echo(click.style(f'✓ Requeued {retried} failed tasks', fg='green'))
    else:
        click.echo('No failed tasks found')


@queue_cli.command('retry')
@click.argument('task_id')
def queue_retry(task_id):
    """Requeue failed or cancelled task TASK_ID."""
    if build_task_queue(current_app.config).retry_task(task_id):
        click.echo(click.style(f'✓ Requeued task {task_id}', fg='green'))
    else:
        click.echo(f'Task {task_id} not found or not failed/cancelled', err=True)
        click.get_current_context().exit(1)


@queue_cli.command('cancel')
@click.argument('task_id')
@click.option('--reason', default='Cancelled by operator', show_default=True)
def queue_cancel(task_id, reason):
    """Cancel pending task TASK_ID."""
    if build_task_queue(current_app.config).cancel_task(task_id, reason):
        click.echo(click.style(f'✓ Cancelled task {task_id}', fg='green'))
    else:
        click.echo(f'Task {task_id} not found or already started', err=True)
        click.get_current_context().exit(1)


# ==================== sources ====================

@sources_cli.command('add')
@click.argument('source_id')
@click.option('--name', default='', help='Display name.')
@click.option('--app-id', required=True)
@click.option('--app-secret', required=True, prompt=True, hide_input=True)
@click.option('--inactive', is_flag=True, help='Create the source disabled.')
def sources_add(source_id, name, app_id, app_secret, inactive):
    """Create or update source SOURCE_ID."""
    valid, error = validate_source_id(source_id)
    if not valid:
        raise click.BadParameter(error, param_hint='SOURCE_ID')

    source = db.session.get(SourceAccount, source_id)
    created = source is None
    if created:
        source = SourceAccount(id=source_id)
        db.session.add(source)

    source.name = name or source.name or source_id
    source.app_id = app_id
    source.set_app_secret(app_secret)
    source.is_active = not inactive
    db.session.commit()

    verb = 'Created' if created else 'Updated'
    click.echo(click.style(f'✓ {verb} source {source_id}', fg='green'))


@sources_cli.command('list')
def sources_list():
    """List source accounts."""
    sources = SourceAccount.query.order_by(SourceAccount.id).all()
    if not sources:
        click.echo('No sources configured')
        return
    for source in sources:
        state = 'active' if source.is_active else 'inactive'
        last = source.last_sync_at.isoformat() if source.last_sync_at else 'never'
        click.echo(f'{source.id:<24} {state:<9} {source.name or "":<30} last sync: {last}')


def register_commands(app) -> None:
    app.cli.add_command(locks_cli)
    app.cli.add_command(sync_command)
    app.cli.add_command(queue_cli)
    app.cli.add_command(sources_cli)
