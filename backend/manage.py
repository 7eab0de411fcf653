#!/usr/bin/env python
"""
Management Script

Database migrations come from Flask-Migrate; the operator commands
(locks, sync, queue, sources) are registered by the app factory.

Usage:
    # Apply migrations
    python manage.py db upgrade

    # Create a new migration
    python manage.py db migrate -m "Add new column"

    # Operator commands
    python manage.py locks status
    python manage.py sync gh_123 --force
    python manage.py queue process --queue content_sync
"""
import os
import sys

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask.cli import with_appcontext
import click

from article_sync import create_app
from article_sync.extensions import db

# Create app instance
app = create_app()


@app.cli.command('db-status')
@with_appcontext
def db_status():
    """Show database connection status and table info."""
    try:
        db.session.execute(db.text('SELECT 1')).fetchone()
        click.echo(click.style('✓ Database connection OK', fg='green'))

        tables = db.inspect(db.engine).get_table_names()
        click.echo('\nTables in database:')
        for table in tables:
            click.echo(f'  - {table}')

    except Exception as e:
        click.echo(click.style(f'✗ Database error: {e}', fg='red'))


@app.cli.command('create-tables')
@with_appcontext
def create_tables():
    """Create missing tables without migrations (local development)."""
    db.create_all()
    click.echo(click.style('✓ Tables created', fg='green'))


if __name__ == '__main__':
    app.cli()
