# File: backend/run.py
"""Application entry point."""
import os

import click
from dotenv import load_dotenv
from flask.cli import with_appcontext

# Load environment variables before the config classes read them
load_dotenv()

from attendance_engine import create_app, db  # noqa: E402

# Create Flask app
app = create_app(os.getenv('FLASK_ENV', 'development'))


@app.cli.command('reset-db')
@with_appcontext
def reset_db():
    """Reset database completely."""
    if click.confirm('This will delete all data and recreate tables. Continue?'):
        db.drop_all()
        db.create_all()
        click.echo('✅ Database reset complete!')

        if click.confirm('Seed the demo class?'):
            from attendance_engine.services.seed_service import SeedService
            SeedService.seed_all()


if __name__ == '__main__':
    # Development server
    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    debug = os.environ.get('FLASK_ENV') == 'development'

    app.run(host=host, port=port, debug=debug)
