"""
Flask-Migrate / Alembic and gunicorn entry point.

Usage:
    flask --app wsgi db upgrade
    gunicorn wsgi:app
"""

from advisory import create_app

app = create_app()
