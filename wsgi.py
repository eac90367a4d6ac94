"""
WSGI entry point; also the Flask-Migrate / Alembic app.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-workflows
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
