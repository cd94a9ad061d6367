"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask db upgrade
    flask seed-matrix
"""

from app import create_app

app = create_app()
