"""
Authorization Workflow Engine
Database models package.

Holds the shared Flask-SQLAlchemy instance. Model modules import ``db``
from here and are imported by the app factory so Alembic sees them.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
