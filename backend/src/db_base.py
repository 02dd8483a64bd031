"""
SQLAlchemy declarative base for agent job models.

Kept separate from src.models so Alembic and the session layer can import
the metadata without importing every model module.
"""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
