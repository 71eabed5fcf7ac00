"""Database-agnostic type definitions for SQLAlchemy models.

This module provides type definitions that work with both SQLite and PostgreSQL.
"""
from sqlalchemy import JSON, Uuid

# Use JSON instead of JSONB for cross-database compatibility.
# none_as_null keeps "no quality report" as SQL NULL so guards can test IS NULL.
JSONType = JSON(none_as_null=True)

# UUID type that works with both databases
UUIDType = Uuid(as_uuid=True)
