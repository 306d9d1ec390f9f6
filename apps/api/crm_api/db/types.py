"""Portable column types shared by the models and the migration."""

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonDict = JSON().with_variant(JSONB(), "postgresql")
