"""
Database Module

This module provides the SQLAlchemy tables and engine helpers behind the
SQL review store.
"""

from review_core.database.base import Base, ModelBase, metadata
from review_core.database.init_db import (
    close_database,
    create_engine,
    create_session_factory,
    initialize_database,
)

__all__ = [
    'Base',
    'ModelBase',
    'metadata',
    'close_database',
    'create_engine',
    'create_session_factory',
    'initialize_database',
]
