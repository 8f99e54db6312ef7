"""Configuration module for Pathfinder.

Provides settings and database management for the crawler, retrieval and API.
"""

from .settings import Settings, get_settings, override_settings
from .database import (
    DatabaseFactory,
    db_factory,
    init_db,
    close_database,
    session_scope
)

__all__ = [
    'Settings',
    'get_settings',
    'override_settings',
    'DatabaseFactory',
    'db_factory',
    'init_db',
    'close_database',
    'session_scope'
]
