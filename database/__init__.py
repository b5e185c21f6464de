"""
Database Package

Provides database connectivity, models, schemas, and CRUD operations.

Usage:
    from database import get_session_factory, Notification
    from database.crud import find_notifications_by_chain_member
"""

# Connection management
from .connection import (
    Base,
    get_db,
    get_db_context,
    get_engine,
    get_session_factory,
    init_database,
    close_database,
    check_database_connection,
    create_tables,
)

# Configuration
from .config import (
    get_database_settings,
    get_database_url,
    DatabaseSettings,
)

# Models
from .models import (
    User,
    Interaction,
    Notification,
    Report,
    RateLimit,
    CleanupLog,
)

# CRUD operations
from . import crud

__all__ = [
    # Connection
    "Base",
    "get_db",
    "get_db_context",
    "get_engine",
    "get_session_factory",
    "init_database",
    "close_database",
    "check_database_connection",
    "create_tables",
    # Config
    "get_database_settings",
    "get_database_url",
    "DatabaseSettings",
    # Models
    "User",
    "Interaction",
    "Notification",
    "Report",
    "RateLimit",
    "CleanupLog",
    # CRUD
    "crud",
]
