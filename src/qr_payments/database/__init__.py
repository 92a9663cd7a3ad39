"""Database module for gateway transaction persistence."""

from .models import (
    Base,
    Transaction,
    ConfigItem,
    AuditEntry,
    Reversal,
    Fiscalization,
    TransactionStatus,
    SubRecordStatus,
    AuditAction,
    ALLOWED_TRANSITIONS,
    is_transition_allowed,
)
from .session import (
    get_db,
    get_database_url,
    get_manager,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
    DatabaseManager,
)
from .repository import (
    TransactionFilters,
    TransactionRepository,
    ConfigRepository,
    AuditRepository,
    ReversalRepository,
    FiscalizationRepository,
)

__all__ = [
    # Models
    "Base",
    "Transaction",
    "ConfigItem",
    "AuditEntry",
    "Reversal",
    "Fiscalization",
    "TransactionStatus",
    "SubRecordStatus",
    "AuditAction",
    "ALLOWED_TRANSITIONS",
    "is_transition_allowed",
    # Session management
    "get_db",
    "get_database_url",
    "get_manager",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    "DatabaseManager",
    # Repositories
    "TransactionFilters",
    "TransactionRepository",
    "ConfigRepository",
    "AuditRepository",
    "ReversalRepository",
    "FiscalizationRepository",
]
