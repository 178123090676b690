"""Database layer: ORM models, engine and session management."""

from erpsync.db.connection import (
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from erpsync.db.models import (
    Base,
    ConflictResolutionLog,
    ConflictStatus,
    ErpConnection,
    ErpSystemType,
    FieldDataType,
    FieldMapping,
    ImportAction,
    ImportDetail,
    ImportLog,
    ImportStatus,
    ImportType,
    OrderLink,
    SyncState,
    SyncStatus,
    SyncStrategy,
    generate_uuid,
    utc_now_iso,
)

__all__ = [
    "Base",
    "ErpConnection",
    "FieldMapping",
    "SyncState",
    "OrderLink",
    "ConflictResolutionLog",
    "ImportLog",
    "ImportDetail",
    "ErpSystemType",
    "SyncStrategy",
    "SyncStatus",
    "ConflictStatus",
    "ImportType",
    "ImportStatus",
    "ImportAction",
    "FieldDataType",
    "generate_uuid",
    "utc_now_iso",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "session_scope",
]
