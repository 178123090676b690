"""Service layer for the ERP sync core.

Each service wraps one SQLAlchemy session passed to its constructor:

- ConnectionRegistry: connection definitions, validation, static checks
- SyncStateTracker: per-connection cursor, failures and health
- OrderLinkRegistry: external record to local order links and conflicts
- ImportBatchLog: import batch headers and per-record details
"""

from erpsync.services.connection_registry import ConnectionRegistry
from erpsync.services.import_batch_log import IMPORT_STATUS_TRANSITIONS, ImportBatchLog
from erpsync.services.order_link_registry import (
    SYNC_STATUS_TRANSITIONS,
    OrderLinkRegistry,
)
from erpsync.services.sync_state_tracker import (
    SyncHealth,
    SyncStateTracker,
    compute_sync_health,
)

__all__ = [
    "ConnectionRegistry",
    "SyncStateTracker",
    "SyncHealth",
    "compute_sync_health",
    "OrderLinkRegistry",
    "SYNC_STATUS_TRANSITIONS",
    "ImportBatchLog",
    "IMPORT_STATUS_TRANSITIONS",
]
