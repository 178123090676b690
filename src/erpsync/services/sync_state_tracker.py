"""SyncStateTracker: per-connection incremental sync progress.

One state row per connection records where the last sync stopped (cursor,
ERP timestamp) and how many attempts have failed in a row. Failures are
recorded rather than raised; once the consecutive-failure count reaches the
threshold, a full resync becomes mandatory and only a successful sync
clears it again.
"""

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from erpsync.db.models import (
    ErpConnection,
    ImportLog,
    ImportStatus,
    SyncState,
    SyncStrategy,
    utc_now_iso,
)
from erpsync.errors import DuplicateSyncStateError, NotFoundError, ValidationError
from erpsync.utils.json_fields import dump_json, load_json_dict
from erpsync.utils.redaction import sanitize_error_message
from erpsync.utils.timestamps import parse_iso, to_iso, validate_iso, whole_hours_between

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILURES = 5

# Health thresholds
WARNING_FAILURES = 3
CRITICAL_FAILURES = 5
WARNING_STALE_HOURS = 48
CRITICAL_STALE_HOURS = 72

FAILURE_HISTORY_LIMIT = 10
RECENT_IMPORT_WINDOW_DAYS = 7

VALID_SYNC_STRATEGIES: tuple[str, ...] = tuple(s.value for s in SyncStrategy)

_RESULT_KEYS = frozenset({"last_erp_timestamp", "sync_cursor", "sync_metadata"})


def _dump_metadata(metadata: dict) -> str:
    try:
        return dump_json(metadata) or "{}"
    except (TypeError, ValueError) as e:
        raise ValidationError(
            "Sync metadata must be JSON serializable", field="sync_metadata"
        ) from e


class SyncHealth(str, Enum):
    """Health label derived from a sync state."""

    unknown = "unknown"
    healthy = "healthy"
    warning = "warning"
    critical = "critical"


def compute_sync_health(
    consecutive_failures: int,
    last_successful_sync: str | None,
    now: datetime | None = None,
) -> str:
    """Classify sync health. Pure function of the given state.

    Critical is checked before warning, so a state meeting both is critical.

    Args:
        consecutive_failures: Failures since the last success.
        last_successful_sync: ISO8601 timestamp of the last success, or None.
        now: Reference time (defaults to the current UTC time).

    Returns:
        One of ``unknown``, ``critical``, ``warning``, ``healthy``.
    """
    last_success = parse_iso(last_successful_sync)
    if last_success is None:
        return SyncHealth.unknown.value

    hours = whole_hours_between(last_success, now or datetime.now(UTC))
    if consecutive_failures >= CRITICAL_FAILURES or hours > CRITICAL_STALE_HOURS:
        return SyncHealth.critical.value
    if consecutive_failures >= WARNING_FAILURES or hours > WARNING_STALE_HOURS:
        return SyncHealth.warning.value
    return SyncHealth.healthy.value


class SyncStateTracker:
    """Tracks sync progress and failures per connection.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def _get_row(self, connection_id: str) -> SyncState:
        row = self._db.query(SyncState).filter(
            SyncState.connection_id == connection_id
        ).first()
        if row is None:
            raise NotFoundError("Sync state", connection_id)
        return row

    def _metadata(self, row: SyncState) -> dict:
        return load_json_dict(
            row.sync_metadata_json,
            resource_type="sync state",
            identifier=row.connection_id,
            column="sync_metadata",
        )

    def _row_to_dict(self, row: SyncState, connection: ErpConnection | None = None) -> dict:
        if connection is None:
            connection = self._db.get(ErpConnection, row.connection_id)
        return {
            "id": row.id,
            "connection_id": row.connection_id,
            "connection_name": connection.name if connection else None,
            "erp_system_type": connection.erp_system_type if connection else None,
            "sync_strategy": row.sync_strategy,
            "last_sync_timestamp": row.last_sync_timestamp,
            "last_successful_sync": row.last_successful_sync,
            "last_erp_timestamp": row.last_erp_timestamp,
            "sync_cursor": row.sync_cursor,
            "consecutive_failures": row.consecutive_failures,
            "is_full_sync_required": row.is_full_sync_required,
            "sync_metadata": self._metadata(row),
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    def _save(self, row: SyncState, metadata_json: str | None = None) -> dict:
        if metadata_json is not None:
            row.sync_metadata_json = metadata_json
        row.updated_at = utc_now_iso()
        try:
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(row)
        return self._row_to_dict(row)

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def init(
        self,
        connection_id: str,
        strategy: str = SyncStrategy.timestamp.value,
        metadata: dict | None = None,
    ) -> dict:
        """Create the sync state row for a connection.

        Raises:
            NotFoundError: If the connection does not exist.
            ValidationError: On an unknown strategy or non-object metadata.
            DuplicateSyncStateError: If the connection already has a state.
        """
        if self._db.get(ErpConnection, connection_id) is None:
            raise NotFoundError("Connection", connection_id)
        if strategy not in VALID_SYNC_STRATEGIES:
            raise ValidationError(
                f"Sync strategy must be one of: {', '.join(VALID_SYNC_STRATEGIES)}",
                field="sync_strategy",
            )
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("Sync metadata must be an object", field="sync_metadata")

        exists = self._db.query(SyncState.id).filter(
            SyncState.connection_id == connection_id
        ).first()
        if exists:
            raise DuplicateSyncStateError(connection_id)

        now = utc_now_iso()
        row = SyncState(
            connection_id=connection_id,
            sync_strategy=strategy,
            consecutive_failures=0,
            is_full_sync_required=False,
            sync_metadata_json=_dump_metadata(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._db.add(row)
        try:
            self._db.commit()
        except IntegrityError as e:
            self._db.rollback()
            raise DuplicateSyncStateError(connection_id) from e
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(row)
        logger.info("Initialized %s sync state for connection %s", strategy, connection_id)
        return self._row_to_dict(row)

    def get(self, connection_id: str) -> dict | None:
        """Return the sync state for a connection, or None."""
        row = self._db.query(SyncState).filter(
            SyncState.connection_id == connection_id
        ).first()
        return self._row_to_dict(row) if row else None

    def find_all(
        self,
        full_sync_required: bool | None = None,
        has_failures: bool | None = None,
        sync_strategy: str | None = None,
    ) -> list[dict]:
        """List sync states, most recently updated first."""
        query = self._db.query(SyncState, ErpConnection).outerjoin(
            ErpConnection, SyncState.connection_id == ErpConnection.id
        )
        if full_sync_required is not None:
            query = query.filter(SyncState.is_full_sync_required == full_sync_required)
        if has_failures is not None:
            if has_failures:
                query = query.filter(SyncState.consecutive_failures > 0)
            else:
                query = query.filter(SyncState.consecutive_failures == 0)
        if sync_strategy:
            query = query.filter(SyncState.sync_strategy == sync_strategy)
        rows = query.order_by(SyncState.updated_at.desc()).all()
        return [self._row_to_dict(state, conn) for state, conn in rows]

    def delete(self, connection_id: str) -> None:
        """Remove a connection's sync state (prerequisite for deleting it)."""
        row = self._get_row(connection_id)
        self._db.delete(row)
        try:
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise
        logger.info("Deleted sync state for connection %s", connection_id)

    # ========================================================================
    # Sync outcomes
    # ========================================================================

    def record_success(self, connection_id: str, result: dict | None = None) -> dict:
        """Record a successful sync.

        Stamps last-sync and last-successful-sync, zeroes the failure
        counter and clears the full-sync flag. This is the only operation
        that clears the flag.

        Args:
            connection_id: Connection that synced.
            result: Optional ``last_erp_timestamp``, ``sync_cursor`` and
                ``sync_metadata`` (merged over the existing metadata).

        Raises:
            NotFoundError: If the connection has no sync state.
            ValidationError: On unknown keys, non-object metadata, a malformed
                ERP timestamp or a non-string cursor.
        """
        result = result or {}
        unknown = set(result) - _RESULT_KEYS
        if unknown:
            raise ValidationError(
                f"Unknown sync result field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        extra_metadata = result.get("sync_metadata")
        if extra_metadata is not None and not isinstance(extra_metadata, dict):
            raise ValidationError("Sync metadata must be an object", field="sync_metadata")
        last_erp_timestamp = validate_iso(
            result.get("last_erp_timestamp"), "last_erp_timestamp"
        )
        sync_cursor = result.get("sync_cursor")
        if sync_cursor is not None and (not isinstance(sync_cursor, str) or not sync_cursor):
            raise ValidationError("Sync cursor must be a non-empty string", field="sync_cursor")

        row = self._get_row(connection_id)
        metadata_json = None
        if extra_metadata:
            metadata_json = _dump_metadata({**self._metadata(row), **extra_metadata})

        now = utc_now_iso()
        row.last_sync_timestamp = now
        row.last_successful_sync = now
        row.consecutive_failures = 0
        row.is_full_sync_required = False
        if last_erp_timestamp:
            row.last_erp_timestamp = last_erp_timestamp
        if sync_cursor:
            row.sync_cursor = sync_cursor

        logger.debug("Recorded successful sync for connection %s", connection_id)
        return self._save(row, metadata_json)

    def record_failure(
        self,
        connection_id: str,
        error_message: str,
        max_failures: int = DEFAULT_MAX_FAILURES,
    ) -> dict:
        """Record a failed sync attempt.

        Increments the failure counter and stores the sanitized error in
        metadata. When the counter reaches ``max_failures`` the full-sync
        flag is set; it stays set if it already was.

        Raises:
            NotFoundError: If the connection has no sync state.
            ValidationError: If max_failures is not a positive integer.
        """
        if isinstance(max_failures, bool) or not isinstance(max_failures, int) or max_failures < 1:
            raise ValidationError("max_failures must be a positive integer", field="max_failures")

        row = self._get_row(connection_id)
        now = utc_now_iso()
        failures = (row.consecutive_failures or 0) + 1
        message = sanitize_error_message(str(error_message), max_length=1000)

        metadata = self._metadata(row)
        history = metadata.get("failure_history")
        history = history if isinstance(history, list) else []
        history = [*history, {"error": message, "at": now}][-FAILURE_HISTORY_LIMIT:]
        metadata.update(
            last_error=message,
            last_error_timestamp=now,
            failure_count=failures,
            failure_history=history,
        )

        threshold_reached = failures >= max_failures
        if threshold_reached and not row.is_full_sync_required:
            logger.warning(
                "Connection %s reached %d consecutive failures, full resync required",
                connection_id,
                failures,
            )
        row.last_sync_timestamp = now
        row.consecutive_failures = failures
        row.is_full_sync_required = row.is_full_sync_required or threshold_reached
        return self._save(row, _dump_metadata(metadata))

    def force_full_sync(self, connection_id: str, reason: str = "Manual request") -> dict:
        """Mandate a full resync without touching cursor or timestamps."""
        row = self._get_row(connection_id)
        metadata = self._metadata(row)
        metadata.update(
            full_sync_reason=reason,
            full_sync_requested_at=utc_now_iso(),
        )
        row.is_full_sync_required = True
        logger.info("Full sync forced for connection %s: %s", connection_id, reason)
        return self._save(row, _dump_metadata(metadata))

    def reset(self, connection_id: str, reason: str = "Manual reset") -> dict:
        """Clear all progress and mandate a full resync.

        Nulls the cursor and every sync timestamp, zeroes the failure
        counter and sets the full-sync flag.
        """
        row = self._get_row(connection_id)
        metadata = self._metadata(row)
        metadata.update(reset_at=utc_now_iso(), reset_reason=reason)

        row.last_sync_timestamp = None
        row.last_successful_sync = None
        row.last_erp_timestamp = None
        row.sync_cursor = None
        row.consecutive_failures = 0
        row.is_full_sync_required = True
        logger.info("Reset sync state for connection %s: %s", connection_id, reason)
        return self._save(row, _dump_metadata(metadata))

    # ========================================================================
    # Monitoring
    # ========================================================================

    def health_of(self, connection_id: str, now: datetime | None = None) -> str:
        """Return the health label for a connection's sync state."""
        row = self._get_row(connection_id)
        return compute_sync_health(row.consecutive_failures, row.last_successful_sync, now)

    def needing_attention(self, now: datetime | None = None) -> list[dict]:
        """Sweep all connections for sync states that need an operator.

        A state needs attention when a full sync is required, it has at
        least three consecutive failures, or its last success is missing
        or older than 48 hours.

        Returns:
            Sync state dicts with a ``health`` label, worst first.
        """
        reference = now or datetime.now(UTC)
        stale_cutoff = to_iso(reference - timedelta(hours=WARNING_STALE_HOURS))

        rows = (
            self._db.query(SyncState, ErpConnection)
            .outerjoin(ErpConnection, SyncState.connection_id == ErpConnection.id)
            .filter(
                or_(
                    SyncState.is_full_sync_required.is_(True),
                    SyncState.consecutive_failures >= WARNING_FAILURES,
                    SyncState.last_successful_sync.is_(None),
                    SyncState.last_successful_sync < stale_cutoff,
                )
            )
            .order_by(
                SyncState.consecutive_failures.desc(),
                SyncState.last_successful_sync.asc(),
            )
            .all()
        )
        results = []
        for state, connection in rows:
            data = self._row_to_dict(state, connection)
            data["health"] = compute_sync_health(
                state.consecutive_failures, state.last_successful_sync, reference
            )
            results.append(data)
        return results

    def get_sync_stats(self, connection_id: str, now: datetime | None = None) -> dict:
        """Summarize sync health plus the last week's import outcomes."""
        row = self._get_row(connection_id)
        reference = now or datetime.now(UTC)

        last_success = parse_iso(row.last_successful_sync)
        hours_since = (
            whole_hours_between(last_success, reference) if last_success else None
        )

        cutoff = to_iso(reference - timedelta(days=RECENT_IMPORT_WINDOW_DAYS))
        counts = dict(
            self._db.query(ImportLog.status, func.count(ImportLog.id))
            .filter(
                ImportLog.connection_id == connection_id,
                ImportLog.started_at > cutoff,
            )
            .group_by(ImportLog.status)
            .all()
        )
        recent_total = sum(counts.values())
        completed = counts.get(ImportStatus.completed.value, 0)

        return {
            "connection_id": connection_id,
            "sync_strategy": row.sync_strategy,
            "consecutive_failures": row.consecutive_failures,
            "is_full_sync_required": row.is_full_sync_required,
            "last_successful_sync": row.last_successful_sync,
            "hours_since_last_sync": hours_since,
            "sync_health": compute_sync_health(
                row.consecutive_failures, row.last_successful_sync, reference
            ),
            "recent_imports": {status.value: counts.get(status.value, 0) for status in ImportStatus},
            "success_rate_7d": (
                round(completed / recent_total * 100, 1) if recent_total else None
            ),
            "has_cursor": bool(row.sync_cursor),
            "has_erp_timestamp": bool(row.last_erp_timestamp),
        }
