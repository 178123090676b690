"""ImportBatchLog: audit trail for ERP import runs.

Each run gets a header (ImportLog) that starts ``running`` and reaches a
terminal status exactly once, plus one append-only ImportDetail per external
record processed. Counters on the header only move forward; ``add_detail``
advances them so the header always agrees with its details.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from erpsync.db.models import (
    ErpConnection,
    ImportAction,
    ImportDetail,
    ImportLog,
    ImportStatus,
    ImportType,
    utc_now_iso,
)
from erpsync.errors import (
    ImportBatchClosedError,
    InvalidStateTransition,
    NotFoundError,
    ProgressRegressionError,
    ValidationError,
)
from erpsync.services.connection_types import is_positive_int
from erpsync.utils.json_fields import dump_json, load_json_dict, load_optional_json
from erpsync.utils.redaction import sanitize_error_message
from erpsync.utils.timestamps import cutoff_iso, parse_iso

logger = logging.getLogger(__name__)

DEFAULT_STATS_WINDOW_DAYS = 30
DEFAULT_RETENTION_DAYS = 90
MAX_EXTERNAL_ID_LENGTH = 255

VALID_IMPORT_TYPES: tuple[str, ...] = tuple(t.value for t in ImportType)
VALID_ACTIONS: tuple[str, ...] = tuple(a.value for a in ImportAction)

IMPORT_STATUS_TRANSITIONS: dict[str, list[str]] = {
    ImportStatus.running.value: [
        ImportStatus.completed.value,
        ImportStatus.failed.value,
        ImportStatus.cancelled.value,
    ],
    ImportStatus.completed.value: [],  # terminal
    ImportStatus.failed.value: [],  # terminal
    ImportStatus.cancelled.value: [],  # terminal
}

TERMINAL_STATUSES: tuple[str, ...] = (
    ImportStatus.completed.value,
    ImportStatus.failed.value,
    ImportStatus.cancelled.value,
)

PROGRESS_COUNTERS: tuple[str, ...] = (
    "total_records",
    "processed_records",
    "successful_records",
    "failed_records",
)

_START_FIELDS = frozenset({
    "connection_id", "import_type", "total_records", "created_by", "import_metadata",
})
_DETAIL_FIELDS = frozenset({
    "import_log_id",
    "external_id",
    "action",
    "manufacturing_order_id",
    "error_message",
    "record_data",
})


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _reject_unknown(data: dict, allowed: frozenset[str], label: str) -> None:
    unknown = set(data) - allowed
    if unknown:
        raise ValidationError(
            f"Unknown {label} field(s): {', '.join(sorted(unknown))}",
            field=sorted(unknown)[0],
        )


def _validate_detail(detail: Any) -> dict:
    """Check one detail payload and return its normalized column values."""
    if not isinstance(detail, dict):
        raise ValidationError("Import detail must be an object")
    _reject_unknown(detail, _DETAIL_FIELDS, "import detail")

    external_id = detail.get("external_id")
    if not isinstance(external_id, str) or not external_id:
        raise ValidationError(
            "External ID is required and must be a string", field="external_id"
        )
    if len(external_id) > MAX_EXTERNAL_ID_LENGTH:
        raise ValidationError(
            f"External ID must be at most {MAX_EXTERNAL_ID_LENGTH} characters",
            field="external_id",
        )
    action = detail.get("action")
    if action not in VALID_ACTIONS:
        raise ValidationError(
            f"Action must be one of: {', '.join(VALID_ACTIONS)}", field="action"
        )
    order_id = detail.get("manufacturing_order_id")
    if order_id is not None and not is_positive_int(order_id):
        raise ValidationError(
            "Manufacturing order ID must be a positive integer",
            field="manufacturing_order_id",
        )
    error_message = detail.get("error_message")
    if error_message is not None and not isinstance(error_message, str):
        raise ValidationError("Error message must be a string", field="error_message")
    record_data = detail.get("record_data")
    if record_data is not None and not isinstance(record_data, dict):
        raise ValidationError("Record data must be an object", field="record_data")
    try:
        record_json = dump_json(record_data)
    except (TypeError, ValueError) as e:
        raise ValidationError("Record data must be JSON serializable", field="record_data") from e

    return {
        "external_id": external_id,
        "action": action,
        "manufacturing_order_id": order_id,
        "error_message": sanitize_error_message(error_message) if error_message else None,
        "record_data_json": record_json,
    }


class ImportBatchLog:
    """Import batch headers and their per-record details.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def _get_row(self, import_id: str) -> ImportLog:
        row = self._db.get(ImportLog, import_id)
        if row is None:
            raise NotFoundError("Import log", import_id)
        return row

    def _require_running(self, row: ImportLog) -> None:
        if row.status != ImportStatus.running.value:
            raise ImportBatchClosedError(row.id, row.status)

    def _row_to_dict(self, row: ImportLog, connection: ErpConnection | None = None) -> dict:
        if connection is None:
            connection = self._db.get(ErpConnection, row.connection_id)
        started = parse_iso(row.started_at)
        completed = parse_iso(row.completed_at)
        duration = (
            round((completed - started).total_seconds() / 60, 2)
            if started and completed
            else None
        )
        return {
            "id": row.id,
            "connection_id": row.connection_id,
            "connection_name": connection.name if connection else None,
            "erp_system_type": connection.erp_system_type if connection else None,
            "import_type": row.import_type,
            "status": row.status,
            "started_at": row.started_at,
            "completed_at": row.completed_at,
            "duration_minutes": duration,
            "total_records": row.total_records,
            "processed_records": row.processed_records,
            "successful_records": row.successful_records,
            "failed_records": row.failed_records,
            "error_summary": row.error_summary,
            "import_metadata": load_json_dict(
                row.import_metadata_json,
                resource_type="import log",
                identifier=row.id,
                column="import_metadata",
            ),
            "created_by": row.created_by,
        }

    def _detail_to_dict(self, detail: ImportDetail) -> dict:
        return {
            "id": detail.id,
            "import_log_id": detail.import_log_id,
            "external_id": detail.external_id,
            "action": detail.action,
            "manufacturing_order_id": detail.manufacturing_order_id,
            "error_message": detail.error_message,
            "record_data": load_optional_json(
                detail.record_data_json,
                resource_type="import detail",
                identifier=detail.id,
                column="record_data",
            ),
            "processed_at": detail.processed_at,
        }

    def _transition(self, row: ImportLog, new_status: str) -> None:
        """Move a batch to a terminal status exactly once."""
        allowed = IMPORT_STATUS_TRANSITIONS.get(row.status, [])
        if new_status not in allowed:
            raise InvalidStateTransition(
                "import",
                current_state=row.status,
                attempted_state=new_status,
                allowed_transitions=allowed,
            )
        row.status = new_status
        row.completed_at = utc_now_iso()

    def _commit(self) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise

    # ========================================================================
    # Batch lifecycle
    # ========================================================================

    def start_import(self, batch: dict) -> dict:
        """Open a new batch in ``running`` status.

        Args:
            batch: ``connection_id`` and ``import_type`` (full, incremental,
                manual or scheduled); optional ``total_records``,
                ``created_by`` and ``import_metadata``.

        Raises:
            ValidationError: On missing or malformed fields.
            NotFoundError: If the connection does not exist.
        """
        if not isinstance(batch, dict):
            raise ValidationError("Import data must be an object")
        _reject_unknown(batch, _START_FIELDS, "import")

        connection_id = batch.get("connection_id")
        if not isinstance(connection_id, str) or not connection_id:
            raise ValidationError("Connection ID is required", field="connection_id")
        import_type = batch.get("import_type")
        if import_type not in VALID_IMPORT_TYPES:
            raise ValidationError(
                f"Import type must be one of: {', '.join(VALID_IMPORT_TYPES)}",
                field="import_type",
            )
        total_records = batch.get("total_records", 0)
        if not _is_count(total_records):
            raise ValidationError(
                "total_records must be a non-negative integer", field="total_records"
            )
        created_by = batch.get("created_by")
        if created_by is not None and not is_positive_int(created_by):
            raise ValidationError("created_by must be a user ID", field="created_by")
        metadata = batch.get("import_metadata")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("Import metadata must be an object", field="import_metadata")
        try:
            metadata_json = dump_json(metadata or {})
        except (TypeError, ValueError) as e:
            raise ValidationError(
                "Import metadata must be JSON serializable", field="import_metadata"
            ) from e

        connection = self._db.get(ErpConnection, connection_id)
        if connection is None:
            raise NotFoundError("Connection", connection_id)

        row = ImportLog(
            connection_id=connection_id,
            import_type=import_type,
            status=ImportStatus.running.value,
            started_at=utc_now_iso(),
            total_records=total_records,
            processed_records=0,
            successful_records=0,
            failed_records=0,
            import_metadata_json=metadata_json,
            created_by=created_by,
        )
        self._db.add(row)
        self._commit()
        self._db.refresh(row)
        logger.info(
            "Started %s import %s for connection %s", import_type, row.id, connection.name
        )
        return self._row_to_dict(row, connection)

    def update_progress(self, import_id: str, counts: dict) -> dict:
        """Set progress counters on a running batch.

        Counters may only stay equal or grow.

        Raises:
            NotFoundError: If the batch does not exist.
            ValidationError: On unknown counters or non-integer values.
            ImportBatchClosedError: If the batch is no longer running.
            ProgressRegressionError: If any counter would decrease.
        """
        if not isinstance(counts, dict):
            raise ValidationError("Progress counts must be an object")
        _reject_unknown(counts, frozenset(PROGRESS_COUNTERS), "progress")
        for counter, value in counts.items():
            if not _is_count(value):
                raise ValidationError(
                    f"{counter} must be a non-negative integer", field=counter
                )

        row = self._get_row(import_id)
        self._require_running(row)
        for counter, value in counts.items():
            current = getattr(row, counter) or 0
            if value < current:
                raise ProgressRegressionError(import_id, counter, current, value)
        if not counts:
            return self._row_to_dict(row)

        for counter, value in counts.items():
            setattr(row, counter, value)
        self._commit()
        self._db.refresh(row)
        return self._row_to_dict(row)

    def complete_import(
        self, import_id: str, status: str, error_summary: str | None = None
    ) -> dict:
        """Close a running batch with a terminal status.

        Raises:
            NotFoundError: If the batch does not exist.
            ValidationError: If ``status`` is not a terminal status.
            InvalidStateTransition: If the batch is already closed.
        """
        if status not in TERMINAL_STATUSES:
            raise ValidationError(
                f"Status must be one of: {', '.join(TERMINAL_STATUSES)}", field="status"
            )
        if error_summary is not None and not isinstance(error_summary, str):
            raise ValidationError("Error summary must be a string", field="error_summary")

        row = self._get_row(import_id)
        self._transition(row, status)
        row.error_summary = sanitize_error_message(error_summary) if error_summary else None
        self._commit()
        self._db.refresh(row)
        log = logger.warning if status == ImportStatus.failed.value else logger.info
        log(
            "Import %s %s: %d processed, %d successful, %d failed",
            import_id,
            status,
            row.processed_records,
            row.successful_records,
            row.failed_records,
        )
        return self._row_to_dict(row)

    def cancel_import(self, import_id: str, reason: str = "Manual cancellation") -> dict:
        """Flip a running batch to ``cancelled``. Does not interrupt work."""
        return self.complete_import(import_id, ImportStatus.cancelled.value, reason)

    # ========================================================================
    # Details
    # ========================================================================

    def _append_detail(self, row: ImportLog, values: dict) -> ImportDetail:
        detail = ImportDetail(
            import_log_id=row.id,
            processed_at=utc_now_iso(),
            **values,
        )
        self._db.add(detail)

        row.processed_records = (row.processed_records or 0) + 1
        if values["action"] in (ImportAction.create.value, ImportAction.update.value):
            row.successful_records = (row.successful_records or 0) + 1
        elif values["action"] == ImportAction.error.value:
            row.failed_records = (row.failed_records or 0) + 1
        row.total_records = max(row.total_records or 0, row.processed_records)
        return detail

    def add_detail(self, detail: dict) -> dict:
        """Record the outcome of one external record.

        Advances the header counters: processed always, successful for
        create/update, failed for error. Skips count as processed only.

        Args:
            detail: ``import_log_id``, ``external_id`` and ``action``;
                optional ``manufacturing_order_id``, ``error_message`` and
                ``record_data``.

        Raises:
            ValidationError: On a missing external id or unknown action.
            NotFoundError: If the batch does not exist.
            ImportBatchClosedError: If the batch is no longer running.
        """
        values = _validate_detail(detail)
        import_id = detail.get("import_log_id")
        if not isinstance(import_id, str) or not import_id:
            raise ValidationError("Import log ID is required", field="import_log_id")

        row = self._get_row(import_id)
        self._require_running(row)
        record = self._append_detail(row, values)
        self._commit()
        self._db.refresh(record)
        return self._detail_to_dict(record)

    def add_details(self, import_id: str, details: list[dict]) -> list[dict]:
        """Append several details in one transaction.

        Every detail is validated before anything is written, so the batch
        records either all of them or none.
        """
        if not isinstance(details, list) or not details:
            raise ValidationError("Import details array is required", field="details")
        values = []
        for index, detail in enumerate(details):
            if isinstance(detail, dict):
                parent = detail.get("import_log_id", import_id)
                if parent != import_id:
                    raise ValidationError(
                        f"Detail {index} belongs to a different import",
                        field="import_log_id",
                    )
                detail = {k: v for k, v in detail.items() if k != "import_log_id"}
            values.append(_validate_detail(detail))

        row = self._get_row(import_id)
        self._require_running(row)
        try:
            records = [self._append_detail(row, v) for v in values]
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        logger.debug("Appended %d details to import %s", len(records), import_id)
        return [self._detail_to_dict(r) for r in records]

    def get_import_details(
        self,
        import_id: str,
        action: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[dict]:
        """Details for a batch in processing order, optionally by action."""
        self._get_row(import_id)
        query = self._db.query(ImportDetail).filter(ImportDetail.import_log_id == import_id)
        if action:
            if action not in VALID_ACTIONS:
                raise ValidationError(
                    f"Action must be one of: {', '.join(VALID_ACTIONS)}", field="action"
                )
            query = query.filter(ImportDetail.action == action)
        query = query.order_by(ImportDetail.processed_at.asc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return [self._detail_to_dict(d) for d in query.all()]

    # ========================================================================
    # Lookup
    # ========================================================================

    def find_by_id(self, import_id: str, include_details: bool = False) -> dict | None:
        row = self._db.get(ImportLog, import_id)
        if row is None:
            return None
        data = self._row_to_dict(row)
        if include_details:
            data["details"] = self.get_import_details(import_id)
        return data

    def find_all(
        self,
        connection_id: str | None = None,
        status: str | None = None,
        import_type: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        limit: int | None = 50,
        offset: int = 0,
    ) -> list[dict]:
        """List batches, newest first."""
        query = self._db.query(ImportLog, ErpConnection).outerjoin(
            ErpConnection, ImportLog.connection_id == ErpConnection.id
        )
        if connection_id:
            query = query.filter(ImportLog.connection_id == connection_id)
        if status:
            query = query.filter(ImportLog.status == status)
        if import_type:
            query = query.filter(ImportLog.import_type == import_type)
        if date_from:
            query = query.filter(ImportLog.started_at >= date_from)
        if date_to:
            query = query.filter(ImportLog.started_at <= date_to)
        query = query.order_by(ImportLog.started_at.desc()).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return [self._row_to_dict(log, conn) for log, conn in query.all()]

    def get_running_imports(self) -> list[dict]:
        """Every batch still in ``running`` status."""
        return self.find_all(status=ImportStatus.running.value, limit=None)

    # ========================================================================
    # Reporting and retention
    # ========================================================================

    def get_import_stats(
        self,
        connection_id: str | None = None,
        days: int = DEFAULT_STATS_WINDOW_DAYS,
        now: datetime | None = None,
    ) -> dict:
        """Aggregate batch outcomes over a trailing window.

        Args:
            connection_id: Restrict to one connection.
            days: Window length; batches started within it are counted.
            now: Reference time (defaults to the current UTC time).

        Returns:
            Batch counts by status, summed record counters, average
            duration of completed batches in minutes, batch success rate
            and record success rate (percentages, one decimal).
        """
        if not is_positive_int(days):
            raise ValidationError("days must be a positive integer", field="days")
        cutoff = cutoff_iso(days, now)

        def status_count(status: ImportStatus) -> Any:
            return func.coalesce(
                func.sum(case((ImportLog.status == status.value, 1), else_=0)), 0
            )

        query = self._db.query(
            func.count(ImportLog.id),
            status_count(ImportStatus.completed),
            status_count(ImportStatus.failed),
            status_count(ImportStatus.running),
            status_count(ImportStatus.cancelled),
            func.coalesce(func.sum(ImportLog.total_records), 0),
            func.coalesce(func.sum(ImportLog.processed_records), 0),
            func.coalesce(func.sum(ImportLog.successful_records), 0),
            func.coalesce(func.sum(ImportLog.failed_records), 0),
        ).filter(ImportLog.started_at > cutoff)
        durations_query = self._db.query(ImportLog.started_at, ImportLog.completed_at).filter(
            ImportLog.started_at > cutoff,
            ImportLog.status == ImportStatus.completed.value,
            ImportLog.completed_at.isnot(None),
        )
        if connection_id:
            query = query.filter(ImportLog.connection_id == connection_id)
            durations_query = durations_query.filter(ImportLog.connection_id == connection_id)

        (
            total,
            completed,
            failed,
            running,
            cancelled,
            total_records,
            processed,
            successful,
            failed_records,
        ) = query.one()

        minutes = []
        for started_at, completed_at in durations_query.all():
            started = parse_iso(started_at)
            finished = parse_iso(completed_at)
            if started and finished:
                minutes.append((finished - started).total_seconds() / 60)

        return {
            "connection_id": connection_id,
            "days": days,
            "total_imports": total,
            "completed_imports": completed,
            "failed_imports": failed,
            "running_imports": running,
            "cancelled_imports": cancelled,
            "total_records": total_records,
            "processed_records": processed,
            "successful_records": successful,
            "failed_records": failed_records,
            "avg_duration_minutes": round(sum(minutes) / len(minutes), 2) if minutes else 0.0,
            "success_rate_percent": round(completed / total * 100, 1) if total else 0.0,
            "record_success_rate_percent": (
                round(successful / processed * 100, 1) if processed else 0.0
            ),
        }

    def cleanup_old_logs(
        self, retention_days: int = DEFAULT_RETENTION_DAYS, now: datetime | None = None
    ) -> dict:
        """Purge closed batches that started before the retention window.

        Running batches are kept regardless of age.

        Returns:
            ``{"deleted_logs": n, "deleted_details": m}``.
        """
        if not is_positive_int(retention_days):
            raise ValidationError(
                "retention_days must be a positive integer", field="retention_days"
            )
        cutoff = cutoff_iso(retention_days, now)
        stale_ids = [
            log_id
            for (log_id,) in self._db.query(ImportLog.id).filter(
                ImportLog.started_at < cutoff,
                ImportLog.status.in_(TERMINAL_STATUSES),
            )
        ]
        if not stale_ids:
            return {"deleted_logs": 0, "deleted_details": 0}

        try:
            deleted_details = self._db.query(ImportDetail).filter(
                ImportDetail.import_log_id.in_(stale_ids)
            ).delete(synchronize_session=False)
            deleted_logs = self._db.query(ImportLog).filter(
                ImportLog.id.in_(stale_ids)
            ).delete(synchronize_session=False)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        self._db.expire_all()
        logger.info(
            "Purged %d import logs and %d details older than %d days",
            deleted_logs,
            deleted_details,
            retention_days,
        )
        return {"deleted_logs": deleted_logs, "deleted_details": deleted_details}

    def delete(self, import_id: str) -> None:
        """Delete a batch together with its details."""
        row = self._get_row(import_id)
        try:
            self._db.query(ImportDetail).filter(
                ImportDetail.import_log_id == import_id
            ).delete(synchronize_session=False)
            self._db.expire(row, ["details"])
            self._db.delete(row)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        logger.info("Deleted import log %s", import_id)
