"""OrderLinkRegistry: external ERP order records mapped to local orders.

Each link ties one external record (unique per connection) to one local
manufacturing order and carries its sync status. Status changes go through
SYNC_STATUS_TRANSITIONS and are checked in one place (``_transition``).

A link enters ``conflict`` only with a conflict payload, and leaves it only
through ``resolve_conflict``. Every conflict is also written to the
conflict-resolution log. An open conflict blocks deleting the link; resolved
history is deleted with it.
"""

import logging
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from erpsync.db.models import (
    ConflictResolutionLog,
    ConflictStatus,
    ErpConnection,
    OrderLink,
    SyncStatus,
    utc_now_iso,
)
from erpsync.errors import (
    DuplicateExternalIdError,
    InvalidStateTransition,
    NotFoundError,
    NotInConflictError,
    OpenConflictError,
    ValidationError,
)
from erpsync.services.connection_types import is_positive_int
from erpsync.utils.json_fields import dump_json, load_optional_json
from erpsync.utils.timestamps import validate_iso

logger = logging.getLogger(__name__)

MAX_EXTERNAL_ID_LENGTH = 255
MAX_EXTERNAL_SYSTEM_LENGTH = 100
MAX_RESOLUTION_STRATEGY_LENGTH = 100
MAX_CONFLICT_TYPE_LENGTH = 100
DEFAULT_NEEDING_SYNC_LIMIT = 100

VALID_SYNC_STATUSES: tuple[str, ...] = tuple(s.value for s in SyncStatus)

_OPEN_STATUSES = frozenset({
    SyncStatus.synced.value,
    SyncStatus.pending.value,
    SyncStatus.error.value,
    SyncStatus.conflict.value,
})

# conflict -> synced is reserved for resolve_conflict
SYNC_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    SyncStatus.synced.value: _OPEN_STATUSES,
    SyncStatus.pending.value: _OPEN_STATUSES,
    SyncStatus.error.value: _OPEN_STATUSES,
    SyncStatus.conflict.value: frozenset({SyncStatus.conflict.value}),
}

CREATABLE_STATUSES: tuple[str, ...] = (
    SyncStatus.synced.value,
    SyncStatus.pending.value,
    SyncStatus.error.value,
)

_CREATE_FIELDS = frozenset({
    "order_id",
    "connection_id",
    "external_id",
    "external_system",
    "external_updated_at",
    "sync_status",
})
_STATUS_EXTRA_FIELDS = frozenset({"external_updated_at", "conflict_data"})
_UNSET: Any = object()


def can_transition(current: str, target: str, resolving: bool = False) -> bool:
    """Check whether a link may move from ``current`` to ``target``."""
    if resolving:
        return current == SyncStatus.conflict.value and target == SyncStatus.synced.value
    return target in SYNC_STATUS_TRANSITIONS.get(current, frozenset())


def _require_text(value: Any, field: str, label: str, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"{label} is required and must be a non-empty string", field=field
        )
    if len(value) > max_length:
        raise ValidationError(
            f"{label} must be at most {max_length} characters", field=field
        )
    return value


def _require_status(status: Any) -> str:
    if status not in VALID_SYNC_STATUSES:
        raise ValidationError(
            f"Sync status must be one of: {', '.join(VALID_SYNC_STATUSES)}",
            field="sync_status",
        )
    return status


def _dump_snapshot(value: Any, field: str) -> str | None:
    try:
        return dump_json(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be JSON serializable", field=field) from e


class OrderLinkRegistry:
    """CRUD and status lifecycle for external order links.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    def _get_row(self, link_id: str) -> OrderLink:
        row = self._db.get(OrderLink, link_id)
        if row is None:
            raise NotFoundError("Order link", link_id)
        return row

    def _conflict_data(self, row: OrderLink) -> Any:
        return load_optional_json(
            row.conflict_data_json,
            resource_type="order link",
            identifier=row.id,
            column="conflict_data",
        )

    def _row_to_dict(self, row: OrderLink) -> dict:
        return {
            "id": row.id,
            "order_id": row.order_id,
            "connection_id": row.connection_id,
            "external_id": row.external_id,
            "external_system": row.external_system,
            "external_updated_at": row.external_updated_at,
            "last_sync_at": row.last_sync_at,
            "sync_status": row.sync_status,
            "conflict_data": self._conflict_data(row),
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    def _transition(self, row: OrderLink, new_status: str, resolving: bool = False) -> None:
        """Apply a status change, rejecting moves outside the transition table."""
        if not can_transition(row.sync_status, new_status, resolving):
            raise InvalidStateTransition(
                "order link",
                current_state=row.sync_status,
                attempted_state=new_status,
                allowed_transitions=sorted(SYNC_STATUS_TRANSITIONS.get(row.sync_status, ())),
            )
        now = utc_now_iso()
        row.sync_status = new_status
        row.last_sync_at = now
        row.updated_at = now

    def _commit(self) -> None:
        try:
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise

    # ========================================================================
    # Creation and lookup
    # ========================================================================

    def create(self, link: dict) -> dict:
        """Link an external record to a local order.

        Args:
            link: ``order_id``, ``connection_id``, ``external_id`` and
                ``external_system``; optional ``external_updated_at`` and
                ``sync_status`` (synced, pending or error; default synced).

        Raises:
            ValidationError: On missing or malformed fields.
            NotFoundError: If the connection does not exist.
            DuplicateExternalIdError: If the external id is already linked
                for this connection.
        """
        if not isinstance(link, dict):
            raise ValidationError("Order link data must be an object")
        unknown = set(link) - _CREATE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown order link field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if not is_positive_int(link.get("order_id")):
            raise ValidationError(
                "Order ID is required and must be a positive integer", field="order_id"
            )
        connection_id = link.get("connection_id")
        if not isinstance(connection_id, str) or not connection_id:
            raise ValidationError("Connection ID is required", field="connection_id")
        external_id = _require_text(
            link.get("external_id"), "external_id", "External ID", MAX_EXTERNAL_ID_LENGTH
        )
        external_system = _require_text(
            link.get("external_system"),
            "external_system",
            "External system",
            MAX_EXTERNAL_SYSTEM_LENGTH,
        )
        external_updated_at = validate_iso(
            link.get("external_updated_at"), "external_updated_at"
        )
        status = _require_status(link.get("sync_status", SyncStatus.synced.value))
        if status not in CREATABLE_STATUSES:
            raise ValidationError(
                "New order links must start as synced, pending or error; "
                "use mark_conflict to record a conflict",
                field="sync_status",
            )

        if self._db.get(ErpConnection, connection_id) is None:
            raise NotFoundError("Connection", connection_id)
        if self.external_id_exists(external_id, connection_id):
            raise DuplicateExternalIdError(external_id, connection_id)

        now = utc_now_iso()
        row = OrderLink(
            order_id=link["order_id"],
            connection_id=connection_id,
            external_id=external_id,
            external_system=external_system,
            external_updated_at=external_updated_at,
            sync_status=status,
            created_at=now,
            updated_at=now,
        )
        self._db.add(row)
        try:
            self._db.commit()
        except IntegrityError as e:
            self._db.rollback()
            raise DuplicateExternalIdError(external_id, connection_id) from e
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(row)
        logger.debug(
            "Linked external record %s (connection %s) to order %s",
            external_id,
            connection_id,
            row.order_id,
        )
        return self._row_to_dict(row)

    def find_by_id(self, link_id: str) -> dict | None:
        row = self._db.get(OrderLink, link_id)
        return self._row_to_dict(row) if row else None

    def find_by_external_id(self, external_id: str, connection_id: str) -> dict | None:
        """Look up the link for an external record on one connection."""
        row = self._db.query(OrderLink).filter(
            OrderLink.external_id == external_id,
            OrderLink.connection_id == connection_id,
        ).first()
        return self._row_to_dict(row) if row else None

    def find_by_order_id(self, order_id: int) -> list[dict]:
        """Return every link pointing at a local order, oldest first."""
        rows = (
            self._db.query(OrderLink)
            .filter(OrderLink.order_id == order_id)
            .order_by(OrderLink.created_at.asc(), OrderLink.id.asc())
            .all()
        )
        return [self._row_to_dict(row) for row in rows]

    def find_all(
        self,
        connection_id: str | None = None,
        sync_status: str | None = None,
        external_system: str | None = None,
        has_conflicts: bool | None = None,
        needs_sync: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict]:
        """List links, most recently updated first.

        Args:
            connection_id: Restrict to one connection.
            sync_status: Restrict to one status.
            external_system: Restrict to one external system name.
            has_conflicts: True for conflict rows only, False to exclude them.
            needs_sync: Restrict to pending and error rows.
            limit: Page size.
            offset: Rows to skip.
        """
        query = self._db.query(OrderLink)
        if connection_id:
            query = query.filter(OrderLink.connection_id == connection_id)
        if sync_status:
            query = query.filter(OrderLink.sync_status == _require_status(sync_status))
        if external_system:
            query = query.filter(OrderLink.external_system == external_system)
        if has_conflicts is not None:
            if has_conflicts:
                query = query.filter(OrderLink.sync_status == SyncStatus.conflict.value)
            else:
                query = query.filter(OrderLink.sync_status != SyncStatus.conflict.value)
        if needs_sync:
            query = query.filter(
                OrderLink.sync_status.in_([SyncStatus.pending.value, SyncStatus.error.value])
            )
        rows = (
            query.order_by(OrderLink.updated_at.desc(), OrderLink.id.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._row_to_dict(row) for row in rows]

    def external_id_exists(
        self, external_id: str, connection_id: str, exclude_id: str | None = None
    ) -> bool:
        query = self._db.query(OrderLink.id).filter(
            OrderLink.external_id == external_id,
            OrderLink.connection_id == connection_id,
        )
        if exclude_id:
            query = query.filter(OrderLink.id != exclude_id)
        return query.first() is not None

    # ========================================================================
    # Status lifecycle
    # ========================================================================

    def update_sync_status(
        self, link_id: str, status: str, extra: dict | None = None
    ) -> dict:
        """Move a link to a new sync status.

        Always stamps ``last_sync_at``. Moving into ``conflict`` needs a
        ``conflict_data`` payload with a ``conflict_type`` and records it
        in the conflict history, exactly like ``mark_conflict``.

        Args:
            link_id: Link to update.
            status: Target status.
            extra: Optional ``external_updated_at`` and ``conflict_data``
                (an object, or None to clear a stale payload).

        Raises:
            NotFoundError: If the link does not exist.
            ValidationError: On an unknown status or malformed extras.
            InvalidStateTransition: If the move is not allowed, including
                any attempt to leave ``conflict`` without resolving it.
        """
        _require_status(status)
        extra = extra or {}
        unknown = set(extra) - _STATUS_EXTRA_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown sync status field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        external_updated_at = validate_iso(
            extra.get("external_updated_at"), "external_updated_at"
        )
        conflict_data = extra.get("conflict_data", _UNSET)

        if status == SyncStatus.conflict.value:
            if conflict_data is _UNSET or conflict_data is None:
                raise ValidationError(
                    "Conflict data is required when marking a conflict",
                    field="conflict_data",
                )
            return self._mark_conflict(link_id, conflict_data, external_updated_at)

        if conflict_data is not _UNSET and conflict_data is not None:
            if not isinstance(conflict_data, dict):
                raise ValidationError("Conflict data must be an object", field="conflict_data")

        row = self._get_row(link_id)
        self._transition(row, status)
        if external_updated_at:
            row.external_updated_at = external_updated_at
        if conflict_data is not _UNSET:
            row.conflict_data_json = _dump_snapshot(conflict_data, "conflict_data")
        self._commit()
        self._db.refresh(row)
        return self._row_to_dict(row)

    def mark_conflict(self, link_id: str, conflict_data: dict) -> dict:
        """Put a link into conflict.

        Args:
            link_id: Link to mark.
            conflict_data: Must carry ``conflict_type``; ``local_data``,
                ``external_data`` and ``detected_at`` are optional.

        Returns:
            The updated link. Its payload has ``status: unresolved``.
        """
        return self.update_sync_status(
            link_id, SyncStatus.conflict.value, {"conflict_data": conflict_data}
        )

    def _mark_conflict(
        self, link_id: str, conflict_data: Any, external_updated_at: str | None
    ) -> dict:
        if not isinstance(conflict_data, dict):
            raise ValidationError("Conflict data must be an object", field="conflict_data")
        conflict_type = _require_text(
            conflict_data.get("conflict_type"),
            "conflict_data.conflict_type",
            "Conflict type",
            MAX_CONFLICT_TYPE_LENGTH,
        )
        detected_at = validate_iso(
            conflict_data.get("detected_at"), "conflict_data.detected_at"
        ) or utc_now_iso()

        payload = {
            **conflict_data,
            "detected_at": detected_at,
            "status": ConflictStatus.unresolved.value,
        }
        payload_json = _dump_snapshot(payload, "conflict_data")
        local_json = _dump_snapshot(conflict_data.get("local_data"), "conflict_data.local_data")
        external_json = _dump_snapshot(
            conflict_data.get("external_data"), "conflict_data.external_data"
        )

        row = self._get_row(link_id)
        self._transition(row, SyncStatus.conflict.value)
        if external_updated_at:
            row.external_updated_at = external_updated_at
        row.conflict_data_json = payload_json
        self._db.add(
            ConflictResolutionLog(
                order_link_id=row.id,
                conflict_type=conflict_type,
                detected_at=detected_at,
                local_data_json=local_json,
                external_data_json=external_json,
            )
        )
        self._commit()
        self._db.refresh(row)
        logger.info(
            "Order link %s (external %s) marked as %s conflict",
            row.id,
            row.external_id,
            conflict_type,
        )
        return self._row_to_dict(row)

    def resolve_conflict(self, link_id: str, resolution: dict) -> dict:
        """Resolve the open conflict on a link and mark it synced.

        Args:
            link_id: Link in ``conflict`` status.
            resolution: ``resolution_strategy`` (required), ``resolved_by``
                (user id, required) and optional ``resolved_data``.

        Raises:
            NotFoundError: If the link does not exist.
            NotInConflictError: If the link is not currently in conflict.
            ValidationError: On a malformed resolution.
        """
        row = self._get_row(link_id)
        if row.sync_status != SyncStatus.conflict.value:
            raise NotInConflictError(link_id, row.sync_status)

        if not isinstance(resolution, dict):
            raise ValidationError("Resolution must be an object", field="resolution")
        strategy = _require_text(
            resolution.get("resolution_strategy"),
            "resolution_strategy",
            "Resolution strategy",
            MAX_RESOLUTION_STRATEGY_LENGTH,
        )
        resolved_by = resolution.get("resolved_by")
        if not is_positive_int(resolved_by):
            raise ValidationError(
                "Resolved by is required and must be a user ID", field="resolved_by"
            )
        resolved_data = resolution.get("resolved_data")
        resolved_json = _dump_snapshot(resolved_data, "resolved_data")

        current = self._conflict_data(row)
        current = current if isinstance(current, dict) else {}
        now = utc_now_iso()
        payload = {
            **current,
            "resolution_strategy": strategy,
            "resolved_data": resolved_data,
            "resolved_by": resolved_by,
            "resolved_at": now,
            "status": ConflictStatus.resolved.value,
        }

        self._transition(row, SyncStatus.synced.value, resolving=True)
        row.conflict_data_json = _dump_snapshot(payload, "conflict_data")
        open_entries = self._db.query(ConflictResolutionLog).filter(
            ConflictResolutionLog.order_link_id == row.id,
            ConflictResolutionLog.resolved_at.is_(None),
        ).all()
        for entry in open_entries:
            entry.resolution_strategy = strategy
            entry.resolved_at = now
            entry.resolved_by = resolved_by
            entry.resolution_data_json = resolved_json
        self._commit()
        self._db.refresh(row)
        logger.info("Resolved conflict on order link %s using %s", row.id, strategy)
        return self._row_to_dict(row)

    def update_external_timestamp(self, link_id: str, external_updated_at: str) -> dict:
        """Record the ERP's latest change time and mark the link synced."""
        if validate_iso(external_updated_at, "external_updated_at") is None:
            raise ValidationError(
                "external_updated_at is required", field="external_updated_at"
            )
        return self.update_sync_status(
            link_id,
            SyncStatus.synced.value,
            {"external_updated_at": external_updated_at},
        )

    def bulk_update_sync_status(self, link_ids: list[str], status: str) -> dict:
        """Move several links to one status in a single transaction.

        Either every link changes or none does.

        Returns:
            ``{"changes": n}``.

        Raises:
            ValidationError: On an empty id list, unknown status, or a
                ``conflict`` target (conflicts need per-link payloads).
            NotFoundError: If any id does not exist.
            InvalidStateTransition: If any link cannot make the move.
        """
        if not isinstance(link_ids, list) or not link_ids:
            raise ValidationError("Order link IDs array is required", field="link_ids")
        _require_status(status)
        if status == SyncStatus.conflict.value:
            raise ValidationError(
                "Bulk updates cannot mark conflicts; use mark_conflict per link",
                field="sync_status",
            )

        unique_ids = list(dict.fromkeys(link_ids))
        rows = self._db.query(OrderLink).filter(OrderLink.id.in_(unique_ids)).all()
        found = {row.id: row for row in rows}
        for link_id in unique_ids:
            if link_id not in found:
                raise NotFoundError("Order link", link_id)

        try:
            for link_id in unique_ids:
                self._transition(found[link_id], status)
            self._db.commit()
        except Exception:
            self._db.rollback()
            raise
        logger.info("Bulk updated %d order links to %s", len(unique_ids), status)
        return {"changes": len(unique_ids)}

    # ========================================================================
    # Worklists and reporting
    # ========================================================================

    def get_needing_sync(
        self, connection_id: str | None = None, limit: int = DEFAULT_NEEDING_SYNC_LIMIT
    ) -> list[dict]:
        """Pending and errored links, oldest-updated first."""
        if not is_positive_int(limit):
            raise ValidationError("limit must be a positive integer", field="limit")
        query = self._db.query(OrderLink).filter(
            OrderLink.sync_status.in_([SyncStatus.pending.value, SyncStatus.error.value])
        )
        if connection_id:
            query = query.filter(OrderLink.connection_id == connection_id)
        rows = query.order_by(OrderLink.updated_at.asc(), OrderLink.id.asc()).limit(limit).all()
        return [self._row_to_dict(row) for row in rows]

    def get_conflicts(self, connection_id: str | None = None) -> list[dict]:
        """Links currently in conflict, most recently updated first."""
        query = self._db.query(OrderLink).filter(
            OrderLink.sync_status == SyncStatus.conflict.value
        )
        if connection_id:
            query = query.filter(OrderLink.connection_id == connection_id)
        rows = query.order_by(OrderLink.updated_at.desc(), OrderLink.id.asc()).all()
        return [self._row_to_dict(row) for row in rows]

    def get_conflict_history(self, link_id: str) -> list[dict]:
        """Every conflict recorded on a link, oldest first."""
        self._get_row(link_id)
        entries = (
            self._db.query(ConflictResolutionLog)
            .filter(ConflictResolutionLog.order_link_id == link_id)
            .order_by(ConflictResolutionLog.detected_at.asc())
            .all()
        )
        history = []
        for entry in entries:
            snapshot = {
                column: load_optional_json(
                    getattr(entry, f"{column}_json"),
                    resource_type="conflict log entry",
                    identifier=entry.id,
                    column=column,
                )
                for column in ("local_data", "external_data", "resolution_data")
            }
            history.append({
                "id": entry.id,
                "order_link_id": entry.order_link_id,
                "conflict_type": entry.conflict_type,
                "detected_at": entry.detected_at,
                "resolution_strategy": entry.resolution_strategy,
                "resolved_at": entry.resolved_at,
                "resolved_by": entry.resolved_by,
                "is_open": entry.resolved_at is None,
                **snapshot,
            })
        return history

    def get_sync_stats(self, connection_id: str | None = None) -> dict:
        """Per-status link counts with sync rate and attention count."""
        query = self._db.query(OrderLink.sync_status, func.count(OrderLink.id))
        last_sync_query = self._db.query(func.max(OrderLink.last_sync_at))
        if connection_id:
            query = query.filter(OrderLink.connection_id == connection_id)
            last_sync_query = last_sync_query.filter(OrderLink.connection_id == connection_id)
        counts = dict(query.group_by(OrderLink.sync_status).all())

        total = sum(counts.values())
        synced = counts.get(SyncStatus.synced.value, 0)
        pending = counts.get(SyncStatus.pending.value, 0)
        conflict = counts.get(SyncStatus.conflict.value, 0)
        error = counts.get(SyncStatus.error.value, 0)
        return {
            "total_links": total,
            "synced_count": synced,
            "pending_count": pending,
            "conflict_count": conflict,
            "error_count": error,
            "last_sync_at": last_sync_query.scalar(),
            "sync_rate_percent": round(synced / total * 100, 1) if total else 0.0,
            "needs_attention": pending + conflict + error,
        }

    # ========================================================================
    # Deletion
    # ========================================================================

    def delete(self, link_id: str) -> None:
        """Delete a link together with its resolved conflict history.

        Raises:
            NotFoundError: If the link does not exist.
            OpenConflictError: If a conflict on the link is still unresolved.
        """
        row = self._get_row(link_id)
        open_count = self._db.query(func.count(ConflictResolutionLog.id)).filter(
            ConflictResolutionLog.order_link_id == link_id,
            ConflictResolutionLog.resolved_at.is_(None),
        ).scalar()
        if open_count or row.sync_status == SyncStatus.conflict.value:
            raise OpenConflictError(link_id, max(open_count, 1))
        history_count = len(row.conflict_history)
        self._db.delete(row)
        self._commit()
        logger.info(
            "Deleted order link %s and %d conflict history records", link_id, history_count
        )
