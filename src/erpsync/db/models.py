"""SQLAlchemy ORM models for the ERP synchronization store.

Defines connection definitions, per-connection sync state, external order
links with their conflict history, and the batch import audit trail. Uses
SQLAlchemy 2.0 style with Mapped and mapped_column.

Structured payloads (configuration, metadata, conflict snapshots) live in
Text columns and are parsed in the service layer, so the schema stays
portable between SQLite and PostgreSQL.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from erpsync.errors.domain import ImmutableRecordError


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format.

    Always carries microseconds so stored values have a fixed width and
    compare chronologically as plain strings.
    """
    return datetime.now(UTC).isoformat(timespec="microseconds")


# Enums matching the storage contract


class ErpSystemType(str, Enum):
    """Supported external ERP system families."""

    sap_rest = "sap_rest"
    sap_soap = "sap_soap"
    oracle_erp = "oracle_erp"
    netsuite = "netsuite"
    dynamics365 = "dynamics365"
    generic_rest = "generic_rest"
    generic_soap = "generic_soap"
    csv_file = "csv_file"
    excel_file = "excel_file"
    custom = "custom"


class SyncStrategy(str, Enum):
    """How incremental progress is tracked for a connection."""

    timestamp = "timestamp"
    cursor = "cursor"
    incremental_id = "incremental_id"


class SyncStatus(str, Enum):
    """Sync status of a single external order link.

    Lifecycle: synced <-> pending/error -> conflict -> (resolve) -> synced
    """

    synced = "synced"
    pending = "pending"
    conflict = "conflict"
    error = "error"


class ConflictStatus(str, Enum):
    """Resolution status stored inside a conflict payload."""

    unresolved = "unresolved"
    resolved = "resolved"


class ImportType(str, Enum):
    """Kind of import run."""

    full = "full"
    incremental = "incremental"
    manual = "manual"
    scheduled = "scheduled"


class ImportStatus(str, Enum):
    """Status values for import batches.

    Lifecycle: running -> completed/failed/cancelled (exactly once)
    """

    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class ImportAction(str, Enum):
    """Outcome of one external record within an import batch."""

    create = "create"
    update = "update"
    skip = "skip"
    error = "error"


class FieldDataType(str, Enum):
    """Target data types for field mappings."""

    string = "string"
    integer = "integer"
    decimal = "decimal"
    boolean = "boolean"
    date = "date"
    datetime = "datetime"
    json = "json"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ErpConnection(Base):
    """Configured external ERP endpoint.

    Attributes:
        id: UUID primary key
        name: Unique operator-facing name (max 100 chars)
        erp_system_type: One of ErpSystemType
        is_active: Whether scheduled syncs should use this connection
        connection_config_json: Auth, endpoint and throttling settings (JSON text)
        import_settings_json: Duplicate handling and batch policy (JSON text)
        api_key_id: Optional opaque reference to a stored credential
        last_successful_import: ISO8601 timestamp of the last good import
        last_error: Sanitized message from the last failed import
        created_by: Opaque user id of the creating operator
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "erp_connections"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    erp_system_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    connection_config_json: Mapped[str] = mapped_column(Text, nullable=False)
    import_settings_json: Mapped[str] = mapped_column(Text, nullable=False)
    api_key_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_successful_import: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    field_mappings: Mapped[list["FieldMapping"]] = relationship(
        "FieldMapping", back_populates="connection", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_erp_connections_system_type", "erp_system_type"),
        Index("idx_erp_connections_active", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<ErpConnection(id={self.id!r}, name={self.name!r}, "
            f"type={self.erp_system_type!r})>"
        )


class FieldMapping(Base):
    """Source-to-target field mapping for one connection.

    Removed together with its connection.
    """

    __tablename__ = "erp_field_mappings"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("erp_connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_field: Mapped[str] = mapped_column(String(100), nullable=False)
    target_field: Mapped[str] = mapped_column(String(100), nullable=False)
    data_type: Mapped[str] = mapped_column(String(50), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    default_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    transformation_rule_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    connection: Mapped["ErpConnection"] = relationship(
        "ErpConnection", back_populates="field_mappings"
    )

    __table_args__ = (
        UniqueConstraint(
            "connection_id",
            "source_field",
            "target_field",
            name="uq_erp_field_mappings_connection_fields",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<FieldMapping({self.source_field!r} -> {self.target_field!r}, "
            f"type={self.data_type!r})>"
        )


class SyncState(Base):
    """Incremental sync progress for exactly one connection.

    Attributes:
        id: UUID primary key
        connection_id: Owning connection (unique, 1:1)
        sync_strategy: One of SyncStrategy
        last_sync_timestamp: ISO8601 timestamp of the last sync attempt
        last_successful_sync: ISO8601 timestamp of the last successful sync
        last_erp_timestamp: Latest change timestamp reported by the ERP
        sync_cursor: Opaque pagination cursor from the ERP
        consecutive_failures: Failures since the last success
        is_full_sync_required: Whether the next run must ignore the cursor
        sync_metadata_json: Freeform context (last error, reset reason, ...)
    """

    __tablename__ = "erp_sync_state"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("erp_connections.id"), nullable=False, unique=True
    )
    sync_strategy: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SyncStrategy.timestamp.value
    )
    last_sync_timestamp: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_successful_sync: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )
    last_erp_timestamp: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sync_cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    is_full_sync_required: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    sync_metadata_json: Mapped[str | None] = mapped_column(
        Text, nullable=True, default="{}"
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    __table_args__ = (
        Index("idx_erp_sync_state_full_sync", "is_full_sync_required"),
        Index("idx_erp_sync_state_failures", "consecutive_failures"),
    )

    def __repr__(self) -> str:
        return (
            f"<SyncState(connection_id={self.connection_id!r}, "
            f"failures={self.consecutive_failures}, "
            f"full_sync={self.is_full_sync_required})>"
        )


class OrderLink(Base):
    """Link between an external ERP order record and a local order.

    Attributes:
        id: UUID primary key
        order_id: Opaque id of the local manufacturing order
        connection_id: Connection the external record came from
        external_id: ERP record identifier (unique per connection)
        external_system: Name of the external system
        external_updated_at: Last-updated timestamp reported by the ERP
        last_sync_at: ISO8601 timestamp of the last status change
        sync_status: One of SyncStatus
        conflict_data_json: Conflict payload (JSON text), null when never conflicted
    """

    __tablename__ = "erp_order_links"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_id: Mapped[int] = mapped_column(Integer, nullable=False)
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("erp_connections.id"), nullable=False
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_system: Mapped[str] = mapped_column(String(100), nullable=False)
    external_updated_at: Mapped[str | None] = mapped_column(
        String(50), nullable=True
    )
    last_sync_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sync_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SyncStatus.synced.value
    )
    conflict_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conflict_history: Mapped[list["ConflictResolutionLog"]] = relationship(
        "ConflictResolutionLog",
        back_populates="order_link",
        cascade="all, delete-orphan",
        order_by="ConflictResolutionLog.detected_at",
    )

    __table_args__ = (
        UniqueConstraint(
            "connection_id", "external_id", name="uq_erp_order_links_connection_external"
        ),
        Index("idx_erp_order_links_order", "order_id"),
        Index("idx_erp_order_links_status", "sync_status"),
        Index("idx_erp_order_links_updated", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<OrderLink(external_id={self.external_id!r}, "
            f"order_id={self.order_id}, status={self.sync_status!r})>"
        )


class ConflictResolutionLog(Base):
    """One detected conflict on an order link and how it was resolved.

    A row with resolved_at unset is the currently open conflict.
    """

    __tablename__ = "erp_conflict_resolution_log"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    order_link_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("erp_order_links.id"), nullable=False
    )
    conflict_type: Mapped[str] = mapped_column(String(100), nullable=False)
    detected_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    resolution_strategy: Mapped[str | None] = mapped_column(
        String(100), nullable=True
    )
    resolved_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resolved_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    local_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolution_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    order_link: Mapped["OrderLink"] = relationship(
        "OrderLink", back_populates="conflict_history"
    )

    __table_args__ = (
        Index("idx_erp_conflict_log_link", "order_link_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<ConflictResolutionLog(link={self.order_link_id!r}, "
            f"type={self.conflict_type!r}, resolved_at={self.resolved_at!r})>"
        )


class ImportLog(Base):
    """Header record for one import run (batch).

    Attributes:
        id: UUID primary key
        connection_id: Connection the batch imported from
        import_type: One of ImportType
        status: One of ImportStatus
        started_at: ISO8601 timestamp when the batch started
        completed_at: ISO8601 timestamp when the batch reached a terminal status
        total_records: Records the batch expects to process
        processed_records: Records handled so far
        successful_records: Records created or updated
        failed_records: Records that errored
        error_summary: Sanitized batch-level error text
        import_metadata_json: Freeform batch context (JSON text)
        created_by: Opaque id of the initiating user, if any
    """

    __tablename__ = "erp_import_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    connection_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("erp_connections.id"), nullable=False
    )
    import_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ImportStatus.running.value
    )
    started_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    completed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)

    total_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    successful_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_records: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    import_metadata_json: Mapped[str | None] = mapped_column(
        Text, nullable=True, default="{}"
    )
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)

    details: Mapped[list["ImportDetail"]] = relationship(
        "ImportDetail",
        back_populates="import_log",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("idx_erp_import_logs_connection", "connection_id"),
        Index("idx_erp_import_logs_status", "status"),
        Index("idx_erp_import_logs_started", "started_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<ImportLog(id={self.id!r}, type={self.import_type!r}, "
            f"status={self.status!r})>"
        )


class ImportDetail(Base):
    """Outcome of one external record within an import batch.

    Append-only: rows are never modified after they are written.
    """

    __tablename__ = "erp_import_details"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    import_log_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("erp_import_logs.id", ondelete="CASCADE"),
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    manufacturing_order_id: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    record_data_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    import_log: Mapped["ImportLog"] = relationship(
        "ImportLog", back_populates="details"
    )

    __table_args__ = (
        Index("idx_erp_import_details_log", "import_log_id"),
        Index("idx_erp_import_details_action", "action"),
    )

    def __repr__(self) -> str:
        return (
            f"<ImportDetail(external_id={self.external_id!r}, "
            f"action={self.action!r})>"
        )


@event.listens_for(ImportDetail, "before_update")
def _reject_import_detail_update(
    mapper: Any, connection: Any, target: ImportDetail
) -> None:
    """Refuse to flush modifications to a written import detail."""
    state = inspect(target)
    changed = [
        attr.key
        for attr in state.mapper.column_attrs
        if state.attrs[attr.key].history.has_changes()
    ]
    if changed:
        raise ImmutableRecordError("ImportDetail", target.id)
