"""ConnectionRegistry: CRUD, validation and static checks for ERP connections.

Owns connection definitions (auth method, endpoints, import policy) and
their field mappings. Every write validates the full payload first and
commits once, so a rejected request never leaves a partial row. Deletion
is refused while sync state, import logs or order links still reference
the connection.
"""

import json
import logging
import time
from typing import Any

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from erpsync.db.models import (
    ErpConnection,
    FieldMapping,
    ImportLog,
    ImportStatus,
    OrderLink,
    SyncState,
    SyncStatus,
    utc_now_iso,
)
from erpsync.errors import (
    DependentRecordsError,
    DuplicateConnectionNameError,
    DuplicateFieldMappingError,
    NotFoundError,
    ValidationError,
)
from erpsync.services.connection_templates import template_for
from erpsync.services.connection_types import (
    MAX_CONNECTION_NAME_LENGTH,
    VALID_FIELD_DATA_TYPES,
    VALID_SYSTEM_TYPES,
    is_positive_int,
    parse_connection_config,
    parse_import_settings,
)
from erpsync.utils.json_fields import dump_json, load_json_dict, load_optional_json
from erpsync.utils.redaction import redact_connection_config, sanitize_error_message
from erpsync.utils.timestamps import validate_iso

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "name", "erp_system_type", "is_active", "connection_config",
    "import_settings", "api_key_id", "last_successful_import", "last_error",
})

FILE_BASED_SYSTEM_TYPES: frozenset[str] = frozenset({"csv_file", "excel_file"})

COMMON_PASSWORDS: frozenset[str] = frozenset({
    "password", "password1", "password123", "admin", "admin123", "123456",
    "12345678", "123456789", "qwerty", "letmein", "welcome", "changeme",
    "default", "secret", "test", "pass", "root", "sap123",
})

# Static-check thresholds
MAX_RECOMMENDED_TIMEOUT_SECONDS = 120
MAX_RECOMMENDED_BATCH_SIZE = 1000
MAX_RECOMMENDED_RATE_LIMIT = 1000
MAX_RECOMMENDED_RETRY_ATTEMPTS = 10
MIN_PASSWORD_LENGTH = 8

# Security audit penalties
PENALTY_PLAINTEXT_HTTP = 20
PENALTY_BASIC_AUTH = 15
PENALTY_COMMON_PASSWORD = 15
PENALTY_SHORT_PASSWORD = 10
PENALTY_EXCESSIVE_RATE_LIMIT = 5
PENALTY_RETRY_POLICY = 5


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError(
            "Connection name is required and must be a non-empty string", field="name"
        )
    name = name.strip()
    if len(name) > MAX_CONNECTION_NAME_LENGTH:
        raise ValidationError(
            f"Connection name must be {MAX_CONNECTION_NAME_LENGTH} characters or less",
            field="name",
        )
    return name


def _validate_system_type(system_type: Any) -> str:
    if not isinstance(system_type, str) or not system_type:
        raise ValidationError("ERP system type is required", field="erp_system_type")
    if system_type not in VALID_SYSTEM_TYPES:
        raise ValidationError(
            f"Invalid ERP system type '{system_type}'. "
            f"Must be one of: {', '.join(sorted(VALID_SYSTEM_TYPES))}",
            field="erp_system_type",
        )
    return system_type


def _serialize(value: dict, field: str) -> str:
    try:
        return json.dumps(value, sort_keys=True)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{field} must be JSON serializable", field=field) from e


def _optional_int(value: Any, field: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field)
    return value


def _is_plain_http(config: dict) -> bool:
    base_url = config.get("base_url")
    return isinstance(base_url, str) and base_url.lower().startswith("http://")


def _auth_section(config: dict) -> tuple[Any, dict]:
    auth_config = config.get("auth_config")
    return config.get("auth_type"), auth_config if isinstance(auth_config, dict) else {}


class ConnectionRegistry:
    """Manages ERP connection definitions.

    Args:
        db: SQLAlchemy session.
    """

    def __init__(self, db: Session) -> None:
        self._db = db

    # ========================================================================
    # Row helpers
    # ========================================================================

    def _get_row(self, connection_id: str) -> ErpConnection:
        row = self._db.query(ErpConnection).filter(
            ErpConnection.id == connection_id
        ).first()
        if row is None:
            raise NotFoundError("Connection", connection_id)
        return row

    def _row_to_dict(self, row: ErpConnection) -> dict:
        return {
            "id": row.id,
            "name": row.name,
            "erp_system_type": row.erp_system_type,
            "is_active": row.is_active,
            "connection_config": load_json_dict(
                row.connection_config_json,
                resource_type="connection",
                identifier=row.id,
                column="connection_config",
            ),
            "import_settings": load_json_dict(
                row.import_settings_json,
                resource_type="connection",
                identifier=row.id,
                column="import_settings",
            ),
            "api_key_id": row.api_key_id,
            "last_successful_import": row.last_successful_import,
            "last_error": row.last_error,
            "created_by": row.created_by,
            "created_at": row.created_at,
            "updated_at": row.updated_at,
        }

    def _dependent_counts(self, connection_id: str) -> dict[str, int]:
        return {
            "sync state records": self._db.query(SyncState).filter(
                SyncState.connection_id == connection_id
            ).count(),
            "import log records": self._db.query(ImportLog).filter(
                ImportLog.connection_id == connection_id
            ).count(),
            "linked orders": self._db.query(OrderLink).filter(
                OrderLink.connection_id == connection_id
            ).count(),
        }

    def _commit(self, name: str | None = None) -> None:
        try:
            self._db.commit()
        except IntegrityError as e:
            self._db.rollback()
            if name is not None:
                raise DuplicateConnectionNameError(name) from e
            raise
        except SQLAlchemyError:
            self._db.rollback()
            raise

    # ========================================================================
    # CRUD
    # ========================================================================

    def name_exists(self, name: str, exclude_id: str | None = None) -> bool:
        """Return True if another connection already uses the name."""
        query = self._db.query(ErpConnection.id).filter(ErpConnection.name == name)
        if exclude_id is not None:
            query = query.filter(ErpConnection.id != exclude_id)
        return query.first() is not None

    def create(self, data: dict) -> dict:
        """Validate and persist a new connection.

        Args:
            data: Connection payload with ``name``, ``erp_system_type``,
                ``connection_config``, ``import_settings`` and ``created_by``;
                optionally ``is_active`` (default True) and ``api_key_id``.

        Returns:
            The stored connection as a dict.

        Raises:
            ValidationError: On any malformed field (nothing is written).
            DuplicateConnectionNameError: If the name is taken.
        """
        name = _validate_name(data.get("name"))
        system_type = _validate_system_type(data.get("erp_system_type"))
        parse_connection_config(data.get("connection_config"))
        parse_import_settings(data.get("import_settings"))

        created_by = data.get("created_by")
        if isinstance(created_by, bool) or not isinstance(created_by, int):
            raise ValidationError(
                "Created by user ID is required and must be an integer",
                field="created_by",
            )
        is_active = data.get("is_active", True)
        if not isinstance(is_active, bool):
            raise ValidationError("is_active must be a boolean", field="is_active")
        api_key_id = _optional_int(data.get("api_key_id"), "api_key_id")

        config_json = _serialize(data["connection_config"], "connection_config")
        settings_json = _serialize(data["import_settings"], "import_settings")

        if self.name_exists(name):
            raise DuplicateConnectionNameError(name)

        now = utc_now_iso()
        row = ErpConnection(
            name=name,
            erp_system_type=system_type,
            is_active=is_active,
            connection_config_json=config_json,
            import_settings_json=settings_json,
            api_key_id=api_key_id,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        self._db.add(row)
        self._commit(name)
        self._db.refresh(row)

        logger.info(
            "Created connection %s (%s, %s) config=%s",
            row.id,
            name,
            system_type,
            redact_connection_config(data["connection_config"]),
        )
        return self._row_to_dict(row)

    def find_by_id(self, connection_id: str) -> dict | None:
        """Return a connection by id, or None if not found."""
        row = self._db.query(ErpConnection).filter(
            ErpConnection.id == connection_id
        ).first()
        return self._row_to_dict(row) if row else None

    def find_all(
        self,
        is_active: bool | None = None,
        erp_system_type: str | None = None,
        search: str | None = None,
    ) -> list[dict]:
        """List connections ordered by name.

        Args:
            is_active: Only active / inactive connections.
            erp_system_type: Only connections of this system type.
            search: Case-insensitive substring of the name.
        """
        query = self._db.query(ErpConnection)
        if is_active is not None:
            query = query.filter(ErpConnection.is_active == is_active)
        if erp_system_type:
            query = query.filter(ErpConnection.erp_system_type == erp_system_type)
        if search:
            query = query.filter(ErpConnection.name.ilike(f"%{search}%"))
        rows = query.order_by(ErpConnection.name.asc()).all()
        return [self._row_to_dict(r) for r in rows]

    def update(self, connection_id: str, partial: dict) -> dict:
        """Apply a partial update after validating every supplied field.

        The system type cannot change while dependent records exist, since
        stored cursors and links are specific to the ERP they came from.

        Raises:
            NotFoundError: If the connection does not exist.
            ValidationError: On unknown or malformed fields.
            DuplicateConnectionNameError: If renaming onto a taken name.
            DependentRecordsError: On a system type change with dependents.
        """
        row = self._get_row(connection_id)

        unknown = set(partial) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown connection field(s): {', '.join(sorted(unknown))}",
                field=sorted(unknown)[0],
            )
        if not partial:
            return self._row_to_dict(row)

        changes: dict[str, Any] = {}
        if "name" in partial:
            name = _validate_name(partial["name"])
            if name != row.name and self.name_exists(name, exclude_id=connection_id):
                raise DuplicateConnectionNameError(name)
            changes["name"] = name
        if "erp_system_type" in partial:
            system_type = _validate_system_type(partial["erp_system_type"])
            if system_type != row.erp_system_type:
                dependents = self._dependent_counts(connection_id)
                if any(dependents.values()):
                    raise DependentRecordsError("connection", connection_id, dependents)
            changes["erp_system_type"] = system_type
        if "is_active" in partial:
            if not isinstance(partial["is_active"], bool):
                raise ValidationError("is_active must be a boolean", field="is_active")
            changes["is_active"] = partial["is_active"]
        if "connection_config" in partial:
            parse_connection_config(partial["connection_config"])
            changes["connection_config_json"] = _serialize(
                partial["connection_config"], "connection_config"
            )
        if "import_settings" in partial:
            parse_import_settings(partial["import_settings"])
            changes["import_settings_json"] = _serialize(
                partial["import_settings"], "import_settings"
            )
        if "api_key_id" in partial:
            changes["api_key_id"] = _optional_int(partial["api_key_id"], "api_key_id")
        if "last_successful_import" in partial:
            changes["last_successful_import"] = validate_iso(
                partial["last_successful_import"], "last_successful_import"
            )
        if "last_error" in partial:
            last_error = partial["last_error"]
            if last_error is not None and not isinstance(last_error, str):
                raise ValidationError("last_error must be a string", field="last_error")
            changes["last_error"] = sanitize_error_message(last_error)

        for attr, value in changes.items():
            setattr(row, attr, value)
        row.updated_at = utc_now_iso()
        self._commit(changes.get("name"))
        self._db.refresh(row)

        logger.info("Updated connection %s fields=%s", connection_id, sorted(partial))
        return self._row_to_dict(row)

    def delete(self, connection_id: str) -> None:
        """Delete a connection and its field mappings.

        Raises:
            NotFoundError: If the connection does not exist.
            DependentRecordsError: While sync state, import logs or order
                links reference the connection.
        """
        row = self._get_row(connection_id)
        dependents = self._dependent_counts(connection_id)
        if any(dependents.values()):
            raise DependentRecordsError("connection", connection_id, dependents)

        self._db.delete(row)
        self._commit()
        logger.info("Deleted connection %s (%s)", connection_id, row.name)

    # ========================================================================
    # Static checks
    # ========================================================================

    def test(self, connection_id: str) -> dict:
        """Statically validate a stored connection. No network I/O.

        Returns:
            Dict with ``status`` (success/failure), ``message``,
            ``details`` (per-section validation results and timing),
            ``warnings`` and ``suggestions``.
        """
        started = time.perf_counter()
        row = self._get_row(connection_id)
        stored = self._row_to_dict(row)
        config = stored["connection_config"]
        settings = stored["import_settings"]

        config_errors: list[str] = []
        auth_errors: list[str] = []
        settings_errors: list[str] = []
        try:
            parse_connection_config(config)
        except ValidationError as e:
            if e.field and e.field.startswith("connection_config.auth_"):
                auth_errors.append(str(e))
            else:
                config_errors.append(str(e))
        try:
            parse_import_settings(settings)
        except ValidationError as e:
            settings_errors.append(str(e))

        auth_type, _ = _auth_section(config)
        warnings = self._risk_warnings(config, settings)
        suggestions = self._suggestions(row, config, settings)

        valid = not (config_errors or auth_errors or settings_errors)
        result = {
            "connection_id": connection_id,
            "status": "success" if valid else "failure",
            "tested_at": utc_now_iso(),
            "message": (
                "Connection configuration is valid and ready for use"
                if valid
                else "Connection configuration has validation errors"
            ),
            "details": {
                "config_validation": {"valid": not config_errors, "errors": config_errors},
                "auth_validation": {
                    "valid": not auth_errors,
                    "auth_type": auth_type,
                    "errors": auth_errors,
                },
                "import_settings_validation": {
                    "valid": not settings_errors,
                    "errors": settings_errors,
                },
                "is_active": row.is_active,
                "response_time_ms": round((time.perf_counter() - started) * 1000, 2),
            },
            "warnings": warnings,
            "suggestions": suggestions,
        }
        logger.info(
            "Tested connection %s: %s (%d warnings)",
            connection_id,
            result["status"],
            len(warnings),
        )
        return result

    def _risk_warnings(self, config: dict, settings: dict) -> list[str]:
        warnings: list[str] = []
        if _is_plain_http(config):
            warnings.append("Using HTTP instead of HTTPS may be insecure")

        timeout = config.get("timeout_seconds")
        if is_positive_int(timeout) and timeout > MAX_RECOMMENDED_TIMEOUT_SECONDS:
            warnings.append(
                f"timeout_seconds of {timeout} is unusually long "
                f"(recommended: {MAX_RECOMMENDED_TIMEOUT_SECONDS} or less)"
            )
        batch_size = settings.get("batch_size")
        if is_positive_int(batch_size) and batch_size > MAX_RECOMMENDED_BATCH_SIZE:
            warnings.append(
                f"batch_size of {batch_size} is very large and may exhaust memory "
                "(recommended: 100-500)"
            )
        if config.get("rate_limit_per_minute") is None:
            warnings.append("No rate limiting configured (rate_limit_per_minute)")
        if config.get("retry_attempts") is None:
            warnings.append("No retry policy configured (retry_attempts)")
        if config.get("auth_type") == "basic":
            warnings.append("Basic authentication sends credentials with every request")
        return warnings

    def _suggestions(self, row: ErpConnection, config: dict, settings: dict) -> list[str]:
        suggestions: list[str] = []
        if config.get("auth_type") == "basic":
            suggestions.append(
                "Use API key or OAuth2 authentication instead of basic authentication"
            )
        if settings.get("batch_size") is None:
            suggestions.append(
                "Set batch_size to optimize import performance (recommended: 100-500)"
            )
        if not settings.get("notification_email"):
            suggestions.append(
                "Set notification_email to receive alerts about import issues"
            )
        if not config.get("base_url") and row.erp_system_type not in FILE_BASED_SYSTEM_TYPES:
            suggestions.append("Set base_url to the ERP system's API endpoint")
        if not row.is_active:
            suggestions.append("Activate the connection to include it in scheduled imports")
        return suggestions

    @staticmethod
    def security_audit(payload: dict) -> dict:
        """Score a connection payload's security posture from 0 to 100.

        Args:
            payload: Connection payload (as passed to ``create``); only
                ``connection_config`` and ``import_settings`` are inspected.

        Returns:
            Dict with ``valid`` (structural validation result), ``errors``,
            ``security_score`` and ``warnings``.
        """
        config = payload.get("connection_config")
        config = config if isinstance(config, dict) else {}

        errors: list[str] = []
        for parse, raw in (
            (parse_connection_config, payload.get("connection_config")),
            (parse_import_settings, payload.get("import_settings")),
        ):
            try:
                parse(raw)
            except ValidationError as e:
                errors.append(str(e))

        score = 100
        warnings: list[str] = []
        if _is_plain_http(config):
            score -= PENALTY_PLAINTEXT_HTTP
            warnings.append("Using HTTP instead of HTTPS is not recommended for production")

        auth_type, auth_config = _auth_section(config)
        if auth_type == "basic":
            score -= PENALTY_BASIC_AUTH
            warnings.append("Basic authentication is less secure than API keys or OAuth2")
            password = auth_config.get("password")
            if isinstance(password, str) and password:
                if password.lower() in COMMON_PASSWORDS:
                    score -= PENALTY_COMMON_PASSWORD
                    warnings.append("Password appears to be a common/default value")
                if len(password) < MIN_PASSWORD_LENGTH:
                    score -= PENALTY_SHORT_PASSWORD
                    warnings.append(
                        f"Password is shorter than {MIN_PASSWORD_LENGTH} characters"
                    )

        rate_limit = config.get("rate_limit_per_minute")
        if is_positive_int(rate_limit) and rate_limit > MAX_RECOMMENDED_RATE_LIMIT:
            score -= PENALTY_EXCESSIVE_RATE_LIMIT
            warnings.append(
                f"rate_limit_per_minute of {rate_limit} is very high and may "
                "trigger throttling by the ERP system"
            )

        retry_attempts = config.get("retry_attempts")
        if retry_attempts is None:
            score -= PENALTY_RETRY_POLICY
            warnings.append("No retry policy configured (retry_attempts)")
        elif is_positive_int(retry_attempts) and retry_attempts > MAX_RECOMMENDED_RETRY_ATTEMPTS:
            score -= PENALTY_RETRY_POLICY
            warnings.append(
                f"retry_attempts of {retry_attempts} is excessive "
                f"(recommended: {MAX_RECOMMENDED_RETRY_ATTEMPTS} or less)"
            )

        return {
            "valid": not errors,
            "errors": errors,
            "security_score": max(0, score),
            "warnings": warnings,
        }

    @staticmethod
    def template_for(system_type: str) -> dict:
        """Return a configuration skeleton for a system type."""
        return template_for(system_type)

    # ========================================================================
    # Usage statistics
    # ========================================================================

    def get_usage_stats(self, connection_id: str) -> dict:
        """Summarize imports, linked orders and open conflicts."""
        self._get_row(connection_id)

        total, successful, failed, processed, last_import = self._db.query(
            func.count(ImportLog.id),
            func.sum(case((ImportLog.status == ImportStatus.completed.value, 1), else_=0)),
            func.sum(case((ImportLog.status == ImportStatus.failed.value, 1), else_=0)),
            func.sum(ImportLog.processed_records),
            func.max(ImportLog.started_at),
        ).filter(ImportLog.connection_id == connection_id).one()

        linked_orders = self._db.query(OrderLink).filter(
            OrderLink.connection_id == connection_id
        ).count()
        active_conflicts = self._db.query(OrderLink).filter(
            OrderLink.connection_id == connection_id,
            OrderLink.sync_status == SyncStatus.conflict.value,
        ).count()

        return {
            "connection_id": connection_id,
            "total_imports": total or 0,
            "successful_imports": successful or 0,
            "failed_imports": failed or 0,
            "total_records_processed": processed or 0,
            "linked_orders": linked_orders,
            "active_conflicts": active_conflicts,
            "last_import_date": last_import,
        }

    # ========================================================================
    # Field mappings
    # ========================================================================

    def _mapping_to_dict(self, mapping: FieldMapping) -> dict:
        return {
            "id": mapping.id,
            "connection_id": mapping.connection_id,
            "source_field": mapping.source_field,
            "target_field": mapping.target_field,
            "data_type": mapping.data_type,
            "is_required": mapping.is_required,
            "default_value": mapping.default_value,
            "transformation_rule": load_optional_json(
                mapping.transformation_rule_json,
                resource_type="field mapping",
                identifier=mapping.id,
                column="transformation_rule",
            ),
            "created_at": mapping.created_at,
            "updated_at": mapping.updated_at,
        }

    def add_field_mapping(self, connection_id: str, data: dict) -> dict:
        """Map an ERP source field onto a local order field.

        Raises:
            NotFoundError: If the connection does not exist.
            ValidationError: On missing fields or an unknown data type.
            DuplicateFieldMappingError: If the pair is already mapped.
        """
        self._get_row(connection_id)

        fields = {}
        for key in ("source_field", "target_field"):
            value = data.get(key)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{key} is required", field=key)
            if len(value) > 100:
                raise ValidationError(f"{key} must be 100 characters or less", field=key)
            fields[key] = value.strip()

        data_type = data.get("data_type")
        if data_type not in VALID_FIELD_DATA_TYPES:
            raise ValidationError(
                f"data_type must be one of: {', '.join(sorted(VALID_FIELD_DATA_TYPES))}",
                field="data_type",
            )
        is_required = data.get("is_required", False)
        if not isinstance(is_required, bool):
            raise ValidationError("is_required must be a boolean", field="is_required")
        default_value = data.get("default_value")
        if default_value is not None and not isinstance(default_value, str):
            raise ValidationError("default_value must be a string", field="default_value")
        rule = data.get("transformation_rule")
        if rule is not None and not isinstance(rule, dict):
            raise ValidationError(
                "transformation_rule must be an object", field="transformation_rule"
            )

        exists = self._db.query(FieldMapping.id).filter(
            FieldMapping.connection_id == connection_id,
            FieldMapping.source_field == fields["source_field"],
            FieldMapping.target_field == fields["target_field"],
        ).first()
        if exists:
            raise DuplicateFieldMappingError(fields["source_field"], fields["target_field"])

        now = utc_now_iso()
        mapping = FieldMapping(
            connection_id=connection_id,
            source_field=fields["source_field"],
            target_field=fields["target_field"],
            data_type=data_type,
            is_required=is_required,
            default_value=default_value,
            transformation_rule_json=dump_json(rule),
            created_at=now,
            updated_at=now,
        )
        self._db.add(mapping)
        try:
            self._db.commit()
        except IntegrityError as e:
            self._db.rollback()
            raise DuplicateFieldMappingError(
                fields["source_field"], fields["target_field"]
            ) from e
        except SQLAlchemyError:
            self._db.rollback()
            raise
        self._db.refresh(mapping)
        return self._mapping_to_dict(mapping)

    def list_field_mappings(self, connection_id: str) -> list[dict]:
        """Return a connection's field mappings ordered by source field."""
        self._get_row(connection_id)
        mappings = (
            self._db.query(FieldMapping)
            .filter(FieldMapping.connection_id == connection_id)
            .order_by(FieldMapping.source_field.asc(), FieldMapping.target_field.asc())
            .all()
        )
        return [self._mapping_to_dict(m) for m in mappings]

    def delete_field_mapping(self, mapping_id: str) -> None:
        """Remove one field mapping.

        Raises:
            NotFoundError: If the mapping does not exist.
        """
        mapping = self._db.query(FieldMapping).filter(FieldMapping.id == mapping_id).first()
        if mapping is None:
            raise NotFoundError("Field mapping", mapping_id)
        self._db.delete(mapping)
        self._commit()
