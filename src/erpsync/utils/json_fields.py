"""Helpers for JSON payloads stored in Text columns.

Reads never raise on corrupt data: an unparsable payload is logged and read
back as an empty object so list and detail views keep working.
"""

import json
import logging
from typing import Any

logger = logging.getLogger(__name__)


def dump_json(value: Any) -> str | None:
    """Serialize a payload for storage (None stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def load_json_dict(
    raw: str | None, *, resource_type: str, identifier: str, column: str
) -> dict:
    """Parse a JSON object column, degrading to ``{}``.

    Args:
        raw: Stored column value.
        resource_type: Entity name used in the warning.
        identifier: Row id used in the warning.
        column: Column name used in the warning.

    Returns:
        Parsed dict, or an empty dict when the value is NULL, corrupt, or
        not a JSON object.
    """
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(
            "Corrupt %s on %s %s, returning empty dict", column, resource_type, identifier
        )
        return {}
    if not isinstance(value, dict):
        logger.warning(
            "Non-object %s on %s %s, returning empty dict", column, resource_type, identifier
        )
        return {}
    return value


def load_optional_json(
    raw: str | None, *, resource_type: str, identifier: str, column: str
) -> Any:
    """Parse a nullable JSON column of any shape.

    NULL reads back as None; a corrupt value reads back as ``{}``.
    """
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.warning(
            "Corrupt %s on %s %s, returning empty dict", column, resource_type, identifier
        )
        return {}
