"""Credential redaction for ERP connection configs and error text.

A ``connection_config`` carries an ``auth_config`` whose secret fields
depend on its ``auth_type``. Configs are redacted before they reach a log
line or the CLI, and ERP error messages are scrubbed before they are
stored in an error column.
"""

import re
from typing import Any

REDACTED = "***REDACTED***"

# Secret fields of each structured auth type. ``custom`` auth is opaque,
# so every value in it is redacted.
AUTH_SECRET_FIELDS: dict[str, frozenset[str]] = {
    "api_key": frozenset({"api_key"}),
    "oauth2": frozenset({"client_secret", "access_token", "refresh_token"}),
    "basic": frozenset({"password"}),
    "bearer": frozenset({"token"}),
}

# Key fragments treated as secret anywhere in a config (case-insensitive)
SECRET_KEY_FRAGMENTS = frozenset({
    "secret", "password", "token", "api_key", "private_key",
    "credential", "authorization",
})

# Keys that name a secret's location rather than hold one
_READABLE_KEYS = frozenset({"api_key_header", "token_url", "auth_type"})

# Keys whose whole value is redacted
_CONTAINER_KEYS = frozenset({"headers"})


def _is_secret_key(key: str) -> bool:
    key_lower = key.lower()
    if key_lower in _READABLE_KEYS:
        return False
    return key_lower in _CONTAINER_KEYS or any(
        fragment in key_lower for fragment in SECRET_KEY_FRAGMENTS
    )


def redact_for_logging(obj: dict) -> dict:
    """Redact secret-looking keys from a nested dict.

    Args:
        obj: Dict to redact (not mutated; a copy is returned).

    Returns:
        New dict with matching values replaced by '***REDACTED***'.
    """
    result = {}
    for key, value in obj.items():
        if _is_secret_key(key):
            result[key] = REDACTED
        elif isinstance(value, dict):
            result[key] = redact_for_logging(value)
        elif isinstance(value, list):
            result[key] = [
                redact_for_logging(item) if isinstance(item, dict) else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def redact_auth_config(auth_type: Any, auth_config: dict) -> dict:
    """Redact an ``auth_config`` according to its auth type."""
    if auth_type == "custom":
        return {
            key: value if key == "auth_type" else REDACTED
            for key, value in auth_config.items()
        }
    redacted = redact_for_logging(auth_config)
    for key in AUTH_SECRET_FIELDS.get(auth_type, frozenset()) & auth_config.keys():
        redacted[key] = REDACTED
    return redacted


def redact_connection_config(config: dict) -> dict:
    """Redact a stored ``connection_config`` for logs and CLI output.

    ``auth_config`` is redacted by its auth type's secret fields. Every
    other key falls back to key-fragment matching.
    """
    result = {}
    for key, value in config.items():
        if key == "auth_config" and isinstance(value, dict):
            result[key] = redact_auth_config(config.get("auth_type"), value)
        else:
            result.update(redact_for_logging({key: value}))
    return result


# Secrets embedded in ERP error text: Authorization headers, "key": "value",
# key = "quoted value" and key=value. Longer names first.
_SECRET_NAMES = sorted(
    SECRET_KEY_FRAGMENTS.union(*AUTH_SECRET_FIELDS.values()),
    key=len,
    reverse=True,
)
_SECRET_KEYWORDS = "|".join(re.escape(name) for name in _SECRET_NAMES)
_SECRET_VALUE_PATTERN = re.compile(
    r"(?i)"
    r"(?:"
    r"Authorization\s*:\s*(?:Bearer|Basic)\s+\S+"
    r"|"
    r'"(?:' + _SECRET_KEYWORDS + r')"\s*:\s*"[^"]*"'
    r"|"
    r"(?:" + _SECRET_KEYWORDS + r")\s*[=:]\s*\"[^\"]*\""
    r"|"
    r"(?:" + _SECRET_KEYWORDS + r")\s*[=:]\s*\S+"
    r")",
)


def sanitize_error_message(msg: str | None, max_length: int = 2000) -> str | None:
    """Scrub secrets from an ERP error message and cap its length.

    Args:
        msg: Error message to sanitize (None passes through).
        max_length: Maximum length of the stored message.

    Returns:
        Sanitized and truncated message, or None.
    """
    if msg is None:
        return None
    sanitized = _SECRET_VALUE_PATTERN.sub(REDACTED, msg)
    if len(sanitized) > max_length:
        sanitized = sanitized[:max_length - 3] + "..."
    return sanitized
