"""Shared types and constants for ERP connection management.

The stored ``connection_config`` is a tagged union keyed by ``auth_type``:
each auth type has its own ``auth_config`` model, selected through a pydantic
discriminator and validated when the config is parsed. ``import_settings``
is validated the same way. Both models allow extra keys so that the stored
JSON round-trips unchanged.
"""

import re
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from erpsync.db.models import ErpSystemType, FieldDataType
from erpsync.errors import ValidationError


# --- Shared Constants ---

VALID_SYSTEM_TYPES: frozenset[str] = frozenset(t.value for t in ErpSystemType)

VALID_AUTH_TYPES: frozenset[str] = frozenset({
    "api_key", "oauth2", "basic", "bearer", "custom",
})

VALID_DUPLICATE_HANDLING: tuple[str, ...] = ("skip", "update", "create_new")

VALID_FIELD_DATA_TYPES: frozenset[str] = frozenset(t.value for t in FieldDataType)

POSITIVE_INT_FIELDS: tuple[str, ...] = (
    "rate_limit_per_minute",
    "retry_attempts",
    "timeout_seconds",
    "polling_interval_minutes",
)

MAX_CONNECTION_NAME_LENGTH = 100

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


def is_positive_int(value: Any) -> bool:
    """Return True for ints above zero (bools excluded)."""
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def is_well_formed_url(value: str) -> bool:
    """Return True for absolute http(s) URLs with a host."""
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_well_formed_email(value: str) -> bool:
    """Return True for a plausible single email address."""
    return bool(_EMAIL_PATTERN.match(value))


# --- Auth config variants ---


class _AuthConfigBase(BaseModel):
    model_config = ConfigDict(extra="allow")


class ApiKeyAuth(_AuthConfigBase):
    """API key sent as a header or query parameter."""

    auth_type: Literal["api_key"]
    api_key: str | None = None
    api_key_header: str | None = None

    @model_validator(mode="after")
    def key_or_header(self) -> "ApiKeyAuth":
        if not (self.api_key or self.api_key_header):
            raise ValueError(
                "api_key or api_key_header is required for api_key authentication"
            )
        return self


class OAuth2Auth(_AuthConfigBase):
    """OAuth2 client credentials."""

    auth_type: Literal["oauth2"]
    client_id: str | None = None
    client_secret: str | None = None
    token_url: str | None = None
    scope: str | None = None

    @model_validator(mode="after")
    def client_pair(self) -> "OAuth2Auth":
        if not (self.client_id and self.client_secret):
            raise ValueError(
                "client_id and client_secret are required for oauth2 authentication"
            )
        return self


class BasicAuth(_AuthConfigBase):
    """HTTP basic authentication."""

    auth_type: Literal["basic"]
    username: str | None = None
    password: str | None = None

    @model_validator(mode="after")
    def user_and_password(self) -> "BasicAuth":
        if not (self.username and self.password):
            raise ValueError(
                "username and password are required for basic authentication"
            )
        return self


class BearerAuth(_AuthConfigBase):
    """Static bearer token."""

    auth_type: Literal["bearer"]
    token: str | None = None

    @model_validator(mode="after")
    def has_token(self) -> "BearerAuth":
        if not self.token:
            raise ValueError("token is required for bearer authentication")
        return self


class CustomAuth(_AuthConfigBase):
    """Free-form auth handled by a custom client."""

    auth_type: Literal["custom"]


AuthConfig = Annotated[
    ApiKeyAuth | OAuth2Auth | BasicAuth | BearerAuth | CustomAuth,
    Field(discriminator="auth_type"),
]

AUTH_CONFIG_MODELS: dict[str, type[_AuthConfigBase]] = {
    "api_key": ApiKeyAuth,
    "oauth2": OAuth2Auth,
    "basic": BasicAuth,
    "bearer": BearerAuth,
    "custom": CustomAuth,
}


# --- Connection config / import settings ---


class ConnectionConfig(BaseModel):
    """Validated view of a stored ``connection_config``."""

    model_config = ConfigDict(extra="allow")

    auth_type: Literal["api_key", "oauth2", "basic", "bearer", "custom"]
    auth_config: AuthConfig
    base_url: str | None = None
    endpoints: dict[str, str] | None = None
    rate_limit_per_minute: int | None = None
    retry_attempts: int | None = None
    timeout_seconds: int | None = None
    polling_interval_minutes: int | None = None

    @model_validator(mode="before")
    @classmethod
    def tag_auth_config(cls, data: Any) -> Any:
        """Copy the outer auth_type into auth_config as its discriminator."""
        if isinstance(data, dict):
            auth_type = data.get("auth_type")
            auth_config = data.get("auth_config")
            if isinstance(auth_type, str) and isinstance(auth_config, dict):
                data = {**data, "auth_config": {**auth_config, "auth_type": auth_type}}
        return data

    @field_validator(*POSITIVE_INT_FIELDS, mode="before")
    @classmethod
    def positive_int(cls, value: Any) -> Any:
        if value is not None and not is_positive_int(value):
            raise ValueError("must be a positive integer")
        return value

    @field_validator("base_url")
    @classmethod
    def url_well_formed(cls, value: str | None) -> str | None:
        if value is not None and not is_well_formed_url(value):
            raise ValueError("must be a well-formed http(s) URL")
        return value


class ImportSettings(BaseModel):
    """Validated view of a stored ``import_settings``."""

    model_config = ConfigDict(extra="allow")

    duplicate_handling: Literal["skip", "update", "create_new"]
    required_fields: list[str] = []
    batch_size: int | None = None
    auto_import_enabled: bool = False
    notification_email: str | None = None

    @field_validator("duplicate_handling", mode="before")
    @classmethod
    def known_policy(cls, value: Any) -> Any:
        if value not in VALID_DUPLICATE_HANDLING:
            raise ValueError(
                "duplicate_handling must be one of: " + ", ".join(VALID_DUPLICATE_HANDLING)
            )
        return value

    @field_validator("batch_size", mode="before")
    @classmethod
    def positive_batch(cls, value: Any) -> Any:
        if value is not None and not is_positive_int(value):
            raise ValueError("must be a positive integer")
        return value

    @field_validator("notification_email")
    @classmethod
    def email_well_formed(cls, value: str | None) -> str | None:
        if value is not None and not is_well_formed_email(value):
            raise ValueError("must be a well-formed email address")
        return value


# --- Validation entry points ---


def _to_validation_error(exc: PydanticValidationError, prefix: str) -> ValidationError:
    """Convert the first pydantic error into a field-level ValidationError."""
    err = exc.errors()[0]
    loc = [str(part) for part in err["loc"]]
    # Discriminated unions insert the tag as the second segment
    if len(loc) > 1 and loc[0] == "auth_config" and loc[1] in AUTH_CONFIG_MODELS:
        del loc[1]
    field = ".".join([prefix, *loc])

    if err["type"] == "missing":
        return ValidationError(f"{field} is required", field=field)
    ctx_error = (err.get("ctx") or {}).get("error")
    reason = str(ctx_error) if ctx_error is not None else err["msg"]
    return ValidationError(f"Invalid {field}: {reason}", field=field)


def parse_connection_config(raw: Any) -> ConnectionConfig:
    """Validate a raw ``connection_config`` payload.

    Raises:
        ValidationError: Naming the first offending field.
    """
    if not isinstance(raw, dict):
        raise ValidationError(
            "Connection config is required and must be an object",
            field="connection_config",
        )
    try:
        return ConnectionConfig.model_validate(raw)
    except PydanticValidationError as e:
        raise _to_validation_error(e, "connection_config") from e


def parse_import_settings(raw: Any) -> ImportSettings:
    """Validate a raw ``import_settings`` payload.

    Raises:
        ValidationError: Naming the first offending field.
    """
    if not isinstance(raw, dict):
        raise ValidationError(
            "Import settings is required and must be an object",
            field="import_settings",
        )
    try:
        return ImportSettings.model_validate(raw)
    except PydanticValidationError as e:
        raise _to_validation_error(e, "import_settings") from e
