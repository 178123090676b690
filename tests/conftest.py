"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite sessions with all tables (foreign keys enforced)
- Connection payloads and a persisted connection
- Service instances bound to the test session
"""

import copy

import pytest
from sqlalchemy.orm import sessionmaker

from erpsync.db.connection import create_db_engine
from erpsync.db.models import Base
from erpsync.services import (
    ConnectionRegistry,
    ImportBatchLog,
    OrderLinkRegistry,
    SyncStateTracker,
)

# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: multi-component sync cycle scenarios"
    )


# ============================================================================
# Test Data
# ============================================================================

SAMPLE_CONNECTION = {
    "name": "SAP Production",
    "erp_system_type": "sap_rest",
    "connection_config": {
        "auth_type": "api_key",
        "auth_config": {"api_key": "k-12345", "api_key_header": "X-API-Key"},
        "base_url": "https://erp.example.com",
        "endpoints": {"orders_list": "/api/orders"},
        "rate_limit_per_minute": 60,
        "retry_attempts": 3,
        "timeout_seconds": 30,
    },
    "import_settings": {
        "duplicate_handling": "skip",
        "required_fields": ["order_number", "quantity_to_make"],
        "batch_size": 200,
        "auto_import_enabled": False,
        "notification_email": "ops@example.com",
    },
    "created_by": 1,
}


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
def db_session():
    """Provide an in-memory SQLAlchemy session with all tables."""
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine)()
    yield session
    session.close()
    engine.dispose()


# ============================================================================
# Service Fixtures
# ============================================================================


@pytest.fixture
def connections(db_session):
    return ConnectionRegistry(db_session)


@pytest.fixture
def tracker(db_session):
    return SyncStateTracker(db_session)


@pytest.fixture
def links(db_session):
    return OrderLinkRegistry(db_session)


@pytest.fixture
def imports(db_session):
    return ImportBatchLog(db_session)


@pytest.fixture
def connection_payload():
    """A valid connection payload the test may mutate."""
    return copy.deepcopy(SAMPLE_CONNECTION)


@pytest.fixture
def connection(connections, connection_payload):
    """A persisted connection dict."""
    return connections.create(connection_payload)


@pytest.fixture
def make_link(links, connection):
    """Factory creating order links on the sample connection."""
    counter = {"order": 100}

    def _make(external_id: str, **overrides):
        counter["order"] += 1
        data = {
            "order_id": counter["order"],
            "connection_id": connection["id"],
            "external_id": external_id,
            "external_system": "SAP",
        }
        data.update(overrides)
        return links.create(data)

    return _make
