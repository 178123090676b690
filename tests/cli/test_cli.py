"""End-to-end tests for the erpsync CLI against a temporary SQLite store."""

import json
import os

import pytest
from typer.testing import CliRunner

from erpsync.cli.main import app
from erpsync.db.connection import (
    create_db_engine,
    create_session_factory,
    init_db,
    session_scope,
)
from erpsync.services import (
    ConnectionRegistry,
    ImportBatchLog,
    OrderLinkRegistry,
    SyncStateTracker,
)

runner = CliRunner()


@pytest.fixture
def store(tmp_path, monkeypatch):
    """Point the CLI at a fresh database with no config file in reach."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / ".config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / ".data"))
    for key in list(os.environ):
        if key.startswith("ERPSYNC_"):
            monkeypatch.delenv(key)
    db_url = f"sqlite:///{tmp_path / 'erpsync.db'}"
    monkeypatch.setenv("DATABASE_URL", db_url)

    engine = create_db_engine(db_url)
    init_db(engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def seeded(store, connection_payload):
    """A connection with sync state in the store."""
    with session_scope(store) as db:
        connection = ConnectionRegistry(db).create(connection_payload)
        SyncStateTracker(db).init(connection["id"])
    return connection


class TestBasics:

    def test_version(self):
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert "erpsync" in result.stdout

    def test_help(self):
        result = runner.invoke(app, ["connections", "list", "--help"])
        assert result.exit_code == 0
        assert "List" in result.stdout

    def test_db_init(self, store):
        result = runner.invoke(app, ["db", "init"])
        assert result.exit_code == 0
        assert "Database ready" in result.stdout

    def test_missing_config_file(self, store, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "sync", "attention"])
        assert result.exit_code == 1
        assert "Config file not found" in result.stdout


class TestConnectionCommands:

    def test_list_empty(self, store):
        result = runner.invoke(app, ["connections", "list"])
        assert result.exit_code == 0
        assert "No connections found." in result.stdout

    def test_list_json_redacts_credentials(self, seeded):
        result = runner.invoke(app, ["connections", "list", "--json"])
        assert result.exit_code == 0
        rows = json.loads(result.stdout)
        assert [r["id"] for r in rows] == [seeded["id"]]
        assert "k-12345" not in result.stdout
        assert rows[0]["connection_config"]["auth_config"]["api_key"] == "***REDACTED***"

    def test_show(self, seeded):
        result = runner.invoke(app, ["connections", "show", seeded["id"], "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["name"] == "SAP Production"
        assert data["usage"]["total_imports"] == 0
        assert "k-12345" not in result.stdout

    def test_show_missing(self, store):
        result = runner.invoke(app, ["connections", "show", "missing"])
        assert result.exit_code == 1
        assert "E-1001" in result.stdout

    def test_static_test(self, seeded):
        result = runner.invoke(app, ["connections", "test", seeded["id"], "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "success"

    def test_audit(self, tmp_path, connection_payload):
        path = tmp_path / "payload.json"
        path.write_text(json.dumps(connection_payload))
        result = runner.invoke(app, ["connections", "audit", str(path), "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["security_score"] == 100

    def test_audit_missing_file(self, tmp_path):
        result = runner.invoke(app, ["connections", "audit", str(tmp_path / "nope.json")])
        assert result.exit_code == 1

    def test_template(self):
        result = runner.invoke(app, ["connections", "template", "netsuite"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["erp_system_type"] == "netsuite"


class TestSyncCommands:

    def test_status(self, seeded):
        result = runner.invoke(app, ["sync", "status", seeded["id"], "--json"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["stats"]["sync_health"] == "unknown"

    def test_status_without_state(self, store):
        result = runner.invoke(app, ["sync", "status", "missing"])
        assert result.exit_code == 1
        assert "E-1001" in result.stdout

    def test_init(self, store, connection_payload):
        with session_scope(store) as db:
            connection = ConnectionRegistry(db).create(connection_payload)
        result = runner.invoke(app, ["sync", "init", connection["id"], "--strategy", "cursor"])
        assert result.exit_code == 0
        with session_scope(store) as db:
            assert SyncStateTracker(db).get(connection["id"])["sync_strategy"] == "cursor"

    def test_init_twice(self, seeded):
        result = runner.invoke(app, ["sync", "init", seeded["id"]])
        assert result.exit_code == 1
        assert "E-3003" in result.stdout

    def test_record_success(self, seeded, store):
        result = runner.invoke(
            app, ["sync", "record-success", seeded["id"], "--cursor", "page-9"]
        )
        assert result.exit_code == 0
        with session_scope(store) as db:
            assert SyncStateTracker(db).get(seeded["id"])["sync_cursor"] == "page-9"

    def test_failure_threshold_from_config(self, seeded, monkeypatch):
        monkeypatch.setenv("ERPSYNC_SYNC_MAX_CONSECUTIVE_FAILURES", "2")
        first = runner.invoke(app, ["sync", "record-failure", seeded["id"], "timeout"])
        assert first.exit_code == 0
        assert "Full sync is now required" not in first.stdout

        second = runner.invoke(app, ["sync", "record-failure", seeded["id"], "timeout"])
        assert second.exit_code == 0
        assert "Full sync is now required" in second.stdout

    def test_attention(self, seeded):
        result = runner.invoke(app, ["sync", "attention", "--json"])
        assert result.exit_code == 0
        assert [s["health"] for s in json.loads(result.stdout)] == ["unknown"]

    def test_attention_empty(self, store):
        result = runner.invoke(app, ["sync", "attention"])
        assert result.exit_code == 0
        assert "All connections are healthy." in result.stdout

    def test_force_full(self, seeded, store):
        result = runner.invoke(app, ["sync", "force-full", seeded["id"], "--reason", "schema"])
        assert result.exit_code == 0
        with session_scope(store) as db:
            assert SyncStateTracker(db).get(seeded["id"])["is_full_sync_required"] is True

    def test_reset_asks_for_confirmation(self, seeded):
        result = runner.invoke(app, ["sync", "reset", seeded["id"]], input="n\n")
        assert result.exit_code == 1

    def test_reset_with_yes(self, seeded, store):
        result = runner.invoke(app, ["sync", "reset", seeded["id"], "--yes"])
        assert result.exit_code == 0
        with session_scope(store) as db:
            state = SyncStateTracker(db).get(seeded["id"])
        assert state["sync_metadata"]["reset_reason"] == "Manual reset"


class TestLinkCommands:

    def test_conflicts_empty(self, store):
        result = runner.invoke(app, ["links", "conflicts"])
        assert result.exit_code == 0
        assert "No order links found." in result.stdout

    def test_conflicts_and_needing_sync(self, seeded, store):
        with session_scope(store) as db:
            registry = OrderLinkRegistry(db)
            base = {"connection_id": seeded["id"], "external_system": "SAP"}
            conflicted = registry.create({**base, "order_id": 1, "external_id": "PO-1"})
            registry.mark_conflict(conflicted["id"], {"conflict_type": "quantity_mismatch"})
            registry.create({**base, "order_id": 2, "external_id": "PO-2", "sync_status": "pending"})

        conflicts = runner.invoke(app, ["links", "conflicts", "--json"])
        assert conflicts.exit_code == 0
        assert [link["external_id"] for link in json.loads(conflicts.stdout)] == ["PO-1"]

        pending = runner.invoke(app, ["links", "needing-sync", "--json", "--limit", "5"])
        assert pending.exit_code == 0
        assert [link["external_id"] for link in json.loads(pending.stdout)] == ["PO-2"]


class TestImportCommands:

    @pytest.fixture
    def running(self, seeded, store):
        with session_scope(store) as db:
            return ImportBatchLog(db).start_import(
                {"connection_id": seeded["id"], "import_type": "scheduled"}
            )

    def test_running(self, running):
        result = runner.invoke(app, ["imports", "running", "--json"])
        assert result.exit_code == 0
        assert [b["id"] for b in json.loads(result.stdout)] == [running["id"]]

    def test_cancel(self, running, store):
        result = runner.invoke(app, ["imports", "cancel", running["id"], "--reason", "stuck"])
        assert result.exit_code == 0
        with session_scope(store) as db:
            batch = ImportBatchLog(db).find_by_id(running["id"])
        assert batch["status"] == "cancelled"
        assert batch["error_summary"] == "stuck"

    def test_cancel_twice_fails(self, running):
        runner.invoke(app, ["imports", "cancel", running["id"]])
        result = runner.invoke(app, ["imports", "cancel", running["id"]])
        assert result.exit_code == 1
        assert "E-3005" in result.stdout

    def test_stats(self, running):
        result = runner.invoke(app, ["imports", "stats", "--json", "--days", "7"])
        assert result.exit_code == 0
        stats = json.loads(result.stdout)
        assert stats["days"] == 7
        assert stats["running_imports"] == 1

    def test_cleanup(self, running):
        result = runner.invoke(app, ["imports", "cleanup", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout) == {"deleted_logs": 0, "deleted_details": 0}
