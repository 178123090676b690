"""Tests for ImportBatchLog: batch lifecycle, details, stats and retention."""

from datetime import UTC, datetime, timedelta

import pytest

from erpsync.db.models import ImportDetail
from erpsync.errors import (
    ImmutableRecordError,
    ImportBatchClosedError,
    InvalidStateTransition,
    NotFoundError,
    ProgressRegressionError,
    ValidationError,
)
from erpsync.services import IMPORT_STATUS_TRANSITIONS


@pytest.fixture
def batch(imports, connection):
    return imports.start_import({
        "connection_id": connection["id"],
        "import_type": "incremental",
        "total_records": 3,
        "created_by": 1,
        "import_metadata": {"trigger": "schedule"},
    })


def _detail(batch, external_id, action, **extra):
    return {"import_log_id": batch["id"], "external_id": external_id, "action": action, **extra}


class TestStartImport:

    def test_running_with_zero_counters(self, batch, connection):
        assert batch["status"] == "running"
        assert batch["connection_name"] == "SAP Production"
        assert batch["erp_system_type"] == "sap_rest"
        assert batch["total_records"] == 3
        assert batch["processed_records"] == 0
        assert batch["successful_records"] == 0
        assert batch["failed_records"] == 0
        assert batch["completed_at"] is None
        assert batch["duration_minutes"] is None
        assert batch["import_metadata"] == {"trigger": "schedule"}

    def test_defaults(self, imports, connection):
        started = imports.start_import({"connection_id": connection["id"], "import_type": "manual"})
        assert started["total_records"] == 0
        assert started["created_by"] is None
        assert started["import_metadata"] == {}

    def test_unknown_connection(self, imports):
        with pytest.raises(NotFoundError):
            imports.start_import({"connection_id": "missing", "import_type": "full"})

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"import_type": "delta"}, "import_type"),
            ({"total_records": -1}, "total_records"),
            ({"created_by": "bob"}, "created_by"),
            ({"import_metadata": ["x"]}, "import_metadata"),
            ({"source": "api"}, "source"),
        ],
    )
    def test_validation(self, imports, connection, overrides, field):
        data = {"connection_id": connection["id"], "import_type": "full", **overrides}
        with pytest.raises(ValidationError) as exc_info:
            imports.start_import(data)
        assert exc_info.value.field == field


class TestLifecycle:

    def test_transition_table(self):
        assert IMPORT_STATUS_TRANSITIONS["running"] == ["completed", "failed", "cancelled"]
        for terminal in ("completed", "failed", "cancelled"):
            assert IMPORT_STATUS_TRANSITIONS[terminal] == []

    def test_complete(self, imports, batch):
        done = imports.complete_import(batch["id"], "completed")
        assert done["status"] == "completed"
        assert done["completed_at"] >= done["started_at"]
        assert done["duration_minutes"] >= 0
        assert done["error_summary"] is None

    def test_fail_sanitizes_summary(self, imports, batch):
        failed = imports.complete_import(
            batch["id"], "failed", "ERP rejected request: token=abc123"
        )
        assert failed["status"] == "failed"
        assert "abc123" not in failed["error_summary"]

    def test_completes_exactly_once(self, imports, batch):
        imports.complete_import(batch["id"], "completed")
        with pytest.raises(InvalidStateTransition) as exc_info:
            imports.complete_import(batch["id"], "failed")
        assert exc_info.value.current_state == "completed"
        assert imports.find_by_id(batch["id"])["status"] == "completed"

    def test_non_terminal_target(self, imports, batch):
        with pytest.raises(ValidationError) as exc_info:
            imports.complete_import(batch["id"], "running")
        assert exc_info.value.field == "status"

    def test_cancel(self, imports, batch):
        cancelled = imports.cancel_import(batch["id"])
        assert cancelled["status"] == "cancelled"
        assert cancelled["error_summary"] == "Manual cancellation"

    def test_cancel_closed_batch(self, imports, batch):
        imports.complete_import(batch["id"], "completed")
        with pytest.raises(InvalidStateTransition):
            imports.cancel_import(batch["id"], "too late")

    def test_missing(self, imports):
        with pytest.raises(NotFoundError):
            imports.complete_import("missing", "completed")


class TestUpdateProgress:

    def test_counters_advance(self, imports, batch):
        updated = imports.update_progress(
            batch["id"], {"processed_records": 2, "successful_records": 2}
        )
        assert updated["processed_records"] == 2
        assert updated["successful_records"] == 2
        assert updated["total_records"] == 3

    def test_equal_is_allowed(self, imports, batch):
        imports.update_progress(batch["id"], {"processed_records": 2})
        assert imports.update_progress(batch["id"], {"processed_records": 2})[
            "processed_records"
        ] == 2

    def test_regression_rejected(self, imports, batch):
        imports.update_progress(batch["id"], {"processed_records": 2, "failed_records": 1})
        with pytest.raises(ProgressRegressionError) as exc_info:
            imports.update_progress(batch["id"], {"processed_records": 3, "failed_records": 0})
        assert exc_info.value.counter == "failed_records"
        assert imports.find_by_id(batch["id"])["processed_records"] == 2

    def test_closed_batch(self, imports, batch):
        imports.complete_import(batch["id"], "completed")
        with pytest.raises(ImportBatchClosedError):
            imports.update_progress(batch["id"], {"processed_records": 1})

    @pytest.mark.parametrize("counts", [{"processed_records": -1}, {"skipped": 1}])
    def test_validation(self, imports, batch, counts):
        with pytest.raises(ValidationError):
            imports.update_progress(batch["id"], counts)

    def test_empty_counts_noop(self, imports, batch):
        assert imports.update_progress(batch["id"], {}) == imports.find_by_id(batch["id"])


class TestDetails:

    def test_add_detail_advances_counters(self, imports, batch):
        imports.add_detail(_detail(batch, "PO-1", "create", manufacturing_order_id=11))
        imports.add_detail(_detail(batch, "PO-2", "update", manufacturing_order_id=12))
        imports.add_detail(_detail(batch, "PO-3", "skip"))
        imports.add_detail(_detail(batch, "PO-4", "error", error_message="missing part"))

        header = imports.find_by_id(batch["id"])
        assert header["processed_records"] == 4
        assert header["successful_records"] == 2
        assert header["failed_records"] == 1
        assert header["total_records"] == 4

    def test_detail_fields(self, imports, batch):
        detail = imports.add_detail(
            _detail(
                batch,
                "PO-9",
                "error",
                error_message="ERP said password=letmein",
                record_data={"order_number": "PO-9"},
            )
        )
        assert detail["import_log_id"] == batch["id"]
        assert detail["record_data"] == {"order_number": "PO-9"}
        assert "letmein" not in detail["error_message"]
        assert detail["processed_at"]

    @pytest.mark.parametrize(
        "external_id,action,field",
        [
            ("", "create", "external_id"),
            (None, "create", "external_id"),
            ("PO-1", "delete", "action"),
        ],
    )
    def test_validation(self, imports, batch, external_id, action, field):
        with pytest.raises(ValidationError) as exc_info:
            imports.add_detail(_detail(batch, external_id, action))
        assert exc_info.value.field == field

    def test_bad_order_id(self, imports, batch):
        with pytest.raises(ValidationError) as exc_info:
            imports.add_detail(_detail(batch, "PO-1", "create", manufacturing_order_id=0))
        assert exc_info.value.field == "manufacturing_order_id"

    def test_closed_batch_rejects_details(self, imports, batch):
        imports.complete_import(batch["id"], "completed")
        with pytest.raises(ImportBatchClosedError):
            imports.add_detail(_detail(batch, "PO-1", "create"))

    def test_unknown_batch(self, imports):
        with pytest.raises(NotFoundError):
            imports.add_detail({"import_log_id": "missing", "external_id": "PO-1", "action": "skip"})

    def test_add_details_all_or_nothing(self, imports, batch):
        with pytest.raises(ValidationError):
            imports.add_details(
                batch["id"],
                [
                    {"external_id": "PO-1", "action": "create"},
                    {"external_id": "PO-2", "action": "explode"},
                ],
            )
        assert imports.get_import_details(batch["id"]) == []
        assert imports.find_by_id(batch["id"])["processed_records"] == 0

    def test_add_details(self, imports, batch):
        added = imports.add_details(
            batch["id"],
            [
                {"external_id": "PO-1", "action": "create"},
                {"external_id": "PO-2", "action": "skip"},
            ],
        )
        assert [d["external_id"] for d in added] == ["PO-1", "PO-2"]
        assert imports.find_by_id(batch["id"])["processed_records"] == 2

    def test_add_details_rejects_foreign_parent(self, imports, batch):
        with pytest.raises(ValidationError) as exc_info:
            imports.add_details(
                batch["id"],
                [{"import_log_id": "other", "external_id": "PO-1", "action": "create"}],
            )
        assert exc_info.value.field == "import_log_id"

    def test_get_details_filter_and_page(self, imports, batch):
        for n, action in enumerate(["create", "error", "create", "skip"]):
            imports.add_detail(_detail(batch, f"PO-{n}", action))

        assert [d["external_id"] for d in imports.get_import_details(batch["id"])] == [
            "PO-0",
            "PO-1",
            "PO-2",
            "PO-3",
        ]
        created = imports.get_import_details(batch["id"], action="create")
        assert [d["external_id"] for d in created] == ["PO-0", "PO-2"]
        page = imports.get_import_details(batch["id"], limit=2, offset=1)
        assert [d["external_id"] for d in page] == ["PO-1", "PO-2"]

    def test_find_with_details(self, imports, batch):
        imports.add_detail(_detail(batch, "PO-1", "create"))
        found = imports.find_by_id(batch["id"], include_details=True)
        assert [d["external_id"] for d in found["details"]] == ["PO-1"]
        assert "details" not in imports.find_by_id(batch["id"])

    def test_details_are_immutable(self, imports, batch, db_session):
        detail = imports.add_detail(_detail(batch, "PO-1", "create"))
        row = db_session.get(ImportDetail, detail["id"])
        row.external_id = "PO-2"
        with pytest.raises(ImmutableRecordError):
            db_session.commit()


class TestQueries:

    def test_find_all_newest_first(self, imports, connection, batch):
        second = imports.start_import({"connection_id": connection["id"], "import_type": "full"})
        imports.complete_import(second["id"], "failed")

        assert [b["id"] for b in imports.find_all()] == [second["id"], batch["id"]]
        assert [b["id"] for b in imports.find_all(status="failed")] == [second["id"]]
        assert [b["id"] for b in imports.find_all(import_type="incremental")] == [batch["id"]]
        assert imports.find_all(connection_id="other") == []
        assert [b["id"] for b in imports.find_all(date_from=second["started_at"])] == [
            second["id"]
        ]
        assert len(imports.find_all(limit=1)) == 1

    def test_running_imports(self, imports, connection, batch):
        closed = imports.start_import({"connection_id": connection["id"], "import_type": "full"})
        imports.complete_import(closed["id"], "completed")
        assert [b["id"] for b in imports.get_running_imports()] == [batch["id"]]

    def test_find_missing(self, imports):
        assert imports.find_by_id("missing") is None


class TestStats:

    def test_empty(self, imports):
        stats = imports.get_import_stats()
        assert stats["total_imports"] == 0
        assert stats["avg_duration_minutes"] == 0.0
        assert stats["success_rate_percent"] == 0.0
        assert stats["record_success_rate_percent"] == 0.0

    def test_aggregates(self, imports, connection, batch):
        for action in ("create", "skip", "error"):
            imports.add_detail(_detail(batch, f"PO-{action}", action))
        imports.complete_import(batch["id"], "completed")
        failed = imports.start_import({"connection_id": connection["id"], "import_type": "full"})
        imports.complete_import(failed["id"], "failed")
        imports.start_import({"connection_id": connection["id"], "import_type": "manual"})

        stats = imports.get_import_stats(connection["id"])

        assert stats["total_imports"] == 3
        assert stats["completed_imports"] == 1
        assert stats["failed_imports"] == 1
        assert stats["running_imports"] == 1
        assert stats["cancelled_imports"] == 0
        assert stats["processed_records"] == 3
        assert stats["successful_records"] == 1
        assert stats["failed_records"] == 1
        assert stats["success_rate_percent"] == 33.3
        assert stats["record_success_rate_percent"] == 33.3
        assert stats["avg_duration_minutes"] >= 0

    def test_window_excludes_old_batches(self, imports, batch):
        later = datetime.now(UTC) + timedelta(days=31)
        assert imports.get_import_stats(days=30, now=later)["total_imports"] == 0
        assert imports.get_import_stats(days=60, now=later)["total_imports"] == 1

    def test_invalid_days(self, imports):
        with pytest.raises(ValidationError):
            imports.get_import_stats(days=0)


class TestRetention:

    def test_cleanup_purges_closed_batches(self, imports, connection, batch):
        imports.add_detail(_detail(batch, "PO-1", "create"))
        imports.add_detail(_detail(batch, "PO-2", "create"))
        imports.complete_import(batch["id"], "completed")
        running = imports.start_import({"connection_id": connection["id"], "import_type": "full"})

        later = datetime.now(UTC) + timedelta(days=91)
        result = imports.cleanup_old_logs(90, now=later)

        assert result == {"deleted_logs": 1, "deleted_details": 2}
        assert imports.find_by_id(batch["id"]) is None
        assert imports.find_by_id(running["id"]) is not None

    def test_cleanup_keeps_recent(self, imports, batch):
        imports.complete_import(batch["id"], "completed")
        assert imports.cleanup_old_logs() == {"deleted_logs": 0, "deleted_details": 0}
        assert imports.find_by_id(batch["id"]) is not None

    def test_invalid_retention(self, imports):
        with pytest.raises(ValidationError):
            imports.cleanup_old_logs(0)

    def test_delete(self, imports, batch, db_session):
        imports.add_detail(_detail(batch, "PO-1", "create"))
        imports.delete(batch["id"])
        assert imports.find_by_id(batch["id"]) is None
        assert db_session.query(ImportDetail).count() == 0
        with pytest.raises(NotFoundError):
            imports.delete(batch["id"])
