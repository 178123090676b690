"""Tests for OrderLinkRegistry: linking, status lifecycle and conflicts."""

import pytest

from erpsync.db.models import ConflictResolutionLog
from erpsync.errors import (
    DuplicateExternalIdError,
    InvalidStateTransition,
    NotFoundError,
    NotInConflictError,
    OpenConflictError,
    ValidationError,
)
from erpsync.services import SYNC_STATUS_TRANSITIONS
from erpsync.services.order_link_registry import can_transition

CONFLICT = {
    "conflict_type": "quantity_mismatch",
    "local_data": {"quantity_to_make": 10},
    "external_data": {"quantity_to_make": 12},
}

RESOLUTION = {
    "resolution_strategy": "use_external",
    "resolved_by": 7,
    "resolved_data": {"quantity_to_make": 12},
}


@pytest.fixture
def conflicted(links, make_link):
    link = make_link("PO-1")
    return links.mark_conflict(link["id"], dict(CONFLICT))


class TestTransitionTable:

    @pytest.mark.parametrize("current", ["synced", "pending", "error"])
    @pytest.mark.parametrize("target", ["synced", "pending", "error", "conflict"])
    def test_open_statuses_move_freely(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("target", ["synced", "pending", "error"])
    def test_conflict_only_leaves_by_resolving(self, target):
        assert not can_transition("conflict", target)
        assert can_transition("conflict", target, resolving=True) is (target == "synced")

    def test_resolving_requires_conflict(self):
        assert not can_transition("pending", "synced", resolving=True)

    def test_every_status_has_entry(self):
        assert set(SYNC_STATUS_TRANSITIONS) == {"synced", "pending", "conflict", "error"}


# ============================================================
# Creation and lookup
# ============================================================


class TestCreate:

    def test_defaults(self, make_link, connection):
        link = make_link("PO-1")
        assert link["sync_status"] == "synced"
        assert link["connection_id"] == connection["id"]
        assert link["conflict_data"] is None
        assert link["last_sync_at"] is None

    def test_initial_status(self, make_link):
        assert make_link("PO-1", sync_status="pending")["sync_status"] == "pending"

    def test_cannot_start_in_conflict(self, make_link):
        with pytest.raises(ValidationError) as exc_info:
            make_link("PO-1", sync_status="conflict")
        assert exc_info.value.field == "sync_status"

    def test_duplicate_external_id(self, make_link):
        make_link("PO-1")
        with pytest.raises(DuplicateExternalIdError):
            make_link("PO-1")

    def test_same_external_id_on_other_connection(self, connections, links, make_link,
                                                  connection_payload):
        make_link("PO-1")
        other = connections.create(dict(connection_payload, name="NetSuite"))
        link = links.create({
            "order_id": 500,
            "connection_id": other["id"],
            "external_id": "PO-1",
            "external_system": "NetSuite",
        })
        assert link["external_id"] == "PO-1"

    def test_unknown_connection(self, links):
        with pytest.raises(NotFoundError):
            links.create({
                "order_id": 1,
                "connection_id": "missing",
                "external_id": "PO-1",
                "external_system": "SAP",
            })

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"order_id": 0}, "order_id"),
            ({"order_id": "12"}, "order_id"),
            ({"external_id": ""}, "external_id"),
            ({"external_id": "x" * 256}, "external_id"),
            ({"external_system": None}, "external_system"),
            ({"sync_status": "done"}, "sync_status"),
            ({"external_updated_at": "yesterday"}, "external_updated_at"),
            ({"external_updated_at": 1772359200}, "external_updated_at"),
            ({"priority": 1}, "priority"),
        ],
    )
    def test_validation(self, links, connection, overrides, field):
        data = {
            "order_id": 1,
            "connection_id": connection["id"],
            "external_id": "PO-1",
            "external_system": "SAP",
        }
        data.update(overrides)
        with pytest.raises(ValidationError) as exc_info:
            links.create(data)
        assert exc_info.value.field == field


class TestLookup:

    def test_find_by_id(self, links, make_link):
        link = make_link("PO-1")
        assert links.find_by_id(link["id"]) == link
        assert links.find_by_id("missing") is None

    def test_find_by_external_id(self, links, make_link, connection):
        link = make_link("PO-1")
        assert links.find_by_external_id("PO-1", connection["id"])["id"] == link["id"]
        assert links.find_by_external_id("PO-2", connection["id"]) is None
        assert links.external_id_exists("PO-1", connection["id"])
        assert not links.external_id_exists("PO-1", connection["id"], exclude_id=link["id"])

    def test_find_by_order_id(self, links, make_link):
        first = make_link("PO-1", order_id=900)
        second = make_link("PO-2", order_id=900)
        make_link("PO-3")
        assert [l["id"] for l in links.find_by_order_id(900)] == [first["id"], second["id"]]

    def test_find_all_filters(self, links, make_link, conflicted):
        make_link("PO-2", sync_status="pending")
        make_link("PO-3", sync_status="error")
        make_link("PO-4", external_system="Oracle")

        assert len(links.find_all()) == 4
        assert [l["external_id"] for l in links.find_all(sync_status="pending")] == ["PO-2"]
        assert [l["external_id"] for l in links.find_all(has_conflicts=True)] == ["PO-1"]
        assert len(links.find_all(has_conflicts=False)) == 3
        assert {l["external_id"] for l in links.find_all(needs_sync=True)} == {"PO-2", "PO-3"}
        assert [l["external_id"] for l in links.find_all(external_system="Oracle")] == ["PO-4"]
        assert len(links.find_all(limit=2)) == 2
        assert len(links.find_all(limit=2, offset=3)) == 1

    def test_find_all_rejects_unknown_status(self, links):
        with pytest.raises(ValidationError):
            links.find_all(sync_status="done")


# ============================================================
# Status lifecycle
# ============================================================


class TestUpdateSyncStatus:

    def test_stamps_last_sync(self, links, make_link):
        link = make_link("PO-1")
        updated = links.update_sync_status(link["id"], "pending")
        assert updated["sync_status"] == "pending"
        assert updated["last_sync_at"] is not None
        assert updated["updated_at"] >= link["updated_at"]

    def test_external_updated_at(self, links, make_link):
        link = make_link("PO-1", sync_status="pending")
        updated = links.update_sync_status(
            link["id"], "synced", {"external_updated_at": "2026-03-01T10:00:00Z"}
        )
        assert updated["external_updated_at"] == "2026-03-01T10:00:00Z"

    def test_unknown_status(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError):
            links.update_sync_status(link["id"], "archived")

    def test_unknown_extra(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError) as exc_info:
            links.update_sync_status(link["id"], "pending", {"note": "x"})
        assert exc_info.value.field == "note"

    def test_missing_link(self, links):
        with pytest.raises(NotFoundError):
            links.update_sync_status("missing", "pending")

    def test_conflict_requires_payload(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError) as exc_info:
            links.update_sync_status(link["id"], "conflict")
        assert exc_info.value.field == "conflict_data"
        assert links.find_by_id(link["id"])["sync_status"] == "synced"

    def test_conflict_through_update_is_logged(self, links, make_link):
        link = make_link("PO-1")
        updated = links.update_sync_status(
            link["id"], "conflict", {"conflict_data": dict(CONFLICT)}
        )
        assert updated["sync_status"] == "conflict"
        assert len(links.get_conflict_history(link["id"])) == 1

    @pytest.mark.parametrize("target", ["synced", "pending", "error"])
    def test_cannot_leave_conflict(self, links, conflicted, target):
        with pytest.raises(InvalidStateTransition) as exc_info:
            links.update_sync_status(conflicted["id"], target)
        assert exc_info.value.allowed_transitions == ["conflict"]
        assert links.find_by_id(conflicted["id"])["sync_status"] == "conflict"

    def test_clear_stale_conflict_payload(self, links, make_link):
        link = make_link("PO-1", sync_status="error")
        links.update_sync_status(link["id"], "error", {"conflict_data": {"note": "old"}})
        updated = links.update_sync_status(link["id"], "pending", {"conflict_data": None})
        assert updated["conflict_data"] is None

    def test_update_external_timestamp(self, links, make_link):
        link = make_link("PO-1", sync_status="error")
        updated = links.update_external_timestamp(link["id"], "2026-03-02T08:00:00Z")
        assert updated["sync_status"] == "synced"
        assert updated["external_updated_at"] == "2026-03-02T08:00:00Z"

    def test_update_external_timestamp_requires_value(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError):
            links.update_external_timestamp(link["id"], None)

    def test_update_external_timestamp_must_parse(self, links, make_link):
        link = make_link("PO-1", sync_status="pending")
        with pytest.raises(ValidationError) as exc_info:
            links.update_external_timestamp(link["id"], "2026-13-45")
        assert exc_info.value.field == "external_updated_at"
        assert links.find_by_id(link["id"])["sync_status"] == "pending"


class TestConflicts:

    def test_mark_conflict_payload(self, conflicted):
        payload = conflicted["conflict_data"]
        assert conflicted["sync_status"] == "conflict"
        assert payload["conflict_type"] == "quantity_mismatch"
        assert payload["status"] == "unresolved"
        assert payload["detected_at"]
        assert payload["local_data"] == {"quantity_to_make": 10}

    def test_detected_at_kept(self, links, make_link):
        link = make_link("PO-1")
        marked = links.mark_conflict(
            link["id"], {"conflict_type": "date_mismatch", "detected_at": "2026-03-01T09:00:00Z"}
        )
        assert marked["conflict_data"]["detected_at"] == "2026-03-01T09:00:00Z"

    def test_detected_at_must_parse(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError) as exc_info:
            links.mark_conflict(
                link["id"], {"conflict_type": "date_mismatch", "detected_at": "last week"}
            )
        assert exc_info.value.field == "conflict_data.detected_at"
        assert links.find_by_id(link["id"])["sync_status"] == "synced"

    @pytest.mark.parametrize("payload", [{}, {"conflict_type": ""}, "quantity"])
    def test_conflict_type_required(self, links, make_link, payload):
        link = make_link("PO-1")
        with pytest.raises(ValidationError):
            links.mark_conflict(link["id"], payload)
        assert links.get_conflict_history(link["id"]) == []

    def test_conflict_type_length(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError) as exc_info:
            links.mark_conflict(link["id"], {"conflict_type": "x" * 101})
        assert exc_info.value.field == "conflict_data.conflict_type"

    def test_history_entry_open(self, links, conflicted):
        [entry] = links.get_conflict_history(conflicted["id"])
        assert entry["is_open"] is True
        assert entry["conflict_type"] == "quantity_mismatch"
        assert entry["local_data"] == {"quantity_to_make": 10}
        assert entry["external_data"] == {"quantity_to_make": 12}
        assert entry["resolution_data"] is None

    def test_resolve(self, links, conflicted):
        resolved = links.resolve_conflict(conflicted["id"], dict(RESOLUTION))

        assert resolved["sync_status"] == "synced"
        payload = resolved["conflict_data"]
        assert payload["status"] == "resolved"
        assert payload["resolution_strategy"] == "use_external"
        assert payload["resolved_by"] == 7
        assert payload["resolved_at"]
        assert payload["conflict_type"] == "quantity_mismatch"

        [entry] = links.get_conflict_history(conflicted["id"])
        assert entry["is_open"] is False
        assert entry["resolution_strategy"] == "use_external"
        assert entry["resolved_by"] == 7
        assert entry["resolution_data"] == {"quantity_to_make": 12}

    def test_resolve_not_in_conflict(self, links, make_link):
        link = make_link("PO-1", sync_status="pending")
        before = links.find_by_id(link["id"])

        with pytest.raises(NotInConflictError) as exc_info:
            links.resolve_conflict(link["id"], dict(RESOLUTION))

        assert exc_info.value.current_status == "pending"
        after = links.find_by_id(link["id"])
        assert after == before
        assert after["sync_status"] == "pending"
        assert after["last_sync_at"] == before["last_sync_at"]
        assert after["updated_at"] == before["updated_at"]
        assert after["conflict_data"] is None
        assert links.get_conflict_history(link["id"]) == []

    def test_resolve_twice(self, links, conflicted):
        links.resolve_conflict(conflicted["id"], dict(RESOLUTION))
        with pytest.raises(NotInConflictError):
            links.resolve_conflict(conflicted["id"], dict(RESOLUTION))

    def test_resolve_missing_link(self, links):
        with pytest.raises(NotFoundError):
            links.resolve_conflict("missing", dict(RESOLUTION))

    @pytest.mark.parametrize(
        "resolution,field",
        [
            ({"resolved_by": 7}, "resolution_strategy"),
            ({"resolution_strategy": "manual"}, "resolved_by"),
            ({"resolution_strategy": "manual", "resolved_by": "alice"}, "resolved_by"),
        ],
    )
    def test_resolve_validation(self, links, conflicted, resolution, field):
        with pytest.raises(ValidationError) as exc_info:
            links.resolve_conflict(conflicted["id"], resolution)
        assert exc_info.value.field == field
        assert links.find_by_id(conflicted["id"])["sync_status"] == "conflict"

    def test_second_conflict_after_resolution(self, links, conflicted):
        links.resolve_conflict(conflicted["id"], dict(RESOLUTION))
        links.update_sync_status(conflicted["id"], "pending")
        links.mark_conflict(
            conflicted["id"],
            {"conflict_type": "date_mismatch", "detected_at": "2099-01-01T00:00:00Z"},
        )

        history = links.get_conflict_history(conflicted["id"])
        assert [h["conflict_type"] for h in history] == ["quantity_mismatch", "date_mismatch"]
        assert [h["is_open"] for h in history] == [False, True]

    def test_get_conflicts(self, links, make_link, conflicted, connection):
        make_link("PO-2")
        assert [l["id"] for l in links.get_conflicts()] == [conflicted["id"]]
        assert [l["id"] for l in links.get_conflicts(connection["id"])] == [conflicted["id"]]
        assert links.get_conflicts("other-connection") == []

    def test_history_for_missing_link(self, links):
        with pytest.raises(NotFoundError):
            links.get_conflict_history("missing")


class TestBulkUpdate:

    def test_all_or_nothing(self, links, make_link, conflicted):
        ok = make_link("PO-2", sync_status="pending")

        with pytest.raises(InvalidStateTransition):
            links.bulk_update_sync_status([ok["id"], conflicted["id"]], "synced")

        assert links.find_by_id(ok["id"])["sync_status"] == "pending"
        assert links.find_by_id(conflicted["id"])["sync_status"] == "conflict"

    def test_changes_count(self, links, make_link):
        ids = [make_link(f"PO-{n}", sync_status="pending")["id"] for n in range(3)]
        assert links.bulk_update_sync_status(ids + ids[:1], "synced") == {"changes": 3}
        assert all(links.find_by_id(i)["sync_status"] == "synced" for i in ids)

    def test_missing_id_writes_nothing(self, links, make_link):
        link = make_link("PO-1", sync_status="pending")
        with pytest.raises(NotFoundError):
            links.bulk_update_sync_status([link["id"], "missing"], "synced")
        assert links.find_by_id(link["id"])["sync_status"] == "pending"

    def test_empty_ids(self, links):
        with pytest.raises(ValidationError) as exc_info:
            links.bulk_update_sync_status([], "synced")
        assert exc_info.value.field == "link_ids"

    def test_conflict_target_rejected(self, links, make_link):
        link = make_link("PO-1")
        with pytest.raises(ValidationError):
            links.bulk_update_sync_status([link["id"]], "conflict")


# ============================================================
# Worklists, reporting and deletion
# ============================================================


class TestWorklists:

    def test_needing_sync_oldest_first(self, links, make_link):
        first = make_link("PO-1", sync_status="pending")
        second = make_link("PO-2", sync_status="error")
        make_link("PO-3")
        links.update_sync_status(first["id"], "pending")

        assert [l["id"] for l in links.get_needing_sync()] == [second["id"], first["id"]]
        assert len(links.get_needing_sync(limit=1)) == 1

    def test_needing_sync_invalid_limit(self, links):
        with pytest.raises(ValidationError):
            links.get_needing_sync(limit=0)

    def test_sync_stats(self, links, make_link, conflicted, connection):
        make_link("PO-2")
        make_link("PO-3", sync_status="pending")
        make_link("PO-4", sync_status="error")

        stats = links.get_sync_stats(connection["id"])

        assert stats["total_links"] == 4
        assert stats["synced_count"] == 1
        assert stats["pending_count"] == 1
        assert stats["conflict_count"] == 1
        assert stats["error_count"] == 1
        assert stats["sync_rate_percent"] == 25.0
        assert stats["needs_attention"] == 3
        assert stats["last_sync_at"] == conflicted["last_sync_at"]

    def test_sync_stats_empty(self, links):
        stats = links.get_sync_stats()
        assert stats["total_links"] == 0
        assert stats["sync_rate_percent"] == 0.0
        assert stats["last_sync_at"] is None


class TestDelete:

    def test_delete(self, links, make_link):
        link = make_link("PO-1")
        links.delete(link["id"])
        assert links.find_by_id(link["id"]) is None

    def test_missing(self, links):
        with pytest.raises(NotFoundError):
            links.delete("missing")

    def test_blocked_while_conflict_open(self, links, conflicted):
        with pytest.raises(OpenConflictError) as exc_info:
            links.delete(conflicted["id"])
        assert exc_info.value.dependents == {"open conflicts": 1}
        assert links.find_by_id(conflicted["id"]) is not None
        assert len(links.get_conflict_history(conflicted["id"])) == 1

    def test_resolved_history_deleted_with_link(self, links, conflicted, db_session):
        links.resolve_conflict(conflicted["id"], dict(RESOLUTION))
        links.delete(conflicted["id"])
        assert links.find_by_id(conflicted["id"]) is None
        remaining = db_session.query(ConflictResolutionLog).filter(
            ConflictResolutionLog.order_link_id == conflicted["id"]
        ).count()
        assert remaining == 0

    def test_connection_deletable_after_resolved_conflict(
        self, links, connections, connection, conflicted
    ):
        links.resolve_conflict(conflicted["id"], dict(RESOLUTION))
        links.delete(conflicted["id"])
        connections.delete(connection["id"])
        assert connections.find_by_id(connection["id"]) is None
